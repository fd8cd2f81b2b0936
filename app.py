import os
import re
import json
import math
import time
import random
import hashlib
import logging
import secrets
import threading
from functools import wraps
from datetime import date, timedelta, datetime, timezone, time as dt_time

import click
from flask import Flask, request, jsonify, session, make_response
from sqlalchemy import func
from werkzeug.exceptions import HTTPException

import scoring
from models import (
    db, utcnow, User, Language, Translation, BibleBook, BibleVerse, TypingSession,
    Church, Challenge, ChallengeParticipation, AdminRole, AdminAccessLog,
    EmailVerificationToken, PasswordResetToken,
    ADMIN_ROLES, ADMIN_PERMISSIONS, DEFAULT_ROLE_PERMISSIONS, ROLE_SUPER_ADMIN, CHALLENGE_TYPES,
)

logger = logging.getLogger(__name__)

basedir = os.path.abspath(os.path.dirname(__file__))

app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key-change-in-production")
app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(basedir, "bible_typing.db"),
)
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
# Server runs UTC; streaks and "today" follow the community's local day (KST by default).
app.config["TZ_OFFSET_HOURS"] = int(os.environ.get("TZ_OFFSET_HOURS", "9"))
app.config["APP_BASE_URL"] = os.environ.get("APP_BASE_URL", "http://localhost:5000")
app.config["DEFAULT_LANGUAGE"] = os.environ.get("DEFAULT_LANGUAGE", "ko")
app.config["SEED_FILE"] = os.environ.get("SEED_FILE", os.path.join(basedir, "bible_seed.json"))

db.init_app(app)

# ── Local time ────────────────────────────────────────────────────────────────

def _tz_offset() -> timedelta:
    return timedelta(hours=app.config["TZ_OFFSET_HOURS"])


def today_local() -> date:
    """Return the current date in the configured local timezone."""
    return (datetime.now(timezone.utc) + _tz_offset()).date()


def local_date_of(ts: datetime) -> date:
    return (ts + _tz_offset()).date()


def local_midnight_utc(day: date) -> datetime:
    """Naive UTC instant at which the given local day starts."""
    return datetime.combine(day, dt_time.min) - _tz_offset()


def parse_utc(value) -> datetime:
    """Parse an ISO-8601 timestamp into naive UTC. Raises ValueError."""
    ts = datetime.fromisoformat(str(value))
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


# ── In-process cache ──────────────────────────────────────────────────────────

CACHE_TTL_CONTENT = 60 * 60       # languages, translations, books
CACHE_TTL_LEADERBOARD = 5 * 60
CACHE_TTL_RANK = 2 * 60


class TTLCache:
    """Tiny key/value cache for JSON-ready payloads."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._items = {}
        self._lock = threading.Lock()

    def get_or_set(self, key, factory, ttl):
        now = self._clock()
        with self._lock:
            hit = self._items.get(key)
            if hit is not None and hit[1] > now:
                return hit[0]
        value = factory()
        with self._lock:
            self._items[key] = (value, now + ttl)
        return value

    def invalidate(self, prefix=""):
        with self._lock:
            for key in [k for k in self._items if k.startswith(prefix)]:
                del self._items[key]


cache = TTLCache()

# ── Rate limiting ─────────────────────────────────────────────────────────────

class RateLimiter:
    """Fixed-window counter per client (IP + truncated User-Agent)."""

    def __init__(self, window_seconds, max_requests, clock=time.monotonic):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._clock = clock
        self._hits = {}  # key -> [count, reset_at]
        self._lock = threading.Lock()

    @staticmethod
    def client_key():
        ip = request.remote_addr or "unknown"
        agent = (request.headers.get("User-Agent") or "unknown")[:50]
        return f"{ip}:{agent}"

    def hit(self, key):
        """Count one request. Returns (allowed, remaining, seconds_until_reset)."""
        now = self._clock()
        with self._lock:
            for stale in [k for k, v in self._hits.items() if v[1] <= now]:
                del self._hits[stale]
            entry = self._hits.get(key)
            if entry is None:
                entry = self._hits[key] = [0, now + self.window_seconds]
            reset_in = max(0, int(entry[1] - now + 0.999))
            if entry[0] >= self.max_requests:
                return False, 0, reset_in
            entry[0] += 1
            return True, self.max_requests - entry[0], reset_in

    def reset(self):
        with self._lock:
            self._hits.clear()

    def limit(self, f):
        @wraps(f)
        def decorated(*args, **kwargs):
            allowed, remaining, reset_in = self.hit(self.client_key())
            headers = {
                "X-RateLimit-Limit": str(self.max_requests),
                "X-RateLimit-Remaining": str(remaining),
                "X-RateLimit-Reset": str(reset_in),
            }
            if not allowed:
                minutes = max(1, -(-reset_in // 60))
                resp = jsonify({
                    "error": f"Too many requests. Try again in {minutes} minute(s).",
                    "retryAfter": reset_in,
                })
                resp.status_code = 429
                resp.headers.update(headers)
                resp.headers["Retry-After"] = str(reset_in)
                return resp
            resp = make_response(f(*args, **kwargs))
            resp.headers.update(headers)
            return resp
        return decorated


auth_limiter = RateLimiter(window_seconds=15 * 60, max_requests=5)
verify_limiter = RateLimiter(window_seconds=10 * 60, max_requests=3)

# ── Email tokens ──────────────────────────────────────────────────────────────

VERIFY_TOKEN_TTL = timedelta(hours=24)
RESET_TOKEN_TTL = timedelta(hours=1)
MIN_PASSWORD_LENGTH = 8
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """Only the SHA-256 of a token is stored; the raw value lives in the email."""
    return hashlib.sha256(token.encode()).hexdigest()


def deliver_email(to: str, subject: str, body: str):
    """Hand a composed message to the mail transport (log only; no provider is wired in)."""
    logger.info("Email to %s | %s\n%s", to, subject, body)


def issue_verification_token(email: str) -> str:
    # A new token invalidates any earlier ones for the same address.
    EmailVerificationToken.query.filter_by(email=email).delete()
    token = generate_token()
    db.session.add(EmailVerificationToken(
        email=email, token_hash=hash_token(token), expires_at=utcnow() + VERIFY_TOKEN_TTL,
    ))
    return token


def issue_reset_token(email: str) -> str:
    PasswordResetToken.query.filter_by(email=email, is_used=False).delete()
    token = generate_token()
    db.session.add(PasswordResetToken(
        email=email, token_hash=hash_token(token), expires_at=utcnow() + RESET_TOKEN_TTL,
    ))
    return token


def send_verification_email(user, token):
    link = f"{app.config['APP_BASE_URL']}/verify-email?token={token}"
    deliver_email(
        user.email,
        "Verify your email address",
        f"Hello {user.first_name or 'friend'},\n\n"
        f"Confirm your address to start typing practice:\n{link}\n\n"
        f"This link expires in {int(VERIFY_TOKEN_TTL.total_seconds() // 3600)} hours.",
    )


def send_password_reset_email(user, token):
    link = f"{app.config['APP_BASE_URL']}/reset-password?token={token}"
    deliver_email(
        user.email,
        "Reset your password",
        f"Hello {user.first_name or 'friend'},\n\n"
        f"Use this link to choose a new password:\n{link}\n\n"
        f"This link expires in {int(RESET_TOKEN_TTL.total_seconds() // 60)} minutes.",
    )


def cleanup_expired_tokens():
    now = utcnow()
    EmailVerificationToken.query.filter(EmailVerificationToken.expires_at < now).delete()
    PasswordResetToken.query.filter(PasswordResetToken.expires_at < now).delete()

# ── Helpers ───────────────────────────────────────────────────────────────────

def json_body() -> dict:
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


def id_arg(value):
    """A JSON integer id, or None. Booleans are not ids."""
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def error(message, status=400, **extra):
    payload = {"error": message}
    payload.update(extra)
    return jsonify(payload), status


def _page_args(default_limit=20, max_limit=100):
    limit = request.args.get("limit", default_limit, type=int)
    offset = request.args.get("offset", 0, type=int)
    return max(1, min(limit, max_limit)), max(0, offset)


def current_user():
    """Return the logged-in User object, or None."""
    uid = session.get("user_id")
    if uid is None:
        return None
    return db.session.get(User, uid)


def login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if current_user() is None:
            return error("Authentication required.", 401)
        return f(*args, **kwargs)
    return decorated


def active_roles(user):
    now = utcnow()
    return [r for r in user.roles if r.is_current(now)]


def user_permissions(user) -> set:
    if user is None:
        return set()
    if user.is_admin:
        return set(ADMIN_PERMISSIONS)
    roles = active_roles(user)
    return {p for p in ADMIN_PERMISSIONS if any(r.grants(p) for r in roles)}


def has_permission(user, permission: str) -> bool:
    return permission in user_permissions(user)


_REDACT_MARKERS = ("password", "token", "secret")


def sanitize_request_data(data):
    """Copy of a request body with credential-like fields redacted."""
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if any(m in k.lower() for m in _REDACT_MARKERS) else sanitize_request_data(v)
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [sanitize_request_data(v) for v in data]
    return data


def _record_admin_access(user, action, status, started, error_message=None):
    body = None
    if request.method in ("POST", "PUT", "PATCH"):
        body = sanitize_request_data(request.get_json(silent=True))
    db.session.add(AdminAccessLog(
        user_id=user.id,
        action=action,
        resource=request.path[:100],
        method=request.method,
        url=request.full_path.rstrip("?"),
        user_agent=request.headers.get("User-Agent", ""),
        ip_address=request.remote_addr,
        success=status < 400,
        error_message=error_message or (f"HTTP {status}" if status >= 400 else None),
        request_data=body,
        response_status=status,
        duration=int((time.monotonic() - started) * 1000),
    ))


def admin_action(action, permission):
    """Gate a view on an admin permission and write an access-log row for it."""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            user = current_user()
            if user is None:
                return error("Authentication required.", 401)
            started = time.monotonic()
            if not has_permission(user, permission):
                _record_admin_access(user, f"attempt_{permission}", 403, started,
                                     "Insufficient permissions")
                db.session.commit()
                logger.warning("Admin permission %s denied for user %s", permission, user.id)
                return error("Access denied. Insufficient permissions.", 403)
            try:
                resp = make_response(f(*args, **kwargs))
            except HTTPException as exc:
                _record_admin_access(user, action, exc.code, started, exc.description)
                db.session.commit()
                raise
            _record_admin_access(user, action, resp.status_code, started)
            db.session.commit()
            return resp
        return decorated
    return decorator

# ── Stats, streaks and points ─────────────────────────────────────────────────

def get_user_stats(user) -> dict:
    total_words, avg_wpm, avg_accuracy, total_sessions = db.session.query(
        func.coalesce(func.sum(TypingSession.words_typed), 0),
        func.coalesce(func.avg(TypingSession.wpm), 0),
        func.coalesce(func.avg(TypingSession.accuracy), 0),
        func.count(TypingSession.id),
    ).filter(TypingSession.user_id == user.id).one()
    return {
        "totalWords": int(total_words),
        "averageWpm": round(float(avg_wpm), 1),
        "averageAccuracy": round(float(avg_accuracy), 1),
        "totalSessions": int(total_sessions),
    }


def refresh_user_stats(user):
    stats = get_user_stats(user)
    user.total_words = stats["totalWords"]
    user.average_wpm = stats["averageWpm"]
    user.total_accuracy = stats["averageAccuracy"]
    return stats


def update_streak(user, today):
    yesterday = today - timedelta(days=1)
    if user.last_practice_date is None:
        user.practice_streak = 1
    elif user.last_practice_date == yesterday:
        user.practice_streak += 1
    elif user.last_practice_date == today:
        pass  # Already practiced today
    else:
        user.practice_streak = 1  # Missed at least one day
    user.last_practice_date = today
    if user.practice_streak > user.longest_streak:
        user.longest_streak = user.practice_streak


def award_points(user, points):
    if points <= 0:
        return
    user.total_points = (user.total_points or 0) + points
    if user.church is not None:
        user.church.total_points = (user.church.total_points or 0) + points

# ── Challenges ────────────────────────────────────────────────────────────────

# Qualifying sessions needed to finish a challenge of each type.
CHALLENGE_GOALS = {"daily": 1, "weekly": 5, "monthly": 20}


def challenge_window(kind, today):
    """(start, end) in naive UTC for a challenge of ``kind`` that covers ``today``."""
    if kind == "weekly":
        start = today - timedelta(days=today.weekday())
        end = start + timedelta(days=7)
    elif kind == "monthly":
        start = today.replace(day=1)
        end = (start + timedelta(days=32)).replace(day=1)
    else:
        start = today
        end = today + timedelta(days=1)
    return local_midnight_utc(start), local_midnight_utc(end) - timedelta(seconds=1)


def active_challenges_query(now=None):
    now = now or utcnow()
    return Challenge.query.filter(
        Challenge.is_active.is_(True),
        Challenge.start_date <= now,
        Challenge.end_date >= now,
    )


def active_participations(user, now):
    return (ChallengeParticipation.query
            .join(Challenge)
            .filter(ChallengeParticipation.user_id == user.id,
                    ChallengeParticipation.is_completed.is_(False),
                    Challenge.is_active.is_(True),
                    Challenge.start_date <= now,
                    Challenge.end_date >= now)
            .all())


def challenge_progress(challenge, sessions) -> float:
    qualifying = sum(
        1 for s in sessions
        if challenge.start_date <= s.completed_at <= challenge.end_date and challenge.accepts(s)
    )
    goal = CHALLENGE_GOALS.get(challenge.type, 1)
    return min(qualifying, goal) / goal * 100


def advance_challenges(user, new_session, now):
    """Update the user's open challenge participations after a finished verse."""
    participations = active_participations(user, now)
    if not participations:
        return []
    earliest = min(p.challenge.start_date for p in participations)
    sessions = (TypingSession.query
                .filter(TypingSession.user_id == user.id,
                        TypingSession.completed_at >= earliest)
                .all())
    completed = []
    for p in participations:
        challenge = p.challenge
        if not challenge.accepts(new_session):
            continue
        progress = challenge_progress(challenge, sessions)
        if progress == p.progress:
            continue
        p.progress = progress
        if progress >= 100 and not p.is_completed:
            p.is_completed = True
            p.completed_at = now
            p.points_earned = challenge.points_reward or 0
            award_points(user, p.points_earned)
            completed.append(challenge)
            logger.info("User %s completed challenge %s", user.id, challenge.id)
    return completed

# ── Rankings and achievements ─────────────────────────────────────────────────

def get_rank_info(user) -> dict:
    total_users = User.query.count() or 1
    global_rank = User.query.filter(User.total_points > user.total_points).count() + 1
    info = {
        "globalRank": global_rank,
        "churchRank": None,
        "totalUsers": total_users,
        "totalChurchMembers": None,
        "percentile": round((1 - (global_rank - 1) / total_users) * 100),
        "churchPercentile": None,
    }
    if user.church_id:
        members = User.query.filter(User.church_id == user.church_id)
        total_members = members.count() or 1
        church_rank = members.filter(User.total_points > user.total_points).count() + 1
        info.update({
            "churchRank": church_rank,
            "totalChurchMembers": total_members,
            "churchPercentile": round((1 - (church_rank - 1) / total_members) * 100),
        })
    return info


# (id, name, description, category, stat key, target)
ACHIEVEMENTS = [
    ("first_session", "First Steps",      "Finish your first verse",        "typing",   "totalSessions",   1),
    ("sessions_10",   "Steady",           "Finish 10 verses",               "typing",   "totalSessions",   10),
    ("sessions_50",   "Devoted",          "Finish 50 verses",               "typing",   "totalSessions",   50),
    ("sessions_100",  "Faithful Scribe",  "Finish 100 verses",              "typing",   "totalSessions",   100),
    ("wpm_30",        "Up to Speed",      "Average 30 WPM",                 "speed",    "averageWpm",      30),
    ("wpm_50",        "Quick Fingers",    "Average 50 WPM",                 "speed",    "averageWpm",      50),
    ("wpm_80",        "Typing Master",    "Average 80 WPM",                 "speed",    "averageWpm",      80),
    ("accuracy_95",   "Careful Hands",    "Average 95% accuracy",           "accuracy", "averageAccuracy", 95),
    ("accuracy_98",   "Perfectionist",    "Average 98% accuracy",           "accuracy", "averageAccuracy", 98),
    ("streak_7",      "One Week",         "Practice 7 days in a row",       "streak",   "practiceStreak",  7),
    ("streak_30",     "Month Marathon",   "Practice 30 days in a row",      "streak",   "practiceStreak",  30),
    ("words_1000",    "A Thousand Words", "Type 1,000 words",               "bible",    "totalWords",      1000),
    ("words_10000",   "Ten Thousand",     "Type 10,000 words",              "bible",    "totalWords",      10000),
]


def get_achievements(user, stats=None):
    stats = dict(stats or get_user_stats(user))
    stats["practiceStreak"] = user.practice_streak or 0
    result = []
    for ach_id, name, description, category, key, target in ACHIEVEMENTS:
        current = stats.get(key, 0) or 0
        result.append({
            "id": ach_id,
            "name": name,
            "description": description,
            "category": category,
            "progress": min(current, target),
            "total": target,
            "isUnlocked": current >= target,
        })
    return result


def get_weekly_progress(user, days=7):
    """Per-local-day totals for the last ``days`` days, oldest first."""
    today = today_local()
    first_day = today - timedelta(days=days - 1)
    sessions = (TypingSession.query
                .filter(TypingSession.user_id == user.id,
                        TypingSession.completed_at >= local_midnight_utc(first_day))
                .all())
    buckets = {first_day + timedelta(days=i): [] for i in range(days)}
    for s in sessions:
        day = local_date_of(s.completed_at)
        if day in buckets:
            buckets[day].append(s)
    return [
        {
            "date": day.isoformat(),
            "sessions": len(items),
            "wordsTyped": sum(s.words_typed for s in items),
            "avgWpm": scoring.round_half_up(sum(s.wpm for s in items) / len(items)) if items else 0,
        }
        for day, items in sorted(buckets.items())
    ]


def session_with_reference(s, language_code=None):
    row = s.to_dict()
    verse = s.verse
    row["bookName"] = verse.book.display_name(language_code) if verse else "Unknown"
    row["chapter"] = verse.chapter if verse else 0
    row["verse"] = verse.verse if verse else 0
    return row

# ── Churches ──────────────────────────────────────────────────────────────────

# No 0/O, 1/I/L: codes get read aloud and copied by hand.
CHURCH_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
CHURCH_CODE_LENGTH = 8


def generate_church_code(max_attempts=100) -> str:
    for _ in range(max_attempts):
        code = "".join(secrets.choice(CHURCH_CODE_ALPHABET) for _ in range(CHURCH_CODE_LENGTH))
        if not Church.query.filter_by(church_code=code).first():
            return code
    raise RuntimeError(f"Could not generate a unique church code after {max_attempts} attempts")


def join_church(user, church):
    """Move ``user`` into ``church``. Returns (ok, message)."""
    if user.church_id == church.id:
        return False, "Already a member of this church."
    action = "joined"
    if user.church_id:
        previous = db.session.get(Church, user.church_id)
        if previous is not None:
            previous.total_members = max(0, (previous.total_members or 0) - 1)
        action = "transferred to"
    user.church_id = church.id
    church.total_members = (church.total_members or 0) + 1
    return True, f"Successfully {action} {church.name}."

# ── Bible content ─────────────────────────────────────────────────────────────

def default_translation():
    lang = Language.query.filter_by(code=app.config["DEFAULT_LANGUAGE"]).first()
    if lang is not None:
        t = (Translation.query.filter_by(language_id=lang.id)
             .order_by(Translation.id).first())
        if t is not None:
            return t
    return Translation.query.order_by(Translation.id).first()


def resolve_translation():
    """Translation named by ``?translation=CODE``, else the default one."""
    code = (request.args.get("translation") or "").strip()
    if code:
        return Translation.query.filter(func.upper(Translation.code) == code.upper()).first()
    return default_translation()


def cached_books():
    return cache.get_or_set(
        "bible:books",
        lambda: [b.to_dict() for b in BibleBook.query.order_by(BibleBook.book_order).all()],
        CACHE_TTL_CONTENT,
    )


def cached_languages():
    return cache.get_or_set(
        "bible:languages",
        lambda: [l.to_dict() for l in Language.query.order_by(Language.id).all()],
        CACHE_TTL_CONTENT,
    )

# ── Seeding ───────────────────────────────────────────────────────────────────

def load_seed(path=None):
    with open(path or app.config["SEED_FILE"], "r", encoding="utf-8") as f:
        return json.load(f)


def seed_database(data) -> dict:
    """Insert languages, translations, books, verses and current challenges.

    Rows are matched on their natural keys, so running it twice adds nothing.
    """
    counts = {"languages": 0, "translations": 0, "books": 0, "verses": 0, "challenges": 0}

    languages = {l.code: l for l in Language.query.all()}
    for row in data.get("languages", []):
        if row["code"] not in languages:
            lang = Language(code=row["code"], name=row["name"],
                            encoding=row.get("encoding", "utf-8"),
                            direction=row.get("direction", "ltr"))
            db.session.add(lang)
            languages[lang.code] = lang
            counts["languages"] += 1
    db.session.flush()

    translations = {t.code: t for t in Translation.query.all()}
    for row in data.get("translations", []):
        if row["code"] not in translations:
            t = Translation(code=row["code"], name=row["name"],
                            language_id=languages[row["language"]].id,
                            full_name=row.get("fullName"), year=row.get("year"),
                            publisher=row.get("publisher"))
            db.session.add(t)
            translations[t.code] = t
            counts["translations"] += 1
    db.session.flush()

    books = {b.book_code: b for b in BibleBook.query.all()}
    for row in data.get("books", []):
        if row["code"] not in books:
            b = BibleBook(book_code=row["code"], name_ko=row["nameKo"], name_en=row["nameEn"],
                          book_order=row["order"], testament=row["testament"],
                          chapters=row["chapters"], verses=row.get("verses", 0))
            db.session.add(b)
            books[b.book_code] = b
            counts["books"] += 1
    db.session.flush()

    existing = {
        (v.translation_id, v.book_id, v.chapter, v.verse)
        for v in BibleVerse.query.with_entities(
            BibleVerse.translation_id, BibleVerse.book_id, BibleVerse.chapter, BibleVerse.verse)
    }
    for row in data.get("verses", []):
        t = translations[row["translation"]]
        b = books[row["book"]]
        key = (t.id, b.id, row["chapter"], row["verse"])
        if key in existing:
            continue
        db.session.add(BibleVerse(book_id=b.id, translation_id=t.id, language_id=t.language_id,
                                  chapter=row["chapter"], verse=row["verse"],
                                  content=row["content"].strip()))
        existing.add(key)
        counts["verses"] += 1

    today = today_local()
    for row in data.get("challenges", []):
        start, end = challenge_window(row["type"], today)
        if Challenge.query.filter_by(title=row["title"], start_date=start).first():
            continue
        db.session.add(Challenge(
            title=row["title"], description=row.get("description"), type=row["type"],
            target_verse_ids=[], required_accuracy=row.get("requiredAccuracy", 95),
            required_wpm=row.get("requiredWpm", 30), points_reward=row.get("pointsReward", 100),
            start_date=start, end_date=end, is_active=True,
        ))
        counts["challenges"] += 1

    db.session.commit()
    cache.invalidate("bible:")
    logger.info("Seeded %s", counts)
    return counts


@app.cli.command("seed")
@click.option("--file", "seed_file", default=None, help="Seed JSON (defaults to bible_seed.json).")
def seed_command(seed_file):
    """Load languages, translations, books, verses and challenges."""
    counts = seed_database(load_seed(seed_file))
    for name, n in counts.items():
        click.echo(f"{name}: {n} added")


@app.cli.command("create-admin")
@click.argument("email")
@click.argument("password")
def create_admin_command(email, password):
    """Create (or promote) a verified super admin."""
    email = email.strip().lower()
    user = User.query.filter_by(email=email).first()
    if user is None:
        user = User(email=email, first_name="Admin")
        db.session.add(user)
    user.set_password(password)
    user.email_verified = True
    user.is_admin = True
    db.session.flush()
    if not AdminRole.query.filter_by(user_id=user.id, role=ROLE_SUPER_ADMIN).first():
        db.session.add(AdminRole(user_id=user.id, role=ROLE_SUPER_ADMIN,
                                 permissions=DEFAULT_ROLE_PERMISSIONS[ROLE_SUPER_ADMIN],
                                 granted_by=user.id))
    db.session.commit()
    click.echo(f"Super admin ready: {user.email}")

# ── Auth routes ───────────────────────────────────────────────────────────────

@app.route("/api/auth/signup", methods=["POST"])
@auth_limiter.limit
def signup():
    data = json_body()
    email = str(data.get("email", "")).strip().lower()
    password = str(data.get("password", ""))
    first_name = str(data.get("firstName", "")).strip()
    if not EMAIL_RE.match(email):
        return error("A valid email address is required.")
    if len(password) < MIN_PASSWORD_LENGTH:
        return error(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if not first_name:
        return error("First name is required.")
    if User.query.filter_by(email=email).first():
        return error("That email address is already registered.", 409)

    user = User(email=email, first_name=first_name[:100], email_verified=False)
    user.set_password(password)
    db.session.add(user)
    token = issue_verification_token(email)
    db.session.commit()
    send_verification_email(user, token)
    logger.info("Signup: %s (verification pending)", email)
    return jsonify({
        "message": "Account created. Check your email to activate it.",
        "user": {"id": user.id, "email": user.email, "firstName": user.first_name,
                 "emailVerified": user.email_verified},
    }), 201


@app.route("/api/auth/verify", methods=["POST"])
@verify_limiter.limit
def verify_email():
    token = json_body().get("token")
    if not token or not isinstance(token, str):
        return error("A verification token is required.")
    record = EmailVerificationToken.query.filter_by(token_hash=hash_token(token)).first()
    if record is None:
        logger.info("Unknown verification token %s...", token[:8])
        return error("The verification link is invalid or has expired.")
    if record.is_used:
        return error("This verification link has already been used.")
    if record.expires_at < utcnow():
        return error("The verification link has expired. Request a new one.")
    user = User.query.filter_by(email=record.email).first()
    if user is None:
        logger.error("Verification token for missing user %s", record.email)
        return error("The verification link is invalid or has expired.")
    if user.email_verified:
        return error("This email address is already verified.")

    user.email_verified = True
    record.is_used = True
    cleanup_expired_tokens()
    db.session.commit()
    logger.info("Email verified: %s", user.email)
    return jsonify({"message": "Email verified. You can now log in.", "email": user.email})


@app.route("/api/auth/resend", methods=["POST"])
@verify_limiter.limit
def resend_verification():
    email = str(json_body().get("email", "")).strip().lower()
    if not EMAIL_RE.match(email):
        return error("A valid email address is required.")
    sent = {"message": "Verification email sent. Please check your inbox.", "email": email}
    user = User.query.filter_by(email=email).first()
    if user is None:
        # Same answer as success so addresses cannot be probed.
        logger.info("Verification resend for unknown address %s", email)
        return jsonify(sent)
    if user.email_verified:
        return error("This email address is already verified. Try logging in.")
    token = issue_verification_token(email)
    db.session.commit()
    send_verification_email(user, token)
    return jsonify(sent)


@app.route("/api/auth/login", methods=["POST"])
@auth_limiter.limit
def login():
    data = json_body()
    email = str(data.get("email", "")).strip().lower()
    password = str(data.get("password", ""))
    user = User.query.filter_by(email=email).first()
    if user is None or not user.check_password(password) or not user.email_verified:
        return error("Invalid email or password, or the email is not verified yet.", 401)
    session.clear()
    session["user_id"] = user.id
    logger.info("Login: %s", email)
    return jsonify({"message": "Logged in.", "user": user.to_dict()})


@app.route("/api/auth/logout", methods=["POST"])
def logout():
    session.pop("user_id", None)
    return jsonify({"message": "Logged out."})


@app.route("/api/auth/user")
@login_required
def auth_user():
    return jsonify(current_user().to_dict())


@app.route("/api/auth/forgot-password", methods=["POST"])
@auth_limiter.limit
def forgot_password():
    email = str(json_body().get("email", "")).strip().lower()
    if not EMAIL_RE.match(email):
        return error("A valid email address is required.")
    user = User.query.filter_by(email=email).first()
    if user is not None and user.email_verified:
        token = issue_reset_token(email)
        db.session.commit()
        send_password_reset_email(user, token)
    else:
        logger.info("Password reset for unknown or unverified address %s", email)
    return jsonify({"message": "If that address is registered, a reset link is on its way.",
                    "email": email})


@app.route("/api/auth/reset-password", methods=["POST"])
@auth_limiter.limit
def reset_password():
    data = json_body()
    token = data.get("token")
    password = str(data.get("password", ""))
    if not token or not isinstance(token, str):
        return error("A reset token is required.")
    if len(password) < MIN_PASSWORD_LENGTH:
        return error(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    record = PasswordResetToken.query.filter_by(token_hash=hash_token(token)).first()
    if record is None:
        return error("The reset link is invalid or has expired.")
    if record.is_used:
        return error("This reset link has already been used.")
    if record.expires_at < utcnow():
        return error("The reset link has expired. Request a new one.")
    user = User.query.filter_by(email=record.email).first()
    if user is None or not user.email_verified:
        return error("The reset link is invalid or has expired.")

    user.set_password(password)
    record.is_used = True
    cleanup_expired_tokens()
    db.session.commit()
    logger.info("Password reset: %s", user.email)
    return jsonify({"message": "Password updated. Log in with your new password.",
                    "email": user.email})


@app.route("/api/users/profile", methods=["PATCH"])
@login_required
def update_profile():
    user = current_user()
    data = json_body()
    if "firstName" in data:
        first_name = str(data["firstName"] or "").strip()
        if not first_name:
            return error("First name cannot be empty.")
        user.first_name = first_name[:100]
    if "lastName" in data:
        user.last_name = (str(data["lastName"] or "").strip() or None)
    if "age" in data:
        age = data["age"]
        if age is not None:
            try:
                age = int(age)
            except (TypeError, ValueError):
                return error("Age must be a number.")
            if not 1 <= age <= 120:
                return error("Age must be between 1 and 120.")
        user.age = age
    if "region" in data:
        user.region = (str(data["region"] or "").strip()[:100] or None)
    user.profile_completed = bool(user.first_name and user.age and user.region)
    db.session.commit()
    return jsonify(user.to_dict())

# ── Bible routes ──────────────────────────────────────────────────────────────

@app.route("/api/bible/languages")
def bible_languages():
    return jsonify(cached_languages())


@app.route("/api/bible/translations")
def bible_translations():
    code = (request.args.get("language") or "").strip()

    def load():
        query = Translation.query
        if code:
            lang = Language.query.filter_by(code=code).first()
            if lang is None:
                return []
            query = query.filter_by(language_id=lang.id)
        return [t.to_dict() for t in query.order_by(Translation.id).all()]

    return jsonify(cache.get_or_set(f"bible:translations:{code}", load, CACHE_TTL_CONTENT))


@app.route("/api/bible/books")
def bible_books():
    return jsonify(cached_books())


@app.route("/api/bible/initial-data")
def bible_initial_data():
    t = default_translation()
    translations = []
    if t is not None:
        translations = [x.to_dict() for x in
                        Translation.query.filter_by(language_id=t.language_id).order_by(Translation.id)]
    return jsonify({
        "languages": cached_languages(),
        "books": cached_books(),
        "defaultTranslation": t.to_dict() if t else None,
        "translations": translations,
    })


@app.route("/api/bible/verse/<int:book_id>/<int:chapter>/<int:verse>")
def bible_verse(book_id, chapter, verse):
    t = resolve_translation()
    if t is None:
        return error("Translation not found.", 404)
    row = BibleVerse.query.filter_by(book_id=book_id, chapter=chapter, verse=verse,
                                     translation_id=t.id).first()
    if row is None:
        return error("Verse not found.", 404)
    return jsonify(row.to_dict())


@app.route("/api/bible/chapter/<int:book_id>/<int:chapter>")
def bible_chapter(book_id, chapter):
    t = resolve_translation()
    if t is None:
        return error("Translation not found.", 404)
    rows = (BibleVerse.query
            .filter_by(book_id=book_id, chapter=chapter, translation_id=t.id)
            .order_by(BibleVerse.verse)
            .all())
    return jsonify([v.to_dict() for v in rows])


@app.route("/api/bible/book/<int:book_id>/max-chapter")
def bible_max_chapter(book_id):
    t = resolve_translation()
    if t is None:
        return error("Translation not found.", 404)
    max_chapter = (db.session.query(func.max(BibleVerse.chapter))
                   .filter(BibleVerse.book_id == book_id, BibleVerse.translation_id == t.id)
                   .scalar())
    return jsonify({"bookId": book_id, "translationCode": t.code, "maxChapter": max_chapter or 0})


@app.route("/api/bible/random-verse")
def bible_random_verse():
    t = resolve_translation()
    if t is None:
        return error("Translation not found.", 404)
    query = BibleVerse.query.filter_by(translation_id=t.id)
    total = query.count()
    if not total:
        return error("No verses available for this translation.", 404)
    row = query.order_by(BibleVerse.id).offset(random.randrange(total)).first()
    return jsonify(row.to_dict())

# ── Typing routes ─────────────────────────────────────────────────────────────

# Upper bounds for client-reported metrics
MAX_WPM = 500
MAX_SESSION_SECONDS = 24 * 60 * 60


@app.route("/api/typing/score", methods=["POST"])
def typing_score():
    """Live metrics for the current buffer, scored against the stored verse."""
    data = json_body()
    verse_id = id_arg(data.get("verseId"))
    verse = db.session.get(BibleVerse, verse_id) if verse_id is not None else None
    if verse is None:
        return error("Verse not found.", 404)
    typed = data.get("input", "")
    if not isinstance(typed, str):
        return error("Input must be a string.")
    try:
        elapsed = float(data.get("elapsedSeconds", 0) or 0)
    except (TypeError, ValueError):
        return error("elapsedSeconds must be a number.")
    if not math.isfinite(elapsed) or elapsed > MAX_SESSION_SECONDS:
        return error("elapsedSeconds is out of range.")
    try:
        metrics = scoring.score_attempt(verse.content, typed, elapsed)
    except scoring.InputTooLongError:
        return error("Input is longer than the verse.")
    metrics["verseId"] = verse.id
    return jsonify(metrics)


@app.route("/api/typing/session", methods=["POST"])
@login_required
def create_typing_session():
    user = current_user()
    data = json_body()
    if not data:
        return error("No data provided")
    verse_id = id_arg(data.get("verseId"))
    verse = db.session.get(BibleVerse, verse_id) if verse_id is not None else None
    if verse is None:
        return error("Verse not found.", 404)
    try:
        wpm = float(data["wpm"])
        accuracy = float(data["accuracy"])
        words = int(data["wordsTyped"])
        time_spent = int(data["timeSpent"])
    except (KeyError, TypeError, ValueError, OverflowError):
        return error("wpm, accuracy, wordsTyped and timeSpent are required numbers.")
    if not (math.isfinite(wpm) and math.isfinite(accuracy)):
        return error("wpm and accuracy must be finite numbers.")
    if wpm < 0 or words < 0 or time_spent < 0:
        return error("Session values cannot be negative.")
    if wpm > MAX_WPM:
        return error(f"wpm cannot exceed {MAX_WPM}.")
    if time_spent > MAX_SESSION_SECONDS:
        return error("timeSpent is out of range.")
    if not 0 <= accuracy <= 100:
        return error("Accuracy must be between 0 and 100.")
    if words > scoring.words_typed(len(verse.content)):
        return error("wordsTyped exceeds the length of the verse.")

    now = utcnow()
    points = scoring.calculate_points(wpm, accuracy)
    record = TypingSession(user_id=user.id, verse_id=verse.id, wpm=wpm, accuracy=accuracy,
                           words_typed=words, time_spent=time_spent,
                           points_earned=points, completed_at=now)
    db.session.add(record)
    db.session.flush()

    refresh_user_stats(user)
    update_streak(user, local_date_of(now))
    award_points(user, points)
    completed = advance_challenges(user, record, now)
    db.session.commit()
    cache.invalidate("leaderboard:")

    logger.info("Session %s: user=%s verse=%s wpm=%s acc=%s points=%s",
                record.id, user.id, verse.id, wpm, accuracy, points)
    payload = record.to_dict()
    payload["completedChallenges"] = [c.id for c in completed]
    return jsonify(payload), 201


@app.route("/api/typing/sessions")
@login_required
def list_typing_sessions():
    user = current_user()
    limit, _ = _page_args(default_limit=20)
    rows = (TypingSession.query
            .filter_by(user_id=user.id)
            .order_by(TypingSession.completed_at.desc(), TypingSession.id.desc())
            .limit(limit)
            .all())
    return jsonify([s.to_dict() for s in rows])

# ── User routes ───────────────────────────────────────────────────────────────

@app.route("/api/user/stats")
@login_required
def user_stats():
    return jsonify(get_user_stats(current_user()))


@app.route("/api/user/dashboard")
@login_required
def user_dashboard():
    user = current_user()
    stats = get_user_stats(user)
    rank = get_rank_info(user)
    recent = (TypingSession.query
              .filter_by(user_id=user.id)
              .order_by(TypingSession.completed_at.desc(), TypingSession.id.desc())
              .limit(5)
              .all())
    return jsonify({
        "user": user.to_dict(),
        "stats": dict(stats, practiceStreak=user.practice_streak, totalPoints=user.total_points),
        "rankings": {k: rank[k] for k in ("globalRank", "churchRank", "totalUsers", "percentile")},
        "recentSessions": [s.to_dict() for s in recent],
        "achievements": get_achievements(user, stats),
        "weeklyProgress": get_weekly_progress(user),
    })


@app.route("/api/user/recent-sessions")
@login_required
def user_recent_sessions():
    user = current_user()
    limit, _ = _page_args(default_limit=10)
    language = request.args.get("language")
    rows = (TypingSession.query
            .filter_by(user_id=user.id)
            .order_by(TypingSession.completed_at.desc(), TypingSession.id.desc())
            .limit(limit)
            .all())
    return jsonify([session_with_reference(s, language) for s in rows])


DAILY_GOAL = {"sessions": 5, "words": 100}
WEEKLY_GOAL = {"sessions": 25, "words": 500}


@app.route("/api/user/progress")
@login_required
def user_progress():
    user = current_user()
    today = today_local()
    week_start = today - timedelta(days=today.weekday())
    sessions = TypingSession.query.filter_by(user_id=user.id).all()

    today_rows = [s for s in sessions if local_date_of(s.completed_at) == today]
    week_rows = [s for s in sessions if local_date_of(s.completed_at) >= week_start]

    chapters_by_book = {}
    for s in sessions:
        chapters_by_book.setdefault(s.verse.book_id, set()).add(s.verse.chapter)
    bible_progress = []
    for book in BibleBook.query.filter(BibleBook.id.in_(list(chapters_by_book))).order_by(BibleBook.book_order):
        done = len(chapters_by_book[book.id])
        bible_progress.append({
            "bookId": book.id,
            "bookName": book.name_en,
            "chaptersCompleted": done,
            "totalChapters": book.chapters,
            "progressPercentage": round(done / book.chapters * 100) if book.chapters else 0,
        })

    return jsonify({
        "bibleProgress": bible_progress,
        "dailyGoal": {
            "targetSessions": DAILY_GOAL["sessions"],
            "targetWords": DAILY_GOAL["words"],
            "currentSessions": len(today_rows),
            "currentWords": sum(s.words_typed for s in today_rows),
        },
        "weeklyGoal": {
            "targetSessions": WEEKLY_GOAL["sessions"],
            "targetWords": WEEKLY_GOAL["words"],
            "currentSessions": len(week_rows),
            "currentWords": sum(s.words_typed for s in week_rows),
        },
        "weeklyProgress": get_weekly_progress(user),
    })


@app.route("/api/user/achievements")
@login_required
def user_achievements():
    return jsonify(get_achievements(current_user()))


@app.route("/api/user/church")
@login_required
def user_church():
    user = current_user()
    return jsonify(user.church.to_dict() if user.church else None)

# ── Church routes ─────────────────────────────────────────────────────────────

@app.route("/api/churches")
def list_churches():
    search = (request.args.get("search") or "").strip()
    limit, _ = _page_args(default_limit=50)
    query = Church.query
    if search:
        query = query.filter(Church.name.ilike(f"%{search}%"))
    return jsonify([c.to_dict() for c in query.order_by(Church.name).limit(limit).all()])


@app.route("/api/churches", methods=["POST"])
@login_required
def create_church():
    user = current_user()
    data = json_body()
    name = str(data.get("name", "")).strip()
    if not name:
        return error("Church name is required.")
    if len(name) > 200:
        return error("Church name is too long.")
    church = Church(name=name, description=(str(data.get("description") or "").strip() or None),
                    admin_id=user.id, church_code=generate_church_code())
    db.session.add(church)
    db.session.flush()
    join_church(user, church)
    db.session.commit()
    logger.info("Church %s (%s) created by user %s", church.id, church.church_code, user.id)
    return jsonify(church.to_dict()), 201


@app.route("/api/churches/<int:church_id>")
def get_church(church_id):
    church = db.get_or_404(Church, church_id, description="Church not found.")
    payload = church.to_dict()
    payload["adminName"] = church.admin.first_name if church.admin else None
    return jsonify(payload)


@app.route("/api/churches/<int:church_id>", methods=["PATCH"])
@login_required
def update_church(church_id):
    user = current_user()
    church = db.get_or_404(Church, church_id, description="Church not found.")
    if church.admin_id != user.id and not has_permission(user, "churches.edit"):
        return error("Only the church admin can edit this church.", 403)
    data = json_body()
    if "name" in data:
        name = str(data["name"] or "").strip()
        if not name or len(name) > 200:
            return error("Church name must be 1-200 characters.")
        church.name = name
    if "description" in data:
        church.description = str(data["description"] or "").strip() or None
    db.session.commit()
    cache.invalidate("leaderboard:")
    return jsonify(church.to_dict())


@app.route("/api/churches/<int:church_id>/join", methods=["POST"])
@login_required
def join_church_route(church_id):
    user = current_user()
    church = db.get_or_404(Church, church_id, description="Church not found.")
    ok, message = join_church(user, church)
    if not ok:
        return error(message)
    db.session.commit()
    cache.invalidate("leaderboard:")
    return jsonify({"message": message, "church": church.to_dict()})


@app.route("/api/churches/join-by-code", methods=["POST"])
@login_required
def join_church_by_code():
    user = current_user()
    code = str(json_body().get("churchCode", "")).strip().upper()
    if not code:
        return error("A church code is required.")
    church = Church.query.filter_by(church_code=code).first()
    if church is None:
        return error("No church matches that code.", 404)
    ok, message = join_church(user, church)
    if not ok:
        return error(message)
    db.session.commit()
    cache.invalidate("leaderboard:")
    return jsonify({"message": message, "church": church.to_dict()})


@app.route("/api/churches/<int:church_id>/members")
def church_members(church_id):
    church = db.get_or_404(Church, church_id, description="Church not found.")
    members = (User.query.filter_by(church_id=church.id)
               .order_by(User.average_wpm.desc(), User.id).all())
    return jsonify([
        {"id": m.id, "firstName": m.first_name, "lastName": m.last_name,
         "averageWpm": round(m.average_wpm or 0, 1), "totalPoints": m.total_points,
         "totalWords": m.total_words, "isAdmin": m.id == church.admin_id}
        for m in members
    ])

# ── Leaderboards ──────────────────────────────────────────────────────────────

USER_SORT_COLUMNS = {
    "totalPoints": User.total_points,
    "averageWpm": User.average_wpm,
    "totalAccuracy": User.total_accuracy,
}
TIME_RANGES = ("daily", "weekly", "monthly", "all")


def _leaderboard_row(user, rank):
    return {
        "rank": rank,
        "id": user.id,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "churchId": user.church_id,
        "churchName": user.church.name if user.church else None,
        "totalPoints": user.total_points,
        "averageWpm": round(user.average_wpm or 0, 1),
        "totalAccuracy": round(user.total_accuracy or 0, 1),
        "totalWords": user.total_words,
        "practiceStreak": user.practice_streak,
    }


def _range_start(time_range):
    today = today_local()
    if time_range == "daily":
        return local_midnight_utc(today)
    if time_range == "weekly":
        return utcnow() - timedelta(days=7)
    if time_range == "monthly":
        return local_midnight_utc(today.replace(day=1))
    return None


def build_global_leaderboard(sort_by, time_range, limit, offset):
    column = USER_SORT_COLUMNS[sort_by]
    users = (User.query.order_by(column.desc(), User.id)
             .offset(offset).limit(limit).all())
    rows = [_leaderboard_row(u, offset + i + 1) for i, u in enumerate(users)]
    since = _range_start(time_range)
    if since is not None and users:
        counts = dict(db.session.query(TypingSession.user_id, func.count(TypingSession.id))
                      .filter(TypingSession.user_id.in_([u.id for u in users]),
                              TypingSession.completed_at >= since)
                      .group_by(TypingSession.user_id)
                      .all())
        for row in rows:
            row["recentSessions"] = counts.get(row["id"], 0)
    return {"users": rows, "total": User.query.count()}


def build_church_leaderboard(sort_by, limit, offset):
    avg_wpm = func.coalesce(func.avg(User.average_wpm), 0).label("avg_wpm")
    member_count = func.count(User.id).label("member_count")
    order = {
        "totalPoints": Church.total_points.desc(),
        "averageWpm": avg_wpm.desc(),
        "memberCount": member_count.desc(),
    }[sort_by]
    rows = (db.session.query(Church, avg_wpm, member_count)
            .outerjoin(User, User.church_id == Church.id)
            .group_by(Church.id)
            .order_by(order, Church.id)
            .offset(offset).limit(limit).all())
    churches = []
    for i, (church, wpm, members) in enumerate(rows):
        row = church.to_dict()
        row.update({"rank": offset + i + 1, "averageWpm": round(float(wpm), 1),
                    "memberCount": int(members)})
        churches.append(row)
    return {"churches": churches, "total": Church.query.count()}


@app.route("/api/leaderboard/personal")
def leaderboard_personal():
    limit, _ = _page_args(default_limit=10)

    def load():
        users = User.query.order_by(User.average_wpm.desc(), User.id).limit(limit).all()
        return [_leaderboard_row(u, i + 1) for i, u in enumerate(users)]

    return jsonify(cache.get_or_set(f"leaderboard:personal:{limit}", load, CACHE_TTL_LEADERBOARD))


@app.route("/api/leaderboard/global")
def leaderboard_global():
    sort_by = request.args.get("sortBy", "totalPoints")
    time_range = request.args.get("timeRange", "all")
    if sort_by not in USER_SORT_COLUMNS:
        return error(f"sortBy must be one of {', '.join(USER_SORT_COLUMNS)}.")
    if time_range not in TIME_RANGES:
        return error(f"timeRange must be one of {', '.join(TIME_RANGES)}.")
    limit, offset = _page_args()
    key = f"leaderboard:global:{sort_by}:{time_range}:{limit}:{offset}"
    return jsonify(cache.get_or_set(
        key, lambda: build_global_leaderboard(sort_by, time_range, limit, offset),
        CACHE_TTL_LEADERBOARD))


@app.route("/api/leaderboard/churches")
def leaderboard_churches():
    sort_by = request.args.get("sortBy", "totalPoints")
    if sort_by not in ("totalPoints", "averageWpm", "memberCount"):
        return error("sortBy must be one of totalPoints, averageWpm, memberCount.")
    limit, offset = _page_args()
    key = f"leaderboard:churches:{sort_by}:{limit}:{offset}"
    return jsonify(cache.get_or_set(
        key, lambda: build_church_leaderboard(sort_by, limit, offset), CACHE_TTL_LEADERBOARD))


@app.route("/api/leaderboard/church/<int:church_id>")
def leaderboard_church_members(church_id):
    church = db.get_or_404(Church, church_id, description="Church not found.")
    sort_by = request.args.get("sortBy", "totalPoints")
    if sort_by not in USER_SORT_COLUMNS:
        return error(f"sortBy must be one of {', '.join(USER_SORT_COLUMNS)}.")
    limit, offset = _page_args()

    def load():
        query = User.query.filter_by(church_id=church.id)
        users = (query.order_by(USER_SORT_COLUMNS[sort_by].desc(), User.id)
                 .offset(offset).limit(limit).all())
        return {
            "church": church.to_dict(),
            "members": [_leaderboard_row(u, offset + i + 1) for i, u in enumerate(users)],
            "total": query.count(),
        }

    key = f"leaderboard:church:{church.id}:{sort_by}:{limit}:{offset}"
    return jsonify(cache.get_or_set(key, load, CACHE_TTL_LEADERBOARD))


@app.route("/api/leaderboard/personal/<int:user_id>")
def leaderboard_user_rank(user_id):
    user = db.get_or_404(User, user_id, description="User not found.")
    return jsonify(cache.get_or_set(f"leaderboard:rank:{user.id}",
                                    lambda: get_rank_info(user), CACHE_TTL_RANK))

# ── Challenge routes ──────────────────────────────────────────────────────────

@app.route("/api/challenges")
def list_challenges():
    rows = active_challenges_query().order_by(Challenge.end_date, Challenge.id).all()
    return jsonify([c.to_dict() for c in rows])


@app.route("/api/challenges/<int:challenge_id>/join", methods=["POST"])
@login_required
def join_challenge(challenge_id):
    user = current_user()
    challenge = db.get_or_404(Challenge, challenge_id, description="Challenge not found.")
    now = utcnow()
    if not (challenge.is_active and challenge.start_date <= now <= challenge.end_date):
        return error("This challenge is not open.")
    if ChallengeParticipation.query.filter_by(user_id=user.id, challenge_id=challenge.id).first():
        return error("You have already joined this challenge.", 409)
    participation = ChallengeParticipation(user_id=user.id, challenge_id=challenge.id, joined_at=now)
    db.session.add(participation)
    challenge.participant_count = (challenge.participant_count or 0) + 1
    db.session.commit()
    return jsonify(participation.to_dict()), 201


@app.route("/api/challenges/<int:challenge_id>/progress")
@login_required
def challenge_progress_route(challenge_id):
    user = current_user()
    participation = ChallengeParticipation.query.filter_by(
        user_id=user.id, challenge_id=challenge_id).first()
    if participation is None:
        return error("You have not joined this challenge.", 404)
    payload = participation.to_dict()
    payload["challenge"] = participation.challenge.to_dict()
    return jsonify(payload)

# ── Admin ─────────────────────────────────────────────────────────────────────

AGE_BUCKETS = [(20, "10-19"), (30, "20-29"), (40, "30-39"), (50, "40-49"), (60, "50-59")]


def _age_bucket(age):
    if age is None:
        return "unknown"
    for upper, label in AGE_BUCKETS:
        if age < upper:
            return label
    return "60+"


def get_admin_stats() -> dict:
    now = utcnow()
    today = today_local()
    avg_wpm, avg_accuracy = db.session.query(
        func.avg(TypingSession.wpm), func.avg(TypingSession.accuracy)).one()
    active_today = (db.session.query(func.count(func.distinct(TypingSession.user_id)))
                    .filter(TypingSession.completed_at >= local_midnight_utc(today))
                    .scalar())

    by_age = {}
    for (age,) in db.session.query(User.age):
        label = _age_bucket(age)
        by_age[label] = by_age.get(label, 0) + 1
    age_order = [label for _, label in AGE_BUCKETS] + ["60+", "unknown"]

    by_region = (db.session.query(func.coalesce(User.region, "unknown"), func.count(User.id))
                 .group_by(User.region)
                 .order_by(func.count(User.id).desc())
                 .all())

    church_stats = (db.session.query(Church.name, func.count(User.id),
                                     func.coalesce(func.avg(User.average_wpm), 0))
                    .outerjoin(User, User.church_id == Church.id)
                    .group_by(Church.id, Church.name)
                    .order_by(func.count(User.id).desc())
                    .all())

    first_day = today - timedelta(days=6)
    days = {first_day + timedelta(days=i): {"sessions": 0, "newUsers": 0} for i in range(7)}
    since = local_midnight_utc(first_day)
    for (ts,) in db.session.query(TypingSession.completed_at).filter(TypingSession.completed_at >= since):
        days[local_date_of(ts)]["sessions"] += 1
    for (ts,) in db.session.query(User.created_at).filter(User.created_at >= since):
        days[local_date_of(ts)]["newUsers"] += 1

    return {
        "totalUsers": User.query.count(),
        "totalChurches": Church.query.count(),
        "totalTypingSessions": TypingSession.query.count(),
        "averageWpm": round(float(avg_wpm or 0), 1),
        "averageAccuracy": round(float(avg_accuracy or 0), 1),
        "newUsersThisWeek": User.query.filter(User.created_at >= now - timedelta(days=7)).count(),
        "activeUsersToday": int(active_today or 0),
        "usersByAge": [{"ageRange": label, "count": by_age[label]}
                       for label in age_order if label in by_age],
        "usersByRegion": [{"region": region, "count": n} for region, n in by_region],
        "churchMemberStats": [{"churchName": name, "memberCount": n, "averageWpm": round(float(wpm), 1)}
                              for name, n, wpm in church_stats],
        "recentActivity": [dict(v, date=d.isoformat()) for d, v in sorted(days.items())],
    }


@app.route("/api/admin/me")
@login_required
def admin_me():
    user = current_user()
    perms = user_permissions(user)
    return jsonify({
        "isAdmin": bool(perms),
        "roles": [r.to_dict() for r in active_roles(user)],
        "permissions": sorted(perms),
    })


@app.route("/api/admin/dashboard")
@admin_action("view_dashboard", "stats.view")
def admin_dashboard():
    return jsonify(get_admin_stats())


@app.route("/api/admin/users")
@admin_action("list_users", "users.view")
def admin_users():
    search = (request.args.get("search") or "").strip()
    limit, offset = _page_args(default_limit=50)
    query = User.query
    if search:
        pattern = f"%{search}%"
        query = query.filter(db.or_(User.email.ilike(pattern), User.first_name.ilike(pattern),
                                    User.last_name.ilike(pattern)))
    total = query.count()
    users = query.order_by(User.id).offset(offset).limit(limit).all()
    return jsonify({"users": [u.to_dict() for u in users], "total": total})


@app.route("/api/admin/users/<int:user_id>/make-admin", methods=["POST"])
@admin_action("make_user_admin", "admin.manage")
def admin_make_admin(user_id):
    user = db.get_or_404(User, user_id, description="User not found.")
    if user.is_admin:
        return error("User is already an admin.")
    user.is_admin = True
    db.session.commit()
    logger.info("User %s promoted to admin by %s", user.id, current_user().id)
    return jsonify({"message": f"{user.email} is now an admin.", "user": user.to_dict()})


@app.route("/api/admin/users/<int:user_id>/remove-admin", methods=["POST"])
@admin_action("remove_user_admin", "admin.manage")
def admin_remove_admin(user_id):
    user = db.get_or_404(User, user_id, description="User not found.")
    if user.id == current_user().id:
        return error("You cannot remove your own admin rights.")
    if not user.is_admin:
        return error("User is not an admin.")
    user.is_admin = False
    db.session.commit()
    logger.info("Admin rights removed from user %s by %s", user.id, current_user().id)
    return jsonify({"message": f"{user.email} is no longer an admin.", "user": user.to_dict()})


@app.route("/api/admin/roles")
@admin_action("list_admin_roles", "roles.manage")
def admin_roles():
    now = utcnow()
    grouped = {}
    for role in AdminRole.query.order_by(AdminRole.user_id, AdminRole.id).all():
        if not role.is_current(now):
            continue
        entry = grouped.setdefault(role.user_id, dict(role.user.to_dict(), roles=[]))
        entry["roles"].append(role.to_dict())
    return jsonify(list(grouped.values()))


@app.route("/api/admin/roles", methods=["POST"])
@admin_action("create_admin_role", "roles.manage")
def admin_create_role():
    granter = current_user()
    data = json_body()
    role_name = data.get("role")
    if role_name not in ADMIN_ROLES:
        return error(f"role must be one of {', '.join(ADMIN_ROLES)}.")
    target_id = id_arg(data.get("userId"))
    target = db.session.get(User, target_id) if target_id is not None else None
    if target is None:
        return error("User not found.", 404)
    permissions = data.get("permissions")
    if permissions is None:
        permissions = list(DEFAULT_ROLE_PERMISSIONS[role_name])
    elif not isinstance(permissions, list) or not set(permissions) <= set(ADMIN_PERMISSIONS):
        return error("permissions must be a list of known permission names.")
    expires_at = None
    if data.get("expiresAt"):
        try:
            expires_at = parse_utc(data["expiresAt"])
        except ValueError:
            return error("expiresAt must be an ISO-8601 timestamp.")

    role = AdminRole.query.filter_by(user_id=target.id, role=role_name).first()
    status = 200
    if role is None:
        role = AdminRole(user_id=target.id, role=role_name)
        db.session.add(role)
        status = 201
    role.permissions = permissions
    role.granted_by = granter.id
    role.granted_at = utcnow()
    role.is_active = True
    role.expires_at = expires_at
    db.session.commit()
    logger.info("Role %s granted to user %s by %s", role_name, target.id, granter.id)
    return jsonify(role.to_dict()), status


@app.route("/api/admin/roles/<int:user_id>/<role_name>", methods=["DELETE"])
@admin_action("remove_admin_role", "roles.manage")
def admin_remove_role(user_id, role_name):
    role = AdminRole.query.filter_by(user_id=user_id, role=role_name, is_active=True).first()
    if role is None:
        return error("Role assignment not found.", 404)
    role.is_active = False
    db.session.commit()
    logger.info("Role %s removed from user %s by %s", role_name, user_id, current_user().id)
    return jsonify({"message": "Admin role removed."})


@app.route("/api/admin/logs")
@admin_action("view_access_logs", "logs.view")
def admin_logs():
    limit, offset = _page_args(default_limit=50)
    query = AdminAccessLog.query
    user_id = request.args.get("userId", type=int)
    if user_id is not None:
        query = query.filter_by(user_id=user_id)
    total = query.count()
    logs = (query.order_by(AdminAccessLog.created_at.desc(), AdminAccessLog.id.desc())
            .offset(offset).limit(limit).all())
    return jsonify({"logs": [l.to_dict() for l in logs], "total": total})


ACTION_STAT_WINDOWS = {"daily": timedelta(days=1), "weekly": timedelta(days=7), "monthly": timedelta(days=30)}


@app.route("/api/admin/stats/actions")
@admin_action("view_action_stats", "stats.view")
def admin_action_stats():
    time_range = request.args.get("timeRange", "daily")
    if time_range not in ACTION_STAT_WINDOWS:
        return error("timeRange must be one of daily, weekly, monthly.")
    since = utcnow() - ACTION_STAT_WINDOWS[time_range]
    rows = (db.session.query(AdminAccessLog.action, func.count(AdminAccessLog.id),
                             func.sum(db.case((AdminAccessLog.success.is_(True), 1), else_=0)))
            .filter(AdminAccessLog.created_at >= since)
            .group_by(AdminAccessLog.action)
            .order_by(func.count(AdminAccessLog.id).desc())
            .all())
    return jsonify([
        {"action": action, "count": n, "successRate": round((ok or 0) / n * 100, 1) if n else 0}
        for action, n, ok in rows
    ])


@app.route("/api/admin/challenges", methods=["POST"])
@admin_action("create_challenge", "challenges.create")
def admin_create_challenge():
    data = json_body()
    title = str(data.get("title", "")).strip()
    kind = data.get("type")
    if not title:
        return error("Title is required.")
    if kind not in CHALLENGE_TYPES:
        return error(f"type must be one of {', '.join(CHALLENGE_TYPES)}.")
    try:
        if data.get("startDate") or data.get("endDate"):
            start = parse_utc(data["startDate"])
            end = parse_utc(data["endDate"])
        else:
            start, end = challenge_window(kind, today_local())
        required_accuracy = float(data.get("requiredAccuracy", 95))
        required_wpm = float(data.get("requiredWpm", 30))
        reward = int(data.get("pointsReward", 100))
        targets = [int(v) for v in data.get("targetVerseIds") or []]
    except (KeyError, TypeError, ValueError, OverflowError):
        return error("Invalid challenge values.")
    if end <= start:
        return error("endDate must be after startDate.")
    if not 0 <= required_accuracy <= 100 or not 0 <= required_wpm <= MAX_WPM or reward < 0:
        return error("Invalid challenge requirements.")
    if targets and BibleVerse.query.filter(BibleVerse.id.in_(targets)).count() != len(set(targets)):
        return error("Unknown verse in targetVerseIds.")

    challenge = Challenge(title=title[:200], description=data.get("description"), type=kind,
                          target_verse_ids=sorted(set(targets)), required_accuracy=required_accuracy,
                          required_wpm=required_wpm, points_reward=reward,
                          start_date=start, end_date=end, is_active=bool(data.get("isActive", True)))
    db.session.add(challenge)
    db.session.commit()
    return jsonify(challenge.to_dict()), 201

# ── Errors ────────────────────────────────────────────────────────────────────

@app.errorhandler(HTTPException)
def handle_http_error(exc):
    if exc.code and exc.code >= 400 and request.path.startswith("/api/"):
        return jsonify({"error": exc.description}), exc.code
    return exc


@app.errorhandler(500)
def handle_server_error(exc):
    db.session.rollback()
    logger.error("Unhandled error on %s %s", request.method, request.path,
                 exc_info=getattr(exc, "original_exception", None))
    return jsonify({"error": "Internal server error"}), 500


with app.app_context():
    db.create_all()

if __name__ == "__main__":
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.run(debug=True)
