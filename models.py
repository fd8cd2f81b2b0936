from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo anyway."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ── Admin permission catalog ──────────────────────────────────────────────────

ROLE_SUPER_ADMIN = "super_admin"
ROLE_CONTENT_ADMIN = "content_admin"
ROLE_USER_ADMIN = "user_admin"
ROLE_STATS_VIEWER = "stats_viewer"

ADMIN_ROLES = (ROLE_SUPER_ADMIN, ROLE_CONTENT_ADMIN, ROLE_USER_ADMIN, ROLE_STATS_VIEWER)

ADMIN_PERMISSIONS = {
    "users.view":        "View users",
    "users.edit":        "Edit users",
    "users.delete":      "Delete users",
    "users.ban":         "Suspend users",
    "content.view":      "View content",
    "content.edit":      "Edit content",
    "content.create":    "Create content",
    "content.delete":    "Delete content",
    "challenges.view":   "View challenges",
    "challenges.create": "Create challenges",
    "challenges.edit":   "Edit challenges",
    "challenges.delete": "Delete challenges",
    "churches.view":     "View churches",
    "churches.edit":     "Edit churches",
    "churches.create":   "Register churches",
    "churches.delete":   "Delete churches",
    "stats.view":        "View statistics",
    "stats.export":      "Export statistics",
    "system.config":     "System configuration",
    "system.backup":     "Manage backups",
    "admin.manage":      "Manage admin accounts",
    "roles.manage":      "Manage roles",
    "logs.view":         "View access logs",
    "settings.manage":   "Manage settings",
}

DEFAULT_ROLE_PERMISSIONS = {
    ROLE_SUPER_ADMIN: list(ADMIN_PERMISSIONS),
    ROLE_CONTENT_ADMIN: [
        "content.view", "content.edit", "content.create", "content.delete",
        "challenges.view", "challenges.create", "challenges.edit", "challenges.delete",
        "stats.view",
    ],
    ROLE_USER_ADMIN: [
        "users.view", "users.edit", "users.ban",
        "churches.view", "churches.edit", "churches.create",
        "stats.view",
    ],
    ROLE_STATS_VIEWER: ["stats.view", "stats.export"],
}

CHALLENGE_TYPES = ("daily", "weekly", "monthly")


class User(db.Model):
    __tablename__ = "user"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=True)
    first_name = db.Column(db.String(100), nullable=True)
    last_name  = db.Column(db.String(100), nullable=True)
    age        = db.Column(db.Integer, nullable=True)
    region     = db.Column(db.String(100), nullable=True)
    church_id  = db.Column(db.Integer, db.ForeignKey("church.id", use_alter=True), nullable=True)

    # Aggregates recomputed from typing sessions
    total_words    = db.Column(db.Integer, default=0, nullable=False)
    average_wpm    = db.Column(db.Float,   default=0.0, nullable=False)
    total_accuracy = db.Column(db.Float,   default=0.0, nullable=False)  # average accuracy
    total_points   = db.Column(db.Integer, default=0, nullable=False)

    practice_streak    = db.Column(db.Integer, default=0, nullable=False)
    longest_streak     = db.Column(db.Integer, default=0, nullable=False)
    last_practice_date = db.Column(db.Date, nullable=True)

    is_admin          = db.Column(db.Boolean, default=False, nullable=False)
    email_verified    = db.Column(db.Boolean, default=False, nullable=False)
    profile_completed = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    sessions = db.relationship("TypingSession", backref="user", lazy=True, cascade="all, delete-orphan")
    church = db.relationship("Church", foreign_keys=[church_id], backref="members")
    roles = db.relationship("AdminRole", foreign_keys="AdminRole.user_id", backref="user", lazy=True)

    def set_password(self, plaintext: str):
        self.password_hash = generate_password_hash(plaintext)

    def check_password(self, plaintext: str) -> bool:
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, plaintext)

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "age": self.age,
            "region": self.region,
            "churchId": self.church_id,
            "totalWords": self.total_words,
            "averageWpm": round(self.average_wpm or 0, 1),
            "totalAccuracy": round(self.total_accuracy or 0, 1),
            "totalPoints": self.total_points,
            "practiceStreak": self.practice_streak,
            "longestStreak": self.longest_streak,
            "isAdmin": self.is_admin,
            "emailVerified": self.email_verified,
            "profileCompleted": self.profile_completed,
            "createdAt": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<User {self.email}>"


class Language(db.Model):
    __tablename__ = "language"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(10), unique=True, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    encoding  = db.Column(db.String(20), default="utf-8")
    direction = db.Column(db.String(3), default="ltr", nullable=False)

    translations = db.relationship("Translation", backref="language", lazy=True)

    def to_dict(self):
        return {"id": self.id, "code": self.code, "name": self.name,
                "encoding": self.encoding, "direction": self.direction}


class Translation(db.Model):
    __tablename__ = "translation"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    language_id = db.Column(db.Integer, db.ForeignKey("language.id"), nullable=False)
    full_name = db.Column(db.String(300), nullable=True)
    year      = db.Column(db.Integer, nullable=True)
    publisher = db.Column(db.String(200), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "languageId": self.language_id,
            "languageCode": self.language.code if self.language else None,
            "fullName": self.full_name,
            "year": self.year,
            "publisher": self.publisher,
        }


class BibleBook(db.Model):
    __tablename__ = "bible_book"

    id = db.Column(db.Integer, primary_key=True)
    book_code = db.Column(db.String(20), unique=True, nullable=False)
    name_ko   = db.Column(db.String(100), nullable=False)
    name_en   = db.Column(db.String(100), nullable=False)
    book_order = db.Column(db.Integer, nullable=False)
    testament  = db.Column(db.String(2), nullable=False)  # OT / NT
    chapters   = db.Column(db.Integer, nullable=False)
    verses     = db.Column(db.Integer, nullable=False, default=0)

    def display_name(self, language_code=None):
        return self.name_ko if language_code == "ko" else self.name_en

    def to_dict(self):
        return {
            "id": self.id,
            "bookCode": self.book_code,
            "bookNameKr": self.name_ko,
            "bookNameEn": self.name_en,
            "bookOrder": self.book_order,
            "testament": self.testament,
            "chapters": self.chapters,
            "verses": self.verses,
        }


class BibleVerse(db.Model):
    __tablename__ = "bible_verse"
    __table_args__ = (
        db.UniqueConstraint("translation_id", "book_id", "chapter", "verse", name="uq_verse_ref"),
        db.Index("idx_bible_verse_book_chapter_verse", "book_id", "chapter", "verse"),
    )

    id = db.Column(db.Integer, primary_key=True)
    book_id        = db.Column(db.Integer, db.ForeignKey("bible_book.id"), nullable=False)
    translation_id = db.Column(db.Integer, db.ForeignKey("translation.id"), nullable=False, index=True)
    language_id    = db.Column(db.Integer, db.ForeignKey("language.id"), nullable=False)
    chapter = db.Column(db.Integer, nullable=False)
    verse   = db.Column(db.Integer, nullable=False)
    content = db.Column(db.Text, nullable=False)

    book = db.relationship("BibleBook")
    translation = db.relationship("Translation")

    def to_dict(self):
        return {
            "id": self.id,
            "bookId": self.book_id,
            "bookCode": self.book.book_code if self.book else None,
            "translationId": self.translation_id,
            "translationCode": self.translation.code if self.translation else None,
            "languageId": self.language_id,
            "chapter": self.chapter,
            "verse": self.verse,
            "content": self.content,
        }


class TypingSession(db.Model):
    __tablename__ = "typing_session"

    id = db.Column(db.Integer, primary_key=True)
    user_id  = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    verse_id = db.Column(db.Integer, db.ForeignKey("bible_verse.id"), nullable=False)
    wpm      = db.Column(db.Float, nullable=False)
    accuracy = db.Column(db.Float, nullable=False)
    words_typed   = db.Column(db.Integer, nullable=False)
    time_spent    = db.Column(db.Integer, nullable=False)  # seconds
    points_earned = db.Column(db.Integer, default=0, nullable=False)
    completed_at  = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    verse = db.relationship("BibleVerse")

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "verseId": self.verse_id,
            "wpm": self.wpm,
            "accuracy": self.accuracy,
            "wordsTyped": self.words_typed,
            "timeSpent": self.time_spent,
            "pointsEarned": self.points_earned,
            "completedAt": _iso(self.completed_at),
        }

    def __repr__(self):
        return f"<TypingSession {self.user_id} verse={self.verse_id} {self.wpm}wpm>"


class Church(db.Model):
    __tablename__ = "church"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    admin_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    church_code = db.Column(db.String(8), unique=True, nullable=False, index=True)
    total_members = db.Column(db.Integer, default=0, nullable=False)
    total_points  = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    admin = db.relationship("User", foreign_keys=[admin_id])

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "adminId": self.admin_id,
            "churchCode": self.church_code,
            "totalMembers": self.total_members,
            "totalPoints": self.total_points,
            "createdAt": _iso(self.created_at),
        }


class Challenge(db.Model):
    __tablename__ = "challenge"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    type = db.Column(db.String(20), nullable=False)  # daily / weekly / monthly
    target_verse_ids  = db.Column(db.JSON, default=list, nullable=False)  # empty = any verse
    required_accuracy = db.Column(db.Float, default=95, nullable=False)
    required_wpm      = db.Column(db.Float, default=30, nullable=False)
    points_reward     = db.Column(db.Integer, default=100, nullable=False)
    start_date = db.Column(db.DateTime, nullable=False)
    end_date   = db.Column(db.DateTime, nullable=False)
    is_active  = db.Column(db.Boolean, default=True, nullable=False)
    participant_count = db.Column(db.Integer, default=0, nullable=False)

    participations = db.relationship("ChallengeParticipation", backref="challenge", lazy=True,
                                     cascade="all, delete-orphan")

    def accepts(self, session):
        """True if a finished typing session counts toward this challenge."""
        if session.wpm < (self.required_wpm or 0):
            return False
        if session.accuracy < (self.required_accuracy or 0):
            return False
        targets = self.target_verse_ids or []
        return not targets or session.verse_id in targets

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "targetVerseIds": list(self.target_verse_ids or []),
            "requiredAccuracy": self.required_accuracy,
            "requiredWpm": self.required_wpm,
            "pointsReward": self.points_reward,
            "startDate": _iso(self.start_date),
            "endDate": _iso(self.end_date),
            "isActive": self.is_active,
            "participantCount": self.participant_count,
        }


class ChallengeParticipation(db.Model):
    __tablename__ = "challenge_participation"
    __table_args__ = (db.UniqueConstraint("user_id", "challenge_id", name="uq_participation"),)

    id = db.Column(db.Integer, primary_key=True)
    user_id      = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    challenge_id = db.Column(db.Integer, db.ForeignKey("challenge.id"), nullable=False)
    progress      = db.Column(db.Float, default=0, nullable=False)  # percent
    is_completed  = db.Column(db.Boolean, default=False, nullable=False)
    points_earned = db.Column(db.Integer, default=0, nullable=False)
    joined_at    = db.Column(db.DateTime, default=utcnow, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "challengeId": self.challenge_id,
            "progress": self.progress,
            "isCompleted": self.is_completed,
            "pointsEarned": self.points_earned,
            "joinedAt": _iso(self.joined_at),
            "completedAt": _iso(self.completed_at),
        }


class AdminRole(db.Model):
    __tablename__ = "admin_role"
    __table_args__ = (db.UniqueConstraint("user_id", "role", name="uq_admin_role"),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    role = db.Column(db.String(50), nullable=False, index=True)
    permissions = db.Column(db.JSON, default=list, nullable=False)
    granted_by = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    granted_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    is_active  = db.Column(db.Boolean, default=True, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=True)

    def is_current(self, now=None) -> bool:
        now = now or utcnow()
        return self.is_active and (self.expires_at is None or self.expires_at >= now)

    def grants(self, permission: str) -> bool:
        return self.role == ROLE_SUPER_ADMIN or permission in (self.permissions or [])

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "role": self.role,
            "permissions": list(self.permissions or []),
            "grantedBy": self.granted_by,
            "grantedAt": _iso(self.granted_at),
            "isActive": self.is_active,
            "expiresAt": _iso(self.expires_at),
        }


class AdminAccessLog(db.Model):
    __tablename__ = "admin_access_log"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    action   = db.Column(db.String(100), nullable=False, index=True)
    resource = db.Column(db.String(100), nullable=True)
    method   = db.Column(db.String(10), nullable=False)
    url      = db.Column(db.Text, nullable=False)
    user_agent = db.Column(db.Text, nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)
    success    = db.Column(db.Boolean, default=True, nullable=False)
    error_message   = db.Column(db.Text, nullable=True)
    request_data    = db.Column(db.JSON, nullable=True)
    response_status = db.Column(db.Integer, nullable=True)
    duration   = db.Column(db.Integer, nullable=True)  # ms
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "action": self.action,
            "resource": self.resource,
            "method": self.method,
            "url": self.url,
            "userAgent": self.user_agent,
            "ipAddress": self.ip_address,
            "success": self.success,
            "errorMessage": self.error_message,
            "requestData": self.request_data,
            "responseStatus": self.response_status,
            "duration": self.duration,
            "createdAt": _iso(self.created_at),
        }


class EmailVerificationToken(db.Model):
    __tablename__ = "email_verification_token"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    token_hash = db.Column(db.String(64), unique=True, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    is_used = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)


class PasswordResetToken(db.Model):
    __tablename__ = "password_reset_token"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    token_hash = db.Column(db.String(64), unique=True, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    is_used = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)


def _iso(value):
    return value.isoformat() if value is not None else None
