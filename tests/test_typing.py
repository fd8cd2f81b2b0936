from datetime import timedelta

import pytest

import app as app_module
from conftest import find_verse
from models import db, Challenge, ChallengeParticipation, Church, TypingSession

PHP_4_13 = "I can do all things through Christ which strengtheneth me."


def post_session(client, verse, wpm=40, accuracy=100, words=None, time_spent=17):
    return client.post("/api/typing/session", json={
        "verseId": verse.id,
        "wpm": wpm,
        "accuracy": accuracy,
        "wordsTyped": 11 if words is None else words,
        "timeSpent": time_spent,
    })


def challenge_id(title):
    return Challenge.query.filter_by(title=title).one().id


# ── Live scoring ──────────────────────────────────────────────────────────────

def test_score_partial_input(client, seeded):
    verse = find_verse("KJV", "PHP", 4, 13)
    resp = client.post("/api/typing/score", json={"verseId": verse.id, "input": "I cxn", "elapsedSeconds": 3})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["accuracy"] == 80
    assert body["wpm"] == 20
    assert body["completed"] is False
    assert body["verseId"] == verse.id


def test_score_complete_input(client, seeded):
    verse = find_verse("KJV", "PHP", 4, 13)
    body = client.post("/api/typing/score",
                       json={"verseId": verse.id, "input": PHP_4_13, "elapsedSeconds": 15}).get_json()
    assert body["completed"] is True
    assert body["progress"] == 100
    assert body["wordsTyped"] == 12


def test_score_rejects_overlong_input(client, seeded):
    verse = find_verse("KJV", "PHP", 4, 13)
    resp = client.post("/api/typing/score",
                       json={"verseId": verse.id, "input": PHP_4_13 + "!", "elapsedSeconds": 15})
    assert resp.status_code == 400


def test_score_unknown_verse(client, seeded):
    assert client.post("/api/typing/score", json={"verseId": 999999, "input": ""}).status_code == 404


# ── Recording sessions ───────────────────────────────────────────────────────

def test_record_session_updates_user(auth_client, user, seeded):
    verse = find_verse("KJV", "PHP", 4, 13)
    resp = post_session(auth_client, verse)
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["pointsEarned"] == 4
    assert body["completedChallenges"] == []

    db.session.refresh(user)
    assert user.total_points == 4
    assert user.total_words == 11
    assert user.average_wpm == 40
    assert user.practice_streak == 1
    assert user.last_practice_date == app_module.today_local()


def test_record_session_validation(auth_client, seeded):
    verse = find_verse("KJV", "PHP", 4, 13)
    assert post_session(auth_client, verse, accuracy=101).status_code == 400
    assert post_session(auth_client, verse, wpm=-1).status_code == 400
    assert post_session(auth_client, verse, words=13).status_code == 400
    resp = auth_client.post("/api/typing/session", json={"verseId": verse.id, "wpm": "fast"})
    assert resp.status_code == 400
    assert auth_client.post("/api/typing/session", json={"verseId": 424242, "wpm": 1}).status_code == 404
    assert TypingSession.query.count() == 0


def test_points_also_credit_church(auth_client, user, seeded):
    church = Church(name="Grace", admin_id=user.id, church_code="ABCDEFGH", total_members=1)
    db.session.add(church)
    db.session.flush()
    user.church_id = church.id
    db.session.commit()

    post_session(auth_client, find_verse("KJV", "PHP", 4, 13), wpm=60, accuracy=95)
    db.session.refresh(church)
    assert church.total_points == 6


def test_streak_continues_from_yesterday(auth_client, user, seeded):
    user.last_practice_date = app_module.today_local() - timedelta(days=1)
    user.practice_streak = 3
    user.longest_streak = 3
    db.session.commit()

    post_session(auth_client, find_verse("KJV", "PHP", 4, 13))
    db.session.refresh(user)
    assert user.practice_streak == 4
    assert user.longest_streak == 4


def test_streak_resets_after_a_gap(auth_client, user, seeded):
    user.last_practice_date = app_module.today_local() - timedelta(days=3)
    user.practice_streak = 5
    user.longest_streak = 9
    db.session.commit()

    post_session(auth_client, find_verse("KJV", "PHP", 4, 13))
    db.session.refresh(user)
    assert user.practice_streak == 1
    assert user.longest_streak == 9


def test_two_sessions_same_day_count_once(auth_client, user, seeded):
    verse = find_verse("KJV", "PHP", 4, 13)
    post_session(auth_client, verse)
    post_session(auth_client, verse)
    db.session.refresh(user)
    assert user.practice_streak == 1
    assert TypingSession.query.filter_by(user_id=user.id).count() == 2


def test_session_history(auth_client, seeded):
    verse = find_verse("KJV", "PHP", 4, 13)
    post_session(auth_client, verse, wpm=30)
    post_session(auth_client, verse, wpm=50)
    rows = auth_client.get("/api/typing/sessions").get_json()
    assert [r["wpm"] for r in rows] == [50, 30]

    stats = auth_client.get("/api/user/stats").get_json()
    assert stats == {"totalWords": 22, "averageWpm": 40.0, "averageAccuracy": 100.0, "totalSessions": 2}


# ── Challenges ────────────────────────────────────────────────────────────────

def test_list_challenges(client, seeded):
    titles = [c["title"] for c in client.get("/api/challenges").get_json()]
    assert set(titles) == {"Daily Verse", "Weekly Devotion", "Monthly Marathon"}
    assert titles[0] == "Daily Verse"


def test_join_challenge_once(auth_client, seeded):
    cid = challenge_id("Daily Verse")
    assert auth_client.post(f"/api/challenges/{cid}/join").status_code == 201
    assert auth_client.post(f"/api/challenges/{cid}/join").status_code == 409
    assert db.session.get(Challenge, cid).participant_count == 1
    assert auth_client.post("/api/challenges/9999/join").status_code == 404


def test_cannot_join_inactive_challenge(auth_client, seeded):
    challenge = db.session.get(Challenge, challenge_id("Daily Verse"))
    challenge.is_active = False
    db.session.commit()
    assert auth_client.post(f"/api/challenges/{challenge.id}/join").status_code == 400


def test_daily_challenge_completes_and_rewards(auth_client, user, seeded):
    cid = challenge_id("Daily Verse")
    auth_client.post(f"/api/challenges/{cid}/join")

    body = post_session(auth_client, find_verse("KJV", "PHP", 4, 13), wpm=40, accuracy=100).get_json()
    assert body["completedChallenges"] == [cid]

    progress = auth_client.get(f"/api/challenges/{cid}/progress").get_json()
    assert progress["isCompleted"] is True
    assert progress["progress"] == 100
    assert progress["pointsEarned"] == 50

    db.session.refresh(user)
    assert user.total_points == 4 + 50

    # Completed challenges are not rewarded twice
    body = post_session(auth_client, find_verse("KJV", "PHP", 4, 13)).get_json()
    assert body["completedChallenges"] == []
    db.session.refresh(user)
    assert user.total_points == 4 + 50 + 4


def test_slow_session_does_not_count(auth_client, seeded):
    cid = challenge_id("Daily Verse")
    auth_client.post(f"/api/challenges/{cid}/join")
    body = post_session(auth_client, find_verse("KJV", "PHP", 4, 13), wpm=20, accuracy=100).get_json()
    assert body["completedChallenges"] == []
    progress = auth_client.get(f"/api/challenges/{cid}/progress").get_json()
    assert progress["progress"] == 0
    assert progress["isCompleted"] is False


def test_weekly_challenge_progress(auth_client, seeded):
    cid = challenge_id("Weekly Devotion")
    auth_client.post(f"/api/challenges/{cid}/join")
    post_session(auth_client, find_verse("KJV", "PHP", 4, 13), wpm=30, accuracy=92)
    progress = auth_client.get(f"/api/challenges/{cid}/progress").get_json()
    assert progress["progress"] == 20
    assert progress["challenge"]["type"] == "weekly"


def test_progress_requires_participation(auth_client, seeded):
    cid = challenge_id("Weekly Devotion")
    assert auth_client.get(f"/api/challenges/{cid}/progress").status_code == 404
    assert ChallengeParticipation.query.count() == 0


# ── Dashboard ─────────────────────────────────────────────────────────────────

def test_dashboard(auth_client, seeded):
    post_session(auth_client, find_verse("KJV", "PHP", 4, 13))
    body = auth_client.get("/api/user/dashboard").get_json()
    assert body["stats"]["totalSessions"] == 1
    assert body["rankings"]["globalRank"] == 1
    assert len(body["recentSessions"]) == 1
    assert len(body["weeklyProgress"]) == 7
    assert body["weeklyProgress"][-1]["sessions"] == 1
    unlocked = {a["id"] for a in body["achievements"] if a["isUnlocked"]}
    assert "first_session" in unlocked


def test_recent_sessions_carry_reference(auth_client, seeded):
    post_session(auth_client, find_verse("KJV", "PHP", 4, 13))
    rows = auth_client.get("/api/user/recent-sessions?language=ko").get_json()
    assert rows[0]["bookName"] == "빌립보서"
    assert (rows[0]["chapter"], rows[0]["verse"]) == (4, 13)


def test_progress_report(auth_client, seeded):
    post_session(auth_client, find_verse("KJV", "PHP", 4, 13))
    body = auth_client.get("/api/user/progress").get_json()
    assert body["bibleProgress"] == [{
        "bookId": find_verse("KJV", "PHP", 4, 13).book_id,
        "bookName": "Philippians",
        "chaptersCompleted": 1,
        "totalChapters": 4,
        "progressPercentage": 25,
    }]
    assert body["dailyGoal"]["currentSessions"] == 1
    assert body["weeklyGoal"]["currentWords"] == 11


def test_user_church_empty(auth_client):
    resp = auth_client.get("/api/user/church")
    assert resp.status_code == 200
    assert resp.get_json() is None


def raw_post(client, url, body):
    return client.post(url, data=body, content_type="application/json")


@pytest.mark.parametrize("wpm", ["Infinity", "NaN", "-Infinity", "1e300", "501"])
def test_record_session_rejects_unusable_wpm(auth_client, seeded, wpm):
    verse = find_verse("KJV", "PHP", 4, 13)
    body = f'{{"verseId": {verse.id}, "wpm": {wpm}, "accuracy": 100, "wordsTyped": 11, "timeSpent": 17}}'
    assert raw_post(auth_client, "/api/typing/session", body).status_code == 400
    assert TypingSession.query.count() == 0


@pytest.mark.parametrize("field, value", [
    ("accuracy", "NaN"),
    ("wordsTyped", "Infinity"),
    ("timeSpent", "1e300"),
])
def test_record_session_rejects_unusable_values(auth_client, user, seeded, field, value):
    verse = find_verse("KJV", "PHP", 4, 13)
    values = {"wpm": "40", "accuracy": "100", "wordsTyped": "11", "timeSpent": "17", field: value}
    body = "{" + f'"verseId": {verse.id}, ' + ", ".join(f'"{k}": {v}' for k, v in values.items()) + "}"
    assert raw_post(auth_client, "/api/typing/session", body).status_code == 400
    db.session.refresh(user)
    assert user.total_points == 0


@pytest.mark.parametrize("elapsed", ["Infinity", "NaN", "1e300"])
def test_score_rejects_unusable_elapsed(client, seeded, elapsed):
    verse = find_verse("KJV", "PHP", 4, 13)
    body = f'{{"verseId": {verse.id}, "input": "I can", "elapsedSeconds": {elapsed}}}'
    assert raw_post(client, "/api/typing/score", body).status_code == 400


def test_boolean_is_not_a_verse_id(auth_client, seeded):
    assert auth_client.post("/api/typing/score", json={"verseId": True, "input": ""}).status_code == 404
    resp = auth_client.post("/api/typing/session", json={
        "verseId": True, "wpm": 40, "accuracy": 100, "wordsTyped": 1, "timeSpent": 5,
    })
    assert resp.status_code == 404
    assert TypingSession.query.count() == 0
