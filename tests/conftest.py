import os
import re

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret")

import pytest

import app as app_module
from app import app as flask_app, auth_limiter, verify_limiter, cache, seed_database, load_seed
from models import db, User, BibleBook, BibleVerse, Translation

TOKEN_RE = re.compile(r"token=([0-9a-f]{64})")


@pytest.fixture(autouse=True)
def app():
    flask_app.config.update(TESTING=True)
    auth_limiter.reset()
    verify_limiter.reset()
    cache.invalidate()
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def seeded(app):
    return seed_database(load_seed())


@pytest.fixture
def outbox(monkeypatch):
    """Capture outgoing email instead of logging it."""
    sent = []
    monkeypatch.setattr(app_module, "deliver_email",
                        lambda to, subject, body: sent.append({"to": to, "subject": subject, "body": body}))
    return sent


def token_from(message):
    match = TOKEN_RE.search(message["body"])
    assert match, message["body"]
    return match.group(1)


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make(email=None, password="password123", verified=True, **fields):
        counter["n"] += 1
        user = User(email=email or f"user{counter['n']}@example.com",
                    first_name=fields.pop("first_name", f"User{counter['n']}"),
                    email_verified=verified, **fields)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user
    return _make


def login_as(client, user):
    with client.session_transaction() as sess:
        sess["user_id"] = user.id


@pytest.fixture
def user(make_user):
    return make_user(email="reader@example.com", first_name="Ruth")


@pytest.fixture
def auth_client(client, user):
    login_as(client, user)
    return client


def find_verse(translation, book, chapter, verse):
    return (BibleVerse.query
            .join(Translation).join(BibleBook)
            .filter(Translation.code == translation, BibleBook.book_code == book,
                    BibleVerse.chapter == chapter, BibleVerse.verse == verse)
            .one())
