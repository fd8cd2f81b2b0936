from datetime import timedelta

import pytest

from conftest import find_verse, login_as
from models import db, AdminAccessLog, AdminRole, Challenge, User, utcnow


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", first_name="Admin", is_admin=True)


@pytest.fixture
def admin_client(client, admin):
    login_as(client, admin)
    return client


def grant(user, role, permissions, granted_by, **kw):
    row = AdminRole(user_id=user.id, role=role, permissions=permissions, granted_by=granted_by.id, **kw)
    db.session.add(row)
    db.session.commit()
    return row


def test_admin_routes_require_login(client):
    assert client.get("/api/admin/dashboard").status_code == 401


def test_denied_attempt_is_logged(auth_client, user):
    resp = auth_client.get("/api/admin/dashboard")
    assert resp.status_code == 403
    log = AdminAccessLog.query.one()
    assert log.user_id == user.id
    assert log.action == "attempt_stats.view"
    assert log.success is False
    assert log.response_status == 403


def test_dashboard(admin_client, admin, make_user, seeded):
    make_user(age=25, region="Seoul")
    make_user(age=67, region="Busan")
    resp = admin_client.get("/api/admin/dashboard")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["totalUsers"] == 3
    assert body["newUsersThisWeek"] == 3
    assert {"ageRange": "20-29", "count": 1} in body["usersByAge"]
    assert {"ageRange": "60+", "count": 1} in body["usersByAge"]
    assert {"region": "Seoul", "count": 1} in body["usersByRegion"]
    assert len(body["recentActivity"]) == 7
    assert body["recentActivity"][-1]["newUsers"] == 3

    log = AdminAccessLog.query.one()
    assert log.action == "view_dashboard"
    assert log.success is True


def test_admin_me(admin_client):
    body = admin_client.get("/api/admin/me").get_json()
    assert body["isAdmin"] is True
    assert "roles.manage" in body["permissions"]


def test_role_permissions_are_scoped(client, admin, make_user):
    viewer = make_user()
    grant(viewer, "stats_viewer", ["stats.view"], admin)
    login_as(client, viewer)
    assert client.get("/api/admin/dashboard").status_code == 200
    assert client.get("/api/admin/users").status_code == 403
    me = client.get("/api/admin/me").get_json()
    assert me["permissions"] == ["stats.view"]


def test_expired_role_grants_nothing(client, admin, make_user):
    viewer = make_user()
    grant(viewer, "stats_viewer", ["stats.view"], admin, expires_at=utcnow() - timedelta(hours=1))
    login_as(client, viewer)
    assert client.get("/api/admin/dashboard").status_code == 403


def test_super_admin_role_has_everything(client, admin, make_user):
    boss = make_user()
    grant(boss, "super_admin", [], admin)
    login_as(client, boss)
    assert client.get("/api/admin/logs").status_code == 200


def test_grant_and_revoke_role(admin_client, make_user):
    target = make_user()
    resp = admin_client.post("/api/admin/roles", json={"userId": target.id, "role": "content_admin"})
    assert resp.status_code == 201
    assert "challenges.create" in resp.get_json()["permissions"]

    # Granting again reactivates the same row
    resp = admin_client.post("/api/admin/roles",
                             json={"userId": target.id, "role": "content_admin", "permissions": ["content.view"]})
    assert resp.status_code == 200
    assert AdminRole.query.filter_by(user_id=target.id).count() == 1

    listed = admin_client.get("/api/admin/roles").get_json()
    assert [u["id"] for u in listed] == [target.id]

    assert admin_client.delete(f"/api/admin/roles/{target.id}/content_admin").status_code == 200
    assert AdminRole.query.filter_by(user_id=target.id).one().is_active is False
    assert admin_client.delete(f"/api/admin/roles/{target.id}/content_admin").status_code == 404


def test_grant_role_validation(admin_client, make_user):
    target = make_user()
    assert admin_client.post("/api/admin/roles",
                             json={"userId": target.id, "role": "pope"}).status_code == 400
    assert admin_client.post("/api/admin/roles",
                             json={"userId": target.id, "role": "stats_viewer",
                                   "permissions": ["system.selfdestruct"]}).status_code == 400
    assert admin_client.post("/api/admin/roles",
                             json={"userId": 9999, "role": "stats_viewer"}).status_code == 404


def test_make_and_remove_admin(admin_client, admin, make_user):
    target = make_user()
    assert admin_client.post(f"/api/admin/users/{target.id}/make-admin").status_code == 200
    assert db.session.get(User, target.id).is_admin
    assert admin_client.post(f"/api/admin/users/{target.id}/make-admin").status_code == 400
    assert admin_client.post(f"/api/admin/users/{target.id}/remove-admin").status_code == 200
    assert admin_client.post(f"/api/admin/users/{admin.id}/remove-admin").status_code == 400
    assert admin_client.post("/api/admin/users/9999/make-admin").status_code == 404


def test_user_search(admin_client, make_user):
    make_user(email="lydia@example.com", first_name="Lydia")
    make_user(email="silas@example.com", first_name="Silas")
    body = admin_client.get("/api/admin/users?search=lyd").get_json()
    assert body["total"] == 1
    assert body["users"][0]["firstName"] == "Lydia"


def test_access_log_redacts_secrets(admin_client, make_user):
    target = make_user()
    admin_client.post("/api/admin/roles",
                      json={"userId": target.id, "role": "stats_viewer", "adminPassword": "hunter22"})
    log = AdminAccessLog.query.filter_by(action="create_admin_role").one()
    assert log.request_data["adminPassword"] == "[REDACTED]"
    assert log.request_data["role"] == "stats_viewer"

    logs = admin_client.get("/api/admin/logs").get_json()
    assert logs["total"] >= 1
    assert logs["logs"][0]["action"] == "create_admin_role"


def test_action_stats(admin_client):
    admin_client.get("/api/admin/dashboard")
    admin_client.get("/api/admin/dashboard")
    admin_client.post("/api/admin/users/9999/make-admin")
    rows = admin_client.get("/api/admin/stats/actions?timeRange=daily").get_json()
    by_action = {r["action"]: r for r in rows}
    assert by_action["view_dashboard"]["count"] == 2
    assert by_action["view_dashboard"]["successRate"] == 100
    assert by_action["make_user_admin"]["successRate"] == 0
    assert admin_client.get("/api/admin/stats/actions?timeRange=yearly").status_code == 400


def test_create_challenge(admin_client, seeded):
    verse = find_verse("KJV", "JHN", 3, 16)
    resp = admin_client.post("/api/admin/challenges", json={
        "title": "John 3:16 Sprint",
        "type": "weekly",
        "targetVerseIds": [verse.id],
        "requiredWpm": 40,
        "startDate": "2026-01-05T00:00:00+09:00",
        "endDate": "2026-01-11T23:59:59+09:00",
    })
    assert resp.status_code == 201
    challenge = db.session.get(Challenge, resp.get_json()["id"])
    assert challenge.target_verse_ids == [verse.id]
    assert challenge.start_date.isoformat() == "2026-01-04T15:00:00"


def test_create_challenge_validation(admin_client, seeded):
    assert admin_client.post("/api/admin/challenges",
                             json={"title": "X", "type": "hourly"}).status_code == 400
    assert admin_client.post("/api/admin/challenges", json={
        "title": "Backwards", "type": "daily",
        "startDate": "2026-02-02T00:00:00", "endDate": "2026-02-01T00:00:00",
    }).status_code == 400
    assert admin_client.post("/api/admin/challenges",
                             json={"title": "Ghost", "type": "daily", "targetVerseIds": [987654]}).status_code == 400


def test_create_challenge_defaults_to_current_window(admin_client):
    resp = admin_client.post("/api/admin/challenges", json={"title": "Today", "type": "daily"})
    assert resp.status_code == 201
    assert resp.get_json()["isActive"] is True
    assert client_can_see(admin_client, "Today")


def client_can_see(client, title):
    return title in [c["title"] for c in client.get("/api/challenges").get_json()]


def test_role_grants():
    viewer = AdminRole(role="stats_viewer", permissions=["stats.view"])
    assert viewer.grants("stats.view")
    assert not viewer.grants("users.view")
    assert AdminRole(role="super_admin", permissions=[]).grants("roles.manage")


def test_unknown_permission_names_are_ignored(client, admin, make_user):
    viewer = make_user()
    grant(viewer, "stats_viewer", ["stats.view", "root.everything"], admin)
    login_as(client, viewer)
    assert client.get("/api/admin/me").get_json()["permissions"] == ["stats.view"]


def test_boolean_is_not_a_user_id(admin_client):
    resp = admin_client.post("/api/admin/roles", json={"userId": True, "role": "stats_viewer"})
    assert resp.status_code == 404
    assert AdminRole.query.count() == 0
