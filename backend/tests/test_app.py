from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from neighborly import models
from neighborly.db import Base, Database
from neighborly.deps import get_db
from neighborly.main import app, seed_data
from neighborly.models import utcnow

TEST_DB_URL = "sqlite:///./test_neighborly.db"
database = Database(TEST_DB_URL)


def override_get_db():
    with database.session() as session:
        yield session


def auth_headers(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


PRESIDENT = auth_headers("seed-president")
TREASURER = auth_headers("seed-treasurer")
MEMBER = auth_headers("seed-member")
TENANT = auth_headers("seed-tenant")
UNVERIFIED = auth_headers("seed-unverified")
OAK_PRESIDENT = auth_headers("seed-oak-president")


def get_id(model, **filters) -> str:
    with database.session() as session:
        row = session.execute(select(model).filter_by(**filters)).scalars().first()
        assert row is not None
        return row.id


def seed_challenge_id() -> str:
    return get_id(models.Challenge, title="10k steps a day")


@pytest.fixture(autouse=True)
def setup_test_db():
    engine = database.open().engine
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    with database.session() as session:
        seed_data(session)
    app.state.database = database
    app.dependency_overrides[get_db] = override_get_db
    yield
    app.dependency_overrides.pop(get_db, None)
    Base.metadata.drop_all(bind=database.open().engine)


@pytest.fixture()
def client():
    with TestClient(app) as c:
        yield c


def create_post(client, headers, content="Garage sale on Saturday", **extra):
    resp = client.post("/api/posts", json={"content": content, **extra}, headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()


def create_challenge(client, headers, visibility="public", **extra):
    post = create_post(client, headers, content="Who can hold a plank the longest?")
    payload = {
        "post_id": post["id"],
        "title": "Plank-off",
        "criteria": "Longest verified plank in seconds",
        "expiry_date": (utcnow() + timedelta(days=5)).isoformat(),
        "visibility": visibility,
        **extra,
    }
    resp = client.post("/api/challenges", json=payload, headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()


def join_challenge(client, challenge_id, creator_headers, joiner_headers):
    request_resp = client.post(
        f"/api/challenges/{challenge_id}/requests", json={"message": "count me in"}, headers=joiner_headers
    )
    assert request_resp.status_code == 200, request_resp.text
    decision = client.post(
        f"/api/challenges/{challenge_id}/requests/{request_resp.json()['id']}/decision",
        json={"decision": "accepted"},
        headers=creator_headers,
    )
    assert decision.status_code == 200, decision.text
    return decision.json()["participant"]


def submit_attempt(client, challenge_id, participant_id, headers, score):
    return client.post(
        f"/api/challenges/{challenge_id}/participants/{participant_id}/attempts",
        json={"score": score, "evidence": {"photo": "https://example.com/proof.jpg"}},
        headers=headers,
    )


# Authentication


def test_register_verify_and_login(client):
    register_resp = client.post(
        "/api/auth/register",
        json={
            "email": "Newbie@MapleHeights.org",
            "password": "password123",
            "display_name": "Newbie",
            "society": "Maple Heights",
        },
    )
    assert register_resp.status_code == 200
    user = register_resp.json()
    assert user["email"] == "newbie@mapleheights.org"
    assert user["role"] == "Unverified"
    assert user["is_logged_in"] is False

    early_login = client.post(
        "/api/auth/login", json={"email": "newbie@mapleheights.org", "password": "password123"}
    )
    assert early_login.status_code == 403

    with database.session() as session:
        otp = session.execute(
            select(models.OtpVerification).where(models.OtpVerification.user_id == user["id"])
        ).scalar_one()
        code = otp.otp
    assert len(code) == 6 and code.isdigit()

    wrong = "000000" if code != "000000" else "111111"
    bad_resp = client.post("/api/auth/verify-otp", json={"user_id": user["id"], "otp": wrong})
    assert bad_resp.status_code == 400
    assert bad_resp.json()["kind"] == "validation"

    ok_resp = client.post("/api/auth/verify-otp", json={"user_id": user["id"], "otp": code})
    assert ok_resp.status_code == 200
    assert ok_resp.json()["is_logged_in"] is True

    login_resp = client.post(
        "/api/auth/login", json={"email": "newbie@mapleheights.org", "password": "password123"}
    )
    assert login_resp.status_code == 200

    failure_resp = client.post(
        "/api/auth/login", json={"email": "newbie@mapleheights.org", "password": "wrongpass"}
    )
    assert failure_resp.status_code == 401

    logout_resp = client.post("/api/auth/logout", headers=auth_headers(user["id"]))
    assert logout_resp.status_code == 200
    assert logout_resp.json()["is_logged_in"] is False


def test_otp_attempt_limit(client):
    user = client.post(
        "/api/auth/register", json={"email": "limit@mapleheights.org", "password": "password123"}
    ).json()
    with database.session() as session:
        code = session.execute(
            select(models.OtpVerification.otp).where(models.OtpVerification.user_id == user["id"])
        ).scalar_one()
    wrong = "000000" if code != "000000" else "111111"

    for _ in range(5):
        resp = client.post("/api/auth/verify-otp", json={"user_id": user["id"], "otp": wrong})
        assert resp.status_code == 400

    locked = client.post("/api/auth/verify-otp", json={"user_id": user["id"], "otp": code})
    assert locked.status_code == 403

    too_soon = client.post("/api/auth/resend-otp", json={"user_id": user["id"]})
    assert too_soon.status_code == 400
    assert "wait" in too_soon.json()["detail"]

    with database.session() as session:
        otp = session.execute(
            select(models.OtpVerification).where(models.OtpVerification.user_id == user["id"])
        ).scalar_one()
        otp.created_at = utcnow() - timedelta(minutes=2)

    resend = client.post("/api/auth/resend-otp", json={"user_id": user["id"]})
    assert resend.status_code == 200
    with database.session() as session:
        fresh = session.execute(
            select(models.OtpVerification).where(models.OtpVerification.user_id == user["id"])
        ).scalar_one()
        assert fresh.attempts == 0
        fresh_code = fresh.otp
    assert client.post(
        "/api/auth/verify-otp", json={"user_id": user["id"], "otp": fresh_code}
    ).status_code == 200


def test_expired_otp_is_rejected(client):
    user = client.post(
        "/api/auth/register", json={"email": "late@mapleheights.org", "password": "password123"}
    ).json()
    with database.session() as session:
        otp = session.execute(
            select(models.OtpVerification).where(models.OtpVerification.user_id == user["id"])
        ).scalar_one()
        otp.created_at = utcnow() - timedelta(minutes=20)
        code = otp.otp

    resp = client.post("/api/auth/verify-otp", json={"user_id": user["id"], "otp": code})
    assert resp.status_code == 400
    assert "expired" in resp.json()["detail"]


def test_duplicate_registration_is_a_conflict(client):
    payload = {"email": "twice@mapleheights.org", "password": "password123"}
    assert client.post("/api/auth/register", json=payload).status_code == 200
    again = client.post("/api/auth/register", json=payload)
    assert again.status_code == 409
    body = again.json()
    assert body["kind"] == "conflict"
    assert body["constraint"] == "uq_users_email"


def test_federated_sign_in_creates_then_reuses_account(client):
    payload = {"user_id": "google-uid-123", "email": "gmailer@example.com", "display_name": "G Mailer"}
    first = client.post("/api/auth/federated", json=payload)
    assert first.status_code == 200
    assert first.json()["role"] == "Unverified"
    assert first.json()["is_logged_in"] is True

    second = client.post("/api/auth/federated", json={**payload, "display_name": "Gee"})
    assert second.status_code == 200
    assert second.json()["id"] == "google-uid-123"
    assert second.json()["display_name"] == "Gee"

    clash = client.post(
        "/api/auth/federated",
        json={"user_id": "other-uid", "email": "gmailer@example.com"},
    )
    assert clash.status_code == 409


def test_identity_header_required(client):
    assert client.get("/api/posts").status_code == 401
    assert client.get("/api/posts", headers=auth_headers("nobody")).status_code == 401


# Users and roles


def test_role_elevation_is_president_only(client):
    resp = client.post("/api/users/seed-unverified/role", json={"role": "Member"}, headers=PRESIDENT)
    assert resp.status_code == 200
    assert resp.json()["role"] == "Member"

    # The freshly elevated member can now post, pending approval
    post = create_post(client, UNVERIFIED, content="Hello neighbours")
    assert post["approval_status"] == "pending"

    assert client.post(
        "/api/users/seed-tenant/role", json={"role": "Member"}, headers=MEMBER
    ).status_code == 403
    assert client.post(
        "/api/users/seed-president/role", json={"role": "Member"}, headers=PRESIDENT
    ).status_code == 403
    assert client.post(
        "/api/users/seed-tenant/role", json={"role": "Member"}, headers=OAK_PRESIDENT
    ).status_code == 403

    invalid = client.post("/api/users/seed-tenant/role", json={"role": "Mayor"}, headers=PRESIDENT)
    assert invalid.status_code == 422


def test_invite_user_into_society(client):
    resp = client.post(
        "/api/users", json={"email": "neighbour@mapleheights.org", "display_name": "Neighbour"}, headers=MEMBER
    )
    assert resp.status_code == 200
    invited = resp.json()
    assert invited["role"] == "Unverified"
    assert invited["society"] == "Maple Heights"

    duplicate = client.post("/api/users", json={"email": "neighbour@mapleheights.org"}, headers=PRESIDENT)
    assert duplicate.status_code == 409

    assert client.post("/api/users", json={"email": "x@y.org"}, headers=TENANT).status_code == 403
    assert client.post("/api/users", json={"email": "x@y.org"}, headers=UNVERIFIED).status_code == 403

    listed = client.get("/api/users", params={"society": "Maple Heights"}, headers=TENANT)
    assert listed.status_code == 200
    assert "neighbour@mapleheights.org" in {u["email"] for u in listed.json()}

    assert client.get(f"/api/users/{invited['id']}", headers=TENANT).status_code == 200
    assert client.get("/api/users/missing", headers=TENANT).status_code == 404

    # The invitee finishes sign-up on the invited account
    registered = client.post(
        "/api/auth/register",
        json={"email": "neighbour@mapleheights.org", "password": "password123", "society": "Oak Ridge"},
    )
    assert registered.status_code == 200
    assert registered.json()["id"] == invited["id"]
    assert registered.json()["society"] == "Maple Heights"
    with database.session() as session:
        code = session.execute(
            select(models.OtpVerification.otp).where(models.OtpVerification.user_id == invited["id"])
        ).scalar_one()
    assert client.post("/api/auth/verify-otp", json={"user_id": invited["id"], "otp": code}).status_code == 200
    login = client.post("/api/auth/login", json={"email": "neighbour@mapleheights.org", "password": "password123"})
    assert login.status_code == 200

    again = client.post(
        "/api/auth/register", json={"email": "neighbour@mapleheights.org", "password": "otherpass123"}
    )
    assert again.status_code == 409


def test_registration_does_not_take_over_federated_accounts(client):
    client.post("/api/auth/federated", json={"user_id": "google-uid-9", "email": "fed@example.com"})
    resp = client.post("/api/auth/register", json={"email": "fed@example.com", "password": "password123"})
    assert resp.status_code == 409


def test_update_own_profile(client):
    resp = client.put("/api/users/me", json={"display_name": "Maria L."}, headers=MEMBER)
    assert resp.status_code == 200
    assert resp.json()["display_name"] == "Maria L."
    assert resp.json()["role"] == "Member"
    assert resp.json()["society"] == "Maple Heights"

    moved = client.put("/api/users/me", json={"society": "Oak Ridge"}, headers=MEMBER)
    assert moved.status_code == 200
    assert moved.json()["society"] == "Oak Ridge"
    assert moved.json()["role"] == "Unverified"

    assert client.put("/api/users/me", json={"society": "  "}, headers=TENANT).status_code == 422
    assert client.put("/api/users/me", json={"display_name": "x"}).status_code == 401

    # Changing your own role is still role elevation, which only a President may do
    assert client.post(
        "/api/users/seed-tenant/role", json={"role": "President"}, headers=TENANT
    ).status_code == 403


def test_change_password(client):
    wrong = client.post(
        "/api/auth/password",
        json={"current_password": "not-it-at-all", "new_password": "brandnew123"},
        headers=TENANT,
    )
    assert wrong.status_code == 403

    short = client.post(
        "/api/auth/password",
        json={"current_password": "neighborly123", "new_password": "short"},
        headers=TENANT,
    )
    assert short.status_code == 422

    changed = client.post(
        "/api/auth/password",
        json={"current_password": "neighborly123", "new_password": "brandnew123"},
        headers=TENANT,
    )
    assert changed.status_code == 200

    email = "tenant@mapleheights.org"
    assert client.post("/api/auth/login", json={"email": email, "password": "brandnew123"}).status_code == 200
    assert client.post("/api/auth/login", json={"email": email, "password": "neighborly123"}).status_code == 401


# Posts and the approval workflow


def test_post_entry_state_follows_author_role(client):
    assert create_post(client, MEMBER)["approval_status"] == "pending"
    assert create_post(client, TENANT)["approval_status"] == "pending"
    assert create_post(client, PRESIDENT)["approval_status"] == "approved"
    assert create_post(client, TREASURER)["approval_status"] == "approved"

    unverified = client.post("/api/posts", json={"content": "hi"}, headers=UNVERIFIED)
    assert unverified.status_code == 403
    assert unverified.json()["kind"] == "authorization"

    empty = client.post("/api/posts", json={"content": "   "}, headers=MEMBER)
    assert empty.status_code == 422


def test_cannot_publish_into_another_society(client):
    foreign_post = client.post(
        "/api/posts", json={"content": "Hello Oak Ridge", "society_id": "Oak Ridge"}, headers=MEMBER
    )
    assert foreign_post.status_code == 403
    assert foreign_post.json()["kind"] == "authorization"
    assert client.get("/api/posts/pending", headers=OAK_PRESIDENT).json() == []

    when = (utcnow() + timedelta(days=3)).isoformat()
    foreign_event = client.post(
        "/api/events",
        json={"title": "Raid", "location": "Oak park", "date": when, "society_id": "Oak Ridge"},
        headers=TREASURER,
    )
    assert foreign_event.status_code == 403
    foreign_tournament = client.post(
        "/api/tournaments",
        json={"name": "Away cup", "start_date": when, "end_date": when, "society_id": "Oak Ridge"},
        headers=PRESIDENT,
    )
    assert foreign_tournament.status_code == 403

    own = create_post(client, MEMBER, society_id="Maple Heights")
    assert own["society_id"] == "Maple Heights"

    # Reaching other societies goes through global posts and intersociety events
    shared = client.post(
        "/api/events",
        json={"title": "Joint fair", "location": "Border park", "date": when, "is_intersociety": True},
        headers=TREASURER,
    )
    assert shared.status_code == 200
    assert shared.json()["society_id"] == "Maple Heights"
    oak_events = client.get("/api/events", params={"society_id": "Oak Ridge"}, headers=OAK_PRESIDENT).json()
    assert [e["title"] for e in oak_events] == ["Joint fair"]


def test_member_post_approval_scenario(client):
    post = create_post(client, MEMBER)
    post_id = post["id"]
    assert post["approval_status"] == "pending"

    assert client.get(f"/api/posts/{post_id}", headers=TENANT).status_code == 403
    assert client.get(f"/api/posts/{post_id}", headers=MEMBER).status_code == 200

    member_attempt = client.post(
        f"/api/posts/{post_id}/approval", json={"decision": "approved"}, headers=MEMBER
    )
    assert member_attempt.status_code == 403
    assert client.get(f"/api/posts/{post_id}", headers=MEMBER).json()["approval_status"] == "pending"

    treasurer_attempt = client.post(
        f"/api/posts/{post_id}/approval", json={"decision": "approved"}, headers=TREASURER
    )
    assert treasurer_attempt.status_code == 403

    approve = client.post(
        f"/api/posts/{post_id}/approval",
        json={"decision": "approved", "notes": "Looks good"},
        headers=PRESIDENT,
    )
    assert approve.status_code == 200
    assert approve.json()["approval_status"] == "approved"
    assert approve.json()["approval_notes"] == "Looks good"

    assert client.get(f"/api/posts/{post_id}", headers=TENANT).status_code == 200

    second_member_update = client.post(
        f"/api/posts/{post_id}/approval", json={"decision": "rejected"}, headers=MEMBER
    )
    assert second_member_update.status_code == 403

    # Decisions are final, even for the President
    reversal = client.post(
        f"/api/posts/{post_id}/approval", json={"decision": "rejected"}, headers=PRESIDENT
    )
    assert reversal.status_code == 403
    assert client.get(f"/api/posts/{post_id}", headers=TENANT).json()["approval_status"] == "approved"


def test_rejected_post_stays_hidden(client):
    post = create_post(client, TENANT)
    resp = client.post(
        f"/api/posts/{post['id']}/approval", json={"decision": "rejected"}, headers=PRESIDENT
    )
    assert resp.status_code == 200
    assert resp.json()["approval_status"] == "rejected"
    assert client.get(f"/api/posts/{post['id']}", headers=MEMBER).status_code == 403
    assert client.get(f"/api/posts/{post['id']}", headers=TENANT).status_code == 200


def test_moderation_queue_and_feed_visibility(client):
    queue = client.get("/api/posts/pending", headers=PRESIDENT)
    assert queue.status_code == 200
    assert [p["title"] for p in queue.json()] == ["Lost cat"]

    assert client.get("/api/posts/pending", headers=TREASURER).json() == []

    tenant_feed = client.get("/api/posts", headers=TENANT)
    assert tenant_feed.status_code == 200
    titles = {p["title"] for p in tenant_feed.json()}
    assert "Welcome to Neighborly!" in titles
    assert "Lost cat" not in titles

    member_feed = client.get("/api/posts", headers=MEMBER)
    assert "Lost cat" in {p["title"] for p in member_feed.json()}

    oak_feed = client.get("/api/posts", headers=OAK_PRESIDENT)
    assert oak_feed.json() == []

    global_post = create_post(client, PRESIDENT, content="City-wide marathon!", is_global=True)
    global_feed = client.get("/api/posts", params={"global_only": True}, headers=OAK_PRESIDENT)
    assert [p["id"] for p in global_feed.json()] == [global_post["id"]]


def test_interactions_and_cascade_on_post_delete(client):
    post_id = get_id(models.Post, title="Welcome to Neighborly!")

    like = client.post(f"/api/posts/{post_id}/interactions", json={"type": "like"}, headers=TENANT)
    assert like.status_code == 200
    again = client.post(f"/api/posts/{post_id}/interactions", json={"type": "like"}, headers=TENANT)
    assert again.json()["id"] == like.json()["id"]

    no_content = client.post(f"/api/posts/{post_id}/interactions", json={"type": "comment"}, headers=TENANT)
    assert no_content.status_code == 422

    comment = client.post(
        f"/api/posts/{post_id}/interactions", json={"type": "comment", "content": "Hi all!"}, headers=TENANT
    )
    assert comment.status_code == 200
    reply = client.post(
        f"/api/posts/{post_id}/interactions",
        json={"type": "comment", "content": "Welcome Ken", "parent_id": comment.json()["id"]},
        headers=MEMBER,
    )
    assert reply.status_code == 200
    assert reply.json()["parent_id"] == comment.json()["id"]

    post = client.get(f"/api/posts/{post_id}", headers=TENANT).json()
    assert post["like_count"] == 1
    assert post["comment_count"] == 2

    pending_post = get_id(models.Post, title="Lost cat")
    hidden = client.post(f"/api/posts/{pending_post}/interactions", json={"type": "like"}, headers=TENANT)
    assert hidden.status_code == 403

    assert client.delete(f"/api/posts/{post_id}", headers=TENANT).status_code == 403
    assert client.delete(f"/api/posts/{post_id}", headers=PRESIDENT).status_code == 200

    with database.session() as session:
        remaining = session.execute(
            select(func.count(models.PostInteraction.id)).where(models.PostInteraction.post_id == post_id)
        ).scalar_one()
        challenges = session.execute(
            select(func.count(models.Challenge.id)).where(models.Challenge.post_id == post_id)
        ).scalar_one()
    assert remaining == 0
    assert challenges == 0


# Events


def test_event_creation_requires_leadership(client):
    payload = {
        "title": "Board games night",
        "location": "Clubhouse",
        "date": (utcnow() + timedelta(days=2)).isoformat(),
    }
    assert client.post("/api/events", json=payload, headers=MEMBER).status_code == 403
    assert client.post("/api/events", json=payload, headers=TENANT).status_code == 403

    resp = client.post("/api/events", json=payload, headers=TREASURER)
    assert resp.status_code == 200
    event = resp.json()
    assert event["approval_status"] == "approved"
    assert event["status"] == "scheduled"
    assert event["organizer_id"] == "seed-treasurer"
    assert event["society_id"] == "Maple Heights"

    bad_dates = client.post(
        "/api/events",
        json={**payload, "end_date": (utcnow() - timedelta(days=1)).isoformat()},
        headers=TREASURER,
    )
    assert bad_dates.status_code == 422


def test_duplicate_rsvp_is_a_conflict(client):
    event_id = get_id(models.Event, title="Community Clean-up")

    first = client.post(f"/api/events/{event_id}/participants", json={"status": "going"}, headers=TENANT)
    assert first.status_code == 200

    duplicate = client.post(f"/api/events/{event_id}/participants", json={"status": "maybe"}, headers=TENANT)
    assert duplicate.status_code == 409
    assert duplicate.json()["constraint"] == "uq_event_participants_event_user"

    assert client.get(f"/api/events/{event_id}", headers=TENANT).json()["going_count"] == 1

    update = client.put(f"/api/events/{event_id}/participants/me", json={"status": "maybe"}, headers=TENANT)
    assert update.status_code == 200
    assert update.json()["status"] == "maybe"
    assert client.get(f"/api/events/{event_id}", headers=TENANT).json()["going_count"] == 0

    missing = client.put(f"/api/events/{event_id}/participants/me", json={"status": "going"}, headers=MEMBER)
    assert missing.status_code == 404

    participants = client.get(f"/api/events/{event_id}/participants", headers=MEMBER)
    assert [p["user_id"] for p in participants.json()] == ["seed-tenant"]


def test_event_approval_and_listing(client):
    with database.session() as session:
        session.add(
            models.Event(
                id="legacy-event",
                title="Imported potluck",
                society_id="Maple Heights",
                location="Hall B",
                date=utcnow() + timedelta(days=4),
                organizer_id="seed-treasurer",
                status=models.ScheduleStatus.SCHEDULED,
                approval_status=models.ApprovalStatus.PENDING,
            )
        )

    listed = client.get("/api/events", params={"society_id": "Maple Heights"}, headers=TENANT)
    assert "legacy-event" not in {e["id"] for e in listed.json()}
    assert client.get("/api/events/legacy-event", headers=TREASURER).status_code == 200

    assert client.post(
        "/api/events/legacy-event/approval", json={"decision": "approved"}, headers=TREASURER
    ).status_code == 403
    approved = client.post("/api/events/legacy-event/approval", json={"decision": "approved"}, headers=PRESIDENT)
    assert approved.status_code == 200
    assert approved.json()["approval_status"] == "approved"

    listed = client.get(
        "/api/events", params={"society_id": "Maple Heights", "status": "scheduled"}, headers=TENANT
    )
    assert "legacy-event" in {e["id"] for e in listed.json()}
    assert client.get("/api/events", params={"status": "completed"}, headers=TENANT).json() == []


def test_deleting_event_removes_participants(client):
    event_id = get_id(models.Event, title="Community Clean-up")
    client.post(f"/api/events/{event_id}/participants", json={"status": "going"}, headers=TENANT)
    client.post(f"/api/events/{event_id}/participants", json={"status": "going"}, headers=MEMBER)

    assert client.delete(f"/api/events/{event_id}", headers=MEMBER).status_code == 403
    assert client.delete(f"/api/events/{event_id}", headers=OAK_PRESIDENT).status_code == 403
    assert client.delete(f"/api/events/{event_id}", headers=TREASURER).status_code == 200

    with database.session() as session:
        remaining = session.execute(
            select(func.count(models.EventParticipant.id)).where(models.EventParticipant.event_id == event_id)
        ).scalar_one()
    assert remaining == 0
    assert client.get(f"/api/events/{event_id}", headers=TENANT).status_code == 404


# Tournaments, standings and leaderboard


def test_tournament_registration_results_and_standings(client):
    tournament_id = get_id(models.Tournament, name="Neighborly Chess Tournament")

    member_reg = client.post(f"/api/tournaments/{tournament_id}/register", headers=MEMBER)
    assert member_reg.status_code == 200
    assert member_reg.json()["registration_status"] == "pending"

    duplicate = client.post(f"/api/tournaments/{tournament_id}/register", headers=MEMBER)
    assert duplicate.status_code == 409
    assert duplicate.json()["constraint"] == "uq_tournament_participants_tournament_user"

    assert client.post(f"/api/tournaments/{tournament_id}/register", headers=TENANT).status_code == 200

    assert client.post(
        f"/api/tournaments/{tournament_id}/registrations/seed-member/decision",
        json={"decision": "approved"},
        headers=TENANT,
    ).status_code == 403
    for user_id in ("seed-member", "seed-tenant"):
        resp = client.post(
            f"/api/tournaments/{tournament_id}/registrations/{user_id}/decision",
            json={"decision": "approved"},
            headers=PRESIDENT,
        )
        assert resp.status_code == 200
        assert resp.json()["registration_status"] == "approved"

    assert client.get(f"/api/tournaments/{tournament_id}", headers=TENANT).json()["participant_count"] == 2

    outsider = client.post(
        f"/api/tournaments/{tournament_id}/results",
        json={"winner_id": "seed-treasurer"},
        headers=PRESIDENT,
    )
    assert outsider.status_code == 400

    results_payload = {
        "winner_id": "seed-member",
        "runner_up_id": "seed-tenant",
        "matches": [
            {"round": 1, "player1": "seed-member", "player2": "seed-tenant", "winner": "seed-member", "score": "1-0"},
            {"round": 2, "player1": "seed-member", "player2": "seed-tenant", "winner": "seed-member", "score": "1-0"},
        ],
    }
    assert client.post(
        f"/api/tournaments/{tournament_id}/results", json=results_payload, headers=MEMBER
    ).status_code == 403
    recorded = client.post(f"/api/tournaments/{tournament_id}/results", json=results_payload, headers=PRESIDENT)
    assert recorded.status_code == 200
    assert recorded.json()["winner_id"] == "seed-member"

    again = client.post(f"/api/tournaments/{tournament_id}/results", json=results_payload, headers=PRESIDENT)
    assert again.status_code == 409

    assert client.get(f"/api/tournaments/{tournament_id}", headers=TENANT).json()["status"] == "completed"
    assert client.post(f"/api/tournaments/{tournament_id}/register", headers=TREASURER).status_code == 403

    standings = client.get(f"/api/tournaments/{tournament_id}/standings", headers=TENANT).json()
    assert [(s["rank"], s["user_id"], s["wins"], s["points"]) for s in standings] == [
        (1, "seed-member", 2, 6),
        (2, "seed-tenant", 0, 0),
    ]

    board = client.get(
        "/api/leaderboard", params={"society_id": "Maple Heights", "timeframe": "week"}, headers=TENANT
    ).json()
    assert [(e["rank"], e["user_id"], e["points"]) for e in board] == [
        (1, "seed-member", 10),
        (2, "seed-tenant", 5),
    ]
    assert client.get("/api/leaderboard", params={"society_id": "Oak Ridge"}, headers=TENANT).json() == []
    assert client.get("/api/leaderboard", params={"timeframe": "decade"}, headers=TENANT).status_code == 422


def test_tournament_creation_requires_leadership(client):
    payload = {
        "name": "Table tennis ladder",
        "start_date": (utcnow() + timedelta(days=1)).isoformat(),
        "end_date": (utcnow() + timedelta(days=2)).isoformat(),
        "max_participants": 8,
    }
    assert client.post("/api/tournaments", json=payload, headers=MEMBER).status_code == 403
    created = client.post("/api/tournaments", json=payload, headers=TREASURER)
    assert created.status_code == 200
    assert created.json()["approval_status"] == "approved"

    listed = client.get("/api/tournaments", params={"society_id": "Maple Heights"}, headers=TENANT)
    assert "Table tennis ladder" in {t["name"] for t in listed.json()}


# Challenges


def test_accepting_request_creates_exactly_one_participant(client):
    challenge_id = seed_challenge_id()

    request_resp = client.post(
        f"/api/challenges/{challenge_id}/requests", json={"message": "I walk a lot"}, headers=MEMBER
    )
    assert request_resp.status_code == 200
    request_id = request_resp.json()["id"]
    assert request_resp.json()["status"] == "pending"

    duplicate = client.post(f"/api/challenges/{challenge_id}/requests", json={}, headers=MEMBER)
    assert duplicate.status_code == 409
    assert duplicate.json()["constraint"] == "uq_challenge_requests_challenge_requester"

    decision_url = f"/api/challenges/{challenge_id}/requests/{request_id}/decision"
    assert client.post(decision_url, json={"decision": "accepted"}, headers=TENANT).status_code == 403
    pending = client.get(f"/api/challenges/{challenge_id}/requests", headers=PRESIDENT).json()
    assert [r["status"] for r in pending] == ["pending"]

    accepted = client.post(decision_url, json={"decision": "accepted"}, headers=PRESIDENT)
    assert accepted.status_code == 200
    body = accepted.json()
    assert body["request"]["status"] == "accepted"
    assert body["participant"]["user_id"] == "seed-member"
    assert body["participant"]["status"] == "active"

    twice = client.post(decision_url, json={"decision": "accepted"}, headers=PRESIDENT)
    assert twice.status_code == 403

    participants = client.get(f"/api/challenges/{challenge_id}/participants", headers=TENANT).json()
    assert [p["user_id"] for p in participants] == ["seed-member"]
    assert client.get(f"/api/challenges/{challenge_id}", headers=TENANT).json()["participant_count"] == 1

    # Only the requester and the creator see requests
    assert client.get(f"/api/challenges/{challenge_id}/requests", headers=TENANT).json() == []


def test_rejected_request_creates_no_participant(client):
    challenge_id = seed_challenge_id()
    request_id = client.post(f"/api/challenges/{challenge_id}/requests", json={}, headers=TENANT).json()["id"]
    resp = client.post(
        f"/api/challenges/{challenge_id}/requests/{request_id}/decision",
        json={"decision": "rejected"},
        headers=PRESIDENT,
    )
    assert resp.status_code == 200
    assert resp.json()["participant"] is None
    assert client.get(f"/api/challenges/{challenge_id}/participants", headers=TENANT).json() == []


def test_attempt_submission_and_one_way_verification(client):
    challenge_id = seed_challenge_id()
    participant = join_challenge(client, challenge_id, PRESIDENT, MEMBER)

    attempt_resp = submit_attempt(client, challenge_id, participant["id"], MEMBER, 12000)
    assert attempt_resp.status_code == 200
    attempt = attempt_resp.json()
    assert attempt["verified"] is False

    assert submit_attempt(client, challenge_id, participant["id"], TENANT, 99999).status_code == 403

    attempts_url = f"/api/challenges/{challenge_id}/participants/{participant['id']}/attempts"
    assert client.get(attempts_url, headers=TENANT).status_code == 403
    assert len(client.get(attempts_url, headers=PRESIDENT).json()) == 1

    verify_url = f"/api/challenges/{challenge_id}/attempts/{attempt['id']}/verify"
    assert client.post(verify_url, json={"verified": True}, headers=OAK_PRESIDENT).status_code == 403
    assert client.post(verify_url, json={"verified": True}, headers=MEMBER).status_code == 403

    verified = client.post(verify_url, json={"verified": True}, headers=PRESIDENT)
    assert verified.status_code == 200
    assert verified.json()["verified"] is True
    assert verified.json()["verified_by"] == "seed-president"
    assert verified.json()["verified_at"] is not None

    unverify = client.post(verify_url, json={"verified": False}, headers=PRESIDENT)
    assert unverify.status_code == 403
    assert client.post(verify_url, json={}, headers=PRESIDENT).status_code == 403

    with database.session() as session:
        assert session.get(models.ChallengeAttempt, attempt["id"]).verified is True


def test_society_president_can_verify_delegated(client):
    challenge = create_challenge(client, MEMBER, visibility="society")
    participant = join_challenge(client, challenge["id"], MEMBER, TENANT)
    attempt = submit_attempt(client, challenge["id"], participant["id"], TENANT, 95).json()

    attempts_url = f"/api/challenges/{challenge['id']}/participants/{participant['id']}/attempts"
    assert [a["id"] for a in client.get(attempts_url, headers=PRESIDENT).json()] == [attempt["id"]]
    assert client.get(attempts_url, headers=TREASURER).status_code == 403

    verify_url = f"/api/challenges/{challenge['id']}/attempts/{attempt['id']}/verify"
    resp = client.post(verify_url, json={"verified": True}, headers=PRESIDENT)
    assert resp.status_code == 200
    assert resp.json()["verified_by"] == "seed-president"

    assert client.get(f"/api/challenges/{challenge['id']}", headers=OAK_PRESIDENT).status_code == 403
    assert client.get(f"/api/challenges/{challenge['id']}", headers=TREASURER).status_code == 200


def test_private_challenge_is_creator_only(client):
    challenge = create_challenge(client, TENANT, visibility="private")
    assert client.get(f"/api/challenges/{challenge['id']}", headers=TENANT).status_code == 200
    assert client.get(f"/api/challenges/{challenge['id']}", headers=MEMBER).status_code == 403
    assert client.post(f"/api/challenges/{challenge['id']}/requests", json={}, headers=MEMBER).status_code == 403

    listed = client.get("/api/challenges", headers=MEMBER).json()
    assert challenge["id"] not in {c["id"] for c in listed}


def test_challenge_expires_lazily(client):
    challenge_id = seed_challenge_id()
    with database.session() as session:
        challenge = session.get(models.Challenge, challenge_id)
        challenge.expiry_date = utcnow() - timedelta(minutes=1)

    resp = client.get(f"/api/challenges/{challenge_id}", headers=TENANT)
    assert resp.status_code == 200
    assert resp.json()["status"] == "expired"

    with database.session() as session:
        assert session.get(models.Challenge, challenge_id).status is models.ChallengeStatus.EXPIRED

    late = client.post(f"/api/challenges/{challenge_id}/requests", json={}, headers=TENANT)
    assert late.status_code == 403

    active = client.get("/api/challenges", params={"status": "active"}, headers=TENANT).json()
    assert challenge_id not in {c["id"] for c in active}

    assert client.post(f"/api/challenges/{challenge_id}/complete", headers=PRESIDENT).status_code == 403


def test_completing_challenge_ranks_participants(client):
    challenge_id = seed_challenge_id()
    member = join_challenge(client, challenge_id, PRESIDENT, MEMBER)
    tenant = join_challenge(client, challenge_id, PRESIDENT, TENANT)

    def verified_attempt(participant, headers, score):
        attempt = submit_attempt(client, challenge_id, participant["id"], headers, score).json()
        resp = client.post(
            f"/api/challenges/{challenge_id}/attempts/{attempt['id']}/verify",
            json={"verified": True},
            headers=PRESIDENT,
        )
        assert resp.status_code == 200

    verified_attempt(member, MEMBER, 100)
    unverified = submit_attempt(client, challenge_id, member["id"], MEMBER, 150).json()
    verified_attempt(tenant, TENANT, 120)

    assert client.post(f"/api/challenges/{challenge_id}/complete", headers=MEMBER).status_code == 403
    completed = client.post(f"/api/challenges/{challenge_id}/complete", headers=PRESIDENT)
    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"

    participants = client.get(f"/api/challenges/{challenge_id}/participants", headers=TENANT).json()
    assert [(p["user_id"], p["status"], p["final_score"], p["rank"]) for p in participants] == [
        ("seed-tenant", "completed", 120, 1),
        ("seed-member", "completed", 100, 2),
    ]

    assert submit_attempt(client, challenge_id, member["id"], MEMBER, 500).status_code == 403
    late_verify = client.post(
        f"/api/challenges/{challenge_id}/attempts/{unverified['id']}/verify",
        json={"verified": True},
        headers=PRESIDENT,
    )
    assert late_verify.status_code == 403
    assert client.post(f"/api/challenges/{challenge_id}/complete", headers=PRESIDENT).status_code == 403

    board = client.get("/api/leaderboard", params={"timeframe": "all"}, headers=TENANT).json()
    assert [(e["user_id"], e["challenge_points"]) for e in board] == [
        ("seed-tenant", 120),
        ("seed-member", 100),
    ]


def test_withdraw_and_disqualify(client):
    challenge_id = seed_challenge_id()
    member = join_challenge(client, challenge_id, PRESIDENT, MEMBER)
    tenant = join_challenge(client, challenge_id, PRESIDENT, TENANT)
    base = f"/api/challenges/{challenge_id}/participants"

    pending_attempt = submit_attempt(client, challenge_id, tenant["id"], TENANT, 10).json()

    assert client.post(f"{base}/{member['id']}/withdraw", headers=TENANT).status_code == 403
    assert client.post(f"{base}/{member['id']}/withdraw", headers=PRESIDENT).status_code == 403
    withdrawn = client.post(f"{base}/{member['id']}/withdraw", headers=MEMBER)
    assert withdrawn.status_code == 200
    assert withdrawn.json()["status"] == "withdrawn"
    assert client.post(f"{base}/{member['id']}/withdraw", headers=MEMBER).status_code == 403

    assert client.post(f"{base}/{tenant['id']}/disqualify", headers=TENANT).status_code == 403
    disqualified = client.post(f"{base}/{tenant['id']}/disqualify", headers=PRESIDENT)
    assert disqualified.status_code == 200
    assert disqualified.json()["status"] == "disqualified"

    assert submit_attempt(client, challenge_id, tenant["id"], TENANT, 10).status_code == 403
    assert client.post(
        f"/api/challenges/{challenge_id}/attempts/{pending_attempt['id']}/verify",
        json={"verified": True},
        headers=PRESIDENT,
    ).status_code == 403
    assert client.get(f"/api/challenges/{challenge_id}", headers=TENANT).json()["participant_count"] == 0


def test_full_challenge_leaves_request_pending(client):
    challenge = create_challenge(client, MEMBER, max_participants=1)
    join_challenge(client, challenge["id"], MEMBER, TENANT)

    late = client.post(f"/api/challenges/{challenge['id']}/requests", json={}, headers=TREASURER).json()
    full = client.post(
        f"/api/challenges/{challenge['id']}/requests/{late['id']}/decision",
        json={"decision": "accepted"},
        headers=MEMBER,
    )
    assert full.status_code == 409
    assert full.json()["constraint"] == "challenges.max_participants"

    with database.session() as session:
        assert session.get(models.ChallengeRequest, late["id"]).status is models.RequestStatus.PENDING


def test_challenge_creation_rules(client):
    welcome_id = get_id(models.Post, title="Welcome to Neighborly!")
    foreign = client.post(
        "/api/challenges",
        json={
            "post_id": welcome_id,
            "title": "Hijack",
            "criteria": "n/a",
            "expiry_date": (utcnow() + timedelta(days=1)).isoformat(),
        },
        headers=TENANT,
    )
    assert foreign.status_code == 400

    own_post = create_post(client, TENANT)
    backwards = client.post(
        "/api/challenges",
        json={
            "post_id": own_post["id"],
            "title": "Too late",
            "criteria": "n/a",
            "expiry_date": (utcnow() - timedelta(days=1)).isoformat(),
        },
        headers=TENANT,
    )
    assert backwards.status_code == 400

    challenge = create_challenge(client, TENANT)
    assert challenge["status"] == "active"
    assert challenge["creator_id"] == "seed-tenant"
    assert client.get(f"/api/posts/{challenge['post_id']}", headers=TENANT).json()["has_challenge"] is True

    own = client.post(f"/api/challenges/{challenge['id']}/requests", json={}, headers=TENANT)
    assert own.status_code == 400


def test_health_reports_database(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
