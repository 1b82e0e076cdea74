"""HTTP tests for the mini-app and admin APIs."""

import hashlib
import hmac
import json
import time
from urllib.parse import urlencode

import pytest
from fastapi.testclient import TestClient

from circlepay.api.auth import InvalidInitData, TelegramInitDataVerifier, get_verifier
from circlepay.bot.recent import RecentMessages
from circlepay.config import Settings, get_settings
from circlepay.deps import (
    get_circle_service,
    get_ledger,
    get_notifier,
    get_recent_messages,
    get_reminder_scheduler,
    get_repo,
)
from circlepay.models.schemas import ReceivedMessage
from circlepay.scheduler.reminders import ReminderScheduler
from main import app

BOT_TOKEN = "123456:test-token"
ADMIN_KEY = "admin-secret"


def sign_init_data(user_id, first_name="Aki", auth_date=None, token=BOT_TOKEN):
    fields = {
        "auth_date": str(auth_date or int(time.time())),
        "query_id": "AAHdF6IQAAAAAN0XohDhrOrc",
        "user": json.dumps({"id": int(user_id), "first_name": first_name}),
    }
    check_string = "\n".join(f"{k}={v}" for k, v in sorted(fields.items()))
    secret = hmac.new(b"WebAppData", token.encode(), hashlib.sha256).digest()
    fields["hash"] = hmac.new(secret, check_string.encode(), hashlib.sha256).hexdigest()
    return urlencode(fields)


def auth(user_id, first_name="Aki"):
    return {"Authorization": f"tma {sign_init_data(user_id, first_name)}"}


async def _no_sleep(seconds):
    pass


@pytest.fixture
def recent():
    return RecentMessages(max_size=10)


@pytest.fixture
def client(repo, notifier, circles, ledger, recent):
    scheduler = ReminderScheduler(ledger, notifier, sleep=_no_sleep)
    app.dependency_overrides.update(
        {
            get_repo: lambda: repo,
            get_notifier: lambda: notifier,
            get_circle_service: lambda: circles,
            get_ledger: lambda: ledger,
            get_recent_messages: lambda: recent,
            get_reminder_scheduler: lambda: scheduler,
            get_verifier: lambda: TelegramInitDataVerifier(BOT_TOKEN),
            get_settings: lambda: Settings(admin_api_key=ADMIN_KEY),
        }
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def tennis(make_member):
    make_member("100", "Olga", "Tennis")
    make_member("101", "Aki", "Tennis")
    make_member("102", "Ben", "Tennis")
    make_member("103", "Cy", "Tennis")


# ─────────────────────────────────────────────────────────────────
# identity
# ─────────────────────────────────────────────────────────────────


class TestInitDataVerifier:
    def test_valid_init_data(self):
        identity = TelegramInitDataVerifier(BOT_TOKEN).verify(sign_init_data("101", "Aki"))
        assert identity.user_id == "101"
        assert identity.display_name == "Aki"

    def test_wrong_token(self):
        with pytest.raises(InvalidInitData):
            TelegramInitDataVerifier("other:token").verify(sign_init_data("101"))

    def test_tampered_user(self):
        data = sign_init_data("101").replace("101", "999")
        with pytest.raises(InvalidInitData):
            TelegramInitDataVerifier(BOT_TOKEN).verify(data)

    def test_expired(self):
        verifier = TelegramInitDataVerifier(BOT_TOKEN, max_age_seconds=60, clock=lambda: 10_000)
        with pytest.raises(InvalidInitData):
            verifier.verify(sign_init_data("101", auth_date=1_000))


class TestMe:
    def test_missing_header(self, client):
        assert client.get("/api/app/me").status_code == 401

    def test_wrong_scheme(self, client):
        headers = {"Authorization": f"Bearer {sign_init_data('101')}"}
        assert client.get("/api/app/me", headers=headers).status_code == 401

    def test_unregistered(self, client):
        resp = client.get("/api/app/me", headers=auth("101"))
        assert resp.status_code == 200
        assert resp.json()["registered"] is False

    def test_registered(self, client, tennis):
        body = client.get("/api/app/me", headers=auth("101")).json()
        assert body["registered"] is True
        assert body["name"] == "Aki"
        assert body["step"] == 3
        assert body["primary_circle_id"] is not None


# ─────────────────────────────────────────────────────────────────
# events and approvals
# ─────────────────────────────────────────────────────────────────


class TestEvents:
    def test_create_and_list(self, client, notifier, tennis):
        resp = client.post(
            "/api/app/events",
            headers=auth("100", "Olga"),
            json={"event_name": "BBQ", "total_amount": 100, "participant_ids": ["101", "102", "103"]},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["split_amount"] == 33
        assert body["remainder"] == 1
        assert body["enrolled"] == 3
        assert len(notifier.pushed) == 3

        events = client.get("/api/app/events", headers=auth("100", "Olga")).json()
        assert [e["name"] for e in events] == ["BBQ"]
        assert events[0]["circle"] == "Tennis"

    def test_invalid_amount(self, client, tennis):
        resp = client.post(
            "/api/app/events",
            headers=auth("100"),
            json={"event_name": "BBQ", "total_amount": 0, "participant_ids": ["101"]},
        )
        assert resp.status_code == 400

    def test_unregistered_organizer(self, client, tennis):
        resp = client.post(
            "/api/app/events",
            headers=auth("555"),
            json={"event_name": "BBQ", "total_amount": 100, "participant_ids": ["101"]},
        )
        assert resp.status_code == 404

    def test_circle_must_be_joined(self, client, circles, tennis):
        chess = circles.create_circle("Chess", "999")
        resp = client.post(
            "/api/app/events",
            headers=auth("100"),
            json={
                "event_name": "BBQ",
                "total_amount": 100,
                "participant_ids": ["101"],
                "circle_id": chess.id,
            },
        )
        assert resp.status_code == 403


class TestApprovals:
    def test_list_and_approve(self, client, repo, ledger, tennis):
        event, enrolled = ledger.create_event("BBQ", "100", "Tennis", 300, ["101", "102"])
        ledger.report_payment(event.id, "101")

        pending = client.get("/api/app/approvals", headers=auth("100")).json()
        assert [p["participant_user_id"] for p in pending] == ["101"]

        resp = client.post(
            "/api/app/approvals",
            headers=auth("100"),
            json={"participant_ids": [p.id for p in enrolled]},
        )
        assert resp.json()["approved"] == [enrolled[0].id]
        assert repo.get_participant(enrolled[0].id).approved_at is not None

    def test_other_users_cannot_approve(self, client, repo, ledger, tennis):
        event, enrolled = ledger.create_event("BBQ", "100", "Tennis", 300, ["101", "102"])
        ledger.report_payment(event.id, "101")

        resp = client.post(
            "/api/app/approvals", headers=auth("102"), json={"participant_ids": [enrolled[0].id]}
        )
        assert resp.json()["approved"] == []
        assert repo.get_participant(enrolled[0].id).approved_at is None

    def test_empty_approval(self, client, tennis):
        resp = client.post("/api/app/approvals", headers=auth("100"), json={"participant_ids": []})
        assert resp.status_code == 400


# ─────────────────────────────────────────────────────────────────
# circles
# ─────────────────────────────────────────────────────────────────


class TestCircles:
    def test_create_and_duplicate(self, client, tennis):
        resp = client.post("/api/app/circles", headers=auth("101"), json={"name": "Chess"})
        assert resp.status_code == 200
        assert resp.json()["name"] == "Chess"

        dup = client.post("/api/app/circles", headers=auth("102"), json={"name": "Chess"})
        assert dup.status_code == 409

    def test_create_requires_name(self, client, tennis):
        resp = client.post("/api/app/circles", headers=auth("101"), json={"name": "  "})
        assert resp.status_code == 400

    def test_list_circles(self, client, circles, tennis):
        body = client.get("/api/app/circles", headers=auth("101")).json()
        tennis_id = circles.find_circle("Tennis").id
        assert [c["name"] for c in body["circles"]] == ["Tennis"]
        assert body["primary_circle_id"] == tennis_id

    def test_join_by_name_and_id(self, client, circles, tennis):
        chess = circles.create_circle("Chess", "999")
        go = circles.create_circle("Go", "999")

        assert client.post(
            "/api/app/circles/join", headers=auth("101"), json={"circle_name": "Chess"}
        ).status_code == 200
        assert client.post(
            "/api/app/circles/join", headers=auth("101"), json={"circle_id": go.id}
        ).status_code == 200
        assert circles.is_member("101", chess.id)
        assert circles.is_member("101", go.id)

    def test_join_errors(self, client, tennis):
        assert client.post(
            "/api/app/circles/join", headers=auth("101"), json={"circle_name": "Nope"}
        ).status_code == 404
        assert client.post(
            "/api/app/circles/join", headers=auth("101"), json={"circle_name": "Tennis"}
        ).status_code == 409
        assert client.post("/api/app/circles/join", headers=auth("101"), json={}).status_code == 400

    def test_search(self, client, circles, tennis):
        circles.create_circle("Table Tennis", "999")
        found = client.get("/api/app/circles/search", params={"q": "tennis"}, headers=auth("101"))
        assert [c["name"] for c in found.json()] == ["Table Tennis", "Tennis"]
        assert client.get("/api/app/circles/search", headers=auth("101")).status_code == 400

    def test_search_matches_escaped_names(self, client, tennis):
        created = client.post(
            "/api/app/circles", headers=auth("101"), json={"name": "Tom's Club"}
        )
        assert created.status_code == 200

        found = client.get("/api/app/circles/search", params={"q": "tom's"}, headers=auth("102"))
        assert [c["name"] for c in found.json()] == [created.json()["name"]]

    def test_members(self, client, circles, tennis):
        tennis_id = circles.find_circle("Tennis").id
        body = client.get(
            f"/api/app/circles/{tennis_id}/members",
            params={"exclude_myself": "true"},
            headers=auth("101"),
        ).json()
        assert [m["name"] for m in body["members"]] == ["Ben", "Cy", "Olga"]

        assert client.get(
            f"/api/app/circles/{tennis_id}/members", headers=auth("555")
        ).status_code == 403
        assert client.get("/api/app/circles/999/members", headers=auth("101")).status_code == 404

    def test_leave_clears_primary(self, client, repo, circles, tennis):
        tennis_id = circles.find_circle("Tennis").id
        resp = client.post(f"/api/app/circles/{tennis_id}/leave", headers=auth("101"))
        assert resp.status_code == 200
        assert resp.json() == {"circles": [], "primary_circle_id": None}
        assert repo.get_user("101").primary_circle_id is None

        again = client.post(f"/api/app/circles/{tennis_id}/leave", headers=auth("101"))
        assert again.status_code == 403

    def test_remove_member(self, client, circles, tennis):
        tennis_id = circles.find_circle("Tennis").id
        url = f"/api/app/circles/{tennis_id}/remove"

        assert client.post(url, headers=auth("101"), json={"target_user_id": "101"}).status_code == 400
        assert client.post(url, headers=auth("101"), json={"target_user_id": "102"}).status_code == 200
        assert not circles.is_member("102", tennis_id)
        assert client.post(url, headers=auth("101"), json={"target_user_id": "102"}).status_code == 404
        assert client.post(url, headers=auth("555"), json={"target_user_id": "103"}).status_code == 403

    def test_set_primary(self, client, repo, circles, tennis):
        chess = circles.create_circle("Chess", "999")
        url = f"/api/app/circles/{chess.id}/primary"
        assert client.post(url, headers=auth("101")).status_code == 403

        circles.join_circle("101", chess.id)
        assert client.post(url, headers=auth("101")).json()["primary_circle_id"] == chess.id
        assert repo.get_user("101").primary_circle_id == chess.id


# ─────────────────────────────────────────────────────────────────
# admin
# ─────────────────────────────────────────────────────────────────


class TestAdmin:
    headers = {"X-API-Key": ADMIN_KEY}

    def test_requires_key(self, client):
        assert client.get("/api/admin/users").status_code == 401
        assert client.get("/api/admin/users", headers={"X-API-Key": "wrong"}).status_code == 401

    def test_users(self, client, tennis):
        users = client.get("/api/admin/users", headers=self.headers).json()
        assert {u["user_id"] for u in users} == {"100", "101", "102", "103"}

    def test_messages(self, client, recent):
        recent.add(ReceivedMessage(user_id="101", text="hello"))
        messages = client.get("/api/admin/messages", headers=self.headers).json()
        assert [m["text"] for m in messages] == ["hello"]

    def test_send(self, client, notifier):
        resp = client.post("/api/admin/send", headers=self.headers, json={"user_id": "101", "text": "hi"})
        assert resp.status_code == 200
        assert notifier.delivered[0][0] == "101"

    def test_send_validation_and_failure(self, client, notifier):
        empty = client.post("/api/admin/send", headers=self.headers, json={"user_id": "101", "text": " "})
        assert empty.status_code == 400

        notifier.failing.add("101")
        failed = client.post("/api/admin/send", headers=self.headers, json={"user_id": "101", "text": "hi"})
        assert failed.status_code == 503

    def test_send_reminders(self, client, ledger, tennis):
        ledger.create_event("BBQ", "100", "Tennis", 300, ["101", "102"])
        resp = client.post("/api/admin/test/send-reminders", headers=self.headers)
        assert resp.json() == {"queued": 2}
