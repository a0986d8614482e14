import asyncio
from typing import Dict, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.dml import Update

from optout.core import metrics
from optout.core.config import settings
from optout.core.errors import NotificationDeliveryError
from optout.services import email as email_service
from optout.services import subscriptions


@pytest.fixture
def sent_emails(monkeypatch) -> List[Dict[str, object]]:
    sent: List[Dict[str, object]] = []

    async def fake_send_email(to_email, subject, text_body, html_body=None, *, company_id=None):
        sent.append({"to": to_email, "subject": subject, "text": text_body, "company_id": company_id})
        return True

    monkeypatch.setattr(email_service, "send_email", fake_send_email)
    return sent


def _unsubscribe(client: TestClient, email: str, **extra) -> dict:
    res = client.post("/api/v1/newsletter/unsubscribe", json={"email": email, **extra})
    assert res.status_code == 200, res.text
    return res.json()


def test_unsubscribe_resubscribe_and_stale_token(test_app, seed_account, sent_emails) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    ids = seed_account("a@x.com", company_name="Acme Rentals")

    body = _unsubscribe(client, "a@x.com", reason="Too many emails")
    token = body["resubscribe_token"]
    assert body["message"] == "Successfully unsubscribed from newsletter"
    assert body["company_id"] == str(ids["company_id"])
    assert body["notification_sent"] is True
    assert len(token) == 64

    assert sent_emails[-1]["to"] == "a@x.com"
    assert token in str(sent_emails[-1]["text"])

    first = client.post("/api/v1/newsletter/resubscribe", json={"email": "a@x.com", "token": token})
    assert first.status_code == 200, first.text
    assert first.json()["message"] == "Successfully resubscribed to newsletter"
    assert first.json()["company_id"] == str(ids["company_id"])
    assert sent_emails[-1]["subject"] == "Welcome back to our newsletter"

    again = client.post("/api/v1/newsletter/resubscribe", json={"email": "a@x.com", "token": token})
    assert again.status_code == 404
    assert again.json() == {"detail": "Invalid resubscribe token", "code": "invalid_token"}

    snapshot = metrics.snapshot()
    assert snapshot["unsubscribes"] == 1
    assert snapshot["resubscribes"] == 1
    assert snapshot["invalid_tokens"] == 1


def test_verify_token_before_and_after_resubscribe(test_app, seed_account, sent_emails) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    seed_account("a@x.com")

    token = _unsubscribe(client, "a@x.com")["resubscribe_token"]

    verified = client.get(f"/api/v1/newsletter/unsubscribe/{token}")
    assert verified.status_code == 200, verified.text
    payload = verified.json()
    assert payload["email"] == "a@x.com"
    assert payload["company_name"] == "Unknown Company"
    assert payload["unsubscribe_date"]
    assert payload["is_subscribed"] is False

    resub = client.post("/api/v1/newsletter/resubscribe", json={"email": "a@x.com", "token": token})
    assert resub.status_code == 200, resub.text

    stale = client.get(f"/api/v1/newsletter/unsubscribe/{token}")
    assert stale.status_code == 404
    assert stale.json() == {"detail": "Invalid token", "code": "invalid_token"}


def test_verify_resolves_currently_stored_token(test_app, seed_account, sent_emails) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory = test_app["session_factory"]
    seed_account("a@x.com", company_name="Acme Rentals")

    token = _unsubscribe(client, "a@x.com")["resubscribe_token"]
    assert client.post("/api/v1/newsletter/resubscribe", json={"email": "a@x.com", "token": token}).status_code == 200

    async def current_token() -> str:
        async with session_factory() as session:  # type: ignore[operator]
            record = await subscriptions.find_by_email(session, "a@x.com")
            return record.resubscribe_token

    rotated = asyncio.run(current_token())
    assert rotated != token

    verified = client.get(f"/api/v1/newsletter/unsubscribe/{rotated}")
    assert verified.status_code == 200, verified.text
    assert verified.json()["company_name"] == "Acme Rentals"
    assert verified.json()["is_subscribed"] is True


def test_mismatched_token_and_unknown_email_look_the_same(test_app, seed_account, sent_emails) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    seed_account("a@x.com")
    seed_account("b@x.com")

    token_a = _unsubscribe(client, "a@x.com")["resubscribe_token"]
    token_b = _unsubscribe(client, "b@x.com")["resubscribe_token"]

    wrong_token = client.post("/api/v1/newsletter/resubscribe", json={"email": "a@x.com", "token": token_b})
    unknown_email = client.post("/api/v1/newsletter/resubscribe", json={"email": "ghost@x.com", "token": token_a})

    assert wrong_token.status_code == unknown_email.status_code == 404
    assert wrong_token.json() == unknown_email.json()


def test_unsubscribe_unknown_account_fails_by_default(test_app, sent_emails) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]

    res = client.post("/api/v1/newsletter/unsubscribe", json={"email": "missing@x.com"})

    assert res.status_code == 404
    assert res.json() == {"detail": "User not found", "code": "account_not_found"}
    assert sent_emails == []


def test_unsubscribe_unknown_account_when_anonymous_allowed(test_app, sent_emails, monkeypatch) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    monkeypatch.setattr(settings, "newsletter_allow_anonymous_unsubscribe", True)

    body = _unsubscribe(client, "missing@x.com")

    assert body["company_id"] is None
    verified = client.get(f"/api/v1/newsletter/unsubscribe/{body['resubscribe_token']}")
    assert verified.json()["email"] == "missing@x.com"


def test_repeated_unsubscribe_rotates_token(test_app, seed_account, sent_emails) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    seed_account("a@x.com")

    first = _unsubscribe(client, "a@x.com")["resubscribe_token"]
    second = _unsubscribe(client, "a@x.com")["resubscribe_token"]

    assert first != second
    old = client.post("/api/v1/newsletter/resubscribe", json={"email": "a@x.com", "token": first})
    assert old.status_code == 404
    new = client.post("/api/v1/newsletter/resubscribe", json={"email": "a@x.com", "token": second})
    assert new.status_code == 200, new.text


@pytest.mark.parametrize(
    "path, body",
    [
        ("/api/v1/newsletter/unsubscribe", {}),
        ("/api/v1/newsletter/unsubscribe", {"reason": "bye"}),
        ("/api/v1/newsletter/resubscribe", {"email": "a@x.com"}),
        ("/api/v1/newsletter/resubscribe", {"token": "abc"}),
        ("/api/v1/newsletter/resubscribe", {"email": "a@x.com", "token": ""}),
    ],
)
def test_missing_fields_are_rejected(test_app, path: str, body: dict) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]

    res = client.post(path, json=body)

    assert res.status_code == 400
    assert res.json()["code"] == "validation_error"


def test_notification_failure_is_reported_after_commit(test_app, seed_account, monkeypatch) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory = test_app["session_factory"]
    seed_account("a@x.com")

    async def failing_send(*args, **kwargs):
        raise NotificationDeliveryError()

    monkeypatch.setattr(email_service, "send_email", failing_send)

    res = client.post("/api/v1/newsletter/unsubscribe", json={"email": "a@x.com"})
    assert res.status_code == 502
    assert res.json() == {"detail": "Failed to send notification email", "code": "notification_failed"}
    assert metrics.snapshot()["notification_failures"] == 1

    async def stored_flag() -> bool:
        async with session_factory() as session:  # type: ignore[operator]
            return await subscriptions.is_subscribed(session, "a@x.com")

    assert asyncio.run(stored_flag()) is False


def test_notification_failure_is_soft_when_not_required(test_app, seed_account, monkeypatch) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    seed_account("a@x.com")
    monkeypatch.setattr(settings, "newsletter_notification_required", False)

    async def failing_send(*args, **kwargs):
        raise NotificationDeliveryError()

    monkeypatch.setattr(email_service, "send_email", failing_send)

    body = _unsubscribe(client, "a@x.com")
    assert body["notification_sent"] is False

    res = client.post(
        "/api/v1/newsletter/resubscribe", json={"email": "a@x.com", "token": body["resubscribe_token"]}
    )
    assert res.status_code == 200, res.text
    assert res.json()["notification_sent"] is False


def test_unsubscribe_records_request_metadata(test_app, seed_account, sent_emails, monkeypatch) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory = test_app["session_factory"]
    seed_account("a@x.com")
    monkeypatch.setattr(settings, "trusted_proxy_ips", ["testclient", "10.0.0.1"])

    res = client.post(
        "/api/v1/newsletter/unsubscribe",
        json={"email": "A@X.com", "reason_category": "gdpr_request", "feedback": "Sent weekly, wanted monthly"},
        headers={"User-Agent": "mail-client/1.0", "X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
    )
    assert res.status_code == 200, res.text

    async def load():
        async with session_factory() as session:  # type: ignore[operator]
            return await subscriptions.find_by_email(session, "a@x.com")

    record = asyncio.run(load())
    assert record.reason.value == "gdpr_request"
    assert record.user_agent == "mail-client/1.0"
    assert record.ip_address == "203.0.113.9"
    assert record.feedback == "Sent weekly, wanted monthly"
    assert record.can_resubscribe is False


def test_unsubscribe_proceeds_unlinked_when_directory_lookup_fails(test_app, seed_account, sent_emails, monkeypatch) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory = test_app["session_factory"]
    seed_account("a@x.com", company_name="Acme Rentals")

    async def broken_scalar(self, *args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("directory unavailable"))

    monkeypatch.setattr(AsyncSession, "scalar", broken_scalar)

    body = _unsubscribe(client, "a@x.com")
    assert body["company_id"] is None
    assert sent_emails[-1]["to"] == "a@x.com"

    async def load():
        async with session_factory() as session:  # type: ignore[operator]
            return await subscriptions.find_by_email(session, "a@x.com")

    record = asyncio.run(load())
    assert record.is_subscribed is False
    assert record.user_id is None


@pytest.mark.parametrize("category", ["admin_action", "bounce", "complaint"])
def test_system_reason_categories_are_rejected(test_app, seed_account, sent_emails, category: str) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    seed_account("a@x.com")

    res = client.post("/api/v1/newsletter/unsubscribe", json={"email": "a@x.com", "reason_category": category})

    assert res.status_code == 400
    assert res.json()["code"] == "validation_error"
    assert sent_emails == []


def test_gdpr_unsubscribe_cannot_be_undone_with_token(test_app, seed_account, sent_emails) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    seed_account("a@x.com")

    token = _unsubscribe(client, "a@x.com", reason_category="gdpr_request")["resubscribe_token"]

    res = client.post("/api/v1/newsletter/resubscribe", json={"email": "a@x.com", "token": token})
    assert res.status_code == 403
    assert res.json() == {"detail": "Resubscription not allowed for this email", "code": "resubscribe_not_allowed"}
    assert len(sent_emails) == 1

    verified = client.get(f"/api/v1/newsletter/unsubscribe/{token}")
    assert verified.json()["is_subscribed"] is False

    # A later plain opt-out lifts the lock again.
    token = _unsubscribe(client, "a@x.com")["resubscribe_token"]
    again = client.post("/api/v1/newsletter/resubscribe", json={"email": "a@x.com", "token": token})
    assert again.status_code == 200, again.text


def test_unsubscribe_write_failure_returns_storage_error(test_app, seed_account, sent_emails, monkeypatch) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory = test_app["session_factory"]
    seed_account("a@x.com")

    async def failing_upsert(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("database unavailable"))

    monkeypatch.setattr(subscriptions, "_upsert_via_conflict_stmt", failing_upsert)

    res = client.post("/api/v1/newsletter/unsubscribe", json={"email": "a@x.com"})
    assert res.status_code == 503
    assert res.json() == {"detail": "Failed to unsubscribe", "code": "storage_error"}
    assert sent_emails == []
    assert metrics.snapshot().get("unsubscribes", 0) == 0

    async def state():
        async with session_factory() as session:  # type: ignore[operator]
            return await subscriptions.get_subscription_state(session, "a@x.com")

    assert asyncio.run(state()) == subscriptions.SubscriptionState.no_record


def test_resubscribe_write_failure_keeps_token_usable(test_app, seed_account, sent_emails, monkeypatch) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory = test_app["session_factory"]
    seed_account("a@x.com")
    token = _unsubscribe(client, "a@x.com")["resubscribe_token"]

    original_execute = AsyncSession.execute

    async def failing_update(self, statement, *args, **kwargs):
        if isinstance(statement, Update):
            raise OperationalError("UPDATE", {}, Exception("database unavailable"))
        return await original_execute(self, statement, *args, **kwargs)

    monkeypatch.setattr(AsyncSession, "execute", failing_update)

    res = client.post("/api/v1/newsletter/resubscribe", json={"email": "a@x.com", "token": token})
    assert res.status_code == 503
    assert res.json() == {"detail": "Failed to resubscribe", "code": "storage_error"}

    monkeypatch.setattr(AsyncSession, "execute", original_execute)

    async def load():
        async with session_factory() as session:  # type: ignore[operator]
            return await subscriptions.find_by_email(session, "a@x.com")

    record = asyncio.run(load())
    assert record.is_subscribed is False
    assert record.resubscribe_token == token

    retry = client.post("/api/v1/newsletter/resubscribe", json={"email": "a@x.com", "token": token})
    assert retry.status_code == 200, retry.text
