"""Tests for in-app notifications, the WebSocket registry and email rendering."""

import json

import pytest
from jinja2 import UndefinedError

from eventflow.config import Settings
from eventflow.models import Notification
from eventflow.services.email import EmailSender, render_template
from eventflow.services.notifications import ConnectionManager, NotificationService


@pytest.fixture
def service(session_factory):
    return NotificationService(session_factory)


def test_notification_defaults():
    n = Notification(user_id="u1", title="Hi")
    assert n.type == "info"
    assert n.is_read is False
    assert n.message == ""


@pytest.mark.asyncio
async def test_create_and_list(service):
    await service.create_notification("u1", "First", metadata={"leaseId": "L1"})
    await service.create_notification("u1", "Second", type="alert")
    await service.create_notification("u2", "Other")

    rows = await service.list_for_user("u1")
    assert {r.title for r in rows} == {"First", "Second"}
    assert json.loads([r for r in rows if r.title == "First"][0].metadata_) == {"leaseId": "L1"}


@pytest.mark.asyncio
async def test_mark_read(service):
    n = await service.create_notification("u1", "Read me")

    assert await service.mark_read(n.id) is True
    assert await service.list_for_user("u1", unread_only=True) == []
    assert await service.mark_read("missing") is False


# ── ConnectionManager ────────────────────────────────────
@pytest.mark.asyncio
async def test_broadcast_reaches_channel_subscribers(make_socket):
    manager = ConnectionManager()
    a, b, other = make_socket(), make_socket(), make_socket()
    await manager.connect("landlord-1", a)
    await manager.connect("landlord-1", b)
    await manager.connect("landlord-2", other)

    sent = await manager.broadcast_new_message("landlord-1", {"type": "lease_signed"})

    assert sent == 2
    assert a.accepted and b.accepted
    assert json.loads(a.messages[0])["type"] == "lease_signed"
    assert other.messages == []
    assert manager.total_messages_sent == 2


@pytest.mark.asyncio
async def test_dead_sockets_are_dropped(make_socket):
    manager = ConnectionManager()
    healthy, dead = make_socket(), make_socket(fail=True)
    await manager.connect("c", healthy)
    await manager.connect("c", dead)

    assert await manager.broadcast_new_message("c", {"n": 1}) == 1
    assert manager.subscriber_count("c") == 1


@pytest.mark.asyncio
async def test_broadcast_to_empty_channel(make_socket):
    manager = ConnectionManager()
    assert await manager.broadcast_new_message("nobody", {}) == 0


def test_disconnect_removes_empty_channel(make_socket):
    manager = ConnectionManager()
    ws = make_socket()
    manager.channels["c"].add(ws)
    manager.disconnect("c", ws)
    assert "c" not in manager.channels
    manager.disconnect("c", ws)


# ── Email ────────────────────────────────────────────────
def test_render_showing_confirmation():
    subject, html = render_template(
        "showing_confirmation",
        {"visitorName": "<Bo>", "date": "2026-03-15", "startTime": "14:30", "propertyId": "p1"},
    )
    assert subject == "Property Showing Confirmed"
    assert "&lt;Bo&gt;" in html


def test_render_missing_variable_raises():
    with pytest.raises(UndefinedError):
        render_template("showing_reminder", {})


@pytest.mark.asyncio
async def test_smtp_backend_selected(monkeypatch):
    sent = {}

    async def fake_send(msg, **kwargs):
        sent["to"] = msg["To"]
        sent.update(kwargs)

    monkeypatch.setattr("eventflow.services.email.aiosmtplib.send", fake_send)
    sender = EmailSender(Settings(mail_backend="smtp", smtp_host="mail.local", smtp_port=2525))

    await sender.send("a@example.com", "Hi", "<p>Hi</p>")

    assert sent["to"] == "a@example.com"
    assert sent["hostname"] == "mail.local"
    assert sent["port"] == 2525
