"""Tests for clutch.messages: delivery statuses, stuck detection and recovery."""

from unittest.mock import patch

import pytest

from clutch.db import create_chat
from clutch.errors import Conflict, NotFound, ValidationError


@pytest.fixture()
def chat_id(db_conn, project_id):
    return create_chat(db_conn, project_id=project_id, title="Planning", agent_id="pm")["id"]


def test_post_message_starts_sent(services, chat_id):
    message = services.messages.post_message(chat_id, "alice", "Status update?")
    assert message["delivery_status"] == "sent"
    assert message["retry_count"] == 0
    assert message["is_automated"] == 0


def test_post_message_validates(services, chat_id):
    with pytest.raises(NotFound):
        services.messages.post_message("no-chat", "alice", "hi")
    with pytest.raises(ValidationError):
        services.messages.post_message(chat_id, "alice", "  ")


def test_update_delivery_status(services, clock, chat_id):
    message = services.messages.post_message(chat_id, "alice", "hi")
    updated = services.messages.update_delivery_status(message["id"], "processing")
    assert updated["delivery_status"] == "processing"
    assert updated["status_changed_at"] > message["status_changed_at"]

    failed = services.messages.update_delivery_status(message["id"], "failed", "timeout")
    assert failed["failure_reason"] == "timeout"
    with pytest.raises(ValidationError):
        services.messages.update_delivery_status(message["id"], "lost")


def test_failure_reason_only_kept_for_failed(services, chat_id):
    message = services.messages.post_message(chat_id, "alice", "hi")
    updated = services.messages.update_delivery_status(message["id"], "delivered", "ignored")
    assert updated["failure_reason"] is None


def test_stuck_messages_exclude_agent_automated_and_terminal(services, clock, chat_id):
    human = services.messages.post_message(chat_id, "alice", "one")
    services.messages.post_message(chat_id, "pm", "agent reply")
    services.messages.post_message(chat_id, "system", "note")
    services.messages.post_message(chat_id, "bob", "bot", is_automated=True)
    done = services.messages.post_message(chat_id, "bob", "answered")
    services.messages.update_delivery_status(done["id"], "responded")

    clock.advance_minutes(10)
    services.messages.post_message(chat_id, "alice", "fresh")

    stuck = services.messages.get_stuck_messages(5 * 60_000)
    assert [m["id"] for m in stuck] == [human["id"]]


def test_retry_message_sets_cooldown(services, clock, chat_id):
    message = services.messages.post_message(chat_id, "alice", "hi")
    services.messages.update_delivery_status(message["id"], "processing")

    retried = services.messages.retry_message(message["id"])

    assert retried["delivery_status"] == "sent"
    assert retried["retry_count"] == 1
    assert retried["cooldown_until"] == retried["status_changed_at"] + 60_000


def test_retry_rejects_responded_and_max(services, clock, chat_id):
    answered = services.messages.post_message(chat_id, "alice", "hi")
    services.messages.update_delivery_status(answered["id"], "responded")
    with pytest.raises(Conflict):
        services.messages.retry_message(answered["id"])

    message = services.messages.post_message(chat_id, "alice", "again")
    for _ in range(3):
        services.messages.retry_message(message["id"])
    with pytest.raises(Conflict, match="Maximum"):
        services.messages.retry_message(message["id"])


def test_cooldown_hides_message_from_stuck_query(services, clock, chat_id):
    message = services.messages.post_message(chat_id, "alice", "hi")
    clock.advance_minutes(6)
    assert services.messages.recover(5, "retry")["processed"] == 1

    clock.advance_minutes(6)
    # past the 60s cooldown and the 5 minute threshold again
    assert [m["id"] for m in services.messages.get_stuck_messages(5 * 60_000)] == [message["id"]]


def test_recover_mark_failed_posts_system_notice(services, clock, chat_id):
    services.messages.post_message(chat_id, "alice", "one")
    services.messages.post_message(chat_id, "alice", "two")
    clock.advance_minutes(6)

    result = services.messages.recover(5, "mark_failed")

    assert result == {"action": "mark_failed", "processed": 2, "failed": 0}
    notices = services.store.conn.execute(
        "SELECT author, content, is_automated FROM chat_messages WHERE author = 'system'"
    ).fetchall()
    assert len(notices) == 1
    assert notices[0]["content"].startswith("2 message(s) could not be delivered")
    assert notices[0]["is_automated"] == 1
    assert services.messages.recover(5, "mark_failed")["processed"] == 0


def test_recover_mark_failed_survives_notice_failure(
    services, db_conn, project_id, clock, chat_id, caplog
):
    other_chat = create_chat(db_conn, project_id=project_id, title="Ops", agent_id="ops")["id"]
    services.messages.post_message(chat_id, "alice", "one")
    services.messages.post_message(other_chat, "bob", "two")
    clock.advance_minutes(6)
    post = services.messages.post_message

    def _post(target, *args, **kwargs):
        if target == chat_id:
            raise NotFound(f"Chat '{target}' not found")
        return post(target, *args, **kwargs)

    with patch.object(services.messages, "post_message", side_effect=_post):
        result = services.messages.recover(5, "mark_failed")

    assert result == {"action": "mark_failed", "processed": 2, "failed": 0}
    notices = services.store.conn.execute(
        "SELECT chat_id FROM chat_messages WHERE author = 'system'"
    ).fetchall()
    assert [n["chat_id"] for n in notices] == [other_chat]
    assert f"Could not post failure notice to chat {chat_id}" in caplog.text


def test_recover_retry_partial_failure(services, clock, chat_id):
    for text in ("a", "b", "c"):
        services.messages.post_message(chat_id, "alice", text)
    clock.advance_minutes(6)

    with patch.object(
        services.messages, "retry_message", side_effect=[None, Conflict("nope"), None]
    ):
        result = services.messages.recover(5, "retry")

    assert result == {"action": "retry", "processed": 2, "failed": 1}


def test_recover_validates(services):
    with pytest.raises(ValidationError):
        services.messages.recover(5, "shrug")
    with pytest.raises(ValidationError):
        services.messages.get_stuck_messages(-1)
