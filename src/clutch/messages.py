"""Delivery tracking for chat messages sent to agent sessions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from clutch.db import (
    VALID_DELIVERY_STATUSES,
    VALID_RECOVERY_ACTIONS,
    ChatMessageRow,
    new_id,
    now_ms,
)
from clutch.errors import Conflict, NotFound, ValidationError, require_choice, require_text
from clutch.repository import MessageRepository

log = logging.getLogger(__name__)

DEFAULT_STUCK_LIMIT = 100
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_COOLDOWN_MS = 60_000
DEFAULT_RECOVERY_AGE_MINUTES = 5

SYSTEM_AUTHOR = "system"


class MessageDeliveryTracker:
    def __init__(
        self,
        messages: MessageRepository,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_cooldown_ms: int = DEFAULT_RETRY_COOLDOWN_MS,
        clock: Callable[[], int] = now_ms,
    ):
        self.messages = messages
        self.max_retries = max_retries
        self.retry_cooldown_ms = retry_cooldown_ms
        self.clock = clock

    def get(self, message_id: str) -> ChatMessageRow:
        message = self.messages.get(message_id)
        if not message:
            raise NotFound(f"Message '{message_id}' not found")
        return message

    def post_message(
        self, chat_id: str, author: str, content: str, *, is_automated: bool = False
    ) -> ChatMessageRow:
        require_text(author, "author")
        require_text(content, "content")
        if not self.messages.chat_exists(chat_id):
            raise NotFound(f"Chat '{chat_id}' not found")
        now = self.clock()
        row: ChatMessageRow = {
            "id": new_id(),
            "chat_id": chat_id,
            "author": author,
            "content": content,
            "delivery_status": "sent",
            "status_changed_at": now,
            "retry_count": 0,
            "cooldown_until": None,
            "failure_reason": None,
            "is_automated": int(is_automated),
            "created_at": now,
        }
        self.messages.insert(row)
        return row

    def update_delivery_status(
        self, message_id: str, status: str, failure_reason: str | None = None
    ) -> ChatMessageRow:
        require_choice(status, VALID_DELIVERY_STATUSES, "delivery status")
        self.get(message_id)
        reason = failure_reason if status == "failed" else None
        self.messages.update_status(message_id, status, self.clock(), reason)
        return self.get(message_id)

    def get_stuck_messages(
        self, age_threshold_ms: int, limit: int = DEFAULT_STUCK_LIMIT
    ) -> list[ChatMessageRow]:
        """Human messages whose delivery has not progressed past the threshold.

        Failed and responded messages are never returned, nor are messages
        still inside a retry cooldown.
        """
        if age_threshold_ms < 0:
            raise ValidationError("age threshold must be >= 0")
        now = self.clock()
        return self.messages.stuck(now - age_threshold_ms, now, limit)

    def retry_message(self, message_id: str) -> ChatMessageRow:
        message = self.get(message_id)
        if message["delivery_status"] == "responded":
            raise Conflict("Message has already been responded to")
        if message["retry_count"] >= self.max_retries:
            raise Conflict("Maximum retry attempts exceeded")
        now = self.clock()
        self.messages.reset_for_retry(message_id, now, now + self.retry_cooldown_ms)
        log.info("Message %s reset for retry (%d)", message_id, message["retry_count"] + 1)
        return self.get(message_id)

    def recover(
        self, age_threshold_minutes: int = DEFAULT_RECOVERY_AGE_MINUTES, action: str = "mark_failed"
    ) -> dict[str, Any]:
        """Resolve stuck messages. Re-running is safe; resolved rows are filtered out."""
        require_choice(action, VALID_RECOVERY_ACTIONS, "action")
        if age_threshold_minutes < 0:
            raise ValidationError("age threshold must be >= 0")
        stuck = self.get_stuck_messages(age_threshold_minutes * 60_000)
        processed = 0
        failed = 0

        if action == "mark_failed":
            reason = f"Gateway restart/timeout (age: {age_threshold_minutes}+ minutes)"
            processed = self.messages.mark_failed([m["id"] for m in stuck], reason, self.clock())
            counts: dict[str, int] = {}
            for message in stuck:
                counts[message["chat_id"]] = counts.get(message["chat_id"], 0) + 1
            for chat_id, count in counts.items():
                try:
                    self.post_message(
                        chat_id,
                        SYSTEM_AUTHOR,
                        f"{count} message(s) could not be delivered and were marked failed. "
                        "Please resend if still needed.",
                        is_automated=True,
                    )
                except Exception as exc:
                    log.warning("Could not post failure notice to chat %s: %s", chat_id, exc)
        else:
            for message in stuck:
                try:
                    self.retry_message(message["id"])
                    processed += 1
                except Exception as exc:
                    log.warning("Retry failed for message %s: %s", message["id"], exc)
                    failed += 1

        log.info("Message recovery (%s): processed=%d failed=%d", action, processed, failed)
        return {"action": action, "processed": processed, "failed": failed}
