"""
Countersign - Notifier Port

The core emits notification intents (kind + context); the host decides on
channel and rendering. Delivery is at-least-once, and every notification
carries a dedupe key built from (instance, stage, task, kind, cycle_no).
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

import aiohttp

from ..crypto import canonical_json

logger = logging.getLogger(__name__)


class NotificationKind(Enum):
    """Notification kinds."""
    INVITATION = "invitation"
    REMINDER = "reminder"
    ESCALATION = "escalation"
    COMPLETION = "completion"
    DECLINE = "decline"
    VOID = "void"


class DeliveryStatus(Enum):
    """Result of handing a notification to the host."""
    ACCEPTED = "accepted"
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass
class Notification:
    """A notification intent."""
    recipient: str
    kind: NotificationKind
    instance_id: str
    stage_id: Optional[str] = None
    task_id: Optional[str] = None
    command_id: Optional[str] = None
    cycle_no: int = 0
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def dedupe_key(self) -> str:
        return ":".join([
            self.instance_id,
            self.stage_id or "-",
            self.task_id or "-",
            self.kind.value,
            str(self.cycle_no),
            self.recipient,
        ])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient": self.recipient,
            "kind": self.kind.value,
            "instance_id": self.instance_id,
            "stage_id": self.stage_id,
            "task_id": self.task_id,
            "command_id": self.command_id,
            "cycle_no": self.cycle_no,
            "context": self.context,
            "dedupe_key": self.dedupe_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Notification":
        return cls(
            recipient=data["recipient"],
            kind=NotificationKind(data["kind"]),
            instance_id=data["instance_id"],
            stage_id=data.get("stage_id"),
            task_id=data.get("task_id"),
            command_id=data.get("command_id"),
            cycle_no=data.get("cycle_no", 0),
            context=data.get("context") or {},
        )


class Notifier(ABC):
    """Notifier port."""

    @abstractmethod
    async def notify(self, notification: Notification) -> DeliveryStatus:
        """Deliver one notification."""


class LoggingNotifier(Notifier):
    """Writes notifications to the log; useful for dry runs."""

    async def notify(self, notification: Notification) -> DeliveryStatus:
        logger.info(
            f"Notify {notification.recipient}: {notification.kind.value} "
            f"(instance={notification.instance_id}, task={notification.task_id})"
        )
        return DeliveryStatus.ACCEPTED


class RecordingNotifier(Notifier):
    """
    Keeps delivered notifications in memory, deduplicating on the key.

    ``fail_recipients`` and ``fail_next`` simulate channel outages.
    """

    def __init__(self):
        self.delivered: List[Notification] = []
        self.attempts = 0
        self.fail_recipients: Set[str] = set()
        self._fail_remaining = 0
        self._seen: Set[str] = set()

    def fail_next(self, count: int = 1) -> None:
        self._fail_remaining = count

    async def notify(self, notification: Notification) -> DeliveryStatus:
        self.attempts += 1
        if self._fail_remaining > 0:
            self._fail_remaining -= 1
            return DeliveryStatus.FAILED
        if notification.recipient in self.fail_recipients:
            return DeliveryStatus.FAILED
        if notification.dedupe_key in self._seen:
            return DeliveryStatus.ACCEPTED
        self._seen.add(notification.dedupe_key)
        self.delivered.append(notification)
        return DeliveryStatus.ACCEPTED

    def of_kind(self, kind: NotificationKind) -> List[Notification]:
        return [n for n in self.delivered if n.kind == kind]

    def for_recipient(self, recipient: str) -> List[Notification]:
        return [n for n in self.delivered if n.recipient == recipient]


class WebhookNotifier(Notifier):
    """
    Posts notifications as JSON to a host endpoint.

    2xx is accepted, 429/503 deferred, anything else failed. The dedupe key
    is also sent as the ``Idempotency-Key`` header.
    """

    def __init__(self, url: str, timeout_seconds: float = 5.0, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.timeout = timeout_seconds
        self.headers = headers or {}
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def notify(self, notification: Notification) -> DeliveryStatus:
        await self.start()
        headers = dict(self.headers)
        headers["Content-Type"] = "application/json"
        headers["Idempotency-Key"] = notification.dedupe_key
        try:
            async with self._session.post(
                self.url,
                data=canonical_json(notification.to_dict()),
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if 200 <= response.status < 300:
                    return DeliveryStatus.ACCEPTED
                if response.status in (429, 503):
                    return DeliveryStatus.DEFERRED
                logger.warning(f"Webhook rejected notification with HTTP {response.status}")
                return DeliveryStatus.FAILED
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Webhook delivery failed: {e}")
            return DeliveryStatus.DEFERRED
