"""
Narrow interfaces to the systems this service does not own: identity,
file storage and notification delivery.
"""
from __future__ import annotations
import asyncio
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from loguru import logger


# ----------------------------
# Identity
# ----------------------------
ROLE_BUYER = "buyer"
ROLE_STAFF = "staff"
ROLE_ORGANIZER = "organizer"
ROLE_ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str = ROLE_BUYER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def can_check_in(self) -> bool:
        return self.role in (ROLE_STAFF, ROLE_ORGANIZER, ROLE_ADMIN)


SYSTEM = Actor(user_id="system", role=ROLE_ADMIN)


# ----------------------------
# Blob store
# ----------------------------
class BlobStore(ABC):
    @abstractmethod
    async def store(self, data: bytes, content_hint: str) -> str:
        """Persist ``data`` and return a URL it can be fetched from."""


class LocalBlobStore(BlobStore):
    def __init__(self, root: str, base_url: str) -> None:
        self.root = root
        self.base_url = base_url.rstrip("/")

    def _write(self, name: str, data: bytes) -> None:
        os.makedirs(self.root, exist_ok=True)
        with open(os.path.join(self.root, name), "wb") as f:
            f.write(data)

    async def store(self, data: bytes, content_hint: str) -> str:
        base = os.path.basename(content_hint) or "blob"
        name = f"{uuid.uuid4().hex[:8]}-{base}"
        await asyncio.to_thread(self._write, name, data)
        return f"{self.base_url}/{name}"


# ----------------------------
# Notifications
# ----------------------------
class Channel(str, Enum):
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    PUSH = "push"
    IN_APP = "in_app"


class Template(str, Enum):
    REGISTRATION_CONFIRMED = "registration_confirmed"
    PAYMENT_REMINDER = "payment_reminder"
    CHECKIN_CONFIRMED = "checkin_confirmed"
    REGISTRATION_CANCELLED = "registration_cancelled"
    REFUND_REQUESTED = "refund_requested"
    REFUND_PROCESSED = "refund_processed"
    LATE_PAYMENT = "late_payment"
    THANK_YOU = "thank_you"


class Notifier(ABC):
    @abstractmethod
    async def send(self, channel: Channel, recipient: str,
                   template: Template, payload: Dict[str, Any]) -> bool: ...


class LogNotifier(Notifier):
    async def send(self, channel: Channel, recipient: str,
                   template: Template, payload: Dict[str, Any]) -> bool:
        logger.info("notify {} via {} -> {}: {}", template.value,
                    channel.value, recipient, payload)
        return True


class WebhookNotifier(Notifier):
    """Hands every message to a delivery relay over HTTP."""

    def __init__(self, http: httpx.AsyncClient, url: str) -> None:
        self.http = http
        self.url = url

    async def send(self, channel: Channel, recipient: str,
                   template: Template, payload: Dict[str, Any]) -> bool:
        try:
            r = await self.http.post(self.url, json={
                "channel": channel.value,
                "recipient": recipient,
                "template": template.value,
                "payload": payload,
            })
        except httpx.HTTPError as e:
            logger.warning("notification relay unreachable: {}", e)
            return False
        if r.is_success:
            return True
        logger.warning("notification relay answered {}", r.status_code)
        return False


def new_notifier(kind: str, *, http: Optional[httpx.AsyncClient] = None,
                 url: str = "") -> Notifier:
    if kind == "webhook":
        if http is None or not url:
            raise RuntimeError("WebhookNotifier requires http and url")
        return WebhookNotifier(http, url)
    return LogNotifier()
