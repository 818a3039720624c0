"""
Ticket credentials.

The QR code carries an opaque token: the ticket payload encrypted and
authenticated with Fernet. Anything that fails to decrypt or does not parse
is simply invalid. Tokens do not age out; whether a ticket still admits is
decided by its registration, not by when it was sealed.
"""
from __future__ import annotations
from typing import Callable

import orjson
from cryptography.fernet import Fernet, InvalidToken

from .errors import InvalidCredential
from .helpers import now_ts

REQUIRED_FIELDS = ("ticketNumber", "registrationId", "eventId", "buyerId",
                   "issuedAt")


class CredentialCodec:
    def __init__(self, key: str, clock: Callable[[], float] = now_ts):
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        self.clock = clock

    def seal(self, payload: dict) -> str:
        return self._fernet.encrypt_at_time(
            orjson.dumps(payload), int(self.clock())
        ).decode()

    def open(self, token: str) -> dict:
        if not token:
            raise InvalidCredential()
        try:
            raw = self._fernet.decrypt(token.encode())
            payload = orjson.loads(raw)
        except (InvalidToken, orjson.JSONDecodeError, UnicodeError):
            raise InvalidCredential()
        if not isinstance(payload, dict) or any(
            f not in payload for f in REQUIRED_FIELDS
        ):
            raise InvalidCredential()
        return payload
