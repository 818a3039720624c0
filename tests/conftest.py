import os
import tempfile

# configure before anything imports campustix.config
_TMP = tempfile.mkdtemp(prefix="campustix-test-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP}/api.db"
os.environ["LEDGER_BACKEND"] = "pg"
os.environ["STATS_CACHE_BACKEND"] = "memory"
os.environ["PAYMENT_PROVIDER"] = "mock"
os.environ["MOCK_SECRET"] = "test-secret"
os.environ["MOCK_WEBHOOK_URL"] = ""
os.environ["SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["BLOB_DIR"] = f"{_TMP}/blobs"
os.environ["NOTIFIER"] = "log"
os.environ["SIDE_EFFECT_BACKOFF_SECONDS"] = "0"
os.environ["LOG_LEVEL"] = "WARNING"

from typing import Any, Dict, List, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from cryptography.fernet import Fernet  # noqa: E402

from campustix.collaborators import (  # noqa: E402
    Actor, BlobStore, Channel, Notifier, Template, ROLE_STAFF, ROLE_ADMIN,
    ROLE_ORGANIZER,
)
from campustix.credentials import CredentialCodec  # noqa: E402
from campustix.errors import PaymentProviderUnavailable  # noqa: E402
from campustix.mockpay import MockPay  # noqa: E402
from campustix.model import catalog  # noqa: E402
from campustix.model.db import Database  # noqa: E402
from campustix.model.orm import EV_PUBLISHED  # noqa: E402
from campustix.payment_adapter import IntentRequest, IntentResult  # noqa: E402
from campustix.services import Services, build_services  # noqa: E402
from campustix.sidefx import SideEffectQueue  # noqa: E402

MOCK_SECRET = "test-secret"
T0 = 1_760_000_000.0
HOUR = 3600.0
DAY = 86400.0

ORGANIZER = Actor("org-1", ROLE_ORGANIZER)
STAFF = Actor("staff-1", ROLE_STAFF)
ADMIN = Actor("admin-1", ROLE_ADMIN)


class FakeClock:
    def __init__(self, t: float = T0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class MemoryBlobStore(BlobStore):
    def __init__(self) -> None:
        self.blobs: Dict[str, bytes] = {}
        self.fail = False

    async def store(self, data: bytes, content_hint: str) -> str:
        if self.fail:
            raise OSError("blob store offline")
        url = f"mem://{len(self.blobs)}/{content_hint}"
        self.blobs[url] = data
        return url


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def send(self, channel: Channel, recipient: str,
                   template: Template, payload: Dict[str, Any]) -> bool:
        self.sent.append({"channel": channel, "recipient": recipient,
                          "template": template, "payload": payload})
        return True

    def of(self, template: Template) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m["template"] == template]


class FailingPay(MockPay):
    async def create_intent(self, req: IntentRequest) -> IntentResult:
        raise PaymentProviderUnavailable()


def buyer(n: int) -> Actor:
    return Actor(f"student-{n}")


def participant(n: int = 1) -> dict:
    return {
        "full_name": f"Student {n}",
        "email": f"student{n}@campus.test",
        "phone": f"+6281100000{n:02d}",
        "student_id": f"NIM{n:05d}",
        "institution": "Campus University",
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def blobs():
    return MemoryBlobStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def codec(clock):
    return CredentialCodec(Fernet.generate_key().decode(), clock=clock)


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await database.create_schema()
    yield database
    await database.dispose()


def _services(db, clock, notifier, blobs, codec, adapter) -> Services:
    return build_services(
        db, adapter=adapter, blobs=blobs, notifier=notifier, codec=codec,
        sidefx=SideEffectQueue(max_attempts=2, backoff_seconds=0),
        admin_recipients=["admin@campus.test"], clock=clock,
    )


@pytest_asyncio.fixture
async def svc(db, clock, notifier, blobs, codec):
    s = _services(db, clock, notifier, blobs, codec, MockPay(MOCK_SECRET))
    s.sidefx.start()
    yield s
    await s.sidefx.stop()


@pytest_asyncio.fixture
async def failing_svc(db, clock, notifier, blobs, codec):
    s = _services(db, clock, notifier, blobs, codec, FailingPay(MOCK_SECRET))
    s.sidefx.start()
    yield s
    await s.sidefx.stop()


async def make_event(db: Database, clock: FakeClock, *,
                     tiers: Optional[List[dict]] = None,
                     status: str = EV_PUBLISHED,
                     starts_in: float = 7 * DAY,
                     duration: float = 4 * HOUR):
    """Published event open for registration now; returns (event, tiers)."""
    tiers = tiers or [{"name": "Regular", "unit_price": 25000, "quota": 10}]
    async with db.transaction() as tx:
        ev = await catalog.create_event(
            tx.session, tx.ledger, title="Campus Tech Fair",
            organizer_id=ORGANIZER.user_id, organization_name="Student Union",
            venue="Main Hall", status=status,
            registration_opens_at=clock() - HOUR,
            registration_closes_at=clock() + starts_in,
            starts_at=clock() + starts_in,
            ends_at=clock() + starts_in + duration,
            tiers=tiers,
        )
        rows = await catalog.list_tiers(tx.session, ev.id)
    return ev, rows


async def snapshot(db: Database, event_id: str, tier_id: str):
    async with db.transaction() as tx:
        return await tx.ledger.snapshot(event_id, tier_id)


async def reload(db: Database, registration_id: str):
    from campustix.model import registrations as store
    async with db.transaction() as tx:
        return await store.get(tx.session, registration_id)


async def notify_payment(svc: Services, reg, kind: str = "succeeded",
                         key: Optional[str] = None) -> dict:
    adapter: MockPay = svc.payments.adapter
    body, headers = adapter.build_event(reg.external_order_id, kind,
                                        reg.total_amount,
                                        idempotency_key=key)
    return await svc.payments.handle_provider_notification(body, headers)
