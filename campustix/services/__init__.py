from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, List, Optional

from ..collaborators import BlobStore, Notifier
from ..credentials import CredentialCodec
from ..helpers import now_ts
from ..model.db import Database
from ..payment_adapter import PaymentAdapter
from ..sidefx import SideEffectQueue
from .checkin import CheckInValidator
from .issuance import TicketIssuer
from .lifecycle import Lifecycle
from .messaging import Messenger
from .payments import PaymentReconciler
from .registration import RegistrationService
from .sweeper import ExpirySweeper


@dataclass
class Services:
    db: Database
    sidefx: SideEffectQueue
    messenger: Messenger
    issuer: TicketIssuer
    lifecycle: Lifecycle
    payments: PaymentReconciler
    registrations: RegistrationService
    checkin: CheckInValidator
    sweeper: ExpirySweeper


def build_services(
    db: Database, *, adapter: PaymentAdapter, blobs: BlobStore,
    notifier: Notifier, codec: CredentialCodec,
    sidefx: Optional[SideEffectQueue] = None,
    admin_recipients: Optional[List[str]] = None,
    payment_expiry_hours: float = 24.0, admin_fee: int = 0,
    currency: str = "IDR", max_quantity: int = 5, client_url: str = "",
    reminder_window_hours: float = 6.0,
    thank_you_window_hours: float = 48.0,
    clock: Callable[[], float] = now_ts,
) -> Services:
    """Wire every component explicitly; nothing reaches for globals."""
    sidefx = sidefx or SideEffectQueue()
    messenger = Messenger(db, notifier, admin_recipients)
    issuer = TicketIssuer(db, codec, blobs, messenger, clock=clock)
    lifecycle = Lifecycle(issuer, clock=clock)
    payments = PaymentReconciler(db, adapter, lifecycle, sidefx,
                                 client_url=client_url, clock=clock)
    registrations = RegistrationService(
        db, lifecycle, payments, sidefx,
        payment_expiry_hours=payment_expiry_hours, admin_fee=admin_fee,
        currency=currency, max_quantity=max_quantity, clock=clock,
    )
    checkin = CheckInValidator(db, codec, lifecycle, sidefx, clock=clock)
    sweeper = ExpirySweeper(
        db, lifecycle, sidefx,
        reminder_window_hours=reminder_window_hours,
        thank_you_window_hours=thank_you_window_hours, clock=clock,
    )

    sidefx.register("issue_ticket", issuer.materialize)
    sidefx.register("notify", messenger.notify_buyer)
    sidefx.register("notify_admins", messenger.notify_admins)
    sidefx.register("cancel_intent", payments.cancel_intent)

    return Services(
        db=db, sidefx=sidefx, messenger=messenger, issuer=issuer,
        lifecycle=lifecycle, payments=payments, registrations=registrations,
        checkin=checkin, sweeper=sweeper,
    )


__all__ = ["Services", "build_services"]
