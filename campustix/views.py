"""JSON shapes returned by the API."""
from __future__ import annotations
from typing import Optional

from .helpers import to_iso
from .model.orm import Registration, CheckInAudit


def registration_view(r: Registration,
                      include_credential: bool = False) -> dict:
    ticket = {
        "ticket_number": r.ticket_number,
        "status": r.ticket_status,
        "qr_url": r.qr_url,
        "pdf_url": r.pdf_url,
        "issued_at": to_iso(r.ticket_issued_at),
    }
    if include_credential:
        ticket["credential"] = r.ticket_credential
    return {
        "id": r.id,
        "registration_number": r.registration_number,
        "event_id": r.event_id,
        "tier": {
            "id": r.tier_id,
            "name": r.tier_name,
            "unit_price": r.unit_price,
        },
        "tier_id": r.tier_id,
        "organizer_id": r.organizer_id,
        "buyer_id": r.buyer_id,
        "quantity": r.quantity,
        "status": r.status,
        "participant": r.participant,
        "custom_fields": r.custom_fields,
        "source": r.source,
        "referral_code": r.referral_code,
        "payment": {
            "amount": r.amount,
            "admin_fee": r.admin_fee,
            "total_amount": r.total_amount,
            "currency": r.currency,
            "status": r.payment_status,
            "method": r.payment_method,
            "external_order_id": r.external_order_id,
            "transaction_id": r.transaction_id,
            "redirect_url": r.payment_redirect_url,
            "paid_at": to_iso(r.paid_at),
            "expired_at": to_iso(r.expired_at),
            "refund_status": r.refund_status,
            "refund_reason": r.refund_reason,
            "refunded_at": to_iso(r.refunded_at),
        },
        "ticket": ticket,
        "check_in": {
            "checked_in": bool(r.checked_in),
            "at": to_iso(r.checked_in_at),
            "by": r.checked_in_by,
            "location": r.checkin_location,
            "device": r.checkin_device,
        },
        "cancellation": None if r.cancelled_at is None else {
            "at": to_iso(r.cancelled_at),
            "by": r.cancelled_by,
            "reason": r.cancel_reason,
        },
        "created_at": to_iso(r.created_at),
        "updated_at": to_iso(r.updated_at),
    }


def audit_view(a: CheckInAudit) -> dict:
    return {
        "checked_in_at": to_iso(a.checked_in_at),
        "checked_in_by": a.checked_in_by,
        "location": a.checkin_location,
        "device": a.checkin_device,
        "undone_at": to_iso(a.undone_at),
        "undone_by": a.undone_by,
        "reason": a.reason,
    }


def intent_view(intent) -> Optional[dict]:
    if intent is None:
        return None
    return {
        "token": intent.token,
        "redirect_url": intent.redirect_url,
        "order_id": intent.order_id,
    }
