from __future__ import annotations
from typing import Optional

import httpx
import redis.asyncio as redis
import tigerbeetle as tb
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import ORJSONResponse, Response
from fastapi.staticfiles import StaticFiles
from loguru import logger

from . import config
from .collaborators import Actor, LocalBlobStore, new_notifier
from .credentials import CredentialCodec
from .errors import DomainError, HTTP_STATUS
from .infra import timings
from .infra.log import setup_logging
from .infra.timings import timeit
from .mockpay import EMITTABLE, MockPay
from .model.db import Database
from .model.stats_cache import new_cache
from .payment_adapter import PaymentAdapter
from .schemas import (
    BulkCheckInIn, CancelIn, CheckInIn, CredentialIn, RefundRequestIn,
    RegistrationCreate, ScanIn, UndoCheckInIn,
)
from .services import Services, build_services
from .services.sweeper import SweepScheduler
from .sidefx import SideEffectQueue
from .snap import SnapPay
from .views import intent_view, registration_view

setup_logging(config.LOG_LEVEL, config.LOG_JSON)

app = FastAPI(
    title="campustix",
    default_response_class=ORJSONResponse,
)

if config.BLOB_BASE_URL.startswith("/"):
    app.mount(
        config.BLOB_BASE_URL,
        StaticFiles(directory=config.BLOB_DIR, check_dir=False),
        name="blobs",
    )


@app.exception_handler(DomainError)
async def _domain_error(request: Request, exc: DomainError):
    return ORJSONResponse(status_code=HTTP_STATUS[exc.kind],
                          content=exc.to_dict())


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logger.info(
        "campustix starting: ledger={} stats_cache={} provider={}",
        config.LEDGER_BACKEND, config.STATS_CACHE_BACKEND,
        config.PAYMENT_PROVIDER,
    )


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(max_connections=128,
                            max_keepalive_connections=64),
    )


@app.on_event("startup")
async def _redis_start():
    app.state.redis = None
    if config.STATS_CACHE_BACKEND == "redis":
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            max_connections=config.REDIS_MAX_CONN,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _ledger_start():
    app.state.tb_client = None
    if config.LEDGER_BACKEND == "tb":
        app.state.tb_client = tb.ClientAsync(
            cluster_id=config.TB_CLUSTER_ID,
            replica_addresses=config.TB_ADDRESS,
        )


def _payment_adapter() -> PaymentAdapter:
    if config.PAYMENT_PROVIDER == "snap":
        return SnapPay(app.state.http, config.SNAP_SERVER_KEY,
                       is_production=config.SNAP_IS_PRODUCTION)
    return MockPay(config.MOCK_SECRET)


@app.on_event("startup")
async def _services_start():
    db = Database(
        config.DATABASE_URL,
        ledger_backend=config.LEDGER_BACKEND,
        tb_client=app.state.tb_client,
        cache=new_cache(config.STATS_CACHE_BACKEND, r=app.state.redis,
                        ttl_seconds=config.STATS_CACHE_TTL_SECONDS),
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW,
        pool_timeout=config.DB_POOL_TIMEOUT,
        gate_limit=config.DB_GATE_LIMIT,
    )
    await db.create_schema()

    svc = build_services(
        db,
        adapter=_payment_adapter(),
        blobs=LocalBlobStore(config.BLOB_DIR, config.BLOB_BASE_URL),
        notifier=new_notifier(config.NOTIFIER, http=app.state.http,
                              url=config.NOTIFY_WEBHOOK_URL),
        codec=CredentialCodec(config.CREDENTIAL_KEY),
        sidefx=SideEffectQueue(
            max_attempts=config.SIDE_EFFECT_MAX_ATTEMPTS,
            backoff_seconds=config.SIDE_EFFECT_BACKOFF_SECONDS,
        ),
        admin_recipients=config.ADMIN_RECIPIENTS,
        payment_expiry_hours=config.PAYMENT_EXPIRY_HOURS,
        admin_fee=config.ADMIN_FEE,
        currency=config.CURRENCY,
        max_quantity=config.MAX_TICKETS_PER_REGISTRATION,
        client_url=config.CLIENT_URL,
        reminder_window_hours=config.REMINDER_WINDOW_HOURS,
        thank_you_window_hours=config.THANK_YOU_WINDOW_HOURS,
    )
    svc.sidefx.start()
    app.state.services = svc
    app.state.scheduler = SweepScheduler(svc.sweeper,
                                         config.SWEEP_INTERVAL_SECONDS)
    app.state.scheduler.start()


@app.on_event("shutdown")
async def _services_stop():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        await scheduler.stop()
    svc = getattr(app.state, "services", None)
    if svc is not None:
        await svc.sidefx.stop()
        await svc.db.dispose()
        app.state.services = None


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.close()
        app.state.redis = None


@app.on_event("shutdown")
async def _tb_stop():
    client = getattr(app.state, "tb_client", None)
    if client is not None:
        await client.close()
        app.state.tb_client = None


# ----------------------------
# Dependencies
# ----------------------------
def services(request: Request) -> Services:
    svc = getattr(request.app.state, "services", None)
    if svc is None:
        raise RuntimeError("services not initialized")
    return svc


def current_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: str = Header("buyer"),
) -> Actor:
    if not x_user_id:
        raise HTTPException(401, detail="missing identity")
    return Actor(user_id=x_user_id, role=x_user_role.lower())


def require_admin(actor: Actor = Depends(current_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(403, detail="admin only")
    return actor


def _csv(body: str, filename: str) -> Response:
    return Response(
        content=body, media_type="text/csv",
        headers={"content-disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/healthz")
async def healthz():
    return {"ok": True}


# ----------------------------
# Registrations
# ----------------------------
@app.post("/api/registrations", status_code=201)
async def create_registration(
    payload: RegistrationCreate,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    async with timeit("api.registrations.create"):
        reg, intent = await svc.registrations.create(
            actor, payload.event_id, payload.tier_id, payload.quantity,
            payload.participant.model_dump(), source=payload.source,
            referral_code=payload.referral_code,
            custom_fields=payload.custom_fields,
        )
    return {"registration": registration_view(reg),
            "payment": intent_view(intent)}


@app.get("/api/registrations/mine")
async def my_registrations(
    status: Optional[str] = None,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    regs = await svc.registrations.list_for_buyer(actor, status)
    return {"items": [registration_view(r) for r in regs]}


@app.get("/api/registrations/{registration_id}")
async def get_registration(
    registration_id: str,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    reg = await svc.registrations.get(actor, registration_id)
    return registration_view(
        reg, include_credential=actor.user_id == reg.buyer_id)


@app.post("/api/registrations/{registration_id}/cancel")
async def cancel_registration(
    registration_id: str,
    payload: CancelIn,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    reg = await svc.registrations.cancel(actor, registration_id,
                                         payload.reason)
    return registration_view(reg)


@app.post("/api/registrations/{registration_id}/refund-request")
async def request_refund(
    registration_id: str,
    payload: RefundRequestIn,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    reg = await svc.payments.request_refund(actor, registration_id,
                                            payload.reason)
    return registration_view(reg)


@app.post("/api/registrations/{registration_id}/refund")
async def process_refund(
    registration_id: str,
    actor: Actor = Depends(require_admin),
    svc: Services = Depends(services),
):
    reg = await svc.payments.process_refund(actor, registration_id)
    return registration_view(reg)


# ----------------------------
# Events
# ----------------------------
@app.get("/api/events/{event_id}/registrations")
async def event_registrations(
    event_id: str,
    status: Optional[str] = None,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    regs = await svc.registrations.list_for_event(actor, event_id, status)
    return {"items": [registration_view(r) for r in regs]}


@app.get("/api/events/{event_id}/registrations/export")
async def export_event_registrations(
    event_id: str,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    body = await svc.registrations.export_csv(actor, event_id)
    return _csv(body, f"registrations-{event_id}.csv")


@app.get("/api/events/{event_id}/statistics")
async def event_registration_statistics(
    event_id: str,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    return await svc.registrations.statistics(actor, event_id)


@app.get("/api/events/{event_id}/payment-statistics")
async def event_payment_statistics(
    event_id: str,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    return await svc.registrations.payment_statistics(actor, event_id)


@app.get("/api/events/{event_id}/inventory")
async def event_inventory(
    event_id: str,
    svc: Services = Depends(services),
):
    return await svc.registrations.event_statistics(event_id)


@app.post("/api/events/{event_id}/cancel")
async def cancel_event(
    event_id: str,
    payload: CancelIn,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    return await svc.registrations.cancel_event(actor, event_id,
                                                payload.reason)


# ----------------------------
# Payment provider webhook
# ----------------------------
@app.post("/api/payments/webhook")
async def payments_webhook(
    request: Request,
    svc: Services = Depends(services),
):
    payload = await request.body()
    headers = dict(request.headers)
    async with timeit("api.payments.webhook"):
        return await svc.payments.handle_provider_notification(payload,
                                                               headers)


# ----------------------------
# MockPay hosted page emulation
# ----------------------------
def _mockpay(svc: Services) -> MockPay:
    adapter = svc.payments.adapter
    if not isinstance(adapter, MockPay):
        raise HTTPException(404, detail="mock provider not enabled")
    return adapter


@app.get("/mockpay/{order_id}")
async def mockpay_screen(order_id: str, svc: Services = Depends(services)):
    _mockpay(svc)
    return {"order_id": order_id, "actions": sorted(EMITTABLE),
            "emit": f"/mockpay/{order_id}/emit?kind=succeeded"}


@app.post("/mockpay/{order_id}/emit")
async def mockpay_emit(
    order_id: str,
    kind: str = "succeeded",
    amount: int = 0,
    svc: Services = Depends(services),
):
    adapter = _mockpay(svc)
    if kind not in EMITTABLE:
        raise HTTPException(400, detail="invalid kind")
    payload, headers = adapter.build_event(order_id, kind, amount)

    if not config.MOCK_WEBHOOK_URL:
        return await svc.payments.handle_provider_notification(payload,
                                                               headers)
    try:
        r = await app.state.http.post(config.MOCK_WEBHOOK_URL,
                                      content=payload, headers=headers)
    except httpx.HTTPError as e:
        # the page can be reloaded and the event emitted again
        logger.warning("mock webhook delivery failed: {}", e)
        return {"ok": False, "delivered": False}
    return {"ok": r.is_success, "delivered": True}


# ----------------------------
# Check-in
# ----------------------------
@app.post("/api/checkin/validate")
async def checkin_validate(
    payload: CredentialIn,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    if not actor.can_check_in:
        raise HTTPException(403, detail="staff only")
    v = await svc.checkin.validate(payload.credential)
    return {
        "valid": v.valid,
        "reason": v.reason,
        "registration": (registration_view(v.registration)
                         if v.registration is not None else None),
    }


@app.post("/api/checkin/scan")
async def checkin_scan(
    payload: ScanIn,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    reg = await svc.checkin.check_in_credential(
        actor, payload.credential, location=payload.location,
        device=payload.device)
    return registration_view(reg)


@app.post("/api/checkin")
async def checkin_single(
    payload: CheckInIn,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    reg = await svc.checkin.check_in(
        actor, payload.registration_id, location=payload.location,
        device=payload.device)
    return registration_view(reg)


@app.post("/api/checkin/bulk")
async def checkin_bulk(
    payload: BulkCheckInIn,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    results = await svc.checkin.bulk_check_in(
        actor, payload.registration_ids, location=payload.location,
        device=payload.device)
    ok = sum(1 for r in results if r["success"])
    return {"results": results, "succeeded": ok,
            "failed": len(results) - ok}


@app.post("/api/checkin/undo")
async def checkin_undo(
    payload: UndoCheckInIn,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    reg = await svc.checkin.undo_check_in(actor, payload.registration_id,
                                          payload.reason)
    return registration_view(reg)


@app.get("/api/checkin/history/{registration_id}")
async def checkin_history(
    registration_id: str,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    return await svc.checkin.history(actor, registration_id)


@app.get("/api/events/{event_id}/checkin/stats")
async def checkin_stats(
    event_id: str,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    return await svc.checkin.stats(actor, event_id)


@app.get("/api/events/{event_id}/checkin/list")
async def checkin_list(
    event_id: str,
    checked_in: Optional[bool] = None,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    regs = await svc.checkin.list(actor, event_id, checked_in)
    return {"items": [registration_view(r) for r in regs]}


@app.get("/api/events/{event_id}/checkin/export")
async def checkin_export(
    event_id: str,
    actor: Actor = Depends(current_actor),
    svc: Services = Depends(services),
):
    body = await svc.checkin.export_csv(actor, event_id)
    return _csv(body, f"checkins-{event_id}.csv")


# ----------------------------
# Admin
# ----------------------------
@app.post("/api/admin/sweep")
async def admin_sweep(
    actor: Actor = Depends(require_admin),
    svc: Services = Depends(services),
):
    return await svc.sweeper.run_once()


@app.get("/api/admin/timings")
async def admin_timings(actor: Actor = Depends(require_admin)):
    return {"items": timings.snapshot()}
