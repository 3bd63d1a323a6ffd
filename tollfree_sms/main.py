import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Query, Request, Response, status

from tollfree_sms.carrier import CarrierClient
from tollfree_sms.config import Settings, get_settings
from tollfree_sms.deps import (
    get_app_settings,
    get_carrier,
    get_current_user_id,
    get_store,
    require_admin_token,
    require_cron_secret,
    require_owner,
)
from tollfree_sms.errors import AuthenticationError, CarrierError, add_exception_handlers
from tollfree_sms.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from tollfree_sms.metrics import get_metrics, get_metrics_content_type
from tollfree_sms.outbound import send_sms
from tollfree_sms.provisioning import ProvisioningOrchestrator, capacity_snapshot
from tollfree_sms.queue_drain import QueueDrainWorker
from tollfree_sms.reconciler import StatusReconciler, refresh_business_status
from tollfree_sms.schemas import (
    CapacityResponse,
    DrainResponse,
    ErrorResponse,
    HealthResponse,
    PollResponse,
    ProvisionRequest,
    ProvisionResponse,
    ResubmitResponse,
    SendSmsRequest,
    SendSmsResponse,
    StatusResponse,
    WebhookResponse,
    parse_business_info,
)
from tollfree_sms.storage import Store, check_db_health, init_db
from tollfree_sms.webhook_router import Outcome, WebhookRouter


# Setup structured JSON logging
setup_logging(get_settings().LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build the carrier client from frozen settings
    - Shutdown: close the carrier HTTP client
    """
    init_db()
    app.state.carrier = CarrierClient(get_settings())
    yield
    await app.state.carrier.close()


app = FastAPI(
    title="Toll-free SMS API",
    description="Toll-free number provisioning, SMS compliance and carrier webhook ingestion",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
add_exception_handlers(app)

_ERRORS = {
    401: {"model": ErrorResponse, "description": "Missing or invalid credentials"},
    403: {"model": ErrorResponse, "description": "Caller does not own the business"},
    404: {"model": ErrorResponse, "description": "Business not found"},
}


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness check - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(
    response: Response,
    settings: Settings = Depends(get_app_settings),
) -> HealthResponse:
    """
    Readiness check - returns 200 only if:
    1. SURGE_WEBHOOK_SECRET is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.SURGE_WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="SURGE_WEBHOOK_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Carrier Webhook Route
# =============================================================================

@app.post(
    "/api/sms/webhook",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    responses={401: {"model": ErrorResponse, "description": "Invalid signature"}},
)
async def sms_webhook(
    request: Request,
    store: Store = Depends(get_store),
    carrier: CarrierClient = Depends(get_carrier),
    settings: Settings = Depends(get_app_settings),
) -> WebhookResponse:
    """
    Ingest Surge webhook events (inbound SMS, delivery status, verification updates).

    - Validates the x-surge-signature header (t=<unix>,v1=<hex hmac>)
    - Always answers 200 to an authentic delivery, even when processing
      fails, so the carrier does not retry unrecoverable events
    """
    raw_body = await request.body()
    outcome = await WebhookRouter(store, carrier, settings).route(request.headers, raw_body)

    log_webhook_data(
        request=request,
        event_type=outcome.event_type,
        kind=outcome.result.kind,
        carrier_message_id=outcome.result.carrier_message_id,
        result=outcome.result.outcome,
    )

    if not outcome.authenticated:
        raise AuthenticationError("Invalid signature")

    if outcome.result.outcome == Outcome.FAILED:
        return WebhookResponse(success=False, error=outcome.result.detail)
    return WebhookResponse(success=True)


# =============================================================================
# Provisioning Routes
# =============================================================================

@app.get("/api/surge/capacity", response_model=CapacityResponse)
async def get_capacity(
    store: Store = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> CapacityResponse:
    """
    Current toll-free number usage against the global limit (0 = unlimited).
    """
    snapshot = capacity_snapshot(store, settings)
    return CapacityResponse(
        in_use=snapshot.in_use,
        max=snapshot.max,
        queued=snapshot.queued,
        unlimited=snapshot.unlimited,
    )


@app.post(
    "/api/surge/provision-number",
    response_model=ProvisionResponse,
    response_model_exclude_none=True,
    responses={**_ERRORS, 409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def provision_number(
    payload: ProvisionRequest,
    user_id: str = Depends(get_current_user_id),
    store: Store = Depends(get_store),
    carrier: CarrierClient = Depends(get_carrier),
    settings: Settings = Depends(get_app_settings),
) -> ProvisionResponse:
    """
    Purchase a toll-free number and submit its verification campaign.

    Returns {queued: true} instead when all numbers are in use.
    """
    info = parse_business_info(payload.businessInfo)
    require_owner(store, payload.businessId, user_id)

    result = await ProvisioningOrchestrator(store, carrier, settings).provision(payload.businessId, info)
    if result.queued:
        return ProvisionResponse(queued=True, message=result.message)
    return ProvisionResponse(from_number=result.from_number, status=result.status, message=result.message)


@app.post(
    "/api/surge/provisioning/drain",
    response_model=DrainResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(require_admin_token)],
)
async def drain_queue(
    store: Store = Depends(get_store),
    carrier: CarrierClient = Depends(get_carrier),
    settings: Settings = Depends(get_app_settings),
) -> DrainResponse:
    """
    Provision queued requests while capacity is available. Operator only.
    """
    if settings.capacity_unlimited:
        return DrainResponse(drained=0, message="Unlimited capacity; nothing to drain")
    drained = await QueueDrainWorker(store, carrier, settings).drain()
    return DrainResponse(drained=drained)


@app.post(
    "/api/surge/verification/resubmit",
    response_model=ResubmitResponse,
    responses={**_ERRORS, 409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def resubmit_verification(
    payload: ProvisionRequest,
    user_id: str = Depends(get_current_user_id),
    store: Store = Depends(get_store),
    carrier: CarrierClient = Depends(get_carrier),
    settings: Settings = Depends(get_app_settings),
) -> ResubmitResponse:
    """
    Submit a new verification campaign, e.g. after action_needed or disabled.
    """
    info = parse_business_info(payload.businessInfo)
    require_owner(store, payload.businessId, user_id)

    business = await ProvisioningOrchestrator(store, carrier, settings).resubmit(payload.businessId, info)
    return ResubmitResponse(status=business.verification_status, verification_id=business.verification_id)


# =============================================================================
# Verification Status Routes
# =============================================================================

@app.get("/api/surge/status", response_model=StatusResponse, responses=_ERRORS)
async def get_status(
    business_id: Annotated[str, Query(alias="businessId", min_length=1)],
    user_id: str = Depends(get_current_user_id),
    store: Store = Depends(get_store),
    carrier: CarrierClient = Depends(get_carrier),
) -> StatusResponse:
    """
    Live verification status for the caller's business; persists any change.

    Falls back to the stored status when the carrier lookup fails.
    """
    business = require_owner(store, business_id, user_id)

    if not business.from_number:
        return StatusResponse(status="not_provisioned", details="No SMS number provisioned yet")

    current, details = business.verification_status, None
    if business.carrier_account_id:
        try:
            refresh = await refresh_business_status(store, carrier, business)
            current, details = refresh.status, refresh.details
        except CarrierError as e:
            logger.error(f"Error getting capability status for {business_id}: {e.message}")

    business = store.get_business(business_id)
    return StatusResponse(
        status=current,
        details=details,
        from_number=business.from_number,
        last_error=business.last_verification_error,
    )


@app.post(
    "/api/surge/status/poll",
    response_model=PollResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def poll_status(
    store: Store = Depends(get_store),
    carrier: CarrierClient = Depends(get_carrier),
    settings: Settings = Depends(get_app_settings),
) -> PollResponse:
    """
    Reconcile pending verifications against the carrier. Scheduler only.
    """
    checked, updated = await StatusReconciler(store, carrier, settings).run()
    return PollResponse(checked=checked, updated=updated)


# =============================================================================
# Outbound SMS Route
# =============================================================================

@app.post(
    "/api/surge/sms/send",
    response_model=SendSmsResponse,
    responses={**_ERRORS, 409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def send_message(
    payload: SendSmsRequest,
    user_id: str = Depends(get_current_user_id),
    store: Store = Depends(get_store),
    carrier: CarrierClient = Depends(get_carrier),
) -> SendSmsResponse:
    """
    Send one SMS from the caller's verified toll-free number.
    """
    business = require_owner(store, payload.businessId, user_id)
    sent, to = await send_sms(store, carrier, business, payload.to, payload.body)
    return SendSmsResponse(message_id=sent.message_id, status=sent.status, to=to)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
