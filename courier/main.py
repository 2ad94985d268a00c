import json
import logging
import math
from contextlib import asynccontextmanager
from typing import Annotated, Optional

import aiohttp
from fastapi import (
    Depends,
    FastAPI,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from courier.config import settings
from courier.errors import CourierError, MalformedPayloadError, NotFoundError
from courier.ingest import WebhookIngester
from courier.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from courier.metrics import record_webhook_event, get_metrics, get_metrics_content_type
from courier.realtime import RealtimeNotifier
from courier.schemas import (
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    MessagesPageResponse,
    SendResponse,
    SendToNumberRequest,
    SendToUserRequest,
    WebhookResponse,
)
from courier.sender import MessageSender
from courier.status import StatusReconciler
from courier.storage import Directory, MessageStore, init_db, check_db_health, get_db
from courier.transport import Transport, WhatsAppTransport
from courier.utils import normalize_phone, parse_positive_int


setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

realtime_notifier = RealtimeNotifier()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    - Startup: create tables and open the shared HTTP session for the transport
    - Shutdown: close the HTTP session
    """
    init_db()
    timeout = aiohttp.ClientTimeout(total=settings.TRANSPORT_TIMEOUT_SECONDS)
    app.state.http_session = aiohttp.ClientSession(timeout=timeout)
    yield
    await app.state.http_session.close()


app = FastAPI(
    title="Courier",
    description="WhatsApp message delivery-status reconciliation service",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(CourierError)
async def courier_error_handler(request: Request, exc: CourierError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    else:
        logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid request data"},
    )


# =============================================================================
# Dependencies
# =============================================================================

def get_notifier() -> RealtimeNotifier:
    return realtime_notifier


def get_transport(request: Request) -> Transport:
    return WhatsAppTransport(
        session=request.app.state.http_session,
        access_token=settings.WHATSAPP_ACCESS_TOKEN,
        phone_number_id=settings.WHATSAPP_PHONE_NUMBER_ID,
        api_version=settings.WHATSAPP_API_VERSION,
        base_url=settings.WHATSAPP_API_URL,
    )


def get_ingester(db: Session = Depends(get_db)) -> WebhookIngester:
    store = MessageStore(db)
    reconciler = StatusReconciler(store, max_retries=settings.STATUS_UPDATE_MAX_RETRIES)
    return WebhookIngester(store, Directory(db), reconciler)


def get_sender(
    db: Session = Depends(get_db),
    transport: Transport = Depends(get_transport),
    notifier: RealtimeNotifier = Depends(get_notifier),
) -> MessageSender:
    return MessageSender(MessageStore(db), Directory(db), transport, notifier)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the verify token is set and the
    database is reachable with its schema applied. Otherwise 503.
    """
    if not settings.WEBHOOK_VERIFY_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WEBHOOK_VERIFY_TOKEN not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@app.get("/webhook", responses={403: {"description": "Forbidden"}})
async def verify_webhook(
    mode: Annotated[Optional[str], Query(alias="hub.mode")] = None,
    token: Annotated[Optional[str], Query(alias="hub.verify_token")] = None,
    challenge: Annotated[Optional[str], Query(alias="hub.challenge")] = None,
):
    """
    Answer the provider's subscription handshake with the challenge as an
    integer when the mode is "subscribe", the token matches and the challenge
    is numeric. Anything else is forbidden.
    """
    if mode == "subscribe" and token == settings.WEBHOOK_VERIFY_TOKEN:
        try:
            return int(challenge)
        except (TypeError, ValueError):
            logger.warning(f"Webhook verification with non-numeric challenge: {challenge!r}")
    else:
        logger.warning(f"Webhook verification rejected: mode={mode}")
    return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)


def _parse_json(raw_body: bytes):
    try:
        return json.loads(raw_body)
    except ValueError as e:
        raise MalformedPayloadError(f"Invalid JSON: {e}")


@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={400: {"model": ErrorResponse, "description": "Invalid webhook payload"}},
)
async def receive_webhook(
    request: Request,
    ingester: WebhookIngester = Depends(get_ingester),
) -> WebhookResponse:
    """
    Ingest one provider delivery of inbound messages or status callbacks.

    Every recognized delivery answers 200, including deliveries whose events
    changed nothing (duplicates, stale statuses, untracked messages, other
    event kinds). Malformed envelopes answer 400 and are not retried.
    """
    raw_body = await request.body()
    try:
        result = ingester.ingest(_parse_json(raw_body))
    except MalformedPayloadError as e:
        logger.error(f"Rejected webhook payload: {e}")
        record_webhook_event("payload", "malformed")
        log_webhook_data(request, result="malformed")
        raise MalformedPayloadError("Invalid webhook payload")

    log_webhook_data(request, result="processed", events=result.as_log_data())
    return WebhookResponse(status="ok")


# =============================================================================
# Send Routes
# =============================================================================

@app.post(
    "/messages/send/user/{user_id}",
    response_model=SendResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Message content cannot be empty"},
        404: {"model": ErrorResponse, "description": "User not found"},
        502: {"model": ErrorResponse, "description": "Transport failure"},
    },
)
async def send_to_user(
    user_id: int,
    request_body: SendToUserRequest,
    sender: MessageSender = Depends(get_sender),
) -> SendResponse:
    """Send a text message to an existing user and store the sender copy."""
    key = await sender.send_to_user(user_id, request_body.message)
    return SendResponse(message_id=key)


@app.post(
    "/messages/send/number",
    response_model=SendResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Contact number and message are required"},
        502: {"model": ErrorResponse, "description": "Transport failure"},
    },
)
async def send_to_number(
    request_body: SendToNumberRequest,
    sender: MessageSender = Depends(get_sender),
) -> SendResponse:
    """
    Send a text message to a phone number. Unknown numbers get a provisional
    user. Stores the sender/receiver pair and pushes the receiver copy to
    realtime observers.
    """
    key = await sender.send(request_body.contact_no, request_body.message)
    return SendResponse(message_id=key)


# =============================================================================
# Listing Routes
# =============================================================================

def _build_page(store: MessageStore, user_id: int, page: Optional[str], limit: Optional[str]) -> MessagesPageResponse:
    page_number = parse_positive_int(page, 1)
    page_size = parse_positive_int(limit, settings.DEFAULT_PAGE_SIZE)
    messages, total = store.list_by_user(user_id, page_number, page_size)
    return MessagesPageResponse(
        messages=[MessageResponse.model_validate(m) for m in messages],
        total=total,
        page=page_number,
        limit=page_size,
        total_pages=math.ceil(total / page_size),
    )


@app.get("/messages/number/{contact_no}", response_model=MessagesPageResponse)
async def list_messages_by_number(
    contact_no: str,
    page: Annotated[Optional[str], Query(description="1-indexed page number")] = None,
    limit: Annotated[Optional[str], Query(description="Messages per page")] = None,
    db: Session = Depends(get_db),
) -> MessagesPageResponse:
    """List a contact's messages, newest first, resolving the user by phone number."""
    user = Directory(db).get_by_phone(normalize_phone(contact_no))
    if user is None:
        raise NotFoundError("User not found")
    return _build_page(MessageStore(db), user.id, page, limit)


@app.get("/messages/{user_id}", response_model=MessagesPageResponse)
async def list_messages(
    user_id: int,
    page: Annotated[Optional[str], Query(description="1-indexed page number")] = None,
    limit: Annotated[Optional[str], Query(description="Messages per page")] = None,
    db: Session = Depends(get_db),
) -> MessagesPageResponse:
    """
    List a user's messages, newest first.

    Invalid or non-positive page/limit values fall back to 1 and
    DEFAULT_PAGE_SIZE respectively.
    """
    logger.info(f"GET /messages/{user_id}: page={page}, limit={limit}")
    return _build_page(MessageStore(db), user_id, page, limit)


# =============================================================================
# Realtime Route
# =============================================================================

@app.websocket("/ws")
async def realtime(websocket: WebSocket, notifier: RealtimeNotifier = Depends(get_notifier)):
    """Observers receive a "new_message" event for every completed send."""
    await notifier.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        notifier.disconnect(websocket)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
