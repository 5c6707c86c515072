import asyncio
import logging
from contextlib import aclosing, asynccontextmanager
from typing import Annotated, Optional

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from sqlalchemy.orm import Session

from telecom.config import settings
from telecom.conversations import ConversationAssembler, compute_conversation_key
from telecom.errors import (
    InvalidParticipant,
    MessagingError,
    NotRecipient,
    StoreUnavailable,
    messaging_error_handler,
)
from telecom.logging_utils import RequestLoggingMiddleware, log_message_data, setup_logging
from telecom.message_store import MessageStore
from telecom.metrics import get_metrics, get_metrics_content_type
from telecom.schemas import (
    ContactCreate,
    ContactResponse,
    ContactsListResponse,
    ConversationResponse,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    SendMessageRequest,
    StatusUpdateResponse,
)
from telecom.status import DeliveryTracker
from telecom.storage import (
    add_contact,
    check_db_health,
    find_contact,
    get_db,
    init_db,
    list_contacts,
    remove_contact,
)
from telecom.utils import is_cell_digits


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, open the message store, wire the messaging services
    - Shutdown: close the message store, detaching any live listeners
    """
    init_db()

    store = MessageStore(settings.MESSAGE_STORE_URL)
    store.open()
    app.state.message_store = store
    app.state.assembler = ConversationAssembler(store, timeout=settings.STORE_TIMEOUT_SECONDS)
    app.state.tracker = DeliveryTracker(store, timeout=settings.STORE_TIMEOUT_SECONDS)
    try:
        yield
    finally:
        store.close()


app = FastAPI(
    title="Telecom API",
    description="Contacts and direct messaging for Ratatoing Nation",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
app.add_exception_handler(MessagingError, messaging_error_handler)


# =============================================================================
# Dependencies
# =============================================================================

def get_current_account(
    x_cell_digits: Annotated[str | None, Header(alias="X-Cell-Digits")] = None,
) -> str:
    """
    Resolve the calling account's cell digits.

    Authentication happens upstream; the authenticated account's cell digits
    arrive in the X-Cell-Digits header.
    """
    if not x_cell_digits:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Cell-Digits header required"
        )
    account = x_cell_digits.strip()
    if not is_cell_digits(account):
        raise InvalidParticipant(f"Invalid account cell digits: '{account}'")
    return account


def valid_counterpart(counterpart: str) -> str:
    counterpart = counterpart.strip()
    if not is_cell_digits(counterpart):
        raise InvalidParticipant(f"Invalid counterpart cell digits: '{counterpart}'")
    return counterpart


def get_assembler(request: Request) -> ConversationAssembler:
    return request.app.state.assembler


def get_tracker(request: Request) -> DeliveryTracker:
    return request.app.state.tracker


CurrentAccount = Annotated[str, Depends(get_current_account)]
Counterpart = Annotated[str, Depends(valid_counterpart)]
Assembler = Annotated[ConversationAssembler, Depends(get_assembler)]
Tracker = Annotated[DeliveryTracker, Depends(get_tracker)]


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. The contacts DB is reachable and its schema is applied
    2. The message store is open

    Otherwise returns 503 (Service Unavailable).
    """
    store: Optional[MessageStore] = getattr(request.app.state, "message_store", None)
    if store is None or not store.is_open:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Message store not open")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Contact Routes
# =============================================================================

@app.get("/contacts", response_model=ContactsListResponse)
async def get_contacts(
    account: CurrentAccount,
    assembler: Assembler,
    db: Session = Depends(get_db),
) -> ContactsListResponse:
    """
    List the caller's contacts with the last message and unread count of
    each conversation. Summaries are left empty if the message store is down.
    """
    contacts = list_contacts(db, account)

    data = []
    for contact in contacts:
        item = ContactResponse.model_validate(contact)
        try:
            summary = await assembler.summarize_async(account, contact.contact_cell_digits)
        except (StoreUnavailable, InvalidParticipant) as e:
            logger.warning(f"No summary for contact {contact.id}: {e.message}")
        else:
            item.last_message = summary.last_message
            item.last_message_time = summary.last_message_time
            item.unread_count = summary.unread_count
        data.append(item)

    logger.info(f"GET /contacts: returned {len(data)} contacts")
    return ContactsListResponse(data=data, total=len(data))


@app.post(
    "/contacts",
    response_model=ContactResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse, "description": "Already in contacts"}},
)
async def create_contact(
    body: ContactCreate,
    account: CurrentAccount,
    db: Session = Depends(get_db),
) -> ContactResponse:
    """Add a counterparty to the caller's contacts."""
    contact = add_contact(db, account, body.cell_digits, body.contact_name)
    return ContactResponse.model_validate(contact)


@app.delete(
    "/contacts/{contact_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse, "description": "Contact not found"}},
)
async def delete_contact(
    contact_id: int,
    account: CurrentAccount,
    db: Session = Depends(get_db),
) -> Response:
    """
    Remove one of the caller's contacts. The conversation itself is kept.
    """
    remove_contact(db, contact_id, owner=account)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get(
    "/conversations/{counterpart}/messages",
    response_model=ConversationResponse,
    responses={503: {"model": ErrorResponse, "description": "Message store unavailable"}},
)
async def get_conversation(
    request: Request,
    account: CurrentAccount,
    counterpart: Counterpart,
    assembler: Assembler,
    tracker: Tracker,
    limit: Annotated[Optional[int], Query(ge=1, le=100, description="Maximum number of messages to return")] = None,
    viewing: Annotated[Optional[bool], Query(description="true: thread is open, mark incoming read; false: mark incoming delivered")] = None,
) -> ConversationResponse:
    """
    Fetch the most recent messages of the conversation with ``counterpart``,
    ascending by timestamp.

    When ``viewing`` is given the caller is acknowledging what it received.
    Acknowledgement is best-effort: failures never fail the fetch, and the
    response shows the statuses as they were read.
    """
    limit = limit or settings.RECENT_MESSAGES_LIMIT
    messages = await assembler.fetch_recent_async(account, counterpart, limit)

    if viewing is not None:
        changed = await tracker.acknowledge_async(messages, account, thread_open=viewing)
        logger.debug(f"Acknowledged {changed} messages (viewing={viewing})")

    participants = compute_conversation_key(account, counterpart)
    log_message_data(request, participants=participants, result="fetched")
    logger.info(f"GET conversation {participants}: returned {len(messages)} messages (limit={limit})")

    return ConversationResponse(
        participants=participants,
        data=[MessageResponse.for_viewer(m, account) for m in messages],
        limit=limit,
    )


@app.post(
    "/conversations/{counterpart}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        422: {"model": ErrorResponse, "description": "Empty message"},
        503: {"model": ErrorResponse, "description": "Message store unavailable"},
    },
)
async def send_message(
    request: Request,
    body: SendMessageRequest,
    account: CurrentAccount,
    counterpart: Counterpart,
    assembler: Assembler,
    x_display_name: Annotated[str | None, Header(alias="X-Display-Name")] = None,
    db: Session = Depends(get_db),
) -> MessageResponse:
    """
    Send a message to ``counterpart``.

    A failed send creates no record; the client keeps its compose input and
    may retry. There is no automatic retry.
    """
    contact = find_contact(db, account, counterpart)
    recipient_name = contact.contact_name if contact is not None else None

    message = await assembler.send_message_async(
        account,
        counterpart,
        body.text,
        sender_name=x_display_name,
        recipient_name=recipient_name,
    )

    log_message_data(request, message_id=message.id, participants=message.participants, result="sent")
    return MessageResponse.for_viewer(message, account)


# =============================================================================
# Delivery/Read Routes
# =============================================================================

async def _update_status(
    request: Request,
    message_id: str,
    target: str,
    account: str,
    assembler: ConversationAssembler,
    tracker: DeliveryTracker,
) -> StatusUpdateResponse:
    message = await assembler.get_message_async(message_id)
    if message.recipient != account:
        raise NotRecipient(message_id)

    if target == "read":
        changed = await tracker.mark_read_async(message_id)
    else:
        changed = await tracker.mark_delivered_async(message_id)

    current = await assembler.get_message_async(message_id)
    log_message_data(
        request,
        message_id=message_id,
        participants=current.participants,
        result=target if changed else "noop",
    )
    return StatusUpdateResponse(message_id=message_id, status=current.status, changed=changed)


@app.post(
    "/messages/{message_id}/delivered",
    response_model=StatusUpdateResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Caller is not the recipient"},
        404: {"model": ErrorResponse, "description": "Message not found"},
        503: {"model": ErrorResponse, "description": "Status update failed"},
    },
)
async def mark_delivered(
    request: Request,
    message_id: str,
    account: CurrentAccount,
    assembler: Assembler,
    tracker: Tracker,
) -> StatusUpdateResponse:
    """Mark a received message delivered. No-op unless it is still ``sent``."""
    return await _update_status(request, message_id, "delivered", account, assembler, tracker)


@app.post(
    "/messages/{message_id}/read",
    response_model=StatusUpdateResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Caller is not the recipient"},
        404: {"model": ErrorResponse, "description": "Message not found"},
        503: {"model": ErrorResponse, "description": "Status update failed"},
    },
)
async def mark_read(
    request: Request,
    message_id: str,
    account: CurrentAccount,
    assembler: Assembler,
    tracker: Tracker,
) -> StatusUpdateResponse:
    """Mark a received message read. No-op once read."""
    return await _update_status(request, message_id, "read", account, assembler, tracker)


# =============================================================================
# Live Conversation Route
# =============================================================================

@app.websocket("/conversations/{counterpart}/live")
async def live_conversation(websocket: WebSocket, counterpart: str):
    """
    Push full conversation snapshots while the thread is open.

    The caller's cell digits come from the X-Cell-Digits header (or the
    ``cell_digits`` query parameter for browsers). Every snapshot is sent as
    ``{"type": "snapshot", "participants": ..., "data": [...]}``; incoming
    messages in it are then marked read. If the store fails the socket is
    closed with code 1011 and the client decides whether to reconnect.
    """
    await websocket.accept()

    account = (
        websocket.headers.get("x-cell-digits")
        or websocket.query_params.get("cell_digits")
        or ""
    ).strip()
    counterpart = counterpart.strip()
    if not is_cell_digits(account) or not is_cell_digits(counterpart):
        await websocket.close(code=1008, reason="Valid account and counterpart cell digits required")
        return

    assembler: ConversationAssembler = websocket.app.state.assembler
    tracker: DeliveryTracker = websocket.app.state.tracker
    participants = compute_conversation_key(account, counterpart)

    async def pump() -> None:
        async with aclosing(assembler.stream(account, counterpart)) as snapshots:
            async for snapshot in snapshots:
                await websocket.send_json({
                    "type": "snapshot",
                    "participants": participants,
                    "data": [
                        MessageResponse.for_viewer(m, account).model_dump(mode="json")
                        for m in snapshot
                    ],
                })
                await tracker.acknowledge_async(snapshot, account, thread_open=True)

    async def drain() -> None:
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info(f"Live client left {participants}")

    pump_task = asyncio.create_task(pump())
    drain_task = asyncio.create_task(drain())
    done, pending = await asyncio.wait({pump_task, drain_task}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    if pump_task in done and pump_task.exception() is not None:
        exc = pump_task.exception()
        if isinstance(exc, MessagingError):
            logger.error(f"Live conversation {participants} failed: {exc.message}")
            await websocket.close(code=1011, reason=exc.message)
        else:
            # Sending to a client that already went away
            logger.info(f"Live conversation {participants} ended: {exc!r}")


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
