"""FastAPI app: contacts, events, business-card upload/verification, search, stats.

Every route except health and service info requires the caller identity
forwarded by the auth gateway; all store calls are scoped by it.
"""
from __future__ import annotations

import asyncio
import logging
import math
import mimetypes
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import Depends, FastAPI, File, Query, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ai.extraction import OpenAIContactExtractor
from ai.query import OpenAIQueryInterpreter, QueryInterpreter

from . import models, storage
from .auth import get_current_user_id
from .config import settings
from .db import AsyncSessionMaker, get_session
from .errors import AppError, NotFoundError, RequestValidationFailed
from .logging_config import setup_logging
from .ocr import TesseractTextExtractor
from .pipelines.ingest import CardIngestionPipeline, verify_business_card
from .pipelines.runner import IngestionRunner, recover_stale_cards
from .schemas import (
    CardListResponse,
    CardStatusResponse,
    ContactCreate,
    ContactDTO,
    ContactListResponse,
    ContactSearchResponse,
    ContactUpdate,
    ErrorResponse,
    EventCreate,
    EventDTO,
    EventListResponse,
    EventUpdate,
    FieldErrorDTO,
    HealthResponse,
    MessageResponse,
    PaginationDTO,
    RecentCardsResponse,
    StatsResponse,
    UploadCardResponse,
    VerifyCardResponse,
    card_to_dto,
    card_to_status,
    contact_to_dto,
    event_to_dto,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    setup_logging()
    logger.info(f"{settings.app_name} v{settings.version} starting up")

    pipeline = CardIngestionPipeline(
        session_maker=AsyncSessionMaker,
        text_extractor=TesseractTextExtractor(),
        contact_extractor=OpenAIContactExtractor(),
    )
    runner = IngestionRunner(pipeline)
    app.state.ingestion_runner = runner
    app.state.query_interpreter = OpenAIQueryInterpreter()

    try:
        await recover_stale_cards(
            AsyncSessionMaker,
            stale_after_minutes=settings.ingestion.stale_processing_minutes,
        )
    except Exception:
        logger.exception("Stale business-card recovery failed")

    yield

    # Shutdown
    await runner.shutdown(settings.ingestion.shutdown_grace_seconds)
    logger.info("Application shutting down")


app = FastAPI(
    title="Cardbook",
    version=settings.version,
    description="Business-card scanning with AI contact extraction and natural-language search",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_ingestion_runner(request: Request) -> IngestionRunner:
    return request.app.state.ingestion_runner


def get_query_interpreter(request: Request) -> QueryInterpreter:
    return request.app.state.query_interpreter


# Exception handlers
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    """Handle errors raised deliberately by handlers and dependencies."""
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    errors = [FieldErrorDTO(field=exc.field, message=exc.message)] if exc.field else None
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.code, detail=exc.message, errors=errors).model_dump(
            by_alias=True,
            exclude_none=True,
        ),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    """Report malformed input as 400 with one message per field."""
    errors = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ())]
        if loc and loc[0] in ("body", "query", "path", "header"):
            loc = loc[1:]
        errors.append(FieldErrorDTO(field=".".join(loc) or "request", message=error.get("msg", "Invalid value")))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(error="validation_error", detail="Validation failed", errors=errors).model_dump(
            by_alias=True,
        ),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    """Hide internals of unexpected failures from the caller."""
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(error="internal_error", detail="Internal server error").model_dump(
            by_alias=True,
            exclude_none=True,
        ),
    )


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        version=settings.version,
    )


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "contacts": "/api/contacts",
            "search_contacts": "/api/contacts/search?q=",
            "upload_business_card": "/api/business-cards/upload",
            "business_card_status": "/api/business-cards/{card_id}/status",
            "verify_business_card": "/api/business-cards/{card_id}/verify",
            "recent_business_cards": "/api/business-cards/recent",
            "events": "/api/events",
            "stats": "/api/stats",
            "docs": "/docs",
        },
    }


async def _ensure_event_owned(session: AsyncSession, event_id: int | None, user_id: str) -> None:
    if event_id is None:
        return
    if await storage.get_event(session, event_id, user_id) is None:
        raise RequestValidationFailed("Event not found", field="eventId")


# --- Contacts -----------------------------------------------------------------


@app.get("/api/contacts/search", response_model=ContactSearchResponse)
async def search_contacts(
    q: str = Query(..., description="Natural-language question about contacts"),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    interpreter: QueryInterpreter = Depends(get_query_interpreter),
) -> ContactSearchResponse:
    """Search contacts with a natural-language query.

    The query is turned into structured criteria by the language model; if
    that fails, every contact of the user is returned.
    """
    query = q.strip()
    if not query:
        raise RequestValidationFailed("Query parameter is required", field="q")

    criteria = await interpreter.interpret(query)
    contacts = await storage.search_contacts(session, criteria, user_id)
    return ContactSearchResponse(contacts=[contact_to_dto(c) for c in contacts])


@app.get("/api/contacts/industry/{industry}", response_model=ContactSearchResponse)
async def list_contacts_by_industry(
    industry: models.Industry,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> ContactSearchResponse:
    contacts = await storage.list_contacts_by_industry(session, industry.value, user_id)
    return ContactSearchResponse(contacts=[contact_to_dto(c) for c in contacts])


@app.get("/api/contacts", response_model=ContactListResponse)
async def list_contacts(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> ContactListResponse:
    """List contacts newest first."""
    contacts = await storage.list_contacts(session, user_id, limit=limit, offset=offset)
    total_count = await storage.count_contacts(session, user_id)
    return ContactListResponse(
        contacts=[contact_to_dto(c) for c in contacts],
        total_count=total_count,
        has_more=offset + len(contacts) < total_count,
    )


@app.get("/api/contacts/{contact_id}", response_model=ContactDTO)
async def get_contact(
    contact_id: int,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> ContactDTO:
    contact = await storage.get_contact(session, contact_id, user_id)
    if contact is None:
        raise NotFoundError("Contact not found")
    return contact_to_dto(contact)


@app.post("/api/contacts", response_model=ContactDTO, status_code=status.HTTP_201_CREATED)
async def create_contact(
    request: ContactCreate,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> ContactDTO:
    await _ensure_event_owned(session, request.event_id, user_id)
    contact = await storage.create_contact(session, user_id, request.model_dump())
    logger.info(f"Created contact {contact.id}")
    return contact_to_dto(contact)


@app.put("/api/contacts/{contact_id}", response_model=ContactDTO)
async def update_contact(
    contact_id: int,
    request: ContactUpdate,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> ContactDTO:
    """Update the fields present in the body."""
    updates = request.model_dump(exclude_unset=True)
    if "event_id" in updates:
        await _ensure_event_owned(session, updates["event_id"], user_id)

    contact = await storage.update_contact(session, contact_id, user_id, updates)
    if contact is None:
        raise NotFoundError("Contact not found")
    return contact_to_dto(contact)


@app.delete("/api/contacts/{contact_id}", response_model=MessageResponse)
async def delete_contact(
    contact_id: int,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> MessageResponse:
    if not await storage.delete_contact(session, contact_id, user_id):
        raise NotFoundError("Contact not found")
    logger.info(f"Deleted contact {contact_id}")
    return MessageResponse(message="Contact deleted successfully")


# --- Business cards -----------------------------------------------------------


def _storage_name(filename: str, content_type: str) -> str:
    suffix = mimetypes.guess_extension(content_type) or Path(filename).suffix.lower()
    return f"{uuid.uuid4().hex}{suffix}"


@app.post(
    "/api/business-cards/upload",
    response_model=UploadCardResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_business_card(
    business_card: UploadFile = File(..., alias="businessCard", description="Card image (JPG, PNG, GIF, BMP, WEBP) or PDF"),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    runner: IngestionRunner = Depends(get_ingestion_runner),
) -> UploadCardResponse:
    """Store an uploaded card and start processing it in the background.

    The response is returned as soon as the card record exists; poll the
    status endpoint for the outcome.
    """
    try:
        if not business_card.filename:
            raise RequestValidationFailed("No file uploaded", field="businessCard")

        content_type = (business_card.content_type or "").lower()
        if content_type not in settings.upload.allowed_content_types:
            raise RequestValidationFailed(
                "Invalid file type. Only JPG, PNG, GIF, BMP, WEBP, and PDF files are allowed.",
                field="businessCard",
            )

        content = await business_card.read(settings.upload.max_bytes + 1)
        if len(content) > settings.upload.max_bytes:
            raise RequestValidationFailed(
                f"File too large. Maximum size is {settings.upload.max_bytes // (1024 * 1024)} MB.",
                field="businessCard",
            )
        if not content:
            raise RequestValidationFailed("Uploaded file is empty", field="businessCard")
    finally:
        await business_card.close()

    logger.info(f"Received business card upload: {business_card.filename}")

    upload_dir = Path(settings.upload.dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    file_path = upload_dir / _storage_name(business_card.filename, content_type)
    await asyncio.to_thread(file_path.write_bytes, content)

    try:
        card = await storage.create_business_card(
            session,
            user_id,
            filename=business_card.filename,
            original_path=str(file_path),
            processing_status=models.ProcessingStatus.PROCESSING,
        )
    except Exception:
        # No card row points at the file
        file_path.unlink(missing_ok=True)
        raise

    runner.submit(card.id, str(file_path), user_id)

    return UploadCardResponse(
        id=card.id,
        filename=card.filename,
        status=models.ProcessingStatus.PROCESSING.value,
        message="Business card uploaded and processing started",
    )


@app.get("/api/business-cards/recent", response_model=RecentCardsResponse)
async def recent_business_cards(
    page: int = Query(1, ge=1),
    limit: int = Query(5, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> RecentCardsResponse:
    """Recent uploads, newest first, with page-based pagination."""
    offset = (page - 1) * limit
    cards = await storage.list_recent_business_cards(session, user_id, limit=limit, offset=offset)
    total_count = await storage.count_business_cards(session, user_id)
    total_pages = math.ceil(total_count / limit)

    return RecentCardsResponse(
        data=[card_to_dto(c) for c in cards],
        pagination=PaginationDTO(
            page=page,
            limit=limit,
            total_count=total_count,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        ),
    )


@app.get("/api/business-cards", response_model=CardListResponse)
async def business_cards_by_status(
    status_filter: models.ProcessingStatus = Query(..., alias="status"),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> CardListResponse:
    """Cards in one processing state, e.g. the verification queue."""
    cards = await storage.list_business_cards_by_status(session, status_filter, user_id)
    return CardListResponse(data=[card_to_dto(c) for c in cards])


@app.get("/api/business-cards/{card_id}/status", response_model=CardStatusResponse)
async def business_card_status(
    card_id: int,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> CardStatusResponse:
    card = await storage.get_business_card(session, card_id, user_id)
    if card is None:
        raise NotFoundError("Business card not found")
    return card_to_status(card)


@app.post("/api/business-cards/{card_id}/verify", response_model=VerifyCardResponse)
async def verify_card(
    card_id: int,
    request: ContactCreate,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> VerifyCardResponse:
    """Create a contact from human-checked fields and complete the card."""
    await _ensure_event_owned(session, request.event_id, user_id)

    verified = await verify_business_card(session, card_id, user_id, request.model_dump())
    if verified is None:
        raise NotFoundError("Business card not found")

    _, contact = verified
    return VerifyCardResponse(
        message="Contact verified and created successfully",
        contact=contact_to_dto(contact),
    )


@app.get("/api/stats", response_model=StatsResponse)
async def stats(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> StatsResponse:
    user_stats = await storage.get_stats(session, user_id, accuracy=settings.ingestion.reported_accuracy)
    return StatsResponse(
        total_contacts=user_stats.total_contacts,
        cards_processed=user_stats.cards_processed,
        categories=user_stats.categories,
        accuracy=user_stats.accuracy,
    )


# --- Events -------------------------------------------------------------------


@app.get("/api/events", response_model=EventListResponse)
async def list_events(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> EventListResponse:
    events = await storage.list_events(session, user_id, limit=limit, offset=offset)
    total_count = await storage.count_events(session, user_id)
    return EventListResponse(
        events=[event_to_dto(e) for e in events],
        total_count=total_count,
        has_more=offset + len(events) < total_count,
    )


@app.get("/api/events/{event_id}", response_model=EventDTO)
async def get_event(
    event_id: int,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> EventDTO:
    event = await storage.get_event(session, event_id, user_id)
    if event is None:
        raise NotFoundError("Event not found")
    return event_to_dto(event)


@app.get("/api/events/{event_id}/contacts", response_model=ContactSearchResponse)
async def event_contacts(
    event_id: int,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> ContactSearchResponse:
    """Contacts met at an event."""
    if await storage.get_event(session, event_id, user_id) is None:
        raise NotFoundError("Event not found")
    contacts = await storage.list_contacts_for_event(session, event_id, user_id)
    return ContactSearchResponse(contacts=[contact_to_dto(c) for c in contacts])


@app.post("/api/events", response_model=EventDTO, status_code=status.HTTP_201_CREATED)
async def create_event(
    request: EventCreate,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> EventDTO:
    event = await storage.create_event(session, user_id, request.model_dump())
    logger.info(f"Created event {event.id}")
    return event_to_dto(event)


@app.put("/api/events/{event_id}", response_model=EventDTO)
async def update_event(
    event_id: int,
    request: EventUpdate,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> EventDTO:
    event = await storage.update_event(session, event_id, user_id, request.model_dump(exclude_unset=True))
    if event is None:
        raise NotFoundError("Event not found")
    return event_to_dto(event)


@app.delete("/api/events/{event_id}", response_model=MessageResponse)
async def delete_event(
    event_id: int,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> MessageResponse:
    """Delete an event; its contacts are kept and detached."""
    if not await storage.delete_event(session, event_id, user_id):
        raise NotFoundError("Event not found")
    logger.info(f"Deleted event {event_id}")
    return MessageResponse(message="Event deleted successfully")
