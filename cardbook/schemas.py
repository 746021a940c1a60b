"""Pydantic request/response models for the HTTP API.

Wire format is camelCase; Python attributes stay snake_case.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from . import models
from .models import Industry


class CamelModel(BaseModel):
    """Base model with camelCase aliases."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True)


class HealthResponse(CamelModel):
    """Health check response."""
    status: str
    version: str


class FieldErrorDTO(CamelModel):
    """Single field-level validation message."""
    field: str
    message: str


class ErrorResponse(CamelModel):
    """Error response."""
    error: str
    detail: str | None = None
    errors: list[FieldErrorDTO] | None = None


class MessageResponse(CamelModel):
    message: str


# --- Contacts -----------------------------------------------------------------


class ContactFields(CamelModel):
    """Editable contact fields shared by create and verify requests."""
    name: str = Field(min_length=1, max_length=255)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=100)
    company: str | None = Field(default=None, max_length=255)
    title: str | None = Field(default=None, max_length=255)
    industry: Industry | None = None
    address: str | None = None
    website: str | None = Field(default=None, max_length=500)
    notes: str | None = None
    tags: list[str] | None = None
    event_id: int | None = None


class ContactCreate(ContactFields):
    """Create contact request."""
    pass


class ContactUpdate(CamelModel):
    """Partial contact update; only fields present in the body are changed."""
    name: str | None = Field(default=None, min_length=1, max_length=255)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=100)
    company: str | None = Field(default=None, max_length=255)
    title: str | None = Field(default=None, max_length=255)
    industry: Industry | None = None
    address: str | None = None
    website: str | None = Field(default=None, max_length=500)
    notes: str | None = None
    tags: list[str] | None = None
    event_id: int | None = None

    @model_validator(mode="after")
    def name_not_cleared(self) -> ContactUpdate:
        if "name" in self.model_fields_set and self.name is None:
            raise ValueError("name cannot be null")
        return self


class ContactDTO(CamelModel):
    """Contact as returned by the API."""
    id: int
    name: str
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    title: str | None = None
    industry: str | None = None
    address: str | None = None
    website: str | None = None
    notes: str | None = None
    tags: list[str] | None = None
    event_id: int | None = None
    created_at: datetime
    updated_at: datetime


class ContactListResponse(CamelModel):
    """Paginated contact list."""
    contacts: list[ContactDTO]
    total_count: int
    has_more: bool


class ContactSearchResponse(CamelModel):
    """Search or filter results."""
    contacts: list[ContactDTO]


# --- Business cards -----------------------------------------------------------


class UploadCardResponse(CamelModel):
    """Business-card upload response."""
    id: int
    filename: str
    status: str
    message: str


class CardStatusResponse(CamelModel):
    """Processing status of one uploaded card."""
    id: int
    filename: str
    status: str
    contact_id: int | None = None
    processing_error: str | None = None
    ocr_confidence: float | None = None
    ai_confidence: float | None = None
    extracted_data: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime


class BusinessCardDTO(CamelModel):
    """Uploaded card as listed in recent uploads."""
    id: int
    filename: str
    ocr_text: str | None = None
    extracted_data: dict[str, Any] | None = None
    processing_status: str
    processing_error: str | None = None
    ocr_confidence: float | None = None
    ai_confidence: float | None = None
    contact_id: int | None = None
    created_at: datetime
    updated_at: datetime


class PaginationDTO(CamelModel):
    page: int
    limit: int
    total_count: int
    total_pages: int
    has_next: bool
    has_prev: bool


class RecentCardsResponse(CamelModel):
    data: list[BusinessCardDTO]
    pagination: PaginationDTO


class CardListResponse(CamelModel):
    data: list[BusinessCardDTO]


class VerifyCardResponse(CamelModel):
    message: str
    contact: ContactDTO


# --- Events -------------------------------------------------------------------


def _naive_utc(value: datetime | None) -> datetime | None:
    # Timestamp columns hold naive UTC.
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class EventCreate(CamelModel):
    """Create event request."""
    name: str = Field(min_length=1, max_length=255)
    location: str | None = Field(default=None, max_length=255)
    date: datetime | None = None
    notes: str | None = None

    @field_validator("date")
    @classmethod
    def date_to_utc(cls, v: datetime | None) -> datetime | None:
        return _naive_utc(v)


class EventUpdate(CamelModel):
    """Partial event update."""
    name: str | None = Field(default=None, min_length=1, max_length=255)
    location: str | None = Field(default=None, max_length=255)
    date: datetime | None = None
    notes: str | None = None

    @field_validator("date")
    @classmethod
    def date_to_utc(cls, v: datetime | None) -> datetime | None:
        return _naive_utc(v)

    @model_validator(mode="after")
    def name_not_cleared(self) -> EventUpdate:
        if "name" in self.model_fields_set and self.name is None:
            raise ValueError("name cannot be null")
        return self


class EventDTO(CamelModel):
    """Event as returned by the API."""
    id: int
    name: str
    location: str | None = None
    date: datetime | None = None
    notes: str | None = None
    created_at: datetime
    updated_at: datetime


class EventListResponse(CamelModel):
    events: list[EventDTO]
    total_count: int
    has_more: bool


class StatsResponse(CamelModel):
    """Dashboard statistics."""
    total_contacts: int
    cards_processed: int
    categories: int
    accuracy: float


# --- Mappers ------------------------------------------------------------------


def contact_to_dto(contact: models.Contact) -> ContactDTO:
    return ContactDTO(
        id=contact.id,
        name=contact.name,
        email=contact.email,
        phone=contact.phone,
        company=contact.company,
        title=contact.title,
        industry=contact.industry,
        address=contact.address,
        website=contact.website,
        notes=contact.notes,
        tags=contact.tags,
        event_id=contact.event_id,
        created_at=contact.created_at,
        updated_at=contact.updated_at,
    )


def card_to_dto(card: models.BusinessCard) -> BusinessCardDTO:
    return BusinessCardDTO(
        id=card.id,
        filename=card.filename,
        ocr_text=card.ocr_text,
        extracted_data=card.extracted_data,
        processing_status=card.processing_status,
        processing_error=card.processing_error,
        ocr_confidence=card.ocr_confidence,
        ai_confidence=card.ai_confidence,
        contact_id=card.contact_id,
        created_at=card.created_at,
        updated_at=card.updated_at,
    )


def card_to_status(card: models.BusinessCard) -> CardStatusResponse:
    return CardStatusResponse(
        id=card.id,
        filename=card.filename,
        status=card.processing_status,
        contact_id=card.contact_id,
        processing_error=card.processing_error,
        ocr_confidence=card.ocr_confidence,
        ai_confidence=card.ai_confidence,
        extracted_data=card.extracted_data,
        created_at=card.created_at,
        updated_at=card.updated_at,
    )


def event_to_dto(event: models.Event) -> EventDTO:
    return EventDTO(
        id=event.id,
        name=event.name,
        location=event.location,
        date=event.date,
        notes=event.notes,
        created_at=event.created_at,
        updated_at=event.updated_at,
    )
