"""Core SQLAlchemy models (2.x style) for contacts, events and uploaded cards.

Every row carries the owning user's identifier; all queries filter on it.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Industry(str, Enum):
    """Industries a contact can be filed under."""
    TECHNOLOGY = "Technology"
    CONSTRUCTION = "Construction"
    HEALTHCARE = "Healthcare"
    FINANCE = "Finance"
    REAL_ESTATE = "Real Estate"
    EDUCATION = "Education"
    MANUFACTURING = "Manufacturing"
    CONSULTING = "Consulting"
    MARKETING = "Marketing"
    SALES = "Sales"
    LEGAL = "Legal"
    OTHER = "Other"


class ProcessingStatus(str, Enum):
    """Processing states of an uploaded business card."""
    PENDING = "pending"
    PROCESSING = "processing"
    PENDING_VERIFICATION = "pending-verification"
    COMPLETED = "completed"
    FAILED = "failed"


class Event(Base):
    """Events (conferences, meetups) contacts were met at."""
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    location: Mapped[str | None] = mapped_column(String(255))
    date: Mapped[datetime | None] = mapped_column()
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    contacts: Mapped[list[Contact]] = relationship("Contact", back_populates="event")

    __table_args__ = (
        Index("ix_events_user_date", "user_id", "date"),
    )


class Contact(Base):
    """Contacts table."""
    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(100))
    company: Mapped[str | None] = mapped_column(String(255))
    title: Mapped[str | None] = mapped_column(String(255))
    industry: Mapped[str | None] = mapped_column(String(50))
    address: Mapped[str | None] = mapped_column(Text)
    website: Mapped[str | None] = mapped_column(String(500))
    notes: Mapped[str | None] = mapped_column(Text)
    tags: Mapped[list[str] | None] = mapped_column(JSON)
    event_id: Mapped[int | None] = mapped_column(ForeignKey("events.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    event: Mapped[Event | None] = relationship("Event", back_populates="contacts")
    business_cards: Mapped[list[BusinessCard]] = relationship("BusinessCard", back_populates="contact")

    __table_args__ = (
        Index("ix_contacts_user_created_at", "user_id", "created_at"),
        Index("ix_contacts_user_industry", "user_id", "industry"),
    )


class BusinessCard(Base):
    """Uploaded business-card images and their processing state."""
    __tablename__ = "business_cards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    original_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    ocr_text: Mapped[str | None] = mapped_column(Text)
    extracted_data: Mapped[dict | None] = mapped_column(JSON)
    processing_status: Mapped[str] = mapped_column(
        String(32),
        default=ProcessingStatus.PENDING.value,
        nullable=False,
        index=True,
    )
    processing_error: Mapped[str | None] = mapped_column(Text)
    ocr_confidence: Mapped[float | None] = mapped_column(Float)
    ai_confidence: Mapped[float | None] = mapped_column(Float)
    contact_id: Mapped[int | None] = mapped_column(ForeignKey("contacts.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    # Relationship
    contact: Mapped[Contact | None] = relationship("Contact", back_populates="business_cards")

    __table_args__ = (
        Index("ix_business_cards_user_created_at", "user_id", "created_at"),
        Index("ix_business_cards_user_status", "user_id", "processing_status"),
    )
