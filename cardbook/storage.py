"""Scoped persistence for contacts, events and uploaded business cards.

Every function takes the owning user's identifier and filters on it; rows of
other users are indistinguishable from missing rows. Each mutating function
commits its own transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from . import models
from .criteria import (
    AllOf,
    AnyOf,
    AtLeast,
    AtMost,
    Contains,
    CriteriaField,
    Equals,
    Predicate,
    SearchCriteria,
)

logger = logging.getLogger(__name__)


_CRITERIA_COLUMNS = {
    CriteriaField.NAME: models.Contact.name,
    CriteriaField.EMAIL: models.Contact.email,
    CriteriaField.COMPANY: models.Contact.company,
    CriteriaField.TITLE: models.Contact.title,
    CriteriaField.INDUSTRY: models.Contact.industry,
    CriteriaField.CREATED_AT: models.Contact.created_at,
}


@dataclass
class UserStats:
    """Dashboard counters for one user."""
    total_contacts: int
    cards_processed: int
    categories: int
    accuracy: float


# --- Contacts -----------------------------------------------------------------


async def create_contact(
    session: AsyncSession,
    user_id: str,
    fields: Mapping[str, Any],
) -> models.Contact:
    """Insert a contact owned by ``user_id``."""
    contact = models.Contact(**dict(fields), user_id=user_id)
    session.add(contact)
    await session.commit()
    await session.refresh(contact)
    logger.debug(f"Created contact {contact.id} for user {user_id}")
    return contact


async def get_contact(session: AsyncSession, contact_id: int, user_id: str) -> models.Contact | None:
    query = select(models.Contact).where(
        models.Contact.id == contact_id,
        models.Contact.user_id == user_id,
    )
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def list_contacts(
    session: AsyncSession,
    user_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
) -> list[models.Contact]:
    """Page through a user's contacts, newest first."""
    query = (
        select(models.Contact)
        .where(models.Contact.user_id == user_id)
        .order_by(models.Contact.created_at.desc(), models.Contact.id.desc())
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(query)
    return list(result.scalars().all())


async def count_contacts(session: AsyncSession, user_id: str) -> int:
    query = select(func.count()).select_from(models.Contact).where(models.Contact.user_id == user_id)
    return (await session.execute(query)).scalar_one()


async def list_contacts_by_industry(
    session: AsyncSession,
    industry: str,
    user_id: str,
) -> list[models.Contact]:
    query = (
        select(models.Contact)
        .where(models.Contact.industry == industry, models.Contact.user_id == user_id)
        .order_by(models.Contact.created_at.desc(), models.Contact.id.desc())
    )
    result = await session.execute(query)
    return list(result.scalars().all())


async def list_contacts_for_event(
    session: AsyncSession,
    event_id: int,
    user_id: str,
) -> list[models.Contact]:
    query = (
        select(models.Contact)
        .where(models.Contact.event_id == event_id, models.Contact.user_id == user_id)
        .order_by(models.Contact.created_at.desc(), models.Contact.id.desc())
    )
    result = await session.execute(query)
    return list(result.scalars().all())


async def update_contact(
    session: AsyncSession,
    contact_id: int,
    user_id: str,
    updates: Mapping[str, Any],
) -> models.Contact | None:
    """Apply a partial update; returns None when no owned row matches."""
    contact = await get_contact(session, contact_id, user_id)
    if contact is None:
        return None

    for key, value in updates.items():
        setattr(contact, key, value)
    contact.updated_at = datetime.utcnow()

    await session.commit()
    await session.refresh(contact)
    return contact


async def delete_contact(session: AsyncSession, contact_id: int, user_id: str) -> bool:
    """Delete a contact after detaching any business cards that produced it."""
    await session.execute(
        update(models.BusinessCard)
        .where(
            models.BusinessCard.contact_id == contact_id,
            models.BusinessCard.user_id == user_id,
        )
        .values(contact_id=None, updated_at=datetime.utcnow())
    )
    result = await session.execute(
        delete(models.Contact).where(
            models.Contact.id == contact_id,
            models.Contact.user_id == user_id,
        )
    )
    await session.commit()
    return (result.rowcount or 0) > 0


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def compile_predicate(predicate: Predicate | None) -> ColumnElement[bool] | None:
    """Translate a criteria predicate into a SQL condition.

    Returns None for predicates that reduce to nothing; callers treat that
    as "no filter".
    """
    if predicate is None:
        return None

    if isinstance(predicate, (AllOf, AnyOf)):
        parts = [c for c in (compile_predicate(p) for p in predicate.predicates) if c is not None]
        if not parts:
            return None
        if len(parts) == 1:
            return parts[0]
        return and_(*parts) if isinstance(predicate, AllOf) else or_(*parts)

    column = _CRITERIA_COLUMNS.get(predicate.field)
    if column is None:
        return None

    if isinstance(predicate, Equals):
        return column == predicate.value
    if isinstance(predicate, Contains):
        return column.ilike(f"%{_escape_like(predicate.value)}%", escape="\\")
    if isinstance(predicate, AtLeast):
        return column >= predicate.value
    if isinstance(predicate, AtMost):
        return column <= predicate.value
    return None


async def search_contacts(
    session: AsyncSession,
    criteria: SearchCriteria,
    user_id: str,
) -> list[models.Contact]:
    """Run interpreted search criteria against one user's contacts.

    The user filter is always applied; criteria can only narrow it.
    """
    conditions = [models.Contact.user_id == user_id]
    where_clause = compile_predicate(criteria.where)
    if where_clause is not None:
        conditions.append(where_clause)

    query = select(models.Contact).where(and_(*conditions))

    if criteria.order_by is not None:
        column = _CRITERIA_COLUMNS[criteria.order_by.field]
        query = query.order_by(column.desc() if criteria.order_by.descending else column.asc())
    query = query.order_by(models.Contact.created_at.desc(), models.Contact.id.desc())

    result = await session.execute(query)
    return list(result.scalars().all())


# --- Business cards -----------------------------------------------------------


async def create_business_card(
    session: AsyncSession,
    user_id: str,
    *,
    filename: str,
    original_path: str,
    processing_status: models.ProcessingStatus = models.ProcessingStatus.PROCESSING,
) -> models.BusinessCard:
    card = models.BusinessCard(
        user_id=user_id,
        filename=filename,
        original_path=original_path,
        processing_status=processing_status.value,
    )
    session.add(card)
    await session.commit()
    await session.refresh(card)
    return card


async def get_business_card(
    session: AsyncSession,
    card_id: int,
    user_id: str,
) -> models.BusinessCard | None:
    query = select(models.BusinessCard).where(
        models.BusinessCard.id == card_id,
        models.BusinessCard.user_id == user_id,
    )
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def update_business_card(
    session: AsyncSession,
    card_id: int,
    user_id: str,
    updates: Mapping[str, Any],
) -> models.BusinessCard | None:
    """Apply a partial update to a card; status enums are stored by value."""
    card = await get_business_card(session, card_id, user_id)
    if card is None:
        return None

    for key, value in updates.items():
        if isinstance(value, models.ProcessingStatus):
            value = value.value
        setattr(card, key, value)
    card.updated_at = datetime.utcnow()

    await session.commit()
    await session.refresh(card)
    return card


async def update_processing_business_card(
    session: AsyncSession,
    card_id: int,
    user_id: str,
    updates: Mapping[str, Any],
) -> bool:
    """Apply a partial update only while the card is still ``processing``.

    Returns False when the card has left that state, e.g. because the user
    verified it manually before the background run finished.
    """
    values = {
        key: value.value if isinstance(value, models.ProcessingStatus) else value
        for key, value in updates.items()
    }
    values["updated_at"] = datetime.utcnow()

    result = await session.execute(
        update(models.BusinessCard)
        .where(
            models.BusinessCard.id == card_id,
            models.BusinessCard.user_id == user_id,
            models.BusinessCard.processing_status == models.ProcessingStatus.PROCESSING.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return bool(result.rowcount)


async def list_recent_business_cards(
    session: AsyncSession,
    user_id: str,
    *,
    limit: int,
    offset: int = 0,
) -> list[models.BusinessCard]:
    query = (
        select(models.BusinessCard)
        .where(models.BusinessCard.user_id == user_id)
        .order_by(models.BusinessCard.created_at.desc(), models.BusinessCard.id.desc())
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(query)
    return list(result.scalars().all())


async def count_business_cards(session: AsyncSession, user_id: str) -> int:
    query = (
        select(func.count())
        .select_from(models.BusinessCard)
        .where(models.BusinessCard.user_id == user_id)
    )
    return (await session.execute(query)).scalar_one()


async def list_business_cards_by_status(
    session: AsyncSession,
    status: models.ProcessingStatus,
    user_id: str,
) -> list[models.BusinessCard]:
    query = (
        select(models.BusinessCard)
        .where(
            models.BusinessCard.processing_status == status.value,
            models.BusinessCard.user_id == user_id,
        )
        .order_by(models.BusinessCard.created_at.desc(), models.BusinessCard.id.desc())
    )
    result = await session.execute(query)
    return list(result.scalars().all())


async def fail_stale_business_cards(
    session: AsyncSession,
    *,
    older_than: datetime,
    message: str,
) -> int:
    """Mark cards stuck in processing since before ``older_than`` as failed.

    Runs across all users; used once at start-up to recover runs that were
    interrupted by a crash or restart.
    """
    result = await session.execute(
        update(models.BusinessCard)
        .where(
            models.BusinessCard.processing_status == models.ProcessingStatus.PROCESSING.value,
            models.BusinessCard.updated_at < older_than,
        )
        .values(
            processing_status=models.ProcessingStatus.FAILED.value,
            processing_error=message,
            updated_at=datetime.utcnow(),
        )
    )
    await session.commit()
    return result.rowcount or 0


# --- Events -------------------------------------------------------------------


async def create_event(
    session: AsyncSession,
    user_id: str,
    fields: Mapping[str, Any],
) -> models.Event:
    event = models.Event(**dict(fields), user_id=user_id)
    session.add(event)
    await session.commit()
    await session.refresh(event)
    return event


async def get_event(session: AsyncSession, event_id: int, user_id: str) -> models.Event | None:
    query = select(models.Event).where(
        models.Event.id == event_id,
        models.Event.user_id == user_id,
    )
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def list_events(
    session: AsyncSession,
    user_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
) -> list[models.Event]:
    """Page through a user's events, most recent event date first."""
    query = (
        select(models.Event)
        .where(models.Event.user_id == user_id)
        .order_by(
            models.Event.date.desc().nulls_last(),
            models.Event.created_at.desc(),
            models.Event.id.desc(),
        )
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(query)
    return list(result.scalars().all())


async def count_events(session: AsyncSession, user_id: str) -> int:
    query = select(func.count()).select_from(models.Event).where(models.Event.user_id == user_id)
    return (await session.execute(query)).scalar_one()


async def update_event(
    session: AsyncSession,
    event_id: int,
    user_id: str,
    updates: Mapping[str, Any],
) -> models.Event | None:
    event = await get_event(session, event_id, user_id)
    if event is None:
        return None

    for key, value in updates.items():
        setattr(event, key, value)
    event.updated_at = datetime.utcnow()

    await session.commit()
    await session.refresh(event)
    return event


async def delete_event(session: AsyncSession, event_id: int, user_id: str) -> bool:
    """Delete an event after detaching its contacts; contacts are kept."""
    await session.execute(
        update(models.Contact)
        .where(
            models.Contact.event_id == event_id,
            models.Contact.user_id == user_id,
        )
        .values(event_id=None, updated_at=datetime.utcnow())
    )
    result = await session.execute(
        delete(models.Event).where(
            models.Event.id == event_id,
            models.Event.user_id == user_id,
        )
    )
    await session.commit()
    return (result.rowcount or 0) > 0


# --- Statistics ---------------------------------------------------------------


async def get_stats(session: AsyncSession, user_id: str, *, accuracy: float) -> UserStats:
    """Aggregate counters for the dashboard.

    ``accuracy`` is a configured figure, not derived from stored confidences.
    """
    total_contacts = await count_contacts(session, user_id)

    cards_processed = (
        await session.execute(
            select(func.count())
            .select_from(models.BusinessCard)
            .where(
                models.BusinessCard.processing_status == models.ProcessingStatus.COMPLETED.value,
                models.BusinessCard.user_id == user_id,
            )
        )
    ).scalar_one()

    categories = (
        await session.execute(
            select(func.count(func.distinct(models.Contact.industry))).where(
                models.Contact.industry.is_not(None),
                models.Contact.user_id == user_id,
            )
        )
    ).scalar_one()

    return UserStats(
        total_contacts=total_contacts,
        cards_processed=cards_processed,
        categories=categories,
        accuracy=accuracy,
    )
