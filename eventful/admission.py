"""Ticket admission control.

A purchase is admitted inside one transaction that first bumps the event's
`lock_version`. That write takes the event row lock on PostgreSQL (and the
database write lock on SQLite), so the duplicate-ownership check, the paid
count and the insert never interleave with another purchase for the same
event. Purchases for different events touch different rows and never wait on
each other.
"""
from __future__ import annotations
import logging

from sqlalchemy import select, func, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import CapacityExceeded, Conflict, Forbidden, InvalidState
from .errors import NotFound
from .helpers import new_id, new_token, now_ts
from .infra.sql import Gated
from .infra.timings import timeit
from .model.coordination import CoordinationStore, k_redeem
from .model.db import (
    Event, Ticket, EVENT_PUBLISHED, TICKET_CANCELLED, TICKET_PAID,
    TICKET_PENDING, TICKET_SCANNED,
)

logger = logging.getLogger(__name__)

ACTIVE = (TICKET_PENDING, TICKET_PAID)


# UN-GATED internal function
async def lock_event(db: AsyncSession, event_id: str) -> bool:
    """Enter the per-event serialization boundary. Must be the first write
    of the surrounding transaction. False if the event does not exist."""
    res = await db.execute(text("""
        UPDATE events SET lock_version = lock_version + 1
        WHERE id = :id
    """), {"id": event_id})
    return res.rowcount == 1


# UN-GATED internal function
async def count_paid(db: AsyncSession, event_id: str) -> int:
    n = (await db.execute(
        select(func.count()).select_from(Ticket).where(
            Ticket.event_id == event_id,
            Ticket.status == TICKET_PAID,
        )
    )).scalar_one()
    return int(n)


class Admission:
    def __init__(self, *, sessions: async_sessionmaker, gated: Gated,
                 store: CoordinationStore) -> None:
        self.sessions = sessions
        self.gated = gated
        self.store = store

    async def purchase(self, user_id: str, event_id: str) -> Ticket:
        try:
            async with timeit("admission.purchase"):
                async with self.gated():
                    async with self.sessions() as db:
                        async with db.begin():
                            ticket = await self._admit(db, user_id, event_id)
        except IntegrityError as e:
            # the active-owner index caught a race the check did not see
            raise Conflict() from e
        logger.info("ticket %s admitted for user %s on event %s",
                    ticket.id, user_id, event_id)
        return ticket

    async def _admit(self, db: AsyncSession, user_id: str,
                     event_id: str) -> Ticket:
        if not await lock_event(db, event_id):
            raise NotFound("Event")
        event = await db.get(Event, event_id)
        if event.status != EVENT_PUBLISHED:
            raise InvalidState("Event is not available for ticket purchase")
        now = now_ts()
        if event.starts_at <= now:
            raise InvalidState("Event has already started or ended")

        existing = (await db.execute(
            select(Ticket.id).where(
                Ticket.user_id == user_id,
                Ticket.event_id == event_id,
                Ticket.status.in_(ACTIVE),
            ).limit(1)
        )).first()
        if existing is not None:
            raise Conflict()

        if await count_paid(db, event_id) >= event.capacity:
            raise CapacityExceeded()

        ticket = Ticket(
            id=new_id(),
            user_id=user_id,
            event_id=event_id,
            status=TICKET_PENDING,
            redemption_token=new_token(),
            created_at=now,
        )
        db.add(ticket)
        await db.flush()
        return ticket

    async def cancel(self, ticket_id: str, user_id: str) -> Ticket:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    # write first: takes the ticket row lock, so an artifact
                    # being issued for this ticket either finishes before or
                    # sees the cancellation
                    res = await db.execute(text("""
                        UPDATE tickets SET status = :cancelled
                        WHERE id = :id AND user_id = :user
                          AND status IN ('pending', 'paid')
                    """), {"id": ticket_id, "user": user_id,
                           "cancelled": TICKET_CANCELLED})
                    ticket = await db.get(Ticket, ticket_id)
                    if res.rowcount != 1:
                        _explain_cancel_refusal(ticket, user_id)
                    token = ticket.redemption_token

        # a cancelled ticket must not stay scannable
        await self.store.delete(k_redeem(token))
        logger.info("ticket %s cancelled by owner", ticket_id)
        return ticket


def _explain_cancel_refusal(ticket: Ticket | None, user_id: str) -> None:
    if ticket is None:
        raise NotFound("Ticket")
    if ticket.user_id != user_id:
        raise Forbidden("You do not have permission to cancel this ticket")
    if ticket.status == TICKET_SCANNED:
        raise InvalidState("Cannot cancel a scanned ticket")
    raise InvalidState("Ticket is already cancelled")
