"""Single-use redemption tokens.

Issuing stores `{ticketId, eventId, eventLabel}` under `redeem:{token}` with a
TTL that ends one grace period after the event. Redeeming is one server-side
GET+DEL that also leaves a `redeemed:{token}` tombstone: whichever scan
observes the value wins, every other scan (and every scan after expiry) sees
nothing, and the token can never be issued again. The durable `scanned`
status written afterwards is bookkeeping only.

Issuing runs inside a ticket-row write (`artifact` is updated only while the
ticket is still `paid`), so it serializes with cancellation.
"""
from __future__ import annotations
import json
import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .errors import Forbidden, InvalidOrExpired, InvalidState, NotFound
from .helpers import now_ts
from .infra.sql import Gated
from .infra.timings import timeit
from .model.coordination import CoordinationStore
from .model.db import Event, Ticket, TICKET_PAID
from .qr import render_qr

logger = logging.getLogger(__name__)


class Redemption:
    def __init__(self, *, sessions: async_sessionmaker, gated: Gated,
                 store: CoordinationStore, verify_base_url: str,
                 grace_seconds: int = 86400) -> None:
        self.sessions = sessions
        self.gated = gated
        self.store = store
        self.verify_base_url = verify_base_url.rstrip("/")
        self.grace_seconds = grace_seconds

    def verify_url(self, token: str) -> str:
        return f"{self.verify_base_url}/verify/{token}"

    def token_ttl(self, ends_at: float) -> int:
        return int(max(ends_at - now_ts(), 0)) + self.grace_seconds

    async def _load(self, ticket_id: str) -> Tuple[Ticket, Event]:
        async with self.gated():
            async with self.sessions() as db:
                row = (await db.execute(
                    select(Ticket, Event)
                    .join(Event, Event.id == Ticket.event_id)
                    .where(Ticket.id == ticket_id)
                )).first()
        if row is None:
            raise NotFound("Ticket")
        return row[0], row[1]

    async def issue_artifact(self, ticket_id: str,
                             owner_id: Optional[str] = None) -> str:
        """Store the redemption record and return the QR data URL.

        `owner_id`, when given, must match the ticket holder."""
        ticket, event = await self._load(ticket_id)
        if owner_id is not None and ticket.user_id != owner_id:
            raise Forbidden()
        if ticket.status != TICKET_PAID:
            raise InvalidState(f"Ticket is {ticket.status}, not paid")

        token = ticket.redemption_token
        artifact = render_qr(self.verify_url(token))
        payload = json.dumps({
            "ticketId": ticket.id,
            "eventId": event.id,
            "eventLabel": event.title,
        })

        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    # row lock first; a ticket cancelled or scanned since the
                    # read above is left alone
                    res = await db.execute(text("""
                        UPDATE tickets SET artifact = :artifact
                        WHERE id = :id AND status = :paid
                    """), {"artifact": artifact, "id": ticket.id,
                           "paid": TICKET_PAID})
                    if res.rowcount != 1:
                        raise InvalidState("Ticket is no longer paid")

                    async with timeit("store.issue_token"):
                        issued = await self.store.issue_token(
                            token, payload, self.token_ttl(event.ends_at)
                        )
                    if not issued:
                        # scanned already; the rollback keeps the old artifact
                        raise InvalidState("Ticket has already been redeemed")
        return artifact

    async def redeem(self, token: str) -> Dict[str, str]:
        async with timeit("store.consume_token"):
            raw = await self.store.consume_token(token, self.grace_seconds)
        if raw is None:
            raise InvalidOrExpired()
        data = json.loads(raw)

        try:
            async with self.gated():
                async with self.sessions() as db:
                    async with db.begin():
                        res = await db.execute(text("""
                            UPDATE tickets
                            SET status = 'scanned', scanned_at = :now
                            WHERE id = :id AND status = 'paid'
                        """), {"now": now_ts(), "id": data["ticketId"]})
            if res.rowcount != 1:
                logger.warning("redeemed ticket %s was not in paid state",
                               data["ticketId"])
        except SQLAlchemyError:
            # the consumed token already decided the scan
            logger.exception("could not record scan of ticket %s",
                             data["ticketId"])

        logger.info("ticket %s redeemed for event %s",
                    data["ticketId"], data["eventId"])
        return {
            "ticketId": data["ticketId"],
            "eventId": data["eventId"],
            "eventLabel": data["eventLabel"],
        }

    async def reissue_missing(self, limit: int = 100) -> List[str]:
        """Issue artifacts for paid tickets whose webhook handoff failed.
        Returns the ids that now have one."""
        async with self.gated():
            async with self.sessions() as db:
                ids = (await db.execute(
                    select(Ticket.id).where(
                        Ticket.status == TICKET_PAID,
                        Ticket.artifact.is_(None),
                    ).order_by(Ticket.created_at).limit(limit)
                )).scalars().all()

        done = []
        for ticket_id in ids:
            try:
                await self.issue_artifact(ticket_id)
            except Exception:
                logger.exception("reissue failed for ticket %s", ticket_id)
                continue
            done.append(ticket_id)
        if done:
            logger.info("reissued %d redemption artifacts", len(done))
        return done
