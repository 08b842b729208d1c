"""Payment initialization and webhook reconciliation.

The gateway delivers webhooks at least once. Reconciliation turns that into
exactly one `pending -> success` transition per payment:

  1) the HMAC signature is checked before anything else,
  2) a dedup marker (SET NX EX) per external event id lets only one delivery
     through,
  3) a conditional update on the payment row is the terminal-state guard for
     deliveries that arrive after the marker expired.

Business non-events (duplicates, other event types, unknown references) are
returned as `{"processed": False, "reason": ...}` rather than raised: they
are expected steady-state traffic for an at-least-once sender.
"""
from __future__ import annotations
import hashlib
import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .admission import count_paid, lock_event
from .errors import (
    AmountMismatch, CapacityExceeded, Forbidden,
    InvalidSignature, InvalidState, NotFound,
)
from .gateway import PaymentGateway
from .helpers import new_id, now_ts, to_minor_units, verify_signature
from .infra.sql import Gated
from .infra.timings import timeit
from .model.coordination import CoordinationStore, k_webhook
from .model.db import (
    Event, Payment, Ticket, PAYMENT_PENDING, PAYMENT_SUCCESS, TICKET_PENDING,
)
from .redemption import Redemption

logger = logging.getLogger(__name__)

CHARGE_SUCCESS = "charge.success"


def _result(processed: bool, reason: str, **extra: Any) -> Dict[str, Any]:
    return {"processed": processed, "reason": reason, **extra}


def external_event_id(event: Dict[str, Any], raw: bytes) -> str:
    evt_id = event.get("id")
    if evt_id in (None, ""):
        data = event.get("data") or {}
        evt_id = data.get("id") if isinstance(data, dict) else None
    if evt_id in (None, ""):
        # no id at all: identical bodies are the same delivery
        return "sha256:" + hashlib.sha256(raw).hexdigest()
    return str(evt_id)


# UN-GATED internal function
async def _flag_refund(db: AsyncSession, payment_id: str) -> None:
    await db.execute(text("""
        UPDATE payments SET refund_required = :yes WHERE id = :id
    """), {"yes": True, "id": payment_id})


class Settlement:
    def __init__(
        self,
        *,
        sessions: async_sessionmaker,
        gated: Gated,
        store: CoordinationStore,
        gateway: PaymentGateway,
        redemption: Redemption,
        callback_url: str,
        amount_tolerance: int = 1,
        dedup_ttl: int = 3600,
    ) -> None:
        self.sessions = sessions
        self.gated = gated
        self.store = store
        self.gateway = gateway
        self.redemption = redemption
        self.callback_url = callback_url
        self.amount_tolerance = amount_tolerance
        self.dedup_ttl = dedup_ttl

    # ----------------------------
    # Initialization
    # ----------------------------
    async def initialize(self, ticket_id: str, user_id: str, email: str,
                         amount: int) -> Dict[str, str]:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    payment = await self._open_payment(
                        db, ticket_id, user_id, amount
                    )

        try:
            async with timeit("gateway.initialize"):
                session = await self.gateway.initialize_checkout(
                    reference=payment.id,
                    amount=amount,
                    email=email,
                    callback_url=self.callback_url,
                    metadata={
                        "payment_id": payment.id,
                        "ticket_id": ticket_id,
                    },
                )
        except BaseException:
            # gateway error, unexpected failure or cancellation alike
            await self._discard_payment(payment.id)
            raise

        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    await db.execute(text("""
                        UPDATE payments SET gateway_reference = :ref
                        WHERE id = :id AND gateway_reference IS NULL
                    """), {"ref": session["reference"], "id": payment.id})

        logger.info("payment %s initialized for ticket %s (ref %s)",
                    payment.id, ticket_id, session["reference"])
        return {
            "checkout_url": session["checkout_url"],
            "payment_id": payment.id,
            "reference": session["reference"],
        }

    async def _open_payment(self, db: AsyncSession, ticket_id: str,
                            user_id: str, amount: int) -> Payment:
        row = (await db.execute(
            select(Ticket, Event)
            .join(Event, Event.id == Ticket.event_id)
            .where(Ticket.id == ticket_id)
        )).first()
        if row is None:
            raise NotFound("Ticket")
        ticket, event = row
        if ticket.user_id != user_id:
            raise Forbidden()
        if ticket.status != TICKET_PENDING:
            raise InvalidState("Ticket is not in pending state")

        expected = to_minor_units(event.price)
        if abs(amount - expected) > self.amount_tolerance:
            raise AmountMismatch(expected, amount)

        # don't charge for an event that can no longer admit anyone
        if await count_paid(db, event.id) >= event.capacity:
            raise CapacityExceeded()

        payment = Payment(
            id=new_id(),
            ticket_id=ticket.id,
            event_id=event.id,
            amount=amount,
            currency=event.currency,
            status=PAYMENT_PENDING,
            created_at=now_ts(),
        )
        db.add(payment)
        await db.flush()
        return payment

    async def _discard_payment(self, payment_id: str) -> None:
        # no orphan pending payments: the caller may retry from scratch
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    await db.execute(text("""
                        DELETE FROM payments
                        WHERE id = :id AND status = :pending
                    """), {"id": payment_id, "pending": PAYMENT_PENDING})
        logger.info("payment %s rolled back after gateway failure",
                    payment_id)

    async def verify(self, reference: str) -> Dict[str, Any]:
        async with timeit("gateway.verify"):
            return await self.gateway.verify_transaction(reference)

    # ----------------------------
    # Webhook reconciliation
    # ----------------------------
    async def reconcile(self, raw: bytes,
                        signature: Optional[str]) -> Dict[str, Any]:
        if not verify_signature(self.gateway.secret, raw, signature):
            logger.warning(
                "SECURITY: rejected webhook with invalid signature "
                "(%d bytes)", len(raw)
            )
            raise InvalidSignature()

        try:
            event = json.loads(raw.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("signed webhook with unparseable body ignored")
            return _result(False, "malformed_payload")
        if not isinstance(event, dict):
            return _result(False, "malformed_payload")

        marker = k_webhook(external_event_id(event, raw))
        async with timeit("store.claim"):
            claimed = await self.store.claim(marker, self.dedup_ttl)
        if not claimed:
            return _result(False, "duplicate")

        try:
            result = await self._process(event)
        except Exception:
            # let the gateway's redelivery try again
            await self.store.delete(marker)
            raise
        if result["reason"] == "payment_not_found":
            await self.store.delete(marker)
        return result

    async def _process(self, event: Dict[str, Any]) -> Dict[str, Any]:
        if event.get("event") != CHARGE_SUCCESS:
            return _result(False, "non_success_event")

        data = event.get("data")
        if not isinstance(data, dict) or data.get("status") != "success":
            return _result(False, "failed_payment")

        reference = data.get("reference")
        metadata = data.get("metadata")
        payment_id = (
            metadata.get("payment_id") if isinstance(metadata, dict) else None
        )

        async with timeit("db.find_payment"):
            payment = await self._find_payment(reference, payment_id)
        if payment is None:
            # initialization may not have committed yet
            logger.info("webhook for unknown reference %s", reference)
            return _result(False, "payment_not_found")

        if payment.status == PAYMENT_SUCCESS:
            return _result(False, "already_processed", payment_id=payment.id)

        async with timeit("db.apply_payment"):
            outcome = await self._apply(payment, reference, data)
        if outcome != "paid":
            return _result(False, outcome, payment_id=payment.id)

        try:
            async with timeit("redemption.issue"):
                await self.redemption.issue_artifact(payment.ticket_id)
        except Exception:
            # paid without a redeemable artifact: surface it, do not re-charge
            logger.exception(
                "artifact handoff failed for ticket %s (payment %s); "
                "retry with reissue_missing()",
                payment.ticket_id, payment.id,
            )
            return _result(True, "artifact_pending", payment_id=payment.id)

        logger.info("payment %s settled, ticket %s paid",
                    payment.id, payment.ticket_id)
        return _result(True, "paid", payment_id=payment.id)

    async def _find_payment(self, reference: Optional[str],
                            payment_id: Optional[str]) -> Optional[Payment]:
        async with self.gated():
            async with self.sessions() as db:
                payment = None
                if reference:
                    payment = (await db.execute(
                        select(Payment).where(
                            Payment.gateway_reference == str(reference))
                    )).scalar_one_or_none()
                if payment is None and payment_id:
                    payment = await db.get(Payment, str(payment_id))
                return payment

    async def _apply(self, payment: Payment, reference: Optional[str],
                     data: Dict[str, Any]) -> str:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    # terminal-state guard: exactly one writer flips the row
                    res = await db.execute(text("""
                        UPDATE payments
                        SET status = :success, gateway_payload = :payload,
                            paid_at = :now,
                            gateway_reference = COALESCE(
                                gateway_reference, :ref)
                        WHERE id = :id AND status IN ('pending', 'failed')
                    """), {
                        "success": PAYMENT_SUCCESS,
                        "payload": json.dumps(data),
                        "now": now_ts(),
                        "ref": reference,
                        "id": payment.id,
                    })
                    if res.rowcount != 1:
                        return "already_processed"

                    await lock_event(db, payment.event_id)
                    capacity = (await db.execute(
                        select(Event.capacity).where(
                            Event.id == payment.event_id)
                    )).scalar_one()
                    if await count_paid(db, payment.event_id) >= capacity:
                        logger.warning(
                            "event %s sold out before payment %s settled; "
                            "ticket %s stays pending, refund required",
                            payment.event_id, payment.id, payment.ticket_id,
                        )
                        await _flag_refund(db, payment.id)
                        return "capacity_exhausted"

                    res = await db.execute(text("""
                        UPDATE tickets SET status = 'paid'
                        WHERE id = :id AND status = 'pending'
                    """), {"id": payment.ticket_id})
                    if res.rowcount != 1:
                        logger.warning(
                            "payment %s settled but ticket %s is no longer "
                            "pending; refund required",
                            payment.id, payment.ticket_id,
                        )
                        await _flag_refund(db, payment.id)
                        return "ticket_not_pending"
        return "paid"
