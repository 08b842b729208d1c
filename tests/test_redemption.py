"""Artifact issuance and single-use redemption."""
import asyncio
import json

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from eventful.errors import (
    Forbidden, InvalidOrExpired, InvalidState, NotFound,
)
from eventful.helpers import now_ts
from eventful.model.coordination import k_redeem, k_redeemed
from eventful.model.db import TICKET_CANCELLED, TICKET_PAID, TICKET_SCANNED
from eventful.redemption import Redemption
from tests.conftest import create_event, load_ticket


async def _execute(sessions, sql, **params):
    async with sessions() as s:
        async with s.begin():
            await s.execute(text(sql), params)


async def _paid_ticket(sessions, services, user="user-1", **event_kw):
    event = await create_event(sessions, **event_kw)
    ticket = await services.admission.purchase(user, event.id)
    await _execute(sessions, "UPDATE tickets SET status = 'paid' "
                             "WHERE id = :id", id=ticket.id)
    return event, ticket


class TestIssue:

    async def test_stores_payload_and_artifact(self, db, services, store):
        sessions, _ = db
        event, ticket = await _paid_ticket(sessions, services,
                                           title="Lagos Jazz Night")
        artifact = await services.redemption.issue_artifact(ticket.id)

        assert artifact.startswith("data:image/png;base64,")
        raw = await store.get(k_redeem(ticket.redemption_token))
        assert json.loads(raw) == {
            "ticketId": ticket.id,
            "eventId": event.id,
            "eventLabel": "Lagos Jazz Night",
        }
        assert (await load_ticket(sessions, ticket.id)).artifact == artifact

    async def test_ttl_runs_past_event_end(self, db, services, redis_client):
        sessions, _ = db
        event, ticket = await _paid_ticket(sessions, services)
        await services.redemption.issue_artifact(ticket.id)
        ttl = await redis_client.ttl(k_redeem(ticket.redemption_token))
        expected = event.ends_at - now_ts() + 86400
        assert expected - 5 <= ttl <= expected + 1

    async def test_requires_paid_ticket(self, db, services, store):
        sessions, _ = db
        event = await create_event(sessions)
        ticket = await services.admission.purchase("user-1", event.id)
        with pytest.raises(InvalidState):
            await services.redemption.issue_artifact(ticket.id)
        assert not await store.exists(k_redeem(ticket.redemption_token))

    async def test_unknown_ticket(self, services):
        with pytest.raises(NotFound):
            await services.redemption.issue_artifact("missing")

    async def test_scanned_ticket_is_not_reissued(self, db, services, store):
        sessions, _ = db
        _, ticket = await _paid_ticket(sessions, services)
        await services.redemption.issue_artifact(ticket.id)
        await services.redemption.redeem(ticket.redemption_token)

        with pytest.raises(InvalidState):
            await services.redemption.issue_artifact(ticket.id)
        assert not await store.exists(k_redeem(ticket.redemption_token))

    async def test_verify_url(self, services):
        url = services.redemption.verify_url("abc")
        assert url.endswith("/verify/abc")


class TestRedeem:

    async def test_first_scan_wins(self, db, services, store):
        sessions, _ = db
        event, ticket = await _paid_ticket(sessions, services, title="Gig")
        await services.redemption.issue_artifact(ticket.id)

        result = await services.redemption.redeem(ticket.redemption_token)
        assert result == {"ticketId": ticket.id, "eventId": event.id,
                          "eventLabel": "Gig"}
        stored = await load_ticket(sessions, ticket.id)
        assert stored.status == TICKET_SCANNED
        assert stored.scanned_at is not None
        assert not await store.exists(k_redeem(ticket.redemption_token))

        with pytest.raises(InvalidOrExpired):
            await services.redemption.redeem(ticket.redemption_token)

    async def test_concurrent_scans(self, db, services):
        sessions, _ = db
        _, ticket = await _paid_ticket(sessions, services)
        await services.redemption.issue_artifact(ticket.id)

        results = await asyncio.gather(
            *[services.redemption.redeem(ticket.redemption_token)
              for _ in range(10)],
            return_exceptions=True,
        )
        won = [r for r in results if isinstance(r, dict)]
        lost = [r for r in results if isinstance(r, InvalidOrExpired)]
        assert len(won) == 1
        assert len(lost) == 9

    async def test_unknown_token(self, services):
        with pytest.raises(InvalidOrExpired):
            await services.redemption.redeem("never-issued")

    async def test_ticket_id_is_not_a_token(self, db, services):
        sessions, _ = db
        _, ticket = await _paid_ticket(sessions, services)
        await services.redemption.issue_artifact(ticket.id)
        with pytest.raises(InvalidOrExpired):
            await services.redemption.redeem(ticket.id)
        assert (await load_ticket(sessions, ticket.id)).status == TICKET_PAID

    async def test_expired_after_grace(self, db, services, store):
        sessions, gated = db
        _, ticket = await _paid_ticket(sessions, services)
        await _execute(sessions, "UPDATE events SET ends_at = :t",
                       t=now_ts() - 60)
        short = Redemption(sessions=sessions, gated=gated, store=store,
                           verify_base_url="http://localhost",
                           grace_seconds=1)
        await short.issue_artifact(ticket.id)

        await asyncio.sleep(1.5)
        with pytest.raises(InvalidOrExpired):
            await short.redeem(ticket.redemption_token)
        assert (await load_ticket(sessions, ticket.id)).status == TICKET_PAID

    async def test_scan_survives_bookkeeping_failure(self, db, services,
                                                     store, monkeypatch):
        sessions, _ = db
        _, ticket = await _paid_ticket(sessions, services)
        await services.redemption.issue_artifact(ticket.id)

        def db_down():
            raise OperationalError("UPDATE tickets", {}, Exception("down"))

        monkeypatch.setattr(services.redemption, "gated", db_down)
        result = await services.redemption.redeem(ticket.redemption_token)
        assert result["ticketId"] == ticket.id
        assert not await store.exists(k_redeem(ticket.redemption_token))

        # the ticket is still `paid` in the database, yet the token stays spent
        monkeypatch.undo()
        assert (await load_ticket(sessions, ticket.id)).status == TICKET_PAID
        with pytest.raises(InvalidState):
            await services.redemption.issue_artifact(ticket.id)
        assert not await store.exists(k_redeem(ticket.redemption_token))
        with pytest.raises(InvalidOrExpired):
            await services.redemption.redeem(ticket.redemption_token)


class TestReissue:

    async def test_issues_only_missing_artifacts(self, db, services):
        sessions, _ = db
        _, done = await _paid_ticket(sessions, services, user="user-1")
        await services.redemption.issue_artifact(done.id)
        _, missing = await _paid_ticket(sessions, services, user="user-2")

        assert await services.redemption.reissue_missing() == [missing.id]
        assert await services.redemption.reissue_missing() == []


class TestConsumedTokens:
    """A consumed token stays consumed, whatever is issued afterwards."""

    async def test_scan_between_read_and_write(self, db, services, store,
                                               monkeypatch):
        sessions, _ = db
        _, ticket = await _paid_ticket(sessions, services)
        token = ticket.redemption_token
        await services.redemption.issue_artifact(ticket.id)

        coordination = services.redemption.store
        issue_token = coordination.issue_token

        async def scanned_meanwhile(*args, **kwargs):
            assert await coordination.consume_token(token, 60) is not None
            return await issue_token(*args, **kwargs)

        monkeypatch.setattr(coordination, "issue_token", scanned_meanwhile)
        with pytest.raises(InvalidState):
            await services.redemption.issue_artifact(ticket.id)

        assert not await store.exists(k_redeem(token))
        with pytest.raises(InvalidOrExpired):
            await services.redemption.redeem(token)

    async def test_tombstone_outlives_token(self, db, services,
                                            redis_client):
        sessions, _ = db
        _, ticket = await _paid_ticket(sessions, services)
        token = ticket.redemption_token
        await services.redemption.issue_artifact(ticket.id)
        token_ttl = await redis_client.ttl(k_redeem(token))

        await services.redemption.redeem(token)
        assert await services.redemption.store.is_consumed(token)
        assert await redis_client.ttl(k_redeemed(token)) > token_ttl


class TestCancelVersusIssue:

    async def test_issue_after_cancel(self, db, services, store):
        sessions, _ = db
        _, ticket = await _paid_ticket(sessions, services)
        await services.admission.cancel(ticket.id, "user-1")

        with pytest.raises(InvalidState):
            await services.redemption.issue_artifact(ticket.id)
        assert not await store.exists(k_redeem(ticket.redemption_token))

    async def test_cancel_between_read_and_write(self, db, services, store,
                                                 monkeypatch):
        sessions, _ = db
        _, ticket = await _paid_ticket(sessions, services)
        load = services.redemption._load

        async def cancelled_meanwhile(ticket_id):
            row = await load(ticket_id)
            await services.admission.cancel(ticket_id, "user-1")
            return row

        monkeypatch.setattr(services.redemption, "_load", cancelled_meanwhile)
        with pytest.raises(InvalidState):
            await services.redemption.issue_artifact(ticket.id)

        stored = await load_ticket(sessions, ticket.id)
        assert stored.status == TICKET_CANCELLED
        assert stored.artifact is None
        assert not await store.exists(k_redeem(ticket.redemption_token))

    async def test_cancel_after_issue(self, db, services, store):
        sessions, _ = db
        _, ticket = await _paid_ticket(sessions, services)
        await services.redemption.issue_artifact(ticket.id)
        await services.admission.cancel(ticket.id, "user-1")

        with pytest.raises(InvalidOrExpired):
            await services.redemption.redeem(ticket.redemption_token)


class TestOwnership:

    async def test_other_user_cannot_fetch_artifact(self, db, services,
                                                    store):
        sessions, _ = db
        _, ticket = await _paid_ticket(sessions, services)
        with pytest.raises(Forbidden):
            await services.redemption.issue_artifact(ticket.id,
                                                     owner_id="user-2")
        assert not await store.exists(k_redeem(ticket.redemption_token))

    async def test_owner_fetches_artifact(self, db, services):
        sessions, _ = db
        _, ticket = await _paid_ticket(sessions, services)
        artifact = await services.redemption.issue_artifact(
            ticket.id, owner_id="user-1")
        assert artifact.startswith("data:image/png;base64,")
