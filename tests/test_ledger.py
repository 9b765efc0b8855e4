"""Tests for the hash-chained audit ledger.

Tests cover:
- Append assigns gapless per-organization sequence numbers
- Hash chain construction and the hash formula
- Tampering detection (modified field, broken link)
- Event classification (category, outcome, severity)
- Metadata size bound
- Event queries by time range and target
"""

import hashlib
import json
import uuid
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import update

from exportledger.core.config import DEFAULT_LEDGER_SALT
from exportledger.db.models import AuditEvent
from exportledger.db.models.base import EventCategory, EventOutcome, EventSeverity
from exportledger.services.ledger import (
    MAX_METADATA_SIZE,
    LedgerService,
    bound_metadata,
    canonical_timestamp,
    classify_category,
    classify_outcome,
    classify_severity,
    compute_event_hash,
)
from tests.factories import create_organization


class TestComputeEventHash:
    """The standalone hash function."""

    def test_matches_documented_formula(self):
        """hash = sha256(canonical_json + prev_hash + salt)."""
        org_id = uuid.uuid4()
        created_at = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

        result = compute_event_hash(
            ledger_seq=2,
            organization_id=org_id,
            actor_id="user-1",
            event_name="export.ledger.started",
            target_type="export",
            target_id="abc",
            metadata={"b": 1, "a": 2},
            created_at=created_at,
            prev_hash="f" * 64,
        )

        canonical = json.dumps(
            {
                "seq": 2,
                "org_id": str(org_id),
                "actor_id": "user-1",
                "event": "export.ledger.started",
                "target_type": "export",
                "target_id": "abc",
                "created_at": "2026-03-01T12:00:00+00:00",
                "metadata": {"a": 2, "b": 1},
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        expected = hashlib.sha256(
            (canonical + "f" * 64 + DEFAULT_LEDGER_SALT).encode("utf-8")
        ).hexdigest()
        assert result == expected

    def test_salt_changes_hash(self):
        kwargs = {
            "ledger_seq": 1,
            "organization_id": uuid.uuid4(),
            "actor_id": None,
            "event_name": "job.created",
            "target_type": "job",
            "target_id": None,
            "metadata": {},
            "created_at": datetime.now(UTC),
            "prev_hash": None,
        }
        assert compute_event_hash(**kwargs) != compute_event_hash(**kwargs, salt="other")

    def test_naive_timestamp_treated_as_utc(self):
        aware = datetime(2026, 1, 2, 3, 4, 5, 600, tzinfo=UTC)
        assert canonical_timestamp(aware.replace(tzinfo=None)) == canonical_timestamp(aware)


class TestClassification:
    """Category, outcome and severity derived from the event name."""

    @pytest.mark.parametrize(
        ("event_name", "category"),
        [
            ("auth.role_violation", EventCategory.GOVERNANCE),
            ("policy.updated", EventCategory.GOVERNANCE),
            ("team.user_role_changed", EventCategory.GOVERNANCE),
            ("account.login", EventCategory.ACCESS),
            ("security.password_reset", EventCategory.ACCESS),
            ("export.proof_pack.completed", EventCategory.OPERATIONS),
        ],
    )
    def test_category(self, event_name, category):
        assert classify_category(event_name) == category

    def test_outcome(self):
        assert classify_outcome("access.denied") == EventOutcome.BLOCKED
        assert classify_outcome("export.ledger.completed") == EventOutcome.ALLOWED

    def test_severity(self):
        assert classify_severity("auth.violation") == EventSeverity.CRITICAL
        assert classify_severity("job.flagged") == EventSeverity.MATERIAL
        assert classify_severity("export.ledger.started") == EventSeverity.INFO


class TestBoundMetadata:
    def test_small_metadata_kept(self):
        export_id = uuid.uuid4()
        assert bound_metadata({"export_id": export_id}) == {"export_id": str(export_id)}

    def test_oversized_metadata_replaced(self):
        result = bound_metadata({"blob": "x" * (MAX_METADATA_SIZE + 1)})
        assert result["truncated"] is True
        assert result["original_size"] > MAX_METADATA_SIZE

    def test_empty(self):
        assert bound_metadata(None) == {}


class TestLedgerAppend:
    """Appending events to a real database."""

    @pytest.mark.asyncio
    async def test_sequence_starts_at_one_and_chains(self, session):
        org = await create_organization(session)
        ledger = LedgerService(session)

        first = await ledger.append(org.id, "user-1", "job.created", "job", "j-1")
        second = await ledger.append(org.id, "user-1", "job.updated", "job", "j-1")
        await session.commit()

        assert first.ledger_seq == 1
        assert first.prev_hash is None
        assert second.ledger_seq == 2
        assert second.prev_hash == first.hash
        assert len(second.hash) == 64

    @pytest.mark.asyncio
    async def test_sequences_are_per_organization(self, session):
        org_a = await create_organization(session, name="A")
        org_b = await create_organization(session, name="B")
        ledger = LedgerService(session)

        await ledger.append(org_a.id, None, "job.created", "job")
        await ledger.append(org_a.id, None, "job.created", "job")
        entry_b = await ledger.append(org_b.id, None, "job.created", "job")
        await session.commit()

        assert entry_b.ledger_seq == 1
        assert entry_b.prev_hash is None

    @pytest.mark.asyncio
    async def test_classification_stored(self, session):
        org = await create_organization(session)
        entry = await LedgerService(session).append(
            org.id, "user-1", "access.denied", "document"
        )

        assert entry.category == EventCategory.ACCESS
        assert entry.outcome == EventOutcome.BLOCKED


class TestVerifyChain:
    """Chain verification after reading back from the database."""

    @pytest.mark.asyncio
    async def test_intact_chain_verifies(self, session_factory):
        async with session_factory() as session:
            org = await create_organization(session)
            ledger = LedgerService(session)
            for i in range(5):
                await ledger.append(org.id, "user-1", "job.updated", "job", metadata={"i": i})
            await session.commit()

        async with session_factory() as session:
            result = await LedgerService(session).verify_chain(org.id)

        assert result.valid
        assert result.checked_events == 5
        assert (result.first_seq, result.last_seq) == (1, 5)
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_modified_event_detected(self, session_factory):
        async with session_factory() as session:
            org = await create_organization(session)
            ledger = LedgerService(session)
            for _ in range(3):
                await ledger.append(org.id, "user-1", "job.updated", "job")
            await session.commit()

            await session.execute(
                update(AuditEvent)
                .where(AuditEvent.organization_id == org.id, AuditEvent.ledger_seq == 2)
                .values(actor_id="someone-else")
            )
            await session.commit()

        async with session_factory() as session:
            result = await LedgerService(session).verify_chain(org.id)

        assert not result.valid
        assert any("Hash mismatch at seq=2" in e for e in result.errors)

    @pytest.mark.asyncio
    async def test_broken_link_detected(self, session_factory):
        async with session_factory() as session:
            org = await create_organization(session)
            ledger = LedgerService(session)
            for _ in range(3):
                await ledger.append(org.id, None, "job.updated", "job")
            await session.commit()

            await session.execute(
                update(AuditEvent)
                .where(AuditEvent.organization_id == org.id, AuditEvent.ledger_seq == 3)
                .values(prev_hash="0" * 64)
            )
            await session.commit()

        async with session_factory() as session:
            result = await LedgerService(session).verify_chain(org.id)

        assert not result.valid
        assert any("Chain break at seq=3" in e for e in result.errors)

    @pytest.mark.asyncio
    async def test_different_salt_fails_verification(self, session):
        org = await create_organization(session)
        await LedgerService(session, salt="salt-a").append(org.id, None, "job.created", "job")
        await session.commit()

        result = await LedgerService(session, salt="salt-b").verify_chain(org.id)

        assert not result.valid

    @pytest.mark.asyncio
    async def test_empty_ledger_is_valid(self, session):
        org = await create_organization(session)
        result = await LedgerService(session).verify_chain(org.id)

        assert result.valid
        assert result.checked_events == 0


class TestGetEvents:
    """Ledger queries used by the renderers."""

    @pytest.mark.asyncio
    async def test_filters_by_target_and_time(self, session):
        org = await create_organization(session)
        ledger = LedgerService(session)
        await ledger.append(org.id, None, "export.ledger.started", "export", "e-1")
        await ledger.append(org.id, None, "job.created", "job", "j-1")
        await ledger.append(org.id, None, "export.ledger.completed", "export", "e-1")
        await session.commit()

        exports = await ledger.get_events(org.id, target_type="export", target_id="e-1")
        future = await ledger.get_events(org.id, start=datetime.now(UTC) + timedelta(hours=1))
        limited = await ledger.get_events(org.id, limit=2)

        assert [e.event_name for e in exports] == [
            "export.ledger.started",
            "export.ledger.completed",
        ]
        assert future == []
        assert [e.ledger_seq for e in limited] == [1, 2]
