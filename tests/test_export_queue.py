"""Tests for the export queue service.

Tests cover:
- Enqueue with in-progress and idempotency-key deduplication
- Input validation (export type, proof pack work record)
- State transitions and progress
- Failure counting and the poison-pill boundary
- Best-effort cancellation
- Wake hooks for local workers
"""

import logging
import uuid
from unittest.mock import MagicMock

import pytest

from exportledger.db.models import ExportState, ExportType
from exportledger.services.export_queue import (
    EXPORT_GENERATION_FAILED,
    ExportNotFoundError,
    ExportQueueService,
    InvalidExportTypeError,
    InvalidStateTransitionError,
    add_wake_listener,
    notify_export_enqueued,
    parse_export_type,
    remove_wake_listener,
)
from tests.factories import create_export, create_organization, create_work_record


class TestParseExportType:
    def test_known_types(self):
        assert parse_export_type("proof_pack") == ExportType.PROOF_PACK
        assert parse_export_type(ExportType.BULK_JOBS) == ExportType.BULK_JOBS

    def test_unknown_type(self):
        with pytest.raises(InvalidExportTypeError, match="Expected one of"):
            parse_export_type("spreadsheet")


class TestEnqueue:
    """Creating export requests."""

    @pytest.mark.asyncio
    async def test_creates_queued_export(self, session):
        org = await create_organization(session)
        queue = ExportQueueService(session)

        result = await queue.enqueue(
            org.id,
            "ledger",
            filters={"time_range": "7d"},
            created_by="user-1",
            request_id="req-1",
        )
        await session.commit()

        assert result.deduplicated is False
        job = result.export
        assert job.state == ExportState.QUEUED
        assert job.progress == 0
        assert job.failure_count == 0
        assert job.export_type == "ledger"
        assert job.filters == {"time_range": "7d"}

    @pytest.mark.asyncio
    async def test_proof_pack_requires_work_record(self, session):
        org = await create_organization(session)

        with pytest.raises(InvalidExportTypeError, match="work_record_id"):
            await ExportQueueService(session).enqueue(org.id, ExportType.PROOF_PACK)

    @pytest.mark.asyncio
    async def test_in_progress_export_reused(self, session):
        org = await create_organization(session)
        record = await create_work_record(session, org)
        queue = ExportQueueService(session)

        first = await queue.enqueue(org.id, "proof_pack", work_record_id=record.id)
        await session.commit()
        second = await queue.enqueue(org.id, "proof_pack", work_record_id=record.id)

        assert second.deduplicated is True
        assert second.export.id == first.export.id

    @pytest.mark.asyncio
    async def test_different_work_record_not_deduplicated(self, session):
        org = await create_organization(session)
        record_a = await create_work_record(session, org)
        record_b = await create_work_record(session, org, client_name="Other")
        queue = ExportQueueService(session)

        first = await queue.enqueue(org.id, "proof_pack", work_record_id=record_a.id)
        second = await queue.enqueue(org.id, "proof_pack", work_record_id=record_b.id)

        assert second.deduplicated is False
        assert second.export.id != first.export.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("export_type", "first_filters", "second_filters"),
        [
            ("bulk_jobs", {"job_ids": ["a"]}, {"job_ids": ["b"]}),
            ("ledger", {"time_range": "24h"}, {"time_range": "90d"}),
            ("executive_brief", {}, {}),
        ],
    )
    async def test_organization_wide_exports_not_deduplicated(
        self, session, export_type, first_filters, second_filters
    ):
        org = await create_organization(session)
        queue = ExportQueueService(session)

        first = await queue.enqueue(org.id, export_type, filters=first_filters)
        await session.commit()
        second = await queue.enqueue(org.id, export_type, filters=second_filters)

        assert second.deduplicated is False
        assert second.export.id != first.export.id
        assert second.export.filters == second_filters

    @pytest.mark.asyncio
    async def test_finished_export_not_reused(self, session):
        org = await create_organization(session)
        done = await create_export(session, org, "ledger", state=ExportState.READY)
        await session.commit()

        result = await ExportQueueService(session).enqueue(org.id, "ledger")

        assert result.deduplicated is False
        assert result.export.id != done.id

    @pytest.mark.asyncio
    async def test_idempotency_key_reused(self, session):
        org = await create_organization(session)
        keyed = await create_export(
            session, org, "ledger", state=ExportState.READY, idempotency_key="key-1"
        )
        await session.commit()

        result = await ExportQueueService(session).enqueue(
            org.id, "ledger", idempotency_key="key-1"
        )

        assert result.deduplicated is True
        assert result.export.id == keyed.id


class TestTransitions:
    """Worker-driven state changes."""

    @pytest.mark.asyncio
    async def test_happy_path_progress(self, session):
        org = await create_organization(session)
        job = await create_export(session, org, state=ExportState.PREPARING)
        queue = ExportQueueService(session)

        generating = await queue.mark_generating(job.id)
        assert (generating.state, generating.progress) == (ExportState.GENERATING, 10)

        uploading = await queue.mark_uploading(job.id)
        assert (uploading.state, uploading.progress) == (ExportState.UPLOADING, 80)

        ready = await queue.mark_ready(
            job.id,
            storage_path="org/ledger-exports/1.pdf",
            manifest_path="org/ledger-exports/1-manifest.json",
            manifest_hash="a" * 64,
            manifest={"version": "1.0"},
        )
        assert (ready.state, ready.progress) == (ExportState.READY, 100)
        assert ready.completed_at is not None
        assert ready.manifest_hash == "a" * 64

    @pytest.mark.asyncio
    async def test_ready_is_final(self, session):
        org = await create_organization(session)
        job = await create_export(session, org, state=ExportState.READY)
        queue = ExportQueueService(session)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await queue.mark_generating(job.id)
        assert exc_info.value.current == ExportState.READY

        with pytest.raises(InvalidStateTransitionError):
            await queue.mark_ready(
                job.id,
                storage_path="x",
                manifest_path="y",
                manifest_hash="z",
                manifest={},
            )

    @pytest.mark.asyncio
    async def test_missing_export(self, session):
        with pytest.raises(ExportNotFoundError):
            await ExportQueueService(session).mark_generating(uuid.uuid4())


class TestRecordFailure:
    """Failure counting and the poison-pill boundary."""

    @pytest.mark.asyncio
    async def test_requeues_until_budget_spent(self, session):
        org = await create_organization(session)
        job = await create_export(session, org, state=ExportState.GENERATING, progress=10)
        queue = ExportQueueService(session, max_failures=3)

        first = await queue.record_failure(
            job.id, error_message="boom", failure_reason="Export generation failed"
        )
        assert first.state == ExportState.QUEUED
        assert first.failure_count == 1
        assert first.progress == 0
        assert first.error_code == EXPORT_GENERATION_FAILED
        assert first.error_id

        second = await queue.record_failure(
            job.id, error_message="boom", failure_reason="Export generation failed"
        )
        assert second.state == ExportState.QUEUED
        assert second.failure_count == 2

        third = await queue.record_failure(
            job.id, error_message="boom", failure_reason="Final reason", error_id="err-3"
        )
        assert third.state == ExportState.FAILED
        assert third.failure_count == 3
        assert third.failure_reason == "Final reason"
        assert third.error_id == "err-3"

    @pytest.mark.asyncio
    async def test_single_failure_budget(self, session):
        org = await create_organization(session)
        job = await create_export(session, org, state=ExportState.GENERATING)

        result = await ExportQueueService(session, max_failures=1).record_failure(
            job.id, error_message="boom", failure_reason="reason"
        )

        assert result.state == ExportState.FAILED


class TestCancel:
    """External cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_queued(self, session):
        org = await create_organization(session)
        job = await create_export(session, org)

        canceled = await ExportQueueService(session).cancel(job.id)

        assert canceled.state == ExportState.CANCELED

    @pytest.mark.asyncio
    async def test_cannot_cancel_generating(self, session):
        org = await create_organization(session)
        job = await create_export(session, org, state=ExportState.GENERATING)

        with pytest.raises(InvalidStateTransitionError):
            await ExportQueueService(session).cancel(job.id)

    @pytest.mark.asyncio
    async def test_late_worker_write_overwrites_cancel(self, session, caplog):
        """Cancellation is best-effort: the worker's later write wins, with a warning."""
        org = await create_organization(session)
        job = await create_export(session, org, state=ExportState.PREPARING)
        queue = ExportQueueService(session)
        await queue.cancel(job.id)

        with caplog.at_level(logging.WARNING, logger="exportledger.services.export_queue"):
            result = await queue.mark_generating(job.id)

        assert result.state == ExportState.GENERATING
        assert any("Overwriting canceled export" in r.getMessage() for r in caplog.records)


class TestActiveCount:
    @pytest.mark.asyncio
    async def test_counts_claimed_states_only(self, session):
        org = await create_organization(session)
        for state in (
            ExportState.QUEUED,
            ExportState.PREPARING,
            ExportState.GENERATING,
            ExportState.UPLOADING,
            ExportState.READY,
            ExportState.FAILED,
        ):
            await create_export(session, org, state=state)

        assert await ExportQueueService(session).active_count() == 3


class TestWakeHooks:
    """Local workers are woken after an enqueue commits."""

    def test_listener_called(self):
        listener = MagicMock()
        add_wake_listener(listener)
        try:
            notify_export_enqueued()
        finally:
            remove_wake_listener(listener)

        listener.assert_called_once_with()

    def test_removed_listener_not_called(self):
        listener = MagicMock()
        add_wake_listener(listener)
        remove_wake_listener(listener)

        notify_export_enqueued()

        listener.assert_not_called()

    def test_listener_registered_once(self):
        listener = MagicMock()
        add_wake_listener(listener)
        add_wake_listener(listener)
        try:
            notify_export_enqueued()
        finally:
            remove_wake_listener(listener)

        assert listener.call_count == 1
