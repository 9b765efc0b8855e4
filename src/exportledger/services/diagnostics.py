"""Export preconditions and user-facing failure diagnostics.

When an export attempt fails, the worker stores a failure_reason the
requester can act on. Reasons are chosen in a fixed order and the first
match wins:

1. Export-type preconditions (proof packs need evidence, hazards and
   completed controls on their work record)
2. Infrastructure classification of the error text (timeouts, rendering,
   storage)
3. A generic message quoting the export ID for support
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import func, select

from exportledger.db.models.base import ExportType
from exportledger.db.models.records import Evidence, MitigationItem

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from exportledger.db.models.exports import ExportJob

logger = logging.getLogger(__name__)

DEFAULT_REQUIRED_EVIDENCE = 5

TIMEOUT_REASON = "Upload timed out. Check your internet connection and retry."
RENDER_REASON = "Report generation failed. Contact support with export ID: {export_id}"
STORAGE_REASON = "Storage upload failed. Retry or contact support."
GENERIC_REASON = "Export failed. Tap retry or contact support with export ID: {export_id}"

_TIMEOUT_PATTERN = re.compile(r"timeout|etimedout|econnreset")
_RENDER_PATTERN = re.compile(r"pdf|generat|render")
_STORAGE_PATTERN = re.compile(r"storage|upload|bucket")


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


@dataclass(frozen=True, slots=True)
class PreconditionReport:
    """Readiness of a work record for a proof pack.

    Attributes:
        evidence_count: Evidence items uploaded for the work record.
        required_evidence: Evidence items required.
        hazard_count: Hazards (mitigation items without a hazard) on the record.
        incomplete_controls: Controls not yet marked complete.
    """

    evidence_count: int
    required_evidence: int
    hazard_count: int
    incomplete_controls: int

    @property
    def missing_evidence(self) -> int:
        return max(0, self.required_evidence - self.evidence_count)

    def messages(self) -> list[str]:
        """All unmet preconditions, most actionable first."""
        messages: list[str] = []
        if self.missing_evidence > 0:
            messages.append(
                f"Missing {_plural(self.missing_evidence, 'evidence item')}. "
                "Upload photos before generating proof pack."
            )
        if self.hazard_count == 0:
            messages.append(
                "No hazards configured. Add hazards in web app before generating report."
            )
        if self.incomplete_controls > 0:
            messages.append(
                f"{_plural(self.incomplete_controls, 'control')} not completed. "
                "Mark them complete or skip them."
            )
        return messages

    @property
    def satisfied(self) -> bool:
        return not self.messages()


class ExportPreconditionError(Exception):
    """Raised when an export cannot be rendered until the requester fixes its inputs.

    Attributes:
        message: The user-facing reason (first unmet precondition).
        report: The full precondition report.
    """

    def __init__(self, message: str, *, report: PreconditionReport | None = None) -> None:
        self.message = message
        self.report = report
        super().__init__(message)


async def check_proof_pack_preconditions(
    session: AsyncSession,
    organization_id: uuid.UUID,
    work_record_id: uuid.UUID,
    *,
    required_evidence: int = DEFAULT_REQUIRED_EVIDENCE,
) -> PreconditionReport:
    """Count evidence, hazards and open controls for a work record."""
    evidence_count = await session.scalar(
        select(func.count())
        .select_from(Evidence)
        .where(
            Evidence.organization_id == organization_id,
            Evidence.work_record_id == work_record_id,
        )
    )

    hazard_count = await session.scalar(
        select(func.count())
        .select_from(MitigationItem)
        .where(
            MitigationItem.organization_id == organization_id,
            MitigationItem.work_record_id == work_record_id,
            MitigationItem.hazard_id.is_(None),
            MitigationItem.deleted_at.is_(None),
        )
    )

    incomplete_controls = await session.scalar(
        select(func.count())
        .select_from(MitigationItem)
        .where(
            MitigationItem.organization_id == organization_id,
            MitigationItem.work_record_id == work_record_id,
            MitigationItem.hazard_id.is_not(None),
            MitigationItem.is_completed.is_(False),
            MitigationItem.deleted_at.is_(None),
        )
    )

    return PreconditionReport(
        evidence_count=evidence_count or 0,
        required_evidence=required_evidence,
        hazard_count=hazard_count or 0,
        incomplete_controls=incomplete_controls or 0,
    )


async def ensure_proof_pack_ready(
    session: AsyncSession,
    organization_id: uuid.UUID,
    work_record_id: uuid.UUID,
    *,
    required_evidence: int = DEFAULT_REQUIRED_EVIDENCE,
) -> PreconditionReport:
    """Raise ExportPreconditionError naming the first unmet precondition.

    Raises:
        ExportPreconditionError: If the work record is not ready.
    """
    report = await check_proof_pack_preconditions(
        session,
        organization_id,
        work_record_id,
        required_evidence=required_evidence,
    )
    messages = report.messages()
    if messages:
        raise ExportPreconditionError(messages[0], report=report)
    return report


def classify_error(error: BaseException | str, export_id: uuid.UUID | str) -> str:
    """Map error text onto an infrastructure reason, or the generic one."""
    text = str(error).lower()
    if _TIMEOUT_PATTERN.search(text):
        return TIMEOUT_REASON
    if _RENDER_PATTERN.search(text):
        return RENDER_REASON.format(export_id=export_id)
    if _STORAGE_PATTERN.search(text):
        return STORAGE_REASON
    return GENERIC_REASON.format(export_id=export_id)


async def compute_failure_reason(
    session: AsyncSession,
    job: ExportJob,
    error: BaseException,
    *,
    required_evidence: int = DEFAULT_REQUIRED_EVIDENCE,
) -> str:
    """Choose the user-facing failure_reason for a failed attempt.

    Never raises. If the precondition check fails the error text is still
    classified; if that fails too, the generic reason is returned.
    """
    if isinstance(error, ExportPreconditionError):
        return error.message

    if job.export_type == ExportType.PROOF_PACK.value and job.work_record_id is not None:
        try:
            report = await check_proof_pack_preconditions(
                session,
                job.organization_id,
                job.work_record_id,
                required_evidence=required_evidence,
            )
        except Exception:
            logger.exception("Failed to check export preconditions: export_id=%s", job.id)
        else:
            messages = report.messages()
            if messages:
                return messages[0]

    try:
        return classify_error(error, job.id)
    except Exception:
        logger.exception("Failed to diagnose export failure: export_id=%s", job.id)
        return GENERIC_REASON.format(export_id=job.id)
