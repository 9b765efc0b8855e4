"""Export renderers: turn an organization's data into artifact bytes.

Each export type has one renderer. A renderer is an async callable
``(session, organization_id, job) -> RenderResult``: it reads what it
needs (always scoped to the organization), renders PDFs/CSVs in memory and
decides the artifact's storage path. Renderers never modify the export row
and never touch object storage; the export handler uploads the result.

Artifacts:
- proof_pack: ZIP of ledger-export.pdf, controls.pdf, attestations.pdf and
  evidence-index.pdf
- ledger: ledger-export.pdf
- executive_brief: executive-brief.pdf
- bulk_jobs: a CSV and/or PDF listing of selected work records (a ZIP when
  both formats are requested)

ZIP archives are deterministic: entries are sorted by name and carry a
fixed timestamp, so identical inputs produce identical bytes.
"""

from __future__ import annotations

import csv
import hashlib
import io
import json
import logging
import uuid
import zipfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import func, select

from exportledger.db.models.base import ExportType
from exportledger.db.models.records import Evidence, MitigationItem, Organization, WorkRecord
from exportledger.services.diagnostics import DEFAULT_REQUIRED_EVIDENCE, ensure_proof_pack_ready
from exportledger.services.ledger import LedgerService

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from exportledger.db.models.exports import ExportJob

logger = logging.getLogger(__name__)

MANIFEST_VERSION = "1.0"

# 1980-01-01 is the earliest timestamp a ZIP entry can hold
ZIP_TIMESTAMP = (1980, 1, 1, 0, 0, 0)

TIME_RANGES: dict[str, timedelta | None] = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "all": None,
}
DEFAULT_TIME_RANGE = "30d"

MAX_LEDGER_EVENTS = 10_000

BULK_FORMATS = frozenset({"csv", "pdf"})

WORK_RECORD_CSV_HEADERS = (
    "Client",
    "Job Type",
    "Location",
    "Status",
    "Risk Score",
    "Risk Level",
    "Owner",
    "Created (UTC)",
    "Updated (UTC)",
)

HIGH_RISK_LEVELS = frozenset({"high", "critical"})

CONTENT_TYPES = {
    "pdf": "application/pdf",
    "csv": "text/csv",
    "zip": "application/zip",
    "json": "application/json",
}


class RenderedPDF(Protocol):
    content: bytes


class PDFRenderer(Protocol):
    def render(self, template_name: str, context: dict[str, Any] | None = None) -> RenderedPDF: ...


@dataclass(frozen=True, slots=True)
class RenderedFile:
    """One generated file.

    Attributes:
        name: File name inside the archive (or of the uploaded object).
        data: File contents.
    """

    name: str
    data: bytes

    @property
    def file_type(self) -> str:
        return PurePosixPath(self.name).suffix.lstrip(".").lower()

    @property
    def content_type(self) -> str:
        return CONTENT_TYPES.get(self.file_type, "application/octet-stream")

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.data).hexdigest()

    @property
    def size(self) -> int:
        return len(self.data)

    def manifest_entry(self) -> dict[str, str]:
        return {"name": self.name, "type": self.file_type, "hash": self.sha256}


@dataclass(frozen=True)
class RenderResult:
    """What a renderer produced.

    Attributes:
        files: The generated documents, in manifest order.
        artifact: The object to upload (a ZIP of files, or files[0]).
        storage_path: Object key for the artifact.
        manifest_extra: Additional top-level manifest fields.
    """

    files: tuple[RenderedFile, ...]
    artifact: RenderedFile
    storage_path: str
    manifest_extra: dict[str, Any] = field(default_factory=dict)


Renderer = Callable[["AsyncSession", uuid.UUID, "ExportJob"], Awaitable[RenderResult]]


class RenderError(Exception):
    """Raised when a renderer cannot produce an artifact from its inputs."""


def build_zip(files: Sequence[RenderedFile]) -> bytes:
    """Bundle files into a deterministic ZIP archive."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for item in sorted(files, key=lambda f: f.name):
            info = zipfile.ZipInfo(item.name, date_time=ZIP_TIMESTAMP)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = 0o644 << 16
            zf.writestr(info, item.data)
    return buffer.getvalue()


def manifest_path_for(storage_path: str) -> str:
    """Manifest key stored next to an artifact: same stem, "-manifest.json" suffix."""
    path = PurePosixPath(storage_path)
    return str(path.with_name(f"{path.stem}-manifest.json"))


def build_manifest(
    job: ExportJob,
    result: RenderResult,
    *,
    generated_at: datetime | None = None,
) -> dict[str, Any]:
    """Describe an export's files and artifact with their SHA-256 hashes."""
    generated_at = generated_at or datetime.now(UTC)
    manifest: dict[str, Any] = {
        "version": MANIFEST_VERSION,
        "generated_at": generated_at.isoformat(),
        "organization_id": str(job.organization_id),
        "work_record_id": str(job.work_record_id) if job.work_record_id else None,
        "filters": dict(job.filters or {}),
        "files": [f.manifest_entry() for f in result.files],
        "artifact": result.artifact.manifest_entry(),
    }
    manifest.update(result.manifest_extra)
    return manifest


def serialize_manifest(manifest: dict[str, Any]) -> bytes:
    return json.dumps(manifest, indent=2, sort_keys=True, default=str).encode("utf-8")


def build_work_records_csv(records: Sequence[WorkRecord]) -> bytes:
    """CSV listing of work records.

    Cells containing a comma, quote or line break are quoted, with quotes
    doubled.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\r\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(WORK_RECORD_CSV_HEADERS)
    for row in work_record_rows(records):
        writer.writerow(row)
    return buffer.getvalue().encode("utf-8")


def work_record_rows(records: Sequence[WorkRecord]) -> list[list[str]]:
    return [
        [
            _cell(record.client_name),
            _cell(record.job_type),
            _cell(record.location),
            _cell(record.status),
            _cell(record.risk_score),
            _cell(record.risk_level),
            _cell(record.owner_name),
            _cell(record.created_at),
            _cell(record.updated_at),
        ]
        for record in records
    ]


def _cell(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).isoformat()
    return str(value)


def resolve_time_range(
    filters: dict[str, Any] | None, now: datetime
) -> tuple[str, datetime | None]:
    """Map filters.time_range onto a lower bound for event timestamps."""
    name = str((filters or {}).get("time_range") or DEFAULT_TIME_RANGE)
    if name not in TIME_RANGES:
        logger.warning("Unknown time_range=%s, using %s", name, DEFAULT_TIME_RANGE)
        name = DEFAULT_TIME_RANGE
    delta = TIME_RANGES[name]
    return name, (now - delta if delta is not None else None)


def _timestamp_ms(now: datetime) -> int:
    return int(now.timestamp() * 1000)


class BaseRenderer:
    """Shared loading and PDF helpers."""

    export_type: ExportType

    def __init__(self, pdf: PDFRenderer, *, clock: Callable[[], datetime] | None = None) -> None:
        self._pdf = pdf
        self._clock = clock or (lambda: datetime.now(UTC))

    def _render_pdf(self, name: str, template_name: str, context: dict[str, Any]) -> RenderedFile:
        result = self._pdf.render(template_name, context)
        return RenderedFile(name=name, data=result.content)

    async def _base_context(
        self,
        session: AsyncSession,
        organization_id: uuid.UUID,
        job: ExportJob,
    ) -> dict[str, Any]:
        organization = await session.get(Organization, organization_id)
        return {
            "organization_id": str(organization_id),
            "organization_name": organization.name if organization else None,
            "export_id": str(job.id),
        }

    @staticmethod
    async def _load_work_record(
        session: AsyncSession,
        organization_id: uuid.UUID,
        work_record_id: uuid.UUID,
    ) -> WorkRecord:
        record = await session.scalar(
            select(WorkRecord).where(
                WorkRecord.id == work_record_id,
                WorkRecord.organization_id == organization_id,
            )
        )
        if record is None:
            msg = f"Work record {work_record_id} not found in organization {organization_id}"
            raise RenderError(msg)
        return record

    @staticmethod
    async def _load_events(
        session: AsyncSession,
        organization_id: uuid.UUID,
        start: datetime | None,
    ) -> tuple[list[Any], bool]:
        """Most recent events in the range, oldest first, and whether older ones were cut."""
        newest = await LedgerService(session).get_events(
            organization_id, start=start, limit=MAX_LEDGER_EVENTS + 1, newest_first=True
        )
        truncated = len(newest) > MAX_LEDGER_EVENTS
        if truncated:
            logger.warning(
                "Ledger export truncated: org_id=%s, limit=%d", organization_id, MAX_LEDGER_EVENTS
            )
        return list(reversed(newest[:MAX_LEDGER_EVENTS])), truncated

    async def _render_ledger_pdf(
        self,
        session: AsyncSession,
        organization_id: uuid.UUID,
        job: ExportJob,
        context: dict[str, Any],
    ) -> RenderedFile:
        time_range, start = resolve_time_range(job.filters, self._clock())
        events, truncated = await self._load_events(session, organization_id, start)
        return self._render_pdf(
            "ledger-export.pdf",
            "ledger_export.html",
            {
                **context,
                "events": events,
                "truncated": truncated,
                "max_events": MAX_LEDGER_EVENTS,
                "time_range": time_range,
                "range_start": start,
            },
        )


class ProofPackRenderer(BaseRenderer):
    """Proof pack: ledger, controls, attestations and an evidence index, zipped."""

    export_type = ExportType.PROOF_PACK

    def __init__(
        self,
        pdf: PDFRenderer,
        *,
        required_evidence: int = DEFAULT_REQUIRED_EVIDENCE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(pdf, clock=clock)
        self._required_evidence = required_evidence

    async def __call__(
        self,
        session: AsyncSession,
        organization_id: uuid.UUID,
        job: ExportJob,
    ) -> RenderResult:
        if job.work_record_id is None:
            raise RenderError("proof_pack export has no work_record_id")

        await ensure_proof_pack_ready(
            session,
            organization_id,
            job.work_record_id,
            required_evidence=self._required_evidence,
        )

        record = await self._load_work_record(session, organization_id, job.work_record_id)
        context = await self._base_context(session, organization_id, job)
        context["work_record"] = record

        items = (
            await session.scalars(
                select(MitigationItem)
                .where(
                    MitigationItem.organization_id == organization_id,
                    MitigationItem.work_record_id == record.id,
                    MitigationItem.deleted_at.is_(None),
                )
                .order_by(MitigationItem.created_at, MitigationItem.id)
            )
        ).all()
        hazards = [item for item in items if item.is_hazard]
        controls = [item for item in items if not item.is_hazard]
        controls_by_hazard: dict[uuid.UUID, list[MitigationItem]] = {}
        for control in controls:
            controls_by_hazard.setdefault(control.hazard_id, []).append(control)
        hazard_titles = {hazard.id: hazard.title for hazard in hazards}

        evidence = (
            await session.scalars(
                select(Evidence)
                .where(
                    Evidence.organization_id == organization_id,
                    Evidence.work_record_id == record.id,
                )
                .order_by(Evidence.created_at, Evidence.id)
            )
        ).all()

        ledger_pdf = await self._render_ledger_pdf(session, organization_id, job, context)
        controls_pdf = self._render_pdf(
            "controls.pdf",
            "controls.html",
            {
                **context,
                "hazards": hazards,
                "controls": controls,
                "controls_by_hazard": controls_by_hazard,
                "completed_count": sum(1 for c in controls if c.is_completed),
            },
        )
        attestations_pdf = self._render_pdf(
            "attestations.pdf",
            "attestations.html",
            {
                **context,
                "attestations": [
                    {
                        "title": c.title,
                        "hazard_title": hazard_titles.get(c.hazard_id, ""),
                        "completed_at": c.completed_at,
                    }
                    for c in controls
                    if c.is_completed
                ],
            },
        )
        payload = [ledger_pdf, controls_pdf, attestations_pdf]
        index_pdf = self._render_pdf(
            "evidence-index.pdf",
            "evidence_index.html",
            {
                **context,
                "payload_files": [
                    {"name": f.name, "size": f.size, "hash": f.sha256} for f in payload
                ],
                "evidence": evidence,
            },
        )

        files = (*payload, index_pdf)
        now = self._clock()
        archive = RenderedFile(name="proof-pack.zip", data=build_zip(files))
        storage_path = f"{organization_id}/proof-packs/{record.id}-{_timestamp_ms(now)}.zip"

        logger.debug(
            "Rendered proof pack: export_id=%s, files=%d, evidence=%d, bytes=%d",
            job.id,
            len(files),
            len(evidence),
            archive.size,
        )
        return RenderResult(files=files, artifact=archive, storage_path=storage_path)


class LedgerExportRenderer(BaseRenderer):
    """Ledger export PDF over filters.time_range."""

    export_type = ExportType.LEDGER

    async def __call__(
        self,
        session: AsyncSession,
        organization_id: uuid.UUID,
        job: ExportJob,
    ) -> RenderResult:
        context = await self._base_context(session, organization_id, job)
        document = await self._render_ledger_pdf(session, organization_id, job, context)
        now = self._clock()
        return RenderResult(
            files=(document,),
            artifact=document,
            storage_path=f"{organization_id}/ledger-exports/{_timestamp_ms(now)}.pdf",
        )


class ExecutiveBriefRenderer(BaseRenderer):
    """One-page risk posture summary for an organization or a single work record."""

    export_type = ExportType.EXECUTIVE_BRIEF

    top_records = 10

    async def __call__(
        self,
        session: AsyncSession,
        organization_id: uuid.UUID,
        job: ExportJob,
    ) -> RenderResult:
        context = await self._base_context(session, organization_id, job)

        record_filter = [
            WorkRecord.organization_id == organization_id,
            WorkRecord.deleted_at.is_(None),
        ]
        item_filter = [
            MitigationItem.organization_id == organization_id,
            MitigationItem.hazard_id.is_not(None),
            MitigationItem.deleted_at.is_(None),
        ]
        evidence_filter = [Evidence.organization_id == organization_id]
        if job.work_record_id is not None:
            context["work_record"] = await self._load_work_record(
                session, organization_id, job.work_record_id
            )
            record_filter.append(WorkRecord.id == job.work_record_id)
            item_filter.append(MitigationItem.work_record_id == job.work_record_id)
            evidence_filter.append(Evidence.work_record_id == job.work_record_id)

        records = (
            await session.scalars(select(WorkRecord).where(*record_filter))
        ).all()
        scores = [r.risk_score for r in records if r.risk_score is not None]

        completed_controls = await session.scalar(
            select(func.count())
            .select_from(MitigationItem)
            .where(*item_filter, MitigationItem.is_completed.is_(True))
        )
        open_controls = await session.scalar(
            select(func.count())
            .select_from(MitigationItem)
            .where(*item_filter, MitigationItem.is_completed.is_(False))
        )
        evidence_count = await session.scalar(
            select(func.count()).select_from(Evidence).where(*evidence_filter)
        )

        now = self._clock()
        recent_events = await self._load_events(session, organization_id, now - timedelta(days=30))

        summary = {
            "record_count": len(records),
            "high_risk_count": sum(
                1 for r in records if (r.risk_level or "").lower() in HIGH_RISK_LEVELS
            ),
            "average_risk_score": round(sum(scores) / len(scores), 1) if scores else None,
            "open_controls": open_controls or 0,
            "completed_controls": completed_controls or 0,
            "evidence_count": evidence_count or 0,
            "recent_event_count": len(recent_events),
        }
        ranked = sorted(records, key=lambda r: r.risk_score or 0, reverse=True)

        document = self._render_pdf(
            "executive-brief.pdf",
            "executive_brief.html",
            {**context, "summary": summary, "records": ranked[: self.top_records]},
        )
        scope = job.work_record_id or "all"
        return RenderResult(
            files=(document,),
            artifact=document,
            storage_path=f"{organization_id}/executive-briefs/{scope}-{_timestamp_ms(now)}.pdf",
        )


class BulkJobsRenderer(BaseRenderer):
    """CSV and/or PDF listing of selected work records."""

    export_type = ExportType.BULK_JOBS

    async def __call__(
        self,
        session: AsyncSession,
        organization_id: uuid.UUID,
        job: ExportJob,
    ) -> RenderResult:
        filters = job.filters or {}
        record_ids = self._parse_ids(filters.get("job_ids"))
        if not record_ids:
            raise RenderError("bulk_jobs export has no job_ids")
        formats = self._parse_formats(filters.get("formats"))

        records = (
            await session.scalars(
                select(WorkRecord)
                .where(
                    WorkRecord.organization_id == organization_id,
                    WorkRecord.id.in_(record_ids),
                )
                .order_by(WorkRecord.created_at, WorkRecord.id)
            )
        ).all()
        eligible = [r for r in records if r.is_exportable]
        if not eligible:
            raise RenderError(
                "No eligible jobs to export: all requested jobs are deleted or archived"
            )

        now = self._clock()
        stem = f"work-records-export-{now.date().isoformat()}"
        files: list[RenderedFile] = []
        if "csv" in formats:
            files.append(RenderedFile(name=f"{stem}.csv", data=build_work_records_csv(eligible)))
        if "pdf" in formats:
            context = await self._base_context(session, organization_id, job)
            files.append(
                self._render_pdf(
                    f"{stem}.pdf",
                    "work_records.html",
                    {
                        **context,
                        "headers": WORK_RECORD_CSV_HEADERS,
                        "rows": work_record_rows(eligible),
                    },
                )
            )

        if len(files) == 1:
            artifact = files[0]
        else:
            artifact = RenderedFile(name=f"{stem}.zip", data=build_zip(files))

        prefix = f"{organization_id}/bulk-jobs/{job.id}-{_timestamp_ms(now)}"
        return RenderResult(
            files=tuple(files),
            artifact=artifact,
            storage_path=f"{prefix}.{artifact.file_type}",
            manifest_extra={"job_count": len(eligible)},
        )

    @staticmethod
    def _parse_ids(raw: Any) -> list[uuid.UUID]:
        if not raw:
            return []
        ids: list[uuid.UUID] = []
        for value in raw:
            try:
                ids.append(uuid.UUID(str(value)))
            except ValueError:
                logger.warning("Ignoring invalid work record id in bulk export: %s", value)
        return ids

    @staticmethod
    def _parse_formats(raw: Any) -> list[str]:
        if not raw:
            return ["csv"]
        formats = [str(f).lower() for f in raw]
        unknown = sorted(set(formats) - BULK_FORMATS)
        if unknown:
            logger.warning("Ignoring unsupported bulk export formats: %s", ", ".join(unknown))
        return [f for f in ("csv", "pdf") if f in formats] or ["csv"]


def default_renderers(
    pdf: PDFRenderer,
    *,
    required_evidence: int = DEFAULT_REQUIRED_EVIDENCE,
    clock: Callable[[], datetime] | None = None,
) -> dict[ExportType, BaseRenderer]:
    """One renderer per export type, sharing a PDF generator."""
    return {
        ExportType.PROOF_PACK: ProofPackRenderer(
            pdf, required_evidence=required_evidence, clock=clock
        ),
        ExportType.LEDGER: LedgerExportRenderer(pdf, clock=clock),
        ExportType.EXECUTIVE_BRIEF: ExecutiveBriefRenderer(pdf, clock=clock),
        ExportType.BULK_JOBS: BulkJobsRenderer(pdf, clock=clock),
    }
