from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from jsonschema import ValidationError as SchemaValidationError, validate

from caportal.models import AnalysisRecord, AnalysisStatus, DocumentRecord

logger = logging.getLogger(__name__)


ANALYSIS_MESSAGE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["analysis_id", "analysis_data"],
    "properties": {
        "analysis_id": {"type": "string", "minLength": 1},
        "analysis_data": {"type": "object"},
        # producers fill these loosely; build_analysis_record coerces them
        "job_id": {"type": ["string", "number", "null"]},
        "company_id": {"type": ["string", "number", "null"]},
        "document_ids": {"type": ["array", "null"]},
        "metadata": {"type": ["object", "null"]},
    },
}


class IngestionStage(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    DOCUMENTS_RESOLVED = "DOCUMENTS_RESOLVED"
    UPSERTED = "UPSERTED"
    DOCUMENT_STATUS_SYNCED = "DOCUMENT_STATUS_SYNCED"


@dataclass
class IngestionOutcome:
    analysis_id: str | None
    stage: IngestionStage
    ok: bool
    written: bool = False
    documents_resolved: int = 0
    documents_marked: int = 0
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "analysis_id": self.analysis_id,
            "stage": self.stage.value,
            "ok": self.ok,
            "written": self.written,
            "documents_resolved": self.documents_resolved,
            "documents_marked": self.documents_marked,
            "error": self.error,
        }


def _analysis_id_of(message: Any) -> str | None:
    if isinstance(message, dict) and isinstance(message.get("analysis_id"), str):
        return message["analysis_id"] or None
    return None


def _opt_str(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def _count(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default
    return number if number >= 0 else default


def document_ids_of(message: dict[str, Any]) -> list[str]:
    ids: list[str] = []
    for item in message.get("document_ids") or []:
        document_id = _opt_str(item)
        if document_id is not None:
            ids.append(document_id)
    return ids


def build_analysis_record(message: dict[str, Any], documents: list[DocumentRecord]) -> AnalysisRecord:
    """Map a validated bus message plus its resolved documents onto an AnalysisRecord."""
    analysis_data = message["analysis_data"]
    metadata = message.get("metadata") or {}
    first = documents[0] if documents else None

    organization_id = _opt_str(message.get("company_id")) or (first.organization_id if first else None)
    uploaded_by = _opt_str(metadata.get("uploaded_by")) or (first.uploaded_by if first else None)
    health = analysis_data.get("financial_health_analysis")

    return AnalysisRecord(
        analysis_id=message["analysis_id"],
        organization_id=organization_id or None,
        uploaded_by=uploaded_by or None,
        job_id=_opt_str(message.get("job_id")),
        documents=[doc.snapshot() for doc in documents],
        document_count=_count(metadata.get("document_count"), len(documents)) or len(documents),
        total_pages_processed=_count(metadata.get("total_pages_processed"), 0),
        consolidated_payload=analysis_data,
        health_analysis=health if isinstance(health, dict) else {},
        status=AnalysisStatus.COMPLETED,
    )


class AnalysisIngestionPipeline:
    """Consolidates `analysis:completed` bus messages into the entity store.

    A message moves through RECEIVED, VALIDATED, DOCUMENTS_RESOLVED, UPSERTED
    and DOCUMENT_STATUS_SYNCED. A failure at any stage is logged and the
    message is dropped; the pipeline never raises to the subscription loop.
    Documents are marked ANALYZED only after the analysis upsert succeeded.
    """

    def __init__(self, *, store: Any) -> None:
        self.store = store

    def handle_raw(self, raw: str | bytes) -> IngestionOutcome:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as exc:
            logger.warning("analysis_message_unparseable error=%s", exc)
            return IngestionOutcome(analysis_id=None, stage=IngestionStage.RECEIVED, ok=False, error="invalid json")
        return self.handle(message)

    def handle(self, message: Any) -> IngestionOutcome:
        analysis_id = _analysis_id_of(message)
        outcome = IngestionOutcome(analysis_id=analysis_id, stage=IngestionStage.RECEIVED, ok=False)
        try:
            self._run(message, outcome)
        except Exception as exc:
            # keep the subscription alive; there is no retry queue for dropped messages
            logger.exception(
                "analysis_ingest_failed analysis_id=%s stage=%s",
                analysis_id,
                outcome.stage.value,
            )
            outcome.error = f"{type(exc).__name__}: {exc}"
            return outcome
        return outcome

    def _run(self, message: Any, outcome: IngestionOutcome) -> None:
        try:
            validate(instance=message, schema=ANALYSIS_MESSAGE_SCHEMA)
        except SchemaValidationError as exc:
            logger.warning(
                "analysis_message_invalid analysis_id=%s error=%s",
                outcome.analysis_id,
                exc.message,
            )
            outcome.error = exc.message
            return
        outcome.stage = IngestionStage.VALIDATED

        documents = self.store.resolve_documents(document_ids_of(message))
        outcome.documents_resolved = len(documents)
        outcome.stage = IngestionStage.DOCUMENTS_RESOLVED

        record = build_analysis_record(message, documents)
        if record.organization_id is None:
            logger.warning("analysis_without_organization analysis_id=%s", record.analysis_id)
        _, written = self.store.upsert_analysis(record)
        outcome.written = written
        outcome.stage = IngestionStage.UPSERTED

        outcome.documents_marked = self.store.mark_documents_analyzed(
            document_ids=[doc.document_id for doc in documents],
            analysis_id=record.analysis_id,
        )
        outcome.stage = IngestionStage.DOCUMENT_STATUS_SYNCED
        outcome.ok = True
        logger.info(
            "analysis_ingested analysis_id=%s organization_id=%s written=%s documents=%d",
            record.analysis_id,
            record.organization_id,
            written,
            outcome.documents_marked,
        )
