"""Policy decoding pipeline: document -> classify -> extract -> enrich -> verify -> score.

``decode_policy`` is total. Any input, including corrupt bytes, yields a
fully-populated PolicyAnalysis. Only a failed extraction or an unreadable
document produces a degraded record; every other stage failure is absorbed
in place.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Optional, Sequence

from decoder.agents.classifier import classify_document
from decoder.agents.extractor import ExtractionError, extract_policy
from decoder.agents.models import DocumentMeta, PolicyAnalysis, SectionConfidence
from decoder.agents.verifier import verify_policy
from decoder.core.enrichment import enrich_record
from decoder.core.knowledge import KnowledgeBase, default_knowledge_base
from decoder.core.retry import is_retryable_error
from decoder.core.scoring import finalize_record
from decoder.parsers.pdf_parser import (
    DocumentReadError,
    UnsupportedDocumentError,
    load_policy_document,
)

logger = logging.getLogger(__name__)


# ── Degraded Results ─────────────────────────────────────────────────


class FailureKind(str, Enum):
    UNREADABLE = "unreadable"
    UNSUPPORTED_FORMAT = "unsupported_format"
    SERVICE_UNAVAILABLE = "service_unavailable"
    EXTRACTION_FAILED = "extraction_failed"


FAILURE_WARNINGS = {
    FailureKind.UNREADABLE: (
        "The document could not be read. It may be empty, corrupted or "
        "password-protected. Please upload a clearer copy of the policy."
    ),
    FailureKind.UNSUPPORTED_FORMAT: (
        "The file is not a supported format. Please upload the policy as a PDF."
    ),
    FailureKind.SERVICE_UNAVAILABLE: (
        "The analysis service is temporarily unavailable. Please try again in a few minutes."
    ),
    FailureKind.EXTRACTION_FAILED: (
        "Policy analysis could not be completed. Please upload a clearer or "
        "complete copy of the policy, or try again."
    ),
}

DEGRADED_DEPRECIATION_NOTES = "Could not determine. Parsing failed."
DEGRADED_SUMMARY = (
    "We were unable to analyze this policy. Please upload a clearer copy of "
    "the complete policy document."
)


def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, UnsupportedDocumentError):
        return FailureKind.UNSUPPORTED_FORMAT
    if isinstance(exc, DocumentReadError):
        return FailureKind.UNREADABLE
    if isinstance(exc, ExtractionError):
        return FailureKind.EXTRACTION_FAILED
    if is_retryable_error(exc):
        return FailureKind.SERVICE_UNAVAILABLE
    return FailureKind.EXTRACTION_FAILED


def build_degraded_result(
    kind: FailureKind, error: BaseException | str, meta: Optional[DocumentMeta] = None
) -> PolicyAnalysis:
    """A total record with empty lists and zero confidence, explaining the failure."""
    meta = meta or DocumentMeta()
    record = PolicyAnalysis(
        depreciation_notes=DEGRADED_DEPRECIATION_NOTES,
        summary=DEGRADED_SUMMARY,
        risk_level="medium",
        section_confidence=SectionConfidence(
            policy_meta=0, coverages=0, deductibles=0, depreciation=0, exclusions=0, endorsements=0
        ),
        overall_confidence=0.0,
        parse_notes=f"Analysis failed: {error}",
    ).with_document_meta(meta)

    update = {"missing_document_warning": FAILURE_WARNINGS[kind]}
    if meta.form_type:
        update["policy_type"] = meta.form_type
    if meta.carrier:
        update["carrier"] = meta.carrier
    return record.model_copy(update=update)


# ── Orchestrator ─────────────────────────────────────────────────────


def decode_policy(
    data: bytes,
    claim_type: Optional[str] = None,
    kb: Optional[KnowledgeBase] = None,
) -> PolicyAnalysis:
    """Decode one policy document. Never raises for any input."""
    meta: Optional[DocumentMeta] = None
    try:
        kb = kb or default_knowledge_base()
        document = load_policy_document(data)
        logger.info(
            "Loaded document %s (%d pages, parser: %s)",
            document.content_hash[:12],
            document.page_count,
            document.parser_used,
        )

        meta = classify_document(document)
        record = extract_policy(document, meta, kb, claim_type)
        record = enrich_record(record, meta, kb)
        record = verify_policy(document, record, kb)
        record = finalize_record(record)
    except Exception as exc:
        kind = classify_failure(exc)
        logger.error("Policy decoding failed (%s): %s", kind.value, exc)
        return build_degraded_result(kind, exc, meta)

    logger.info(
        "Decoded policy — %s / %s: risk %s, confidence %.2f, %d landmines",
        record.carrier,
        record.policy_type,
        record.risk_level,
        record.overall_confidence,
        len(record.landmines),
    )
    return record


def decode_policies(
    documents: Sequence[bytes],
    claim_type: Optional[str] = None,
    max_workers: int = 2,
    kb: Optional[KnowledgeBase] = None,
) -> list[PolicyAnalysis]:
    """Decode several documents concurrently; results follow input order."""
    if not documents:
        return []
    kb = kb or default_knowledge_base()
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        return list(pool.map(lambda data: decode_policy(data, claim_type, kb), documents))
