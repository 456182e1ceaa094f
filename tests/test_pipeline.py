"""Tests for the policy decoding orchestrator."""

import json
from unittest.mock import MagicMock, patch

import pytest

from decoder.agents.classifier import SUMMARY_ONLY_WARNING
from decoder.agents.extractor import ExtractionError
from decoder.agents.models import DocumentMeta, PolicyAnalysis
from decoder.core.knowledge import load_knowledge_base
from decoder.core.pipeline import (
    DEGRADED_SUMMARY,
    FAILURE_WARNINGS,
    FailureKind,
    build_degraded_result,
    classify_failure,
    decode_policies,
    decode_policy,
)
from decoder.parsers.models import PolicyDocument
from decoder.parsers.pdf_parser import DocumentReadError, UnsupportedDocumentError

CLASSIFICATION = {
    "document_type": "summary_only",
    "page_count": 4,
    "carrier": "State Farm Fire and Casualty Company",
    "form_type": "HO-3",
    "endorsement_identifiers": ["HO 00 03", "HW 08 02"],
    "scan_quality": "good",
}

EXTRACTION = {
    "policy_type": "HO-3",
    "carrier": "State Farm",
    "coverages": [
        {"section": "coverage_a", "label": "Coverage A - Dwelling", "limit": "$300,000"}
    ],
    "deductibles": [
        {"type": "standard", "amount": "$1,000"},
        {"type": "wind_hail", "amount": "2%"},
    ],
    "depreciation_method": "RCV",
    "landmines": [{"rule_id": "sublimit_wind_hail", "severity": "info"}],
    "section_confidence": {
        "policy_meta": 0.8, "coverages": 0.8, "deductibles": 0.8,
        "depreciation": 0.8, "exclusions": 0.8, "endorsements": 0.8,
    },
    "risk_level": "low",
    "parse_notes": "Declarations only.",
}

VERIFICATION = {
    "additional_deductibles": [{"type": "wind_hail", "amount": "2%"}],
    "additional_landmines": [{"rule_id": "cosmetic_exclusion"}],
    "confidence_adjustments": {"exclusions": 0.4},
    "verification_notes": "Checked forms schedule.",
}


def _response(payload) -> MagicMock:
    resp = MagicMock()
    resp.message.content = payload if isinstance(payload, str) else json.dumps(payload)
    return resp


@pytest.fixture(scope="module")
def kb():
    return load_knowledge_base()


@pytest.fixture()
def document() -> PolicyDocument:
    return PolicyDocument(
        content_hash="c" * 64,
        text="DECLARATIONS State Farm HO-3 Forms: HO 00 03, HW 08 02",
        page_count=4,
        parser_used="docling",
    )


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("decoder.core.retry.time.sleep"):
        yield


def _assert_degraded(record: PolicyAnalysis, kind: FailureKind):
    assert isinstance(record, PolicyAnalysis)
    assert record.missing_document_warning == FAILURE_WARNINGS[kind]
    assert record.overall_confidence == 0
    assert record.risk_level == "medium"
    assert record.summary == DEGRADED_SUMMARY
    assert record.parse_notes.startswith("Analysis failed: ")
    for name in ("coverages", "deductibles", "exclusions", "endorsements", "landmines",
                 "favorable_provisions"):
        assert getattr(record, name) == []
    assert set(record.section_confidence.model_dump().values()) == {0.0}


# ── Happy Path ───────────────────────────────────────────────────────


@patch("decoder.agents.classifier.ollama.chat")
@patch("decoder.core.pipeline.load_policy_document")
def test_full_pipeline(mock_load, mock_chat, document, kb):
    mock_load.return_value = document
    mock_chat.side_effect = [
        _response(CLASSIFICATION),
        _response(EXTRACTION),
        _response(VERIFICATION),
    ]

    record = decode_policy(b"%PDF-1.7 ...", claim_type="hail", kb=kb)

    assert mock_chat.call_count == 3
    assert record.document_type == "summary_only"
    assert record.missing_document_warning == SUMMARY_ONLY_WARNING
    assert record.endorsement_identifiers == ["HO 00 03", "HW 08 02"]

    # Enrichment: cosmetic form surfaced from the forms schedule
    cosmetic = [e for e in record.endorsements if e.name == "Cosmetic Damage Exclusion"]
    assert len(cosmetic) == 1
    assert cosmetic[0].needs_verification is True
    assert any("from endorsement HW 08 02" in e.name for e in record.exclusions)

    # Verification merge: no duplicate wind_hail, new landmine normalized
    assert [d.type for d in record.deductibles] == ["standard", "wind_hail"]
    assert {lm.rule_id: lm.severity for lm in record.landmines} == {
        "sublimit_wind_hail": "warning",
        "cosmetic_exclusion": "critical",
    }
    assert record.parse_notes == "Declarations only. | Verification: Checked forms schedule."

    # Aggregation & resolution
    assert record.risk_level == "high"
    assert record.overall_confidence == pytest.approx(0.72)
    assert [d.dollar_amount for d in record.deductibles] == [1000, 6000]


@patch("decoder.agents.classifier.ollama.chat")
@patch("decoder.core.pipeline.load_policy_document")
def test_verifier_failure_keeps_pass2_result(mock_load, mock_chat, document, kb):
    mock_load.return_value = document
    mock_chat.side_effect = [
        _response(CLASSIFICATION),
        _response(EXTRACTION),
        Exception("invalid request"),
    ]

    record = decode_policy(b"%PDF-1.7 ...", kb=kb)
    assert mock_chat.call_count == 3
    assert "Verification" not in record.parse_notes
    assert [lm.rule_id for lm in record.landmines] == ["sublimit_wind_hail"]
    assert record.risk_level == "medium"
    assert record.overall_confidence == pytest.approx(0.8)
    assert record.deductibles[1].dollar_amount == 6000


@patch("decoder.agents.classifier.ollama.chat")
@patch("decoder.core.pipeline.load_policy_document")
def test_classifier_failure_continues_with_defaults(mock_load, mock_chat, document, kb):
    mock_load.return_value = document
    mock_chat.side_effect = [
        _response("not json at all"),
        _response(EXTRACTION),
        _response({"verification_notes": ""}),
    ]

    record = decode_policy(b"%PDF-1.7 ...", kb=kb)
    assert record.document_type == "unknown"
    assert record.page_count == 4
    assert record.carrier == "State Farm"
    assert record.overall_confidence == pytest.approx(0.8)


# ── Degraded Results ─────────────────────────────────────────────────


def test_empty_bytes_degrade_to_unreadable(kb):
    _assert_degraded(decode_policy(b"", kb=kb), FailureKind.UNREADABLE)


def test_non_pdf_degrades_to_unsupported(kb):
    _assert_degraded(decode_policy(b"PK\x03\x04 not a pdf", kb=kb), FailureKind.UNSUPPORTED_FORMAT)


@pytest.mark.parametrize("data", [None, "%PDF-1.7 as text", 42])
def test_non_bytes_input_degrades_to_unsupported(data, kb):
    record = decode_policy(data, kb=kb)
    _assert_degraded(record, FailureKind.UNSUPPORTED_FORMAT)
    assert "Expected document bytes" in record.parse_notes


def test_corrupt_pdf_never_raises(kb):
    record = decode_policy(b"%PDF-1.4\n\x00\xff garbage", kb=kb)
    _assert_degraded(record, FailureKind.UNREADABLE)


@patch("decoder.agents.classifier.ollama.chat")
@patch("decoder.core.pipeline.load_policy_document")
def test_every_inference_call_failing_still_returns_record(mock_load, mock_chat, document, kb):
    mock_load.return_value = document
    mock_chat.side_effect = Exception("503 Service Unavailable")

    record = decode_policy(b"%PDF-1.7 ...", kb=kb)
    _assert_degraded(record, FailureKind.SERVICE_UNAVAILABLE)
    assert record.page_count == 4
    assert record.carrier == "Unknown Carrier"
    assert "503 Service Unavailable" in record.parse_notes


@patch("decoder.agents.classifier.ollama.chat")
@patch("decoder.core.pipeline.load_policy_document")
def test_unrepairable_extraction_degrades_with_meta(mock_load, mock_chat, document, kb):
    mock_load.return_value = document
    mock_chat.side_effect = [
        _response(CLASSIFICATION),
        _response("```json\n{broken"),
        _response("still broken"),
    ]

    record = decode_policy(b"%PDF-1.7 ...", kb=kb)
    _assert_degraded(record, FailureKind.EXTRACTION_FAILED)
    assert record.carrier == "State Farm Fire and Casualty Company"
    assert record.policy_type == "HO-3"
    assert record.document_type == "summary_only"
    assert record.endorsement_identifiers == ["HO 00 03", "HW 08 02"]


@patch("decoder.core.pipeline.load_policy_document")
def test_unexpected_error_is_contained(mock_load, kb):
    mock_load.side_effect = RuntimeError("boom")
    _assert_degraded(decode_policy(b"%PDF", kb=kb), FailureKind.EXTRACTION_FAILED)


@pytest.mark.parametrize(
    "exc, kind",
    [
        (UnsupportedDocumentError("not a pdf"), FailureKind.UNSUPPORTED_FORMAT),
        (DocumentReadError("encrypted"), FailureKind.UNREADABLE),
        (Exception("429 rate_limit"), FailureKind.SERVICE_UNAVAILABLE),
        (Exception("request timed out"), FailureKind.SERVICE_UNAVAILABLE),
        (ExtractionError("bad json"), FailureKind.EXTRACTION_FAILED),
        (KeyError("x"), FailureKind.EXTRACTION_FAILED),
    ],
)
def test_classify_failure(exc, kind):
    assert classify_failure(exc) == kind


def test_degraded_result_without_meta():
    record = build_degraded_result(FailureKind.UNREADABLE, "empty file")
    assert record.carrier == "Unknown Carrier"
    assert record.policy_type == "UNKNOWN"
    assert record.parse_notes == "Analysis failed: empty file"
    assert record.depreciation_method == "UNKNOWN"


def test_degraded_result_keeps_meta_identity():
    meta = DocumentMeta(carrier="Erie", form_type="HO-5", page_count=9, scan_quality="poor")
    record = build_degraded_result(FailureKind.SERVICE_UNAVAILABLE, "timeout", meta)
    assert record.carrier == "Erie"
    assert record.policy_type == "HO-5"
    assert record.page_count == 9
    assert record.scan_quality == "poor"


# ── Batch ────────────────────────────────────────────────────────────


@patch("decoder.core.pipeline.decode_policy")
def test_decode_policies_preserves_order(mock_decode, kb):
    mock_decode.side_effect = lambda data, claim_type, kb: PolicyAnalysis(
        policy_number=data.decode()
    )
    documents = [f"policy-{i}".encode() for i in range(6)]

    records = decode_policies(documents, claim_type="wind", max_workers=3, kb=kb)
    assert [r.policy_number for r in records] == [f"policy-{i}" for i in range(6)]
    assert mock_decode.call_count == 6


def test_decode_policies_mixed_inputs(kb):
    records = decode_policies([b"", b"not a pdf"], kb=kb)
    assert [r.missing_document_warning for r in records] == [
        FAILURE_WARNINGS[FailureKind.UNREADABLE],
        FAILURE_WARNINGS[FailureKind.UNSUPPORTED_FORMAT],
    ]


def test_decode_policies_empty():
    assert decode_policies([]) == []


# ── Live Ollama Tests ────────────────────────────────────────────────


@pytest.mark.ollama
def test_live_decode_declarations_page(tmp_path):
    """A generated declarations page decodes end-to-end against local models."""
    from fpdf import FPDF

    pdf = FPDF()
    pdf.add_page()
    pdf.set_font("Helvetica", size=11)
    pdf.multi_cell(w=0, text=(
        "HOMEOWNERS POLICY DECLARATIONS\n"
        "State Farm Fire and Casualty Company\n"
        "Policy Number 12-AB-3456-7    Policy Form HO-3\n"
        "Coverage A - Dwelling: $300,000\n"
        "Deductibles: All Other Perils $1,000. Wind/Hail 2% of Coverage A.\n"
        "Forms and Endorsements: HO 00 03, HW 08 02, FE-5398\n"
    ))
    path = tmp_path / "declarations.pdf"
    pdf.output(str(path))

    record = decode_policy(path.read_bytes(), claim_type="hail")
    assert record.overall_confidence > 0
    assert any(e.number == "HW 08 02" for e in record.endorsements)
