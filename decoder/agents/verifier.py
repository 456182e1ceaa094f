"""Pass 3: targeted verification of Pass 2 output, and the deterministic merge."""

import logging
from typing import Optional

import ollama

from decoder.agents.models import (
    CorrectionSet,
    PolicyAnalysis,
    SectionConfidence,
    normalize,
)
from decoder.agents.output import parse_json_object, response_text
from decoder.core.enrichment import normalize_landmines
from decoder.core.knowledge import KnowledgeBase
from decoder.core.retry import RetryPolicy
from decoder.parsers.models import PolicyDocument

logger = logging.getLogger(__name__)

MODEL = "qwen3:32b"
RETRY = RetryPolicy(max_retries=2, base_delay=2.0)

_TEXT_LIMIT = 120_000


# ── Condensed Summary ────────────────────────────────────────────────


def summarize_extraction(record: PolicyAnalysis) -> str:
    """Short text view of the sections the verifier re-checks."""
    deductibles = "\n".join(
        f"- {d.type}: {d.amount or 'unknown'} ({d.applies_to})" for d in record.deductibles
    ) or "- none found"
    endorsements = "\n".join(
        f"- {e.name}" + (f" [{e.number}]" if e.number else "") for e in record.endorsements
    ) or "- none found"
    exclusions = "\n".join(f"- {e.name}" for e in record.exclusions) or "- none found"
    landmines = ", ".join(lm.rule_id for lm in record.landmines) or "none"
    favorable = ", ".join(p.provision_id for p in record.favorable_provisions) or "none"

    return f"""Policy: {record.policy_type} from {record.carrier}
Depreciation: {record.depreciation_method}. {record.depreciation_notes}

Deductibles:
{deductibles}

Endorsements:
{endorsements}

Exclusions:
{exclusions}

Landmines: {landmines}
Favorable provisions: {favorable}"""


def build_verification_prompt(document: PolicyDocument, record: PolicyAnalysis) -> str:
    text = document.text[:_TEXT_LIMIT]
    return f"""/no_think
A first extraction pass produced this summary of the policy below:

{summarize_extraction(record)}

Re-read the policy and check specifically for:
1. Deductibles that were missed, especially wind/hail, hurricane or percentage deductibles.
2. Endorsements in the forms schedule that were not listed.
3. Exclusions that were not listed, especially cosmetic damage, matching and roof age exclusions.
4. Whether the depreciation method is correct, including roof payment schedules.
5. Landmines or favorable provisions that were missed.

Return ONLY a JSON object. Include only what needs to change; use null or empty lists otherwise:
{{
  "corrections": {{"depreciation_method": "RCV" | "ACV" | "MODIFIED_ACV" | null, "depreciation_notes": "<corrected notes or null>"}},
  "additional_deductibles": [{{"type": "", "amount": "", "dollar_amount": null, "applies_to": ""}}],
  "additional_endorsements": [{{"name": "", "number": "", "description": "", "policy_language": "", "severity": "", "impact": ""}}],
  "additional_exclusions": [{{"name": "", "description": "", "policy_language": "", "severity": "", "impact": ""}}],
  "additional_landmines": [{{"rule_id": "", "name": "", "policy_language": "", "impact": "", "action_item": ""}}],
  "additional_favorable_provisions": [{{"provision_id": "", "name": "", "policy_language": "", "impact": "", "relevance": ""}}],
  "confidence_adjustments": {{"<section>": <new confidence 0.0-1.0, only for sections you re-scored>}},
  "verification_notes": "<what you checked and found>"
}}

## Policy Text
{text}"""


# ── Verification Call ────────────────────────────────────────────────


def request_corrections(
    document: PolicyDocument, record: PolicyAnalysis
) -> Optional[CorrectionSet]:
    """Run Pass 3. Returns None when the call or its output fails."""
    prompt = build_verification_prompt(document, record)
    try:
        response = RETRY.run(
            lambda: ollama.chat(
                model=MODEL,
                messages=[
                    {
                        "role": "system",
                        "content": (
                            "You are a meticulous insurance policy reviewer checking "
                            "another analyst's work for omissions. Respond ONLY with JSON."
                        ),
                    },
                    {"role": "user", "content": prompt},
                ],
                format="json",
                options={"temperature": 0},
                think=False,
            ),
            label="policy-verification",
        )
        return normalize(CorrectionSet, parse_json_object(response_text(response)))
    except Exception as exc:
        logger.error("Verification pass failed, keeping Pass 2 result: %s", exc)
        return None


# ── Merge ────────────────────────────────────────────────────────────


def _append_new(existing: list, candidates: list, key) -> list:
    """Existing items plus candidates whose key is not yet present."""
    merged = list(existing)
    seen = {key(item) for item in existing}
    for item in candidates:
        k = key(item)
        if k not in seen:
            merged.append(item)
            seen.add(k)
    return merged


def _name_key(item) -> str:
    return item.name.strip().lower()


def merge_corrections(
    record: PolicyAnalysis, corrections: CorrectionSet, kb: KnowledgeBase
) -> PolicyAnalysis:
    """Fold a CorrectionSet into the record. Pure and idempotent."""
    update: dict = {
        "deductibles": _append_new(
            record.deductibles, corrections.additional_deductibles, lambda d: d.type
        ),
        "endorsements": _append_new(
            record.endorsements, corrections.additional_endorsements, _name_key
        ),
        "exclusions": _append_new(
            record.exclusions, corrections.additional_exclusions, _name_key
        ),
        "landmines": normalize_landmines(
            _append_new(record.landmines, corrections.additional_landmines, lambda lm: lm.rule_id),
            kb,
        ),
        "favorable_provisions": _append_new(
            record.favorable_provisions,
            corrections.additional_favorable_provisions,
            lambda p: p.provision_id,
        ),
    }

    if corrections.depreciation_method is not None:
        update["depreciation_method"] = corrections.depreciation_method
    if corrections.depreciation_notes is not None:
        update["depreciation_notes"] = corrections.depreciation_notes

    overrides = corrections.confidence_adjustments.model_dump(exclude_none=True)
    if overrides:
        update["section_confidence"] = SectionConfidence.model_validate(
            {**record.section_confidence.model_dump(), **overrides}
        )

    notes = corrections.verification_notes.strip()
    if notes and f"Verification: {notes}" not in record.parse_notes:
        update["parse_notes"] = (
            f"{record.parse_notes} | Verification: {notes}" if record.parse_notes
            else f"Verification: {notes}"
        )

    merged = record.model_copy(update=update)
    logger.info(
        "Pass 3 — +%d deductibles, +%d endorsements, +%d exclusions, +%d landmines",
        len(merged.deductibles) - len(record.deductibles),
        len(merged.endorsements) - len(record.endorsements),
        len(merged.exclusions) - len(record.exclusions),
        len(merged.landmines) - len(record.landmines),
    )
    return merged


def verify_policy(
    document: PolicyDocument, record: PolicyAnalysis, kb: KnowledgeBase
) -> PolicyAnalysis:
    """Run Pass 3 and merge; on failure the record is returned unchanged."""
    corrections = request_corrections(document, record)
    if corrections is None:
        return record
    return merge_corrections(record, corrections, kb)
