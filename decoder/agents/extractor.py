"""Pass 2: structured extraction of a full policy record using Qwen3:32b via Ollama."""

import logging
from typing import Optional

import ollama

from decoder.agents.models import DocumentMeta, PolicyAnalysis, normalize_record
from decoder.agents.output import parse_json_object, response_text
from decoder.core.knowledge import KnowledgeBase
from decoder.core.retry import RetryPolicy
from decoder.parsers.models import PolicyDocument

logger = logging.getLogger(__name__)

MODEL = "qwen3:32b"
RETRY = RetryPolicy(max_retries=2, base_delay=2.0)
REPAIR_RETRY = RetryPolicy(max_retries=1, base_delay=2.0)

_TEXT_LIMIT = 120_000

SYSTEM_PROMPT = (
    "You are an expert insurance policy analyst who reads homeowner policies "
    "on behalf of roofing and restoration contractors. Quote policy language "
    "exactly. Respond ONLY with the requested JSON."
)

REPAIR_INSTRUCTION = (
    "Your response was not valid JSON. Please return ONLY the JSON object "
    "with no markdown fences, no commentary, and no text before or after it. "
    "Every key from the requested structure must be present."
)


class ExtractionError(Exception):
    """Extraction output could not be decoded, even after a repair request."""


# ── Prompt Builder ───────────────────────────────────────────────────


def _knowledge_block(kb: KnowledgeBase, claim_type: Optional[str]) -> str:
    """Search hints for every landmine and favorable provision rule."""
    lines = ["### Landmines (provisions that reduce claim value)"]
    for rule in kb.landmine_rules:
        lines.append(
            f"- **{rule.id}** ({rule.severity}, {rule.category}): {rule.name}. "
            f"Look for: {', '.join(repr(h) for h in rule.search_hints)}"
        )

    lines.append("\n### Favorable Provisions (provisions that support the claim)")
    for prov in kb.favorable_provisions:
        lines.append(
            f"- **{prov.id}**: {prov.name}. "
            f"Look for: {', '.join(repr(h) for h in prov.search_hints)}"
        )

    focus = kb.claim_type_focus(claim_type)
    if focus:
        lines.append("\n" + focus)
    return "\n".join(lines)


def _baseline_block(kb: KnowledgeBase, form_type: Optional[str]) -> str:
    baseline = kb.baseline_exclusions_for(form_type)
    if not baseline:
        return ""
    lines = [
        f"### Standard {form_type} Exclusions",
        "These exclusions are part of every policy written on this form. Assume "
        "they are present unless the document explicitly contradicts them:",
    ]
    for excl in baseline:
        lines.append(f"- {excl.name} ({excl.relevance} relevance): {excl.description}")
    return "\n".join(lines)


def _document_type_block(meta: DocumentMeta) -> str:
    if meta.document_type == "summary_only":
        forms = ", ".join(meta.endorsement_identifiers) or "none listed"
        return f"""### IMPORTANT: Declarations Page Only
This document appears to be a declarations page or policy summary, not the full policy.
- Extract everything visible: limits, deductibles, the endorsement schedule.
- Endorsement forms listed on the schedule: {forms}
- Full endorsement and exclusion text is NOT available. Set "needs_verification": true \
on every endorsement and exclusion, with a verification_reason explaining that only \
the form number or title was visible.
- Score the "exclusions" and "endorsements" section confidences low (0.3 or below)."""

    if meta.document_type == "endorsement_only":
        return """### IMPORTANT: Endorsement Pages Only
This document appears to contain endorsement pages without the base policy.
- Coverages, deductibles and policy identity may be missing. Do not invent them.
- Score the "policy_meta", "coverages" and "deductibles" section confidences low \
(0.3 or below)."""

    return ""


def build_extraction_prompt(
    document: PolicyDocument,
    meta: DocumentMeta,
    kb: KnowledgeBase,
    claim_type: Optional[str] = None,
) -> str:
    """Build the extraction prompt from the document text, Pass 1 meta and the knowledge base."""
    text = document.text[:_TEXT_LIMIT]

    sections = "\n".join(
        f"- **{s.id}**: {s.label}. {s.description}" for s in kb.coverage_sections
    )
    depreciation = "\n".join(
        f"- **{d.method}** ({d.label}): {d.description}" for d in kb.depreciation_methods
    )
    context = "\n\n".join(
        block
        for block in (
            _document_type_block(meta),
            _baseline_block(kb, meta.form_type),
            _knowledge_block(kb, claim_type),
        )
        if block
    )

    return f"""/no_think
Analyze this homeowner insurance policy ({document.page_count} pages) and extract a complete structured record.

Pass 1 classification: document type "{meta.document_type}", carrier "{meta.carrier or 'unknown'}", form "{meta.form_type or 'unknown'}", scan quality "{meta.scan_quality}".

## Coverage Sections
Use these ids for the "section" of each coverage:
{sections}

## Depreciation Methods
{depreciation}

## What To Look For
{context}

## Output Format
Return ONLY a JSON object with these keys:
{{
  "policy_type": "<HO-3, HO-5, HO-6, ... or UNKNOWN>",
  "carrier": "<insurance company>",
  "policy_number": "<policy number>",
  "effective_date": "<YYYY-MM-DD or null>",
  "expiration_date": "<YYYY-MM-DD or null>",
  "named_insured": "<name>",
  "property_address": "<address>",
  "coverages": [{{"section": "<section id>", "label": "<label>", "limit": "<$ amount or null>", "description": "<what it covers>"}}],
  "deductibles": [{{"type": "<standard | wind_hail | hurricane | named_storm | ...>", "amount": "<as displayed, e.g. $1,000 or 2%>", "dollar_amount": <number or null>, "applies_to": "<perils>", "needs_verification": false, "verification_reason": null}}],
  "depreciation_method": "RCV" | "ACV" | "MODIFIED_ACV" | "UNKNOWN",
  "depreciation_notes": "<how depreciation applies, especially to roofs>",
  "exclusions": [{{"name": "", "description": "", "policy_language": "<exact quote>", "severity": "critical" | "warning" | "info", "impact": "<effect on a claim>", "needs_verification": false, "verification_reason": null}}],
  "endorsements": [{{"name": "", "number": "<form number>", "effective_date": null, "description": "", "policy_language": "<exact quote>", "severity": "critical" | "warning" | "info", "impact": "", "needs_verification": false, "verification_reason": null}}],
  "landmines": [{{"rule_id": "<landmine id from the list above>", "name": "", "severity": "", "category": "", "policy_language": "<exact quote>", "impact": "", "action_item": ""}}],
  "favorable_provisions": [{{"provision_id": "<provision id from the list above>", "name": "", "policy_language": "<exact quote>", "impact": "", "relevance": ""}}],
  "summary": "<2-3 sentence plain-English summary for a contractor>",
  "section_confidence": {{"policy_meta": 0.0, "coverages": 0.0, "deductibles": 0.0, "depreciation": 0.0, "exclusions": 0.0, "endorsements": 0.0}},
  "parse_notes": "<anything unclear, missing or illegible>"
}}

Confidence values are between 0.0 and 1.0 and reflect how clearly the document states each section.
Only report a landmine or favorable provision when the document supports it; quote the supporting language.

## Document Text
{text}"""


# ── Inference ────────────────────────────────────────────────────────


def _chat(messages: list[dict], policy: RetryPolicy, label: str):
    return policy.run(
        lambda: ollama.chat(
            model=MODEL,
            messages=messages,
            format=PolicyAnalysis.model_json_schema(),
            options={"temperature": 0},
            think=False,
        ),
        label=label,
    )


def request_extraction(prompt: str) -> dict:
    """Run the extraction call; on undecodable output, make exactly one repair request.

    Transient inference errors propagate after retries. Raises ExtractionError
    if the repaired output still cannot be decoded.
    """
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]
    response = _chat(messages, RETRY, "policy-extraction")
    raw = response.message.content or ""

    try:
        return parse_json_object(response_text(response))
    except ValueError as exc:
        logger.warning("Extraction output was not valid JSON (%s), requesting repair", exc)

    repair = _chat(
        messages
        + [
            {"role": "assistant", "content": raw},
            {"role": "user", "content": REPAIR_INSTRUCTION},
        ],
        REPAIR_RETRY,
        "policy-extraction-repair",
    )
    try:
        return parse_json_object(response_text(repair))
    except ValueError as exc:
        raise ExtractionError(f"Extraction output invalid after repair: {exc}") from exc


def extract_policy(
    document: PolicyDocument,
    meta: DocumentMeta,
    kb: KnowledgeBase,
    claim_type: Optional[str] = None,
) -> PolicyAnalysis:
    """Run Pass 2 and return a normalized record carrying the Pass 1 meta."""
    prompt = build_extraction_prompt(document, meta, kb, claim_type)
    record = normalize_record(request_extraction(prompt)).with_document_meta(meta)

    update = {}
    if record.carrier == PolicyAnalysis.model_fields["carrier"].default and meta.carrier:
        update["carrier"] = meta.carrier
    if record.policy_type == PolicyAnalysis.model_fields["policy_type"].default and meta.form_type:
        update["policy_type"] = meta.form_type
    if update:
        record = record.model_copy(update=update)

    logger.info(
        "Pass 2 — %d coverages, %d deductibles, %d endorsements, %d exclusions, %d landmines",
        len(record.coverages),
        len(record.deductibles),
        len(record.endorsements),
        len(record.exclusions),
        len(record.landmines),
    )
    return record
