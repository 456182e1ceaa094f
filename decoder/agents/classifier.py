"""Pass 1: document classification (type, carrier, form, endorsement forms, scan quality)."""

import logging

import ollama

from decoder.agents.models import DocumentMeta, normalize
from decoder.agents.output import parse_json_object, response_text
from decoder.core.retry import RetryPolicy
from decoder.parsers.models import PolicyDocument

logger = logging.getLogger(__name__)

MODEL = "qwen3:8b"
RETRY = RetryPolicy(max_retries=2, base_delay=1.5)

_TEXT_LIMIT = 20_000  # declarations and forms schedule sit at the front

SUMMARY_ONLY_WARNING = (
    "This appears to be a declarations page only. Endorsement and exclusion "
    "analysis may be incomplete. For full analysis, upload the complete policy "
    "document."
)


# ── Prompt Builder ───────────────────────────────────────────────────


def build_classification_prompt(document: PolicyDocument) -> str:
    text = document.text[:_TEXT_LIMIT]
    heading = "Document Text (truncated)" if len(document.text) > _TEXT_LIMIT else "Document Text"

    return f"""/no_think
Quickly analyze this insurance document ({document.page_count} pages) and return ONLY a JSON object:

{{
  "document_type": "full" | "summary_only" | "endorsement_only" | "unknown",
  "page_count": <number or null>,
  "carrier": "<carrier name or null>",
  "form_type": "<HO-3, HO-5, HO-6, HO-4, HO-8, DP-1, DP-3, or null>",
  "endorsement_identifiers": ["<every endorsement form number visible in any schedule>"],
  "scan_quality": "good" | "fair" | "poor",
  "missing_document_warning": "<warning if the document is incomplete, or null>"
}}

Classification guide:
- "full": declarations page AND policy conditions/exclusions AND endorsement text (usually 20+ pages)
- "summary_only": only the declarations/summary pages. Shows limits, deductibles and the endorsement schedule but NOT the endorsement or exclusion text (usually 2-8 pages)
- "endorsement_only": only endorsement pages, not the base policy
- "unknown": cannot determine

For endorsement_identifiers: look for a "Forms and Endorsements" schedule on the declarations page and list every form number (e.g. "HO 00 03", "HW 08 02", "FE-5398", "IL 01 70").

For scan_quality: "good" = clean text, "fair" = readable with some garbled characters, "poor" = heavily garbled or fragmentary text.

## {heading}
{text}"""


# ── Classification ───────────────────────────────────────────────────


def classify_document(document: PolicyDocument) -> DocumentMeta:
    """Classify a policy document. Never raises: failures return default meta."""
    prompt = build_classification_prompt(document)

    try:
        response = RETRY.run(
            lambda: ollama.chat(
                model=MODEL,
                messages=[
                    {
                        "role": "system",
                        "content": (
                            "You classify homeowner insurance documents. "
                            "Respond ONLY with the requested JSON."
                        ),
                    },
                    {"role": "user", "content": prompt},
                ],
                format=DocumentMeta.model_json_schema(),
                options={"temperature": 0},
                think=False,
            ),
            label="document-classification",
        )
        meta = normalize(DocumentMeta, parse_json_object(response_text(response)))
    except Exception as exc:
        logger.error("Classification failed, using defaults: %s", exc)
        return DocumentMeta(page_count=document.page_count)

    update = {}
    if meta.page_count is None:
        update["page_count"] = document.page_count
    if meta.document_type == "summary_only" and not meta.missing_document_warning:
        update["missing_document_warning"] = SUMMARY_ONLY_WARNING
    if update:
        meta = meta.model_copy(update=update)

    logger.info(
        "Pass 1 — type: %s, carrier: %s, form: %s, forms found: %d, scan: %s",
        meta.document_type,
        meta.carrier,
        meta.form_type,
        len(meta.endorsement_identifiers),
        meta.scan_quality,
    )
    return meta
