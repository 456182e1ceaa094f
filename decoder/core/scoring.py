"""Overall confidence, risk tier and percentage-deductible resolution."""

import logging
import re
from typing import Optional

from decoder.agents.models import Coverage, Landmine, PolicyAnalysis, SectionConfidence

logger = logging.getLogger(__name__)

SECTION_WEIGHTS = {
    "policy_meta": 0.15,
    "coverages": 0.15,
    "deductibles": 0.20,
    "depreciation": 0.15,
    "exclusions": 0.20,
    "endorsements": 0.15,
}

_PERCENT_RE = re.compile(r"(\d*\.?\d+)\s*(?:%|percent\b)", re.IGNORECASE)
_DOLLAR_RE = re.compile(r"\$\s*([\d,]+(?:\.\d+)?)")
_NUMBER_RE = re.compile(r"\d[\d,]*(?:\.\d+)?")


# ── Confidence & Risk ────────────────────────────────────────────────


def overall_confidence(sc: SectionConfidence) -> float:
    """Weighted mean of the section confidences."""
    total = sum(getattr(sc, section) * weight for section, weight in SECTION_WEIGHTS.items())
    return min(1.0, max(0.0, total))


def classify_risk(landmines: list[Landmine]) -> str:
    severities = {lm.severity for lm in landmines}
    if "critical" in severities:
        return "high"
    if "warning" in severities:
        return "medium"
    return "low"


# ── Percentage Deductibles ───────────────────────────────────────────


def parse_money(text: Optional[str]) -> Optional[float]:
    """First number in a money string ("$300,000" -> 300000.0); None if there is none."""
    if not text:
        return None
    match = _NUMBER_RE.search(text)
    if not match:
        return None
    try:
        return float(match.group().replace(",", ""))
    except ValueError:
        return None


def dwelling_coverage(coverages: list[Coverage]) -> Optional[Coverage]:
    """The Coverage A (dwelling) entry, by section id first, then by label."""
    for cov in coverages:
        if cov.section.strip().lower() == "coverage_a":
            return cov
    for cov in coverages:
        label = cov.label.lower()
        if "dwelling" in label or "coverage a" in label:
            return cov
    return None


def resolve_percentage_deductibles(record: PolicyAnalysis) -> PolicyAnalysis:
    """Fill ``dollar_amount`` for deductibles that lack one, where it can be worked out."""
    dwelling = dwelling_coverage(record.coverages)
    limit = parse_money(dwelling.limit) if dwelling else None

    resolved = []
    changed = 0
    for ded in record.deductibles:
        if ded.dollar_amount is not None:
            resolved.append(ded)
            continue

        amount = None
        percent = _PERCENT_RE.search(ded.amount)
        if percent:
            rate = float(percent.group(1))
            if limit and limit > 0 and rate > 0:
                amount = float(round(limit * rate / 100))
        else:
            dollars = _DOLLAR_RE.search(ded.amount)
            if dollars:
                amount = parse_money(dollars.group(1))
            else:
                amount = parse_money(ded.amount)
            if amount is not None and amount <= 0:
                amount = None

        if amount is None:
            resolved.append(ded)
        else:
            resolved.append(ded.model_copy(update={"dollar_amount": amount}))
            changed += 1

    if not changed:
        return record
    logger.debug("Resolved %d deductible dollar amounts", changed)
    return record.model_copy(update={"deductibles": resolved})


# ── Finalize ─────────────────────────────────────────────────────────


def finalize_record(record: PolicyAnalysis) -> PolicyAnalysis:
    """Resolve deductibles, then recompute overall confidence and risk level."""
    record = resolve_percentage_deductibles(record)
    return record.model_copy(
        update={
            "overall_confidence": overall_confidence(record.section_confidence),
            "risk_level": classify_risk(record.landmines),
        }
    )
