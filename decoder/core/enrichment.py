"""Deterministic knowledge-base enrichment of an extracted policy record.

Nothing here calls a model. Every function returns a new record and is
idempotent: applying it twice gives the same result as applying it once.
"""

import logging

from decoder.agents.models import (
    DocumentMeta,
    Endorsement,
    Exclusion,
    Landmine,
    PolicyAnalysis,
)
from decoder.core.knowledge import KnowledgeBase

logger = logging.getLogger(__name__)

SUMMARY_ONLY_ENDORSEMENT_REASON = (
    "Identified from form number on declarations page. "
    "Full endorsement text not available."
)
INFERRED_EXCLUSION_LANGUAGE = (
    "Identified from endorsement form number. Full text not available."
)
INFERRED_EXCLUSION_REASON = (
    "Inferred from endorsement form number. Upload full policy to confirm exact language."
)


def _name_key(name: str) -> str:
    return name.strip().lower()


# ── Landmine Taxonomy ────────────────────────────────────────────────


def normalize_landmines(landmines: list[Landmine], kb: KnowledgeBase) -> list[Landmine]:
    """Take severity and category from the knowledge-base rule for each known rule id.

    An empty action item is filled from the rule. Landmines with unknown
    rule ids pass through unchanged.
    """
    normalized = []
    for landmine in landmines:
        rule = kb.landmine_rule(landmine.rule_id)
        if rule is None:
            normalized.append(landmine)
            continue
        update = {"severity": rule.severity, "category": rule.category}
        if not landmine.action_item.strip():
            update["action_item"] = rule.action_item
        normalized.append(landmine.model_copy(update=update))
    return normalized


# ── Carrier Endorsement Forms ────────────────────────────────────────


def enrich_with_carrier_forms(
    record: PolicyAnalysis, meta: DocumentMeta, kb: KnowledgeBase
) -> PolicyAnalysis:
    """Append endorsements (and exclusions) for known carrier forms the extractor missed."""
    if not meta.carrier or not meta.endorsement_identifiers:
        return record

    endorsements = list(record.endorsements)
    exclusions = list(record.exclusions)
    endorsement_names = {_name_key(e.name) for e in endorsements}
    summary_only = meta.document_type == "summary_only"
    added_endorsements = added_exclusions = 0

    for identifier in meta.endorsement_identifiers:
        form = kb.find_carrier_form(meta.carrier, identifier)
        if form is None:
            continue

        if _name_key(form.name) not in endorsement_names:
            endorsements.append(
                Endorsement(
                    name=form.name,
                    number=identifier,
                    description=form.effect,
                    severity=form.severity,
                    impact=form.effect,
                    needs_verification=summary_only,
                    verification_reason=SUMMARY_ONLY_ENDORSEMENT_REASON if summary_only else None,
                )
            )
            endorsement_names.add(_name_key(form.name))
            added_endorsements += 1

        if "exclusions" in form.affected_sections:
            form_key = _name_key(form.name)
            overlaps = any(
                form_key in _name_key(e.name) or _name_key(e.name) in form_key
                for e in exclusions
                if e.name.strip()
            )
            if not overlaps:
                exclusions.append(
                    Exclusion(
                        name=f"{form.name} (from endorsement {form.form_number})",
                        description=form.effect,
                        policy_language=INFERRED_EXCLUSION_LANGUAGE,
                        severity=form.severity,
                        impact=form.effect,
                        needs_verification=True,
                        verification_reason=INFERRED_EXCLUSION_REASON,
                    )
                )
                added_exclusions += 1

    if not added_endorsements and not added_exclusions:
        return record

    logger.info(
        "Enrichment — added %d endorsements, %d exclusions from %s forms",
        added_endorsements,
        added_exclusions,
        meta.carrier,
    )
    return record.model_copy(update={"endorsements": endorsements, "exclusions": exclusions})


def enrich_record(
    record: PolicyAnalysis, meta: DocumentMeta, kb: KnowledgeBase
) -> PolicyAnalysis:
    """Normalize landmines against the knowledge base, then add missing carrier forms."""
    record = record.model_copy(update={"landmines": normalize_landmines(record.landmines, kb)})
    return enrich_with_carrier_forms(record, meta, kb)
