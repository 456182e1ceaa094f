"""Policy knowledge base: YAML loader, frozen Pydantic models, and lookups."""

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_KNOWLEDGE_PATH = Path(__file__).resolve().parent / "policy_knowledge.yaml"

Severity = Literal["critical", "warning", "info"]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ── Reference Tables ─────────────────────────────────────────────────


class CoverageSection(_Frozen):
    """A coverage section the extractor reports under a stable id."""

    id: str
    label: str
    description: str
    search_terms: tuple[str, ...] = ()
    claim_relevance: Literal["primary", "secondary", "reference"]


class DepreciationInfo(_Frozen):
    """Plain-English description of a settlement basis."""

    method: Literal["RCV", "ACV", "MODIFIED_ACV", "UNKNOWN"]
    label: str
    description: str


class LandmineRule(_Frozen):
    """A provision that can materially reduce claim value."""

    id: str
    name: str
    severity: Severity
    category: Literal["exclusion", "limitation", "condition", "endorsement"]
    search_hints: tuple[str, ...]
    impact: str
    action_item: str
    affected_claim_types: tuple[str, ...] = ()


class FavorableProvisionRule(_Frozen):
    """A provision that supports a larger claim recovery."""

    id: str
    name: str
    search_hints: tuple[str, ...]
    impact: str
    relevance: str


class BaselineExclusion(_Frozen):
    """Exclusion present in every policy written on a given form."""

    form_type: str
    name: str
    description: str
    relevance: Literal["high", "medium", "low"]


class CarrierEndorsementForm(_Frozen):
    """Known carrier endorsement form number and what it does."""

    carrier: str
    form_number: str
    name: str
    effect: str
    severity: Severity
    affected_sections: tuple[
        Literal["exclusions", "deductibles", "depreciation", "coverages"], ...
    ] = Field(min_length=1)


# ── Knowledge Base (top-level) ───────────────────────────────────────


class KnowledgeBase(_Frozen):
    """Immutable reference data shared by every pipeline invocation."""

    version: str
    coverage_sections: tuple[CoverageSection, ...]
    depreciation_methods: tuple[DepreciationInfo, ...]
    landmine_rules: tuple[LandmineRule, ...]
    favorable_provisions: tuple[FavorableProvisionRule, ...]
    baseline_exclusions: tuple[BaselineExclusion, ...] = ()
    carrier_endorsement_forms: tuple[CarrierEndorsementForm, ...] = ()
    claim_type_sections: dict[str, tuple[str, ...]] = Field(default_factory=dict)

    @field_validator("landmine_rules", "favorable_provisions")
    @classmethod
    def unique_ids(cls, v: tuple) -> tuple:
        ids = [r.id for r in v]
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        if dupes:
            raise ValueError(f"Duplicate rule ids: {', '.join(dupes)}")
        return v

    # ── Lookups ──────────────────────────────────────────────────

    def landmine_rule(self, rule_id: str) -> Optional[LandmineRule]:
        return next((r for r in self.landmine_rules if r.id == rule_id), None)

    def favorable_rule(self, provision_id: str) -> Optional[FavorableProvisionRule]:
        return next((p for p in self.favorable_provisions if p.id == provision_id), None)

    def depreciation_info(self, method: str) -> Optional[DepreciationInfo]:
        return next((d for d in self.depreciation_methods if d.method == method), None)

    def baseline_exclusions_for(self, form_type: str | None) -> list[BaselineExclusion]:
        """Baseline exclusions for a form type ("HO-3", "HO 3" and "ho3" are equal)."""
        if not form_type:
            return []
        key = normalize_form_type(form_type)
        return [e for e in self.baseline_exclusions if normalize_form_type(e.form_type) == key]

    def carrier_forms(self, carrier: str | None) -> list[CarrierEndorsementForm]:
        """Form rows whose carrier name is contained in the detected carrier string."""
        if not carrier:
            return []
        detected = carrier.strip().lower()
        return [f for f in self.carrier_endorsement_forms if f.carrier.lower() in detected]

    def find_carrier_form(
        self, carrier: str | None, identifier: str
    ) -> Optional[CarrierEndorsementForm]:
        """Match one detected endorsement identifier against the carrier's forms."""
        normalized = normalize_form_number(identifier)
        if not normalized:
            return None
        for form in self.carrier_forms(carrier):
            if normalize_form_number(form.form_number) in normalized:
                return form
        return None

    def landmines_for_claim_type(self, claim_type: str | None) -> list[LandmineRule]:
        """Landmine rules relevant to a claim type; all rules when no type is given."""
        if not claim_type:
            return list(self.landmine_rules)
        key = claim_type.strip().lower()
        return [r for r in self.landmine_rules if key in r.affected_claim_types]

    def claim_type_focus(self, claim_type: str | None) -> str:
        """Prompt block naming the sections and rules to prioritize for a claim type."""
        key = (claim_type or "").strip().lower()
        if not key:
            return ""
        focus_ids = self.claim_type_sections.get(key, ())

        lines = [
            "### Claim Type Context",
            f"This is a {claim_type} damage claim. Prioritize provisions most "
            f"relevant to {claim_type} damage.",
        ]
        for item_id in focus_ids:
            section = next((s for s in self.coverage_sections if s.id == item_id), None)
            rule = self.landmine_rule(item_id)
            if section:
                lines.append(f"- Coverage: {section.label} ({section.id})")
            elif rule:
                lines.append(f"- Landmine: {rule.name} ({rule.id})")

        related = [r for r in self.landmines_for_claim_type(key) if r.id not in focus_ids]
        if related:
            lines.append(f"Other landmines that commonly affect {claim_type} claims:")
            lines.extend(f"- Landmine: {r.name} ({r.id})" for r in related)
        return "\n".join(lines)


# ── Helpers ──────────────────────────────────────────────────────────

_WS_RE = re.compile(r"\s+")
_NON_ALNUM_RE = re.compile(r"[^A-Z0-9]")


def normalize_form_number(value: str) -> str:
    """Uppercase and collapse whitespace ("hw  08 02 " -> "HW 08 02")."""
    return _WS_RE.sub(" ", value.strip().upper())


def normalize_form_type(value: str) -> str:
    """Reduce a policy form type to letters and digits ("HO-3" -> "HO3")."""
    return _NON_ALNUM_RE.sub("", value.upper())


def load_knowledge_base(path: str | Path | None = None) -> KnowledgeBase:
    """Load a YAML knowledge base from disk and return a validated model."""
    path = Path(path) if path else DEFAULT_KNOWLEDGE_PATH
    with open(path) as f:
        raw = yaml.safe_load(f)
    kb = KnowledgeBase.model_validate(raw)
    logger.info(
        "Loaded knowledge base v%s: %d landmine rules, %d carrier forms",
        kb.version,
        len(kb.landmine_rules),
        len(kb.carrier_endorsement_forms),
    )
    return kb


@lru_cache(maxsize=1)
def default_knowledge_base() -> KnowledgeBase:
    """Process-wide knowledge base, loaded on first use."""
    return load_knowledge_base()
