"""Shared data models for the classification, extraction and verification passes.

Inference output is never trusted: every model here is lenient on input and
total on output. A field that is missing, wrong-typed or out of range falls
back to its default instead of failing validation, so downstream code never
branches on "field missing".
"""

import math
import re
from typing import Annotated, Any, Literal, Optional, TypeVar

from pydantic import (
    AfterValidator,
    AliasChoices,
    AliasGenerator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


# ── Coercion Helpers ─────────────────────────────────────────────────


def _lower(v: Any) -> Any:
    return v.strip().lower() if isinstance(v, str) else v


def _enum_upper(v: Any) -> Any:
    """"modified acv" / "Modified-ACV" -> "MODIFIED_ACV"."""
    if isinstance(v, str):
        return re.sub(r"[\s\-/]+", "_", v.strip().upper())
    return v


def _clamp_unit(v: float) -> float:
    if math.isnan(v):
        raise ValueError("confidence is NaN")
    return min(1.0, max(0.0, v))


def _clean_identifiers(v: Any) -> Any:
    """Strip, drop blanks and non-scalars, de-duplicate preserving order."""
    if isinstance(v, str):
        v = [v]
    if not isinstance(v, (list, tuple)):
        return v
    seen: list[str] = []
    for item in v:
        if isinstance(item, bool) or not isinstance(item, (str, int, float)):
            continue
        text = str(item).strip()
        if text and text not in seen:
            seen.append(text)
    return seen


Severity = Annotated[Literal["critical", "warning", "info"], BeforeValidator(_lower)]
DocumentType = Annotated[
    Literal["full", "summary_only", "endorsement_only", "unknown"], BeforeValidator(_lower)
]
ScanQuality = Annotated[Literal["good", "fair", "poor"], BeforeValidator(_lower)]
DepreciationMethod = Annotated[
    Literal["RCV", "ACV", "MODIFIED_ACV", "UNKNOWN"], BeforeValidator(_enum_upper)
]
RiskLevel = Annotated[Literal["low", "medium", "high"], BeforeValidator(_lower)]
Confidence = Annotated[float, AfterValidator(_clamp_unit)]
Identifiers = Annotated[list[str], BeforeValidator(_clean_identifiers)]


# ── Lenient Base ─────────────────────────────────────────────────────


class LenientModel(BaseModel):
    """Base model whose fields fall back to their defaults on invalid input.

    Accepts snake_case or camelCase keys. Lists keep every element that
    validates on its own and drop the rest.
    """

    model_config = ConfigDict(
        frozen=True,
        coerce_numbers_to_str=True,
        alias_generator=AliasGenerator(
            validation_alias=lambda name: AliasChoices(name, to_camel(name))
        ),
    )

    @field_validator("*", mode="wrap")
    @classmethod
    def _fall_back_to_default(
        cls, value: Any, handler: ValidatorFunctionWrapHandler, info: ValidationInfo
    ) -> Any:
        try:
            return handler(value)
        except ValidationError:
            if isinstance(value, list):
                kept = []
                for item in value:
                    try:
                        kept.extend(handler([item]))
                    except ValidationError:
                        continue
                return kept
            field = cls.model_fields[info.field_name]
            return field.get_default(call_default_factory=True)


# ── Document Meta (Pass 1 Output) ────────────────────────────────────


class DocumentMeta(LenientModel):
    """Lightweight document classification produced once per document."""

    document_type: DocumentType = "unknown"
    page_count: Optional[int] = Field(default=None, ge=0)
    carrier: Optional[str] = None
    form_type: Optional[str] = None
    endorsement_identifiers: Identifiers = Field(default_factory=list)
    scan_quality: ScanQuality = "good"
    missing_document_warning: Optional[str] = None


# ── Record Items ─────────────────────────────────────────────────────


class Coverage(LenientModel):
    section: str = "unknown"
    label: str = "Unknown Coverage"
    limit: Optional[str] = None
    description: str = ""


class Deductible(LenientModel):
    type: str = "standard"
    amount: str = ""
    dollar_amount: Optional[float] = Field(default=None, ge=0)
    applies_to: str = "all perils"
    needs_verification: bool = False
    verification_reason: Optional[str] = None


class Exclusion(LenientModel):
    name: str = "Unknown Exclusion"
    description: str = ""
    policy_language: str = ""
    severity: Severity = "info"
    impact: str = ""
    needs_verification: bool = False
    verification_reason: Optional[str] = None


class Endorsement(LenientModel):
    name: str = "Unknown Endorsement"
    number: Optional[str] = None
    effective_date: Optional[str] = None
    description: str = ""
    policy_language: str = ""
    severity: Severity = "info"
    impact: str = ""
    needs_verification: bool = False
    verification_reason: Optional[str] = None


class Landmine(LenientModel):
    """A detected landmine; ``rule_id`` refers to a knowledge-base rule."""

    rule_id: str = "unknown"
    name: str = "Unknown Landmine"
    severity: Severity = "info"
    category: str = "unknown"
    policy_language: str = ""
    impact: str = ""
    action_item: str = ""


class FavorableProvision(LenientModel):
    provision_id: str = "unknown"
    name: str = "Unknown Provision"
    policy_language: str = ""
    impact: str = ""
    relevance: str = ""


class SectionConfidence(LenientModel):
    policy_meta: Confidence = 0.5
    coverages: Confidence = 0.5
    deductibles: Confidence = 0.5
    depreciation: Confidence = 0.5
    exclusions: Confidence = 0.5
    endorsements: Confidence = 0.5


# ── Policy Analysis (pipeline output) ────────────────────────────────


class PolicyAnalysis(LenientModel):
    """The structured record for one policy document. Always fully populated."""

    policy_type: str = "UNKNOWN"
    carrier: str = "Unknown Carrier"
    policy_number: str = ""
    effective_date: Optional[str] = None
    expiration_date: Optional[str] = None
    named_insured: str = ""
    property_address: str = ""

    coverages: list[Coverage] = Field(default_factory=list)
    deductibles: list[Deductible] = Field(default_factory=list)

    depreciation_method: DepreciationMethod = "UNKNOWN"
    depreciation_notes: str = ""

    exclusions: list[Exclusion] = Field(default_factory=list)
    endorsements: list[Endorsement] = Field(default_factory=list)
    landmines: list[Landmine] = Field(default_factory=list)
    favorable_provisions: list[FavorableProvision] = Field(default_factory=list)

    summary: str = ""
    risk_level: RiskLevel = "medium"
    section_confidence: SectionConfidence = Field(default_factory=SectionConfidence)
    overall_confidence: Confidence = 0.5
    parse_notes: str = ""

    # Carried through from DocumentMeta
    document_type: DocumentType = "unknown"
    page_count: Optional[int] = Field(default=None, ge=0)
    form_type: Optional[str] = None
    scan_quality: ScanQuality = "good"
    missing_document_warning: Optional[str] = None
    endorsement_identifiers: Identifiers = Field(default_factory=list)

    def with_document_meta(self, meta: DocumentMeta) -> "PolicyAnalysis":
        """Copy with the classifier's fields carried through."""
        return self.model_copy(
            update={
                "document_type": meta.document_type,
                "page_count": meta.page_count,
                "form_type": meta.form_type,
                "scan_quality": meta.scan_quality,
                "missing_document_warning": meta.missing_document_warning,
                "endorsement_identifiers": list(meta.endorsement_identifiers),
            }
        )


# ── Correction Set (Pass 3 Output) ───────────────────────────────────


class ConfidenceAdjustments(LenientModel):
    """Section confidences the verifier explicitly re-scored; None = untouched."""

    policy_meta: Optional[Confidence] = None
    coverages: Optional[Confidence] = None
    deductibles: Optional[Confidence] = None
    depreciation: Optional[Confidence] = None
    exclusions: Optional[Confidence] = None
    endorsements: Optional[Confidence] = None


class CorrectionSet(LenientModel):
    """Corrections and additions proposed by the verifier. Transient."""

    depreciation_method: Optional[DepreciationMethod] = None
    depreciation_notes: Optional[str] = None
    additional_deductibles: list[Deductible] = Field(default_factory=list)
    additional_endorsements: list[Endorsement] = Field(default_factory=list)
    additional_exclusions: list[Exclusion] = Field(default_factory=list)
    additional_landmines: list[Landmine] = Field(default_factory=list)
    additional_favorable_provisions: list[FavorableProvision] = Field(default_factory=list)
    confidence_adjustments: ConfidenceAdjustments = Field(default_factory=ConfidenceAdjustments)
    verification_notes: str = ""

    @model_validator(mode="before")
    @classmethod
    def lift_corrections(cls, data: Any) -> Any:
        """Accept depreciation fixes nested under a "corrections" object."""
        if isinstance(data, dict) and isinstance(data.get("corrections"), dict):
            data = {**data["corrections"], **{k: v for k, v in data.items() if k != "corrections"}}
        return data


# ── Normalizer ───────────────────────────────────────────────────────

M = TypeVar("M", bound=LenientModel)


def normalize(model: type[M], data: Any) -> M:
    """Coerce an arbitrary decoded object into a fully-populated model."""
    if not isinstance(data, dict):
        return model()
    return model.model_validate(data)


def normalize_record(data: Any) -> PolicyAnalysis:
    return normalize(PolicyAnalysis, data)
