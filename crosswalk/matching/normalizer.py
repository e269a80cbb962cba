"""
Result Normalizer

Converts whatever a stage produced into one canonical, auditable record:
catalog snapshot, flags, quality score, consistency warnings, and a
schema check. Records that fail the schema are still emitted, marked
invalid with the reasons in ``warnings``.
"""

import hashlib
import time
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from config.logging import logger
from crosswalk.matching.errors import ValidationError
from crosswalk.matching.similarity import relative_difference
from crosswalk.matching.types import (
    AiEnhancedOutcome,
    ExactOutcome,
    FailedOutcome,
    FuzzyOutcome,
    MatchCandidate,
    Method,
    SpecificationOutcome,
    Stage,
    StageOutcome,
    STAGE_METHODS,
    WebResearchOutcome,
    canonical_product_type,
)

NO_MATCH_WARNING = "No match found - requires manual review"


class MatchFlag(Enum):
    """Review flags attached to a normalized result."""
    HIGH_CONFIDENCE = "high_confidence"
    MEDIUM_CONFIDENCE = "medium_confidence"
    LOW_CONFIDENCE = "low_confidence"
    NEEDS_REVIEW = "needs_review"
    AI_GENERATED = "ai_generated"
    WEB_VERIFIED = "web_verified"
    CACHE_HIT = "cache_hit"
    REQUIRES_APPROVAL = "requires_approval"
    PRICE_MISMATCH = "price_mismatch"


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


@dataclass
class NormalizationContext:
    """Per-request metadata carried into the normalized record."""
    request_id: str = field(default_factory=new_request_id)
    source: str = "single"
    started: float = field(default_factory=time.perf_counter)


@dataclass(frozen=True)
class MatchSnapshot:
    """Copy of the matched catalog record taken at normalization time."""
    sku: str
    model: str
    brand: str
    type: str
    price: Optional[float]
    specs: dict


@dataclass(frozen=True)
class NormalizedResult:
    """Canonical output of the pipeline for one competitor record."""
    request_id: str
    timestamp: datetime
    processing_time_ms: int
    competitor: dict
    match: Optional[MatchSnapshot]
    stage: Stage
    method: Method
    confidence: float
    reasoning: list[str]
    processing_steps: list[str]
    from_cache: bool
    quality_score: float
    flags: list[MatchFlag]
    warnings: list[str]
    is_valid: bool
    source: str

    @property
    def matched(self) -> bool:
        return self.match is not None

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat(),
            "processing_time_ms": self.processing_time_ms,
            "competitor": dict(self.competitor),
            "match": asdict(self.match) if self.match else None,
            "stage": self.stage.value,
            "method": self.method.value,
            "confidence": self.confidence,
            "reasoning": list(self.reasoning),
            "processing_steps": list(self.processing_steps),
            "from_cache": self.from_cache,
            "quality_score": self.quality_score,
            "flags": [flag.value for flag in self.flags],
            "warnings": list(self.warnings),
            "is_valid": self.is_valid,
            "source": self.source,
        }


# Canonical schema


class CompetitorSchema(BaseModel):
    sku: str = Field(min_length=1, max_length=100)
    company: str = Field(min_length=1, max_length=100)
    model: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    specifications: dict = Field(default_factory=dict)


class MatchSchema(BaseModel):
    sku: str = Field(min_length=1, max_length=100)
    model: str
    brand: str = Field(max_length=50)
    type: Literal["AC", "Heat Pump", "Furnace", "Air Handler", "Package Unit", "Other"]
    price: Optional[float] = Field(default=None, ge=0)
    specs: dict = Field(default_factory=dict)


class CanonicalMatchRecord(BaseModel):
    """Schema every normalized result is checked against."""
    request_id: str = Field(pattern=r"^[a-zA-Z0-9_-]+$")
    timestamp: datetime
    processing_time_ms: int = Field(ge=0)
    competitor: CompetitorSchema
    match: Optional[MatchSchema] = None
    stage: Stage
    method: Method
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: list[str]
    processing_steps: list[str]
    from_cache: bool
    quality_score: float = Field(ge=0.0, le=1.0)
    flags: list[MatchFlag]
    warnings: list[str]
    is_valid: bool
    source: Literal["batch", "single", "manual"]

    @model_validator(mode="after")
    def check_stage_consistency(self):
        if self.method not in STAGE_METHODS[self.stage]:
            raise ValueError(
                f"method '{self.method.value}' is not valid for stage '{self.stage.value}'"
            )
        if self.stage == Stage.FAILED and (self.match is not None or self.confidence != 0):
            raise ValueError("failed results must have no match and zero confidence")
        return self


class ResultNormalizer:
    """
    Builds NormalizedResult records from stage outcomes.

    Usage:
        normalizer = ResultNormalizer()
        result = normalizer.normalize(outcome, NormalizationContext(source="batch"))
        if not result.is_valid:
            print(result.warnings)
    """

    HIGH_CONFIDENCE = 0.9
    MEDIUM_CONFIDENCE = 0.7
    LOW_CONFIDENCE = 0.5
    APPROVAL_THRESHOLD = 0.7
    PRICE_MISMATCH_RATIO = 0.3
    TONNAGE_WARNING = 0.1
    SEER_WARNING = 0.15

    def normalize(self, outcome: StageOutcome, context: Optional[NormalizationContext] = None) -> NormalizedResult:
        """Dispatch on the outcome variant."""
        handlers = {
            ExactOutcome: self.normalize_exact,
            FuzzyOutcome: self.normalize_fuzzy,
            SpecificationOutcome: self.normalize_specification,
            AiEnhancedOutcome: self.normalize_ai,
            WebResearchOutcome: self.normalize_web_research,
            FailedOutcome: self.normalize_failed,
        }
        handler = handlers.get(type(outcome))
        if handler is None:
            raise TypeError(f"Unknown outcome type: {type(outcome).__name__}")
        return handler(outcome, context)

    def normalize_exact(self, outcome: ExactOutcome, context: Optional[NormalizationContext] = None) -> NormalizedResult:
        return self._build(outcome, context, Stage.EXACT, Method.EXACT_SKU)

    def normalize_fuzzy(self, outcome: FuzzyOutcome, context: Optional[NormalizationContext] = None) -> NormalizedResult:
        return self._build(outcome, context, Stage.FUZZY, Method.FUZZY_COMBINED)

    def normalize_specification(
        self,
        outcome: SpecificationOutcome,
        context: Optional[NormalizationContext] = None,
    ) -> NormalizedResult:
        return self._build(outcome, context, Stage.SPECIFICATION, Method.SPEC_COMBINED)

    def normalize_ai(self, outcome: AiEnhancedOutcome, context: Optional[NormalizationContext] = None) -> NormalizedResult:
        default = Method.CACHED_RESULT if outcome.from_cache else Method.AI_CLAUDE
        return self._build(outcome, context, Stage.AI_ENHANCED, default)

    def normalize_web_research(
        self,
        outcome: WebResearchOutcome,
        context: Optional[NormalizationContext] = None,
    ) -> NormalizedResult:
        default = Method.CACHED_RESULT if outcome.from_cache else Method.WEB_MANUFACTURER
        return self._build(outcome, context, Stage.WEB_RESEARCH, default)

    def normalize_failed(self, outcome: FailedOutcome, context: Optional[NormalizationContext] = None) -> NormalizedResult:
        return self._build(outcome, context, Stage.FAILED, Method.MANUAL_REVIEW, matched=False)

    def _build(
        self,
        outcome: StageOutcome,
        context: Optional[NormalizationContext],
        stage: Stage,
        default_method: Method,
        matched: bool = True,
    ) -> NormalizedResult:
        context = context or NormalizationContext()
        best: Optional[MatchCandidate] = outcome.best if matched else None

        if best is not None:
            snapshot = self._snapshot(best)
            method = best.method
            confidence = round(best.confidence, 4)
            reasoning = list(best.reasoning)
        else:
            snapshot = None
            method = default_method
            confidence = 0.0
            reasoning = ["No match found in any stage"]

        competitor = outcome.competitor.to_dict()
        from_cache = outcome.from_cache or method == Method.CACHED_RESULT
        flags = self._flags(stage, confidence, snapshot, competitor, from_cache)
        warnings = self._warnings(snapshot, competitor)

        result = NormalizedResult(
            request_id=context.request_id,
            timestamp=datetime.now(timezone.utc),
            processing_time_ms=max(0, int((time.perf_counter() - context.started) * 1000)),
            competitor=competitor,
            match=snapshot,
            stage=stage,
            method=method,
            confidence=confidence,
            reasoning=reasoning,
            processing_steps=list(outcome.trace),
            from_cache=from_cache,
            quality_score=self._quality_score(confidence, flags, snapshot),
            flags=flags,
            warnings=warnings,
            is_valid=True,
            source=context.source,
        )

        errors = self.validate(result)
        if errors:
            logger.warning(f"Normalized result {result.request_id} failed validation: {'; '.join(errors)}")
            result = replace(result, warnings=[*warnings, *errors], is_valid=False)
        return result

    def _snapshot(self, candidate: MatchCandidate) -> MatchSnapshot:
        record = candidate.catalog_record
        return MatchSnapshot(
            sku=record.sku,
            model=record.model,
            brand=record.brand,
            type=canonical_product_type(record.type),
            price=record.price,
            specs=record.specs.to_dict(),
        )

    def _flags(
        self,
        stage: Stage,
        confidence: float,
        snapshot: Optional[MatchSnapshot],
        competitor: dict,
        from_cache: bool,
    ) -> list[MatchFlag]:
        flags = []

        if confidence >= self.HIGH_CONFIDENCE:
            flags.append(MatchFlag.HIGH_CONFIDENCE)
        elif confidence >= self.MEDIUM_CONFIDENCE:
            flags.append(MatchFlag.MEDIUM_CONFIDENCE)
        elif confidence >= self.LOW_CONFIDENCE:
            flags.append(MatchFlag.LOW_CONFIDENCE)
        else:
            flags.append(MatchFlag.NEEDS_REVIEW)

        if stage == Stage.AI_ENHANCED:
            flags.append(MatchFlag.AI_GENERATED)
        if stage == Stage.WEB_RESEARCH:
            flags.append(MatchFlag.WEB_VERIFIED)
        if from_cache:
            flags.append(MatchFlag.CACHE_HIT)

        if confidence < self.APPROVAL_THRESHOLD:
            flags.append(MatchFlag.REQUIRES_APPROVAL)

        if snapshot is None and MatchFlag.NEEDS_REVIEW not in flags:
            flags.append(MatchFlag.NEEDS_REVIEW)

        their_price = competitor.get("price")
        if snapshot and snapshot.price and their_price:
            if abs(snapshot.price - their_price) / their_price > self.PRICE_MISMATCH_RATIO:
                flags.append(MatchFlag.PRICE_MISMATCH)

        return flags

    def _quality_score(
        self,
        confidence: float,
        flags: list[MatchFlag],
        snapshot: Optional[MatchSnapshot],
    ) -> float:
        score = confidence

        if MatchFlag.HIGH_CONFIDENCE in flags:
            score += 0.05
        if MatchFlag.NEEDS_REVIEW in flags:
            score -= 0.2
        if MatchFlag.PRICE_MISMATCH in flags:
            score -= 0.1
        if MatchFlag.WEB_VERIFIED in flags:
            score += 0.05

        # Completeness of our matched specs
        if snapshot:
            if snapshot.specs.get("tonnage"):
                score += 0.02
            if snapshot.specs.get("seer"):
                score += 0.02
            if snapshot.specs.get("refrigerant"):
                score += 0.01

        return round(min(1.0, max(0.0, score)), 4)

    def _warnings(self, snapshot: Optional[MatchSnapshot], competitor: dict) -> list[str]:
        if snapshot is None:
            return [NO_MATCH_WARNING]

        warnings = []
        theirs = competitor.get("specifications") or {}
        ours = snapshot.specs

        if theirs.get("tonnage") and ours.get("tonnage"):
            if relative_difference(theirs["tonnage"], ours["tonnage"]) > self.TONNAGE_WARNING:
                warnings.append(
                    f"Tonnage mismatch: competitor {theirs['tonnage']:g} vs ours {ours['tonnage']:g}"
                )
        if theirs.get("seer") and ours.get("seer"):
            if relative_difference(theirs["seer"], ours["seer"]) > self.SEER_WARNING:
                warnings.append(
                    f"SEER mismatch: competitor {theirs['seer']:g} vs ours {ours['seer']:g}"
                )
        return warnings

    def validate(self, result: NormalizedResult) -> list[str]:
        """
        Check a result against the canonical schema.

        Returns:
            List of "field: message" strings, empty when valid
        """
        try:
            CanonicalMatchRecord.model_validate(result.to_dict())
        except PydanticValidationError as e:
            return [
                f"{'.'.join(str(part) for part in err['loc']) or 'record'}: {err['msg']}"
                for err in e.errors()
            ]
        return []

    def ensure_valid(self, result: NormalizedResult) -> NormalizedResult:
        """Return the result unchanged, or raise ValidationError if it is invalid."""
        errors = self.validate(result)
        if errors:
            raise ValidationError(errors)
        return result


def map_method_to_storage(method: Method) -> str:
    """Collapse a pipeline method onto the storage vocabulary."""
    if method == Method.EXACT_SKU:
        return "exact"
    if method in (Method.EXACT_MODEL, Method.FUZZY_SKU, Method.FUZZY_MODEL, Method.FUZZY_COMBINED):
        return "model"
    if method in (Method.SPEC_TONNAGE, Method.SPEC_EFFICIENCY, Method.SPEC_COMBINED):
        return "specs"
    if method in (
        Method.AI_CLAUDE,
        Method.AI_CLAUDE_BATCH,
        Method.WEB_MANUFACTURER,
        Method.WEB_DISTRIBUTOR,
        Method.WEB_AHRI,
        Method.CACHED_RESULT,
    ):
        return "ai"
    return "manual"


def competitor_key(sku: str, company: str) -> str:
    """Stable key for a competitor product."""
    return hashlib.md5(f"{sku}_{company}".upper().encode("utf-8")).hexdigest()


def to_flat_record(result: NormalizedResult) -> dict:
    """Flatten a result into a storage-ready row. Nothing is persisted."""
    competitor = result.competitor
    match = result.match
    return {
        "competitor_key": competitor_key(competitor.get("sku", ""), competitor.get("company", "")),
        "competitor_sku": competitor.get("sku"),
        "competitor_company": competitor.get("company"),
        "competitor_model": competitor.get("model"),
        "competitor_price": competitor.get("price"),
        "our_sku": match.sku if match else None,
        "our_model": match.model if match else None,
        "our_brand": match.brand if match else None,
        "our_type": match.type if match else None,
        "our_price": match.price if match else None,
        "confidence": result.confidence,
        "quality_score": result.quality_score,
        "match_method": map_method_to_storage(result.method),
        "stage": result.stage.value,
        "flags": ",".join(flag.value for flag in result.flags),
        "warnings": list(result.warnings),
        "is_valid": result.is_valid,
        "from_cache": result.from_cache,
        "request_id": result.request_id,
        "processing_date": result.timestamp.date().isoformat(),
    }
