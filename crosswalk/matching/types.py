"""
Records, stages, and outcome variants used across the matching pipeline.
"""

import re
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, Field, field_validator

from crosswalk.matching.similarity import parse_numeric


class Stage(Enum):
    """Pipeline stage that produced (or failed to produce) a match."""
    EXACT = "exact"
    FUZZY = "fuzzy"
    SPECIFICATION = "specification"
    AI_ENHANCED = "ai_enhanced"
    WEB_RESEARCH = "web_research"
    FAILED = "failed"


class Method(Enum):
    """Specific matching method within a stage."""
    EXACT_SKU = "exact_sku"
    EXACT_MODEL = "exact_model"
    FUZZY_SKU = "fuzzy_sku"
    FUZZY_MODEL = "fuzzy_model"
    FUZZY_COMBINED = "fuzzy_combined"
    SPEC_TONNAGE = "spec_tonnage"
    SPEC_EFFICIENCY = "spec_efficiency"
    SPEC_COMBINED = "spec_combined"
    AI_CLAUDE = "ai_claude"
    AI_CLAUDE_BATCH = "ai_claude_batch"
    WEB_MANUFACTURER = "web_manufacturer"
    WEB_DISTRIBUTOR = "web_distributor"
    WEB_AHRI = "web_ahri"
    MANUAL_REVIEW = "manual_review"
    CACHED_RESULT = "cached_result"


# Legal method domain per stage
STAGE_METHODS: dict[Stage, frozenset[Method]] = {
    Stage.EXACT: frozenset({Method.EXACT_SKU, Method.EXACT_MODEL}),
    Stage.FUZZY: frozenset({Method.FUZZY_SKU, Method.FUZZY_MODEL, Method.FUZZY_COMBINED}),
    Stage.SPECIFICATION: frozenset(
        {Method.SPEC_TONNAGE, Method.SPEC_EFFICIENCY, Method.SPEC_COMBINED}
    ),
    Stage.AI_ENHANCED: frozenset(
        {Method.AI_CLAUDE, Method.AI_CLAUDE_BATCH, Method.CACHED_RESULT}
    ),
    Stage.WEB_RESEARCH: frozenset(
        {Method.WEB_MANUFACTURER, Method.WEB_DISTRIBUTOR, Method.WEB_AHRI, Method.CACHED_RESULT}
    ),
    Stage.FAILED: frozenset({Method.MANUAL_REVIEW}),
}


class Priority(Enum):
    """Batch job priority band."""
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 0, "normal": 1, "low": 2}[self.value]


_NUMERIC_SPECS = ("tonnage", "seer", "seer2", "eer", "afue", "hspf", "voltage", "phase")


@dataclass(frozen=True)
class ProductSpecs:
    """HVAC specifications. Every field is optional."""
    tonnage: Optional[float] = None
    seer: Optional[float] = None
    seer2: Optional[float] = None
    eer: Optional[float] = None
    afue: Optional[float] = None
    hspf: Optional[float] = None
    refrigerant: Optional[str] = None
    voltage: Optional[float] = None
    phase: Optional[float] = None
    product_type: Optional[str] = None
    stage: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ProductSpecs":
        """Build specs from a loose mapping, parsing numbers out of free text."""
        if not data:
            return cls()

        values: dict[str, Any] = {}
        for name in _NUMERIC_SPECS:
            values[name] = parse_numeric(data.get(name))

        refrigerant = data.get("refrigerant")
        values["refrigerant"] = str(refrigerant).strip() if refrigerant else None

        product_type = data.get("product_type") or data.get("type")
        values["product_type"] = str(product_type).strip() if product_type else None

        stage = data.get("stage")
        values["stage"] = str(stage).strip() if stage else None
        return cls(**values)

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    def merged(self, other: "ProductSpecs") -> "ProductSpecs":
        """Return a copy with every value present in ``other`` applied on top."""
        updates = {
            f.name: getattr(other, f.name)
            for f in fields(other)
            if getattr(other, f.name) is not None
        }
        return replace(self, **updates)

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class CompetitorRecord:
    """A competitor's product as supplied for matching. Never mutated."""
    sku: str
    company: str
    model: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    specs: ProductSpecs = field(default_factory=ProductSpecs)

    @classmethod
    def from_dict(cls, data: dict) -> "CompetitorRecord":
        specs = data.get("specifications") or data.get("specs") or {}
        return cls(
            sku=str(data.get("sku") or "").strip(),
            company=str(data.get("company") or "").strip(),
            model=data.get("model") or None,
            description=data.get("description") or None,
            price=parse_numeric(data.get("price")),
            specs=ProductSpecs.from_dict(specs),
        )

    def with_specs(self, enhanced: ProductSpecs) -> "CompetitorRecord":
        """Copy of this record with ``enhanced`` merged over the current specs."""
        return replace(self, specs=self.specs.merged(enhanced))

    def to_dict(self) -> dict:
        return {
            "sku": self.sku,
            "company": self.company,
            "model": self.model,
            "description": self.description,
            "price": self.price,
            "specifications": self.specs.to_dict(),
        }


@dataclass(frozen=True)
class CatalogRecord:
    """One product from our catalog."""
    sku: str
    model: str
    brand: str
    type: str
    price: Optional[float] = None
    specs: ProductSpecs = field(default_factory=ProductSpecs)

    @classmethod
    def from_dict(cls, data: dict) -> "CatalogRecord":
        """Accepts flat spec columns (tonnage, seer, ...) or a nested ``specifications`` map."""
        spec_data = dict(data.get("specifications") or {})
        for name in (*_NUMERIC_SPECS, "refrigerant", "stage"):
            if data.get(name) is not None:
                spec_data.setdefault(name, data[name])
        if data.get("type"):
            spec_data.setdefault("product_type", data["type"])

        return cls(
            sku=str(data.get("sku") or "").strip(),
            model=str(data.get("model") or "").strip(),
            brand=str(data.get("brand") or "").strip(),
            type=str(data.get("type") or "").strip(),
            price=parse_numeric(data.get("price", data.get("msrp"))),
            specs=ProductSpecs.from_dict(spec_data),
        )


@dataclass
class MatchCandidate:
    """A catalog record proposed by one stage."""
    catalog_record: CatalogRecord
    confidence: float
    stage: Stage
    method: Method
    reasoning: list[str] = field(default_factory=list)

    @property
    def sku(self) -> str:
        return self.catalog_record.sku

    def __repr__(self) -> str:
        return (
            f"<MatchCandidate({self.catalog_record.sku}, {self.stage.value}/{self.method.value}, "
            f"conf={self.confidence:.2f})>"
        )


# External payloads


class AiMatchPayload(BaseModel):
    """Structured answer expected from the AI matcher."""
    match_found: bool = False
    matched_sku: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: list[str] = Field(default_factory=list)
    enhanced_competitor_data: Optional[dict] = None

    @field_validator("reasoning", mode="before")
    @classmethod
    def _coerce_reasoning(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


class WebResearchFindings(BaseModel):
    """What the web research service learned about a competitor product."""
    enhanced_specs: Optional[dict] = None
    needs_manual_review: bool = False
    source: str = "manufacturer"
    sources_searched: int = 0
    notes: list[str] = Field(default_factory=list)

    def specs(self) -> ProductSpecs:
        return ProductSpecs.from_dict(self.enhanced_specs)


# Stage outcomes (tagged variants handed to the normalizer)


@dataclass
class StageOutcome:
    """Result of running the resolver on one competitor."""
    competitor: CompetitorRecord
    candidates: list[MatchCandidate] = field(default_factory=list)
    trace: list[str] = field(default_factory=list)
    from_cache: bool = False

    stage: ClassVar[Stage]

    @property
    def best(self) -> Optional[MatchCandidate]:
        return self.candidates[0] if self.candidates else None

    @property
    def confidence(self) -> float:
        return self.best.confidence if self.best else 0.0


@dataclass
class ExactOutcome(StageOutcome):
    stage: ClassVar[Stage] = Stage.EXACT


@dataclass
class FuzzyOutcome(StageOutcome):
    stage: ClassVar[Stage] = Stage.FUZZY


@dataclass
class SpecificationOutcome(StageOutcome):
    stage: ClassVar[Stage] = Stage.SPECIFICATION


@dataclass
class AiEnhancedOutcome(StageOutcome):
    stage: ClassVar[Stage] = Stage.AI_ENHANCED
    payload: Optional[AiMatchPayload] = None


@dataclass
class WebResearchOutcome(StageOutcome):
    stage: ClassVar[Stage] = Stage.WEB_RESEARCH
    findings: Optional[WebResearchFindings] = None


@dataclass
class FailedOutcome(StageOutcome):
    stage: ClassVar[Stage] = Stage.FAILED
    last_stage: Stage = Stage.WEB_RESEARCH


OUTCOME_TYPES: dict[Stage, type] = {
    Stage.EXACT: ExactOutcome,
    Stage.FUZZY: FuzzyOutcome,
    Stage.SPECIFICATION: SpecificationOutcome,
    Stage.AI_ENHANCED: AiEnhancedOutcome,
    Stage.WEB_RESEARCH: WebResearchOutcome,
    Stage.FAILED: FailedOutcome,
}


PRODUCT_TYPES = ("AC", "Heat Pump", "Furnace", "Air Handler", "Package Unit", "Other")

_TYPE_KEYWORDS = [
    ("Heat Pump", ("heat pump", "heatpump", "hp")),
    ("Package Unit", ("package", "packaged", "rtu")),
    ("Air Handler", ("air handler", "airhandler", "ahu", "coil")),
    ("Furnace", ("furnace", "gas")),
    ("AC", ("ac", "a/c", "air conditioner", "condenser", "condensing", "cooling")),
]


def canonical_product_type(value: Optional[str]) -> str:
    """Map free-text product types onto the canonical vocabulary."""
    if not value:
        return "Other"

    text = value.strip().lower().replace("_", " ")
    for canonical in PRODUCT_TYPES:
        if text == canonical.lower():
            return canonical

    tokens = set(re.split(r"[^a-z0-9/]+", text))
    for canonical, keywords in _TYPE_KEYWORDS:
        if any((" " in k and k in text) or k in tokens for k in keywords):
            return canonical
    return "Other"
