"""
Escalation stages: AI-enhanced matching and web research.

Both stages are slow and cost money, so their payloads go through the
response cache and each real call is charged against the job's external
call budget.
"""

from dataclasses import dataclass, field, replace
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from config.logging import logger
from crosswalk.matching.cache import (
    AI_NAMESPACE,
    WEB_RESEARCH_NAMESPACE,
    ResponseCache,
    build_fingerprint,
)
from crosswalk.matching.clients import AIClient, WebResearchClient
from crosswalk.matching.errors import StageError, StageUnavailable
from crosswalk.matching.matchers import SpecificationMatcher
from crosswalk.matching.similarity import similarity, within_tolerance
from crosswalk.matching.types import (
    AiMatchPayload,
    CatalogRecord,
    CompetitorRecord,
    MatchCandidate,
    Method,
    Stage,
    WebResearchFindings,
    canonical_product_type,
)


MATCH_PROMPT = """You are an expert HVAC technician and product specialist with deep knowledge of all major HVAC brands, model numbers, and specifications. Use your HVAC knowledge to find the best match.

COMPETITOR PRODUCT TO MATCH:
SKU: {sku}
Model: {model}
Company: {company}
Description: {description}
Price: {price}
Specifications: {specifications}

OUR CATALOG PRODUCTS (potential matches):
{catalog_list}

INSTRUCTIONS:
1. Analyze the competitor product using model number patterns and specifications
2. Look for an equivalent product that serves the same function
3. Account for different naming conventions between manufacturers
4. Compare tonnage, efficiency ratings, refrigerant, and application
5. Only name a SKU from the catalog list above
6. Provide confidence based on how certain you are of the match

Return JSON:
{{
  "match_found": true/false,
  "matched_sku": "<SKU from our catalog or null>",
  "confidence": <0.0-1.0>,
  "reasoning": ["<specific reason>", "..."]
}}"""


class ExternalCallBudget:
    """
    Caps the number of external calls one job may make.

    A limit of 0 means unlimited.
    """

    def __init__(self, limit: int = 0):
        self.limit = limit
        self.used = 0

    @property
    def exhausted(self) -> bool:
        return self.limit > 0 and self.used >= self.limit

    def consume(self, stage: str):
        if self.exhausted:
            raise StageUnavailable(stage, f"external call budget exhausted ({self.limit} calls)")
        self.used += 1


def relevance(competitor: CompetitorRecord, record: CatalogRecord) -> float:
    """Cheap relevance score used to pick the AI's catalog context."""
    score = max(
        similarity(competitor.sku, record.sku),
        similarity(competitor.model, record.model),
        similarity(competitor.sku, record.model),
    )
    if competitor.company and similarity(competitor.company, record.brand) >= 0.8:
        score += 0.2
    if within_tolerance(competitor.specs.tonnage, record.specs.tonnage, 0.1):
        score += 0.2
    if competitor.specs.product_type and (
        canonical_product_type(competitor.specs.product_type) == canonical_product_type(record.type)
    ):
        score += 0.1
    return score


def select_context(
    competitor: CompetitorRecord,
    catalog: list[CatalogRecord],
    size: int = 20,
) -> list[CatalogRecord]:
    """Top ``size`` catalog records by relevance, ties broken by SKU."""
    ranked = sorted(catalog, key=lambda r: (-relevance(competitor, r), r.sku))
    return ranked[:size]


def format_catalog_list(context: list[CatalogRecord]) -> str:
    """Format catalog records for the prompt."""
    lines = []
    for i, record in enumerate(context, 1):
        specs = record.specs
        lines.append(
            f"{i}. SKU: {record.sku}\n"
            f"   Model: {record.model} | Brand: {record.brand} | Type: {record.type}\n"
            f"   Tonnage: {specs.tonnage or 'N/A'} | SEER: {specs.seer or 'N/A'} | "
            f"AFUE: {specs.afue or 'N/A'} | HSPF: {specs.hspf or 'N/A'} | "
            f"Refrigerant: {specs.refrigerant or 'N/A'}"
        )
    return "\n".join(lines)


def build_match_prompt(competitor: CompetitorRecord, context: list[CatalogRecord]) -> str:
    specs = competitor.specs.to_dict()
    return MATCH_PROMPT.format(
        sku=competitor.sku,
        model=competitor.model or "Not specified",
        company=competitor.company,
        description=competitor.description or "Not specified",
        price=f"${competitor.price:,.2f}" if competitor.price else "Not specified",
        specifications=", ".join(f"{k}={v}" for k, v in specs.items()) or "None provided",
        catalog_list=format_catalog_list(context),
    )


def find_by_sku(catalog: list[CatalogRecord], sku: Optional[str]) -> Optional[CatalogRecord]:
    if not sku:
        return None
    wanted = sku.strip().upper()
    for record in catalog:
        if record.sku.strip().upper() == wanted:
            return record
    return None


@dataclass
class AiMatchResult:
    """What the AI stage produced for one competitor."""
    candidates: list[MatchCandidate]
    payload: AiMatchPayload
    from_cache: bool = False


@dataclass
class WebResearchResult:
    """What the web research stage produced for one competitor."""
    candidates: list[MatchCandidate]
    findings: WebResearchFindings
    enriched: Optional[CompetitorRecord] = None
    from_cache: bool = False
    notes: list[str] = field(default_factory=list)


class AiMatcher:
    """
    AI-enhanced matching.

    Sends the competitor plus a bounded catalog context to the AI client and
    trusts the answer less than the deterministic stages: confidence is
    capped at ``confidence_cap``.
    """

    stage = Stage.AI_ENHANCED

    def __init__(
        self,
        client: Optional[AIClient],
        cache: Optional[ResponseCache] = None,
        context_size: int = 20,
        confidence_cap: float = 0.85,
        schema_version: str = "1.0",
    ):
        self.client = client
        self.cache = cache
        self.context_size = context_size
        self.confidence_cap = confidence_cap
        self.schema_version = schema_version

    @property
    def available(self) -> bool:
        return self.client is not None

    async def match(
        self,
        competitor: CompetitorRecord,
        catalog: list[CatalogRecord],
        budget: Optional[ExternalCallBudget] = None,
        batch_mode: bool = False,
    ) -> AiMatchResult:
        if self.client is None:
            raise StageUnavailable(self.stage.value, "AI client not configured")

        context = select_context(competitor, catalog, self.context_size)
        key = build_fingerprint(competitor, context, AI_NAMESPACE, self.schema_version)

        entry = self.cache.get(key) if self.cache else None
        if entry is not None:
            payload = self._parse(entry.payload)
            from_cache = True
        else:
            if budget is not None:
                budget.consume(self.stage.value)
            raw = await self.client.complete(
                build_match_prompt(competitor, context),
                AiMatchPayload.model_json_schema(),
            )
            payload = self._parse(raw)
            from_cache = False
            if self.cache:
                self.cache.put(key, competitor, payload.model_dump())

        candidates = []
        if payload.match_found:
            record = find_by_sku(catalog, payload.matched_sku)
            if record is None:
                logger.warning(
                    f"AI named SKU '{payload.matched_sku}' for {competitor.sku}, not in catalog"
                )
            else:
                if from_cache:
                    method = Method.CACHED_RESULT
                else:
                    method = Method.AI_CLAUDE_BATCH if batch_mode else Method.AI_CLAUDE
                candidates.append(MatchCandidate(
                    catalog_record=record,
                    confidence=min(payload.confidence, self.confidence_cap),
                    stage=self.stage,
                    method=method,
                    reasoning=list(payload.reasoning) or ["AI-powered match"],
                ))

        return AiMatchResult(candidates=candidates, payload=payload, from_cache=from_cache)

    def _parse(self, raw: dict) -> AiMatchPayload:
        try:
            return AiMatchPayload.model_validate(raw)
        except PydanticValidationError as e:
            raise StageError(self.stage.value, f"malformed AI payload: {e.error_count()} errors") from e


class WebResearchMatcher:
    """
    Final fallback: research the competitor product on the web.

    Enriched specifications are merged into a copy of the competitor and
    run through the specification matcher once.
    """

    stage = Stage.WEB_RESEARCH

    SOURCE_METHODS = {
        "manufacturer": Method.WEB_MANUFACTURER,
        "manufacturer_website": Method.WEB_MANUFACTURER,
        "distributor": Method.WEB_DISTRIBUTOR,
        "distributor_catalog": Method.WEB_DISTRIBUTOR,
        "ahri": Method.WEB_AHRI,
        "ahri_directory": Method.WEB_AHRI,
    }

    def __init__(
        self,
        client: Optional[WebResearchClient],
        cache: Optional[ResponseCache] = None,
        spec_matcher: Optional[SpecificationMatcher] = None,
        schema_version: str = "1.0",
    ):
        self.client = client
        self.cache = cache
        self.spec_matcher = spec_matcher or SpecificationMatcher()
        self.schema_version = schema_version

    @property
    def available(self) -> bool:
        return self.client is not None

    @classmethod
    def method_for_source(cls, source: Optional[str]) -> Method:
        return cls.SOURCE_METHODS.get((source or "").strip().lower(), Method.WEB_MANUFACTURER)

    async def research(
        self,
        competitor: CompetitorRecord,
        catalog: list[CatalogRecord],
        uncertain_matches: list[MatchCandidate],
        budget: Optional[ExternalCallBudget] = None,
    ) -> WebResearchResult:
        if self.client is None:
            raise StageUnavailable(self.stage.value, "web research client not configured")

        context = [candidate.catalog_record for candidate in uncertain_matches]
        key = build_fingerprint(competitor, context, WEB_RESEARCH_NAMESPACE, self.schema_version)

        entry = self.cache.get(key) if self.cache else None
        if entry is not None:
            findings = self._parse(entry.payload)
            from_cache = True
        else:
            if budget is not None:
                budget.consume(self.stage.value)
            raw = await self.client.research(competitor, uncertain_matches)
            findings = self._parse(raw)
            from_cache = False
            if self.cache:
                self.cache.put(key, competitor, findings.model_dump())

        enhanced = findings.specs()
        if enhanced.is_empty():
            return WebResearchResult(
                candidates=[],
                findings=findings,
                from_cache=from_cache,
                notes=["Web research returned no additional specifications"],
            )

        enriched = competitor.with_specs(enhanced)
        method = Method.CACHED_RESULT if from_cache else self.method_for_source(findings.source)
        candidates = [
            replace(
                candidate,
                stage=self.stage,
                method=method,
                reasoning=[f"Specifications enriched from {findings.source}", *candidate.reasoning],
            )
            for candidate in self.spec_matcher.match(enriched, catalog)
        ]
        notes = [f"Web research ({findings.source}) added: {', '.join(sorted(enhanced.to_dict()))}"]
        return WebResearchResult(
            candidates=candidates,
            findings=findings,
            enriched=enriched,
            from_cache=from_cache,
            notes=notes,
        )

    def _parse(self, raw: dict) -> WebResearchFindings:
        try:
            return WebResearchFindings.model_validate(raw)
        except PydanticValidationError as e:
            raise StageError(self.stage.value, f"malformed research payload: {e.error_count()} errors") from e
