"""
Sequential Resolver

Runs the stage matchers cheapest first and stops at the first stage whose
best candidate clears the confidence threshold.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from config.logging import logger
from crosswalk.matching.errors import StageError, StageUnavailable
from crosswalk.matching.escalation import AiMatcher, ExternalCallBudget, WebResearchMatcher
from crosswalk.matching.matchers import ExactMatcher, FuzzyMatcher, SpecificationMatcher
from crosswalk.matching.normalizer import (
    NormalizationContext,
    NormalizedResult,
    ResultNormalizer,
    new_request_id,
)
from crosswalk.matching.types import (
    AiEnhancedOutcome,
    CatalogRecord,
    CompetitorRecord,
    ExactOutcome,
    FailedOutcome,
    FuzzyOutcome,
    MatchCandidate,
    SpecificationOutcome,
    Stage,
    StageOutcome,
    WebResearchOutcome,
)


@dataclass
class ResolverConfig:
    """Configuration for sequential resolution."""
    # Minimum confidence for a stage to terminate resolution
    min_confidence: float = 0.6

    # Minimum similarity (0-1) for a fuzzy model/SKU signal
    fuzzy_threshold: float = 0.7

    # How many uncertain candidates are handed to web research
    uncertain_limit: int = 5


class SequentialResolver:
    """
    Multi-stage resolver.

    Resolution strategy:
    1. Exact SKU / model match
    2. Fuzzy SKU / model / brand similarity
    3. Specification tolerance match
    4. AI-enhanced matching (external, cached)
    5. Web research, re-evaluated through the specification matcher
    6. Failed: flagged for manual review

    Usage:
        resolver = SequentialResolver(ai_matcher=AiMatcher(client, cache))
        result = await resolver.resolve(competitor, catalog)
        if result.matched:
            print(result.match.sku, result.confidence)
    """

    def __init__(
        self,
        ai_matcher: Optional[AiMatcher] = None,
        web_matcher: Optional[WebResearchMatcher] = None,
        normalizer: Optional[ResultNormalizer] = None,
        config: Optional[ResolverConfig] = None,
    ):
        self.config = config or ResolverConfig()
        self.exact_matcher = ExactMatcher()
        self.fuzzy_matcher = FuzzyMatcher(self.config.fuzzy_threshold)
        self.spec_matcher = SpecificationMatcher()
        self.ai_matcher = ai_matcher
        self.web_matcher = web_matcher
        self.normalizer = normalizer or ResultNormalizer()

    async def resolve(
        self,
        competitor: CompetitorRecord,
        catalog: list[CatalogRecord],
        source: str = "single",
        budget: Optional[ExternalCallBudget] = None,
        request_id: Optional[str] = None,
        batch_mode: bool = False,
    ) -> NormalizedResult:
        """
        Resolve one competitor record and normalize the outcome.

        Raises:
            ExternalCallError: transient failure of an external stage
        """
        context = NormalizationContext(
            request_id=request_id or new_request_id(),
            source=source,
            started=time.perf_counter(),
        )
        outcome = await self.run_stages(competitor, catalog, budget=budget, batch_mode=batch_mode)
        return self.normalizer.normalize(outcome, context)

    async def run_stages(
        self,
        competitor: CompetitorRecord,
        catalog: list[CatalogRecord],
        budget: Optional[ExternalCallBudget] = None,
        batch_mode: bool = False,
    ) -> StageOutcome:
        """Run the stages in order and return the tagged outcome."""
        trace: list[str] = []
        seen: list[MatchCandidate] = []

        logger.debug(f"Resolving competitor: {competitor.sku} ({competitor.company})")

        # Stage 1: exact
        trace.append("Stage 1: Attempting exact SKU/Model match")
        candidates = self._run_deterministic(self.exact_matcher.match, "Exact", competitor, catalog, trace)
        if self._clears(candidates):
            trace.append(f"✓ Exact match found with {candidates[0].confidence * 100:.1f}% confidence")
            return ExactOutcome(competitor=competitor, candidates=candidates, trace=trace)
        trace.append("✗ No high-confidence exact match found")
        seen.extend(candidates)

        # Stage 2: fuzzy
        trace.append("Stage 2: Attempting fuzzy matching")
        candidates = self._run_deterministic(self.fuzzy_matcher.match, "Fuzzy", competitor, catalog, trace)
        if self._clears(candidates):
            trace.append(f"✓ Fuzzy match found with {candidates[0].confidence * 100:.1f}% confidence")
            return FuzzyOutcome(competitor=competitor, candidates=candidates, trace=trace)
        trace.append("✗ No high-confidence fuzzy match found")
        seen.extend(candidates)

        # Stage 3: specifications
        trace.append("Stage 3: Attempting specification-based matching")
        if competitor.specs.is_empty():
            trace.append("✗ Insufficient specification data for matching")
        else:
            candidates = self._run_deterministic(self.spec_matcher.match, "Specification", competitor, catalog, trace)
            if self._clears(candidates):
                trace.append(
                    f"✓ Specification match found with {candidates[0].confidence * 100:.1f}% confidence"
                )
                return SpecificationOutcome(competitor=competitor, candidates=candidates, trace=trace)
            trace.append("✗ No high-confidence specification match found")
            seen.extend(candidates)

        # Stage 4: AI
        trace.append("Stage 4: Attempting AI-enhanced matching")
        if self.ai_matcher is None:
            trace.append("⚠ AI enhancement skipped - AI client not configured")
        else:
            try:
                ai_result = await self.ai_matcher.match(competitor, catalog, budget, batch_mode=batch_mode)
            except StageUnavailable as e:
                logger.warning(f"AI stage unavailable for {competitor.sku}: {e.reason}")
                trace.append(f"⚠ AI enhancement skipped - {e.reason}")
            except StageError as e:
                logger.warning(f"AI stage failed for {competitor.sku}: {e}")
                trace.append(f"⚠ AI enhancement failed - {e}")
            else:
                if ai_result.from_cache:
                    trace.append("AI response served from cache")
                if self._clears(ai_result.candidates):
                    trace.append(
                        f"✓ AI match found with {ai_result.candidates[0].confidence * 100:.1f}% confidence"
                    )
                    return AiEnhancedOutcome(
                        competitor=competitor,
                        candidates=ai_result.candidates,
                        trace=trace,
                        from_cache=ai_result.from_cache,
                        payload=ai_result.payload,
                    )
                trace.append("✗ AI matching did not find a confident match")
                seen.extend(ai_result.candidates)

        # Stage 5: web research
        trace.append("Stage 5: Attempting web research")
        if self.web_matcher is None:
            trace.append("⚠ Web research skipped - research client not configured")
        else:
            try:
                web_result = await self.web_matcher.research(
                    competitor, catalog, self._uncertain(seen), budget
                )
            except StageUnavailable as e:
                logger.warning(f"Web research unavailable for {competitor.sku}: {e.reason}")
                trace.append(f"⚠ Web research skipped - {e.reason}")
            except StageError as e:
                logger.warning(f"Web research failed for {competitor.sku}: {e}")
                trace.append(f"⚠ Web research failed - {e}")
            else:
                trace.extend(web_result.notes)
                if self._clears(web_result.candidates):
                    trace.append(
                        f"✓ Web research match found with "
                        f"{web_result.candidates[0].confidence * 100:.1f}% confidence"
                    )
                    return WebResearchOutcome(
                        competitor=competitor,
                        candidates=web_result.candidates,
                        trace=trace,
                        from_cache=web_result.from_cache,
                        findings=web_result.findings,
                    )
                trace.append("✗ Web research did not produce a confident match")

        trace.append("✗ No matches found after all stages")
        logger.debug(f"No match found for: {competitor.sku}")
        return FailedOutcome(competitor=competitor, trace=trace, last_stage=Stage.WEB_RESEARCH)

    def _clears(self, candidates: list[MatchCandidate]) -> bool:
        return bool(candidates) and candidates[0].confidence >= self.config.min_confidence

    def _run_deterministic(
        self,
        match: Callable[[CompetitorRecord, list[CatalogRecord]], list[MatchCandidate]],
        label: str,
        competitor: CompetitorRecord,
        catalog: list[CatalogRecord],
        trace: list[str],
    ) -> list[MatchCandidate]:
        """Run a pure matcher; a raising matcher counts as no candidates."""
        try:
            return match(competitor, catalog)
        except Exception as e:
            error = StageError(label.lower(), str(e))
            logger.warning(f"{label} matcher raised for {competitor.sku}: {e}")
            trace.append(f"⚠ {label} matching failed - {error}")
            return []

    def _uncertain(self, seen: list[MatchCandidate]) -> list[MatchCandidate]:
        """Best distinct candidates seen so far, highest confidence first."""
        best: dict[str, MatchCandidate] = {}
        for candidate in sorted(seen, key=lambda c: c.confidence, reverse=True):
            best.setdefault(candidate.sku, candidate)
        return list(best.values())[: self.config.uncertain_limit]
