"""
Deterministic matching stages.

Each matcher is a pure function of (competitor, catalog) and returns at
most ``TOP_K`` candidates sorted by descending confidence.
"""

from typing import Optional

from crosswalk.matching.similarity import similarity, within_tolerance
from crosswalk.matching.types import (
    CatalogRecord,
    CompetitorRecord,
    MatchCandidate,
    Method,
    Stage,
    canonical_product_type,
)

TOP_K = 5


def _rank(candidates: list[MatchCandidate]) -> list[MatchCandidate]:
    # sorted() is stable, so catalog order breaks confidence ties
    return sorted(candidates, key=lambda c: c.confidence, reverse=True)[:TOP_K]


class ExactMatcher:
    """
    Case-insensitive identifier equality.

    SKU equality scores 0.95; model equality scores 0.85. A catalog record
    contributes at most one candidate, preferring the SKU match.
    """

    stage = Stage.EXACT

    SKU_CONFIDENCE = 0.95
    MODEL_CONFIDENCE = 0.85

    def match(
        self,
        competitor: CompetitorRecord,
        catalog: list[CatalogRecord],
    ) -> list[MatchCandidate]:
        sku = (competitor.sku or "").strip().upper()
        model = (competitor.model or "").strip().upper()

        candidates = []
        for record in catalog:
            if sku and sku == record.sku.strip().upper():
                candidates.append(MatchCandidate(
                    catalog_record=record,
                    confidence=self.SKU_CONFIDENCE,
                    stage=self.stage,
                    method=Method.EXACT_SKU,
                    reasoning=["Exact SKU match"],
                ))
            elif model and record.model and model == record.model.strip().upper():
                candidates.append(MatchCandidate(
                    catalog_record=record,
                    confidence=self.MODEL_CONFIDENCE,
                    stage=self.stage,
                    method=Method.EXACT_MODEL,
                    reasoning=["Exact model number match"],
                ))

        return _rank(candidates)


class FuzzyMatcher:
    """
    Edit-distance similarity over model, SKU, and brand.

    Weights:
    - Model similarity: 40%
    - SKU similarity: 30%
    - Brand match: flat 0.1 bonus

    A model or SKU signal below ``threshold`` is ignored. At least one of
    them must contribute and the weighted total must exceed 0.5.
    """

    stage = Stage.FUZZY

    MODEL_WEIGHT = 0.4
    SKU_WEIGHT = 0.3
    BRAND_BONUS = 0.1
    BRAND_THRESHOLD = 0.8
    MIN_TOTAL = 0.5
    CONFIDENCE_CAP = 0.85

    def __init__(self, threshold: float = 0.7):
        """
        Initialize fuzzy matcher.

        Args:
            threshold: Minimum similarity (0-1) for a model or SKU signal to count
        """
        self.threshold = threshold

    def match(
        self,
        competitor: CompetitorRecord,
        catalog: list[CatalogRecord],
    ) -> list[MatchCandidate]:
        candidates = []
        for record in catalog:
            candidate = self._score(competitor, record)
            if candidate:
                candidates.append(candidate)
        return _rank(candidates)

    def _score(self, competitor: CompetitorRecord, record: CatalogRecord) -> Optional[MatchCandidate]:
        reasoning = []
        total = 0.0
        signals = []

        if competitor.model and record.model:
            model_similarity = similarity(competitor.model, record.model)
            if model_similarity >= self.threshold:
                total += model_similarity * self.MODEL_WEIGHT
                signals.append("model")
                reasoning.append(f"Model {model_similarity * 100:.1f}% similar")

        sku_similarity = similarity(competitor.sku, record.sku)
        if sku_similarity >= self.threshold:
            total += sku_similarity * self.SKU_WEIGHT
            signals.append("sku")
            reasoning.append(f"SKU {sku_similarity * 100:.1f}% similar")

        if competitor.company and record.brand:
            if similarity(competitor.company, record.brand) >= self.BRAND_THRESHOLD:
                total += self.BRAND_BONUS
                reasoning.append("Brand match")

        if not signals or total <= self.MIN_TOTAL:
            return None

        if signals == ["model"]:
            method = Method.FUZZY_MODEL
        elif signals == ["sku"]:
            method = Method.FUZZY_SKU
        else:
            method = Method.FUZZY_COMBINED

        return MatchCandidate(
            catalog_record=record,
            confidence=min(total, self.CONFIDENCE_CAP),
            stage=self.stage,
            method=method,
            reasoning=reasoning,
        )


class SpecificationMatcher:
    """
    Numeric-tolerance comparison of HVAC specifications.

    Tolerances are relative to our value:
    - Tonnage: 10%
    - SEER: 10%
    - AFUE: 5%
    - HSPF: 10%

    A product type that names the same equipment class counts as one
    compared and one matched field. At least two fields must match.
    """

    stage = Stage.SPECIFICATION

    TOLERANCES = {
        "tonnage": 0.10,
        "seer": 0.10,
        "afue": 0.05,
        "hspf": 0.10,
    }
    LABELS = {
        "tonnage": "Tonnage",
        "seer": "SEER",
        "afue": "AFUE",
        "hspf": "HSPF",
    }
    EFFICIENCY_FIELDS = {"seer", "afue", "hspf"}
    TYPE_THRESHOLD = 0.8
    MIN_MATCHED = 2
    CONFIDENCE_CAP = 0.75

    def match(
        self,
        competitor: CompetitorRecord,
        catalog: list[CatalogRecord],
    ) -> list[MatchCandidate]:
        if competitor.specs.is_empty():
            return []

        candidates = []
        for record in catalog:
            candidate = self._score(competitor, record)
            if candidate:
                candidates.append(candidate)
        return _rank(candidates)

    def _score(self, competitor: CompetitorRecord, record: CatalogRecord) -> Optional[MatchCandidate]:
        theirs = competitor.specs
        ours = record.specs
        reasoning = []
        matched = []
        compared = 0

        for name, tolerance in self.TOLERANCES.items():
            their_value = getattr(theirs, name)
            our_value = getattr(ours, name)
            if their_value is None or not our_value:
                continue
            compared += 1
            if within_tolerance(their_value, our_value, tolerance):
                matched.append(name)
                reasoning.append(f"{self.LABELS[name]} matches ({their_value:g} vs {our_value:g})")

        if theirs.product_type and record.type:
            type_similarity = similarity(
                canonical_product_type(theirs.product_type),
                canonical_product_type(record.type),
            )
            if type_similarity >= self.TYPE_THRESHOLD:
                compared += 1
                matched.append("product_type")
                reasoning.append("Product type match")

        if compared < self.MIN_MATCHED or len(matched) < self.MIN_MATCHED:
            return None

        confidence = (len(matched) / compared) * 0.7 + 0.1
        reasoning.append(f"{len(matched)}/{compared} specifications matched")

        return MatchCandidate(
            catalog_record=record,
            confidence=min(confidence, self.CONFIDENCE_CAP),
            stage=self.stage,
            method=self._method_for(matched),
            reasoning=reasoning,
        )

    def _method_for(self, matched: list[str]) -> Method:
        efficiency = [name for name in matched if name in self.EFFICIENCY_FIELDS]
        if not efficiency:
            return Method.SPEC_TONNAGE
        if len(efficiency) == len(matched):
            return Method.SPEC_EFFICIENCY
        return Method.SPEC_COMBINED
