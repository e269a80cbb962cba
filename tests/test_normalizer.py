#!/usr/bin/env python3
"""
Tests for the result normalizer.
"""

import hashlib
import sys
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import fakes
from crosswalk.matching.errors import ValidationError
from crosswalk.matching.normalizer import (
    CanonicalMatchRecord,
    MatchFlag,
    NormalizationContext,
    ResultNormalizer,
    map_method_to_storage,
    to_flat_record,
)
from crosswalk.matching.types import (
    AiEnhancedOutcome,
    CatalogRecord,
    ExactOutcome,
    FailedOutcome,
    MatchCandidate,
    Method,
    ProductSpecs,
    SpecificationOutcome,
    Stage,
)


def candidate(record: CatalogRecord, confidence: float, stage: Stage, method: Method) -> MatchCandidate:
    return MatchCandidate(
        catalog_record=record,
        confidence=confidence,
        stage=stage,
        method=method,
        reasoning=["test"],
    )


def catalog_by_sku() -> dict[str, CatalogRecord]:
    return {record.sku: record for record in fakes.make_catalog()}


def test_flags_and_quality_score():
    """Test confidence bands, stage flags and quality adjustments."""
    print("\n=== FLAG TESTS ===\n")
    normalizer = ResultNormalizer()
    catalog = catalog_by_sku()

    outcome = ExactOutcome(
        competitor=fakes.competitor("TUD100C936V2", "Allied", price=1500),
        candidates=[candidate(catalog["TUD100C936V2"], 0.95, Stage.EXACT, Method.EXACT_SKU)],
    )
    result = normalizer.normalize(outcome)
    assert result.flags == [MatchFlag.HIGH_CONFIDENCE]
    assert result.quality_score == 1.0
    print("✓ High-confidence exact match")

    outcome = ExactOutcome(
        competitor=fakes.competitor("4A7A6036", "Allied", price=1000),
        candidates=[candidate(catalog["ACI-AC-36-16"], 0.85, Stage.EXACT, Method.EXACT_MODEL)],
    )
    result = normalizer.normalize(outcome)
    assert MatchFlag.MEDIUM_CONFIDENCE in result.flags
    assert MatchFlag.PRICE_MISMATCH in result.flags, "2100 vs 1000 is more than 30% apart"
    # 0.85 - 0.1 (price) + 0.02 (tonnage) + 0.02 (seer) + 0.01 (refrigerant)
    assert result.quality_score == 0.8
    print(f"✓ Price mismatch lowers quality to {result.quality_score}")

    outcome = AiEnhancedOutcome(
        competitor=fakes.competitor("MYSTERY-48", "Lennox"),
        candidates=[candidate(catalog["ACI-HP-48-18"], 0.65, Stage.AI_ENHANCED, Method.CACHED_RESULT)],
        from_cache=True,
    )
    result = normalizer.normalize(outcome)
    assert result.flags == [
        MatchFlag.LOW_CONFIDENCE,
        MatchFlag.AI_GENERATED,
        MatchFlag.CACHE_HIT,
        MatchFlag.REQUIRES_APPROVAL,
    ]
    assert result.from_cache
    print("✓ AI cached result flags")

    outcome = FailedOutcome(competitor=fakes.competitor("QQQ-1", "Nobody"), trace=["✗ nothing"])
    result = normalizer.normalize(outcome)
    assert result.flags == [MatchFlag.NEEDS_REVIEW, MatchFlag.REQUIRES_APPROVAL]
    assert result.quality_score == 0.0
    assert result.processing_steps == ["✗ nothing"]
    print("✓ Failed result flagged for review")


def test_spec_warnings():
    """Spec inconsistencies warn regardless of confidence."""
    print("\n=== WARNING TESTS ===\n")
    normalizer = ResultNormalizer()
    catalog = catalog_by_sku()

    record = fakes.competitor("XR16-048", "Goodman", specifications={"tonnage": 3.0, "seer": 14.0})
    outcome = ExactOutcome(
        competitor=record,
        candidates=[candidate(catalog["ACI-HP-48-18"], 0.95, Stage.EXACT, Method.EXACT_SKU)],
    )
    result = normalizer.normalize(outcome)
    assert "Tonnage mismatch: competitor 3 vs ours 4" in result.warnings
    assert "SEER mismatch: competitor 14 vs ours 18" in result.warnings
    assert result.is_valid
    print("✓ Tonnage and SEER mismatches reported")

    record = fakes.competitor("XR16-036", "Goodman", specifications={"tonnage": 3.0, "seer": 16.0})
    outcome = SpecificationOutcome(
        competitor=record,
        candidates=[candidate(catalog["ACI-AC-36-16"], 0.75, Stage.SPECIFICATION, Method.SPEC_COMBINED)],
    )
    assert normalizer.normalize(outcome).warnings == []
    print("✓ Consistent specs produce no warnings")


def test_schema_validation():
    """Invalid records are emitted with warnings, never dropped."""
    print("\n=== SCHEMA VALIDATION TESTS ===\n")
    normalizer = ResultNormalizer()
    catalog = catalog_by_sku()

    outcome = ExactOutcome(
        competitor=fakes.competitor("", "Allied"),
        candidates=[candidate(catalog["TUD100C936V2"], 0.95, Stage.EXACT, Method.EXACT_SKU)],
    )
    result = normalizer.normalize(outcome)
    assert not result.is_valid
    assert any(w.startswith("competitor.sku:") for w in result.warnings)
    assert result.match.sku == "TUD100C936V2"
    print("✓ Empty competitor SKU marked invalid")

    outcome = ExactOutcome(
        competitor=fakes.competitor("X1", "Allied"),
        candidates=[candidate(catalog["TUD100C936V2"], 0.7, Stage.EXACT, Method.FUZZY_SKU)],
    )
    result = normalizer.normalize(outcome)
    assert not result.is_valid
    assert any("not valid for stage" in w for w in result.warnings)
    print("✓ Method outside the stage domain marked invalid")

    outcome = FailedOutcome(competitor=fakes.competitor("X1", "Allied"))
    result = normalizer.normalize(outcome, NormalizationContext(request_id="bad id!", source="batch"))
    assert not result.is_valid
    assert any(w.startswith("request_id:") for w in result.warnings)
    print("✓ Request IDs must be URL-safe")

    long_brand = CatalogRecord(sku="LONG-1", model="L1", brand="B" * 60, type="AC")
    outcome = ExactOutcome(
        competitor=fakes.competitor("LONG-1", "Allied"),
        candidates=[candidate(long_brand, 0.95, Stage.EXACT, Method.EXACT_SKU)],
    )
    result = normalizer.normalize(outcome)
    assert not result.is_valid
    with pytest.raises(ValidationError):
        normalizer.ensure_valid(result)
    print("✓ ensure_valid raises for invalid records")

    valid = normalizer.normalize(FailedOutcome(competitor=fakes.competitor("X1", "Allied")))
    CanonicalMatchRecord.model_validate(valid.to_dict())
    assert normalizer.ensure_valid(valid) is valid
    print("✓ Valid records round-trip through the schema")


def test_snapshot_is_detached():
    """The match snapshot is taken at normalization time."""
    normalizer = ResultNormalizer()
    record = CatalogRecord(
        sku="HP-1",
        model="HP1",
        brand="ACI",
        type="split system heat pump",
        price=3000,
        specs=ProductSpecs(tonnage=3.0),
    )
    outcome = ExactOutcome(
        competitor=fakes.competitor("HP-1", "Allied"),
        candidates=[candidate(record, 0.95, Stage.EXACT, Method.EXACT_SKU)],
    )
    result = normalizer.normalize(outcome, NormalizationContext(request_id="req_test_1", source="manual"))
    assert result.match.type == "Heat Pump"
    assert result.match.specs == {"tonnage": 3.0}
    assert result.request_id == "req_test_1"
    assert result.source == "manual"
    assert result.to_dict()["match"]["sku"] == "HP-1"
    print("✓ Snapshot copies catalog fields with a canonical type")


def test_flat_record():
    """Test the storage projection."""
    print("\n=== FLAT RECORD TESTS ===\n")
    normalizer = ResultNormalizer()
    catalog = catalog_by_sku()

    outcome = ExactOutcome(
        competitor=fakes.competitor("TUD100C936V2", "Allied"),
        candidates=[candidate(catalog["TUD100C936V2"], 0.95, Stage.EXACT, Method.EXACT_SKU)],
    )
    result = normalizer.normalize(outcome)
    flat = to_flat_record(result)

    assert flat["competitor_key"] == hashlib.md5(b"TUD100C936V2_ALLIED").hexdigest()
    assert flat["our_sku"] == "TUD100C936V2"
    assert flat["match_method"] == "exact"
    assert flat["stage"] == "exact"
    assert flat["processing_date"] == result.timestamp.date().isoformat()
    print("✓ Flat record keyed by competitor SKU and company")

    failed = to_flat_record(normalizer.normalize(FailedOutcome(competitor=fakes.competitor("X", "Y"))))
    assert failed["our_sku"] is None
    assert failed["match_method"] == "manual"
    print("✓ Failed records map to manual")


def test_method_storage_mapping():
    cases = {
        Method.EXACT_SKU: "exact",
        Method.EXACT_MODEL: "model",
        Method.FUZZY_COMBINED: "model",
        Method.SPEC_TONNAGE: "specs",
        Method.SPEC_COMBINED: "specs",
        Method.AI_CLAUDE: "ai",
        Method.WEB_AHRI: "ai",
        Method.CACHED_RESULT: "ai",
        Method.MANUAL_REVIEW: "manual",
    }
    for method, expected in cases.items():
        assert map_method_to_storage(method) == expected, f"{method} should map to {expected}"
    print("✓ Methods collapse onto the storage vocabulary")


if __name__ == "__main__":
    tests = [
        ("Flags and Quality", test_flags_and_quality_score),
        ("Spec Warnings", test_spec_warnings),
        ("Schema Validation", test_schema_validation),
        ("Snapshot", test_snapshot_is_detached),
        ("Flat Record", test_flat_record),
        ("Method Mapping", test_method_storage_mapping),
    ]

    results = []
    for name, test in tests:
        try:
            test()
            results.append((name, True))
        except AssertionError as e:
            print(f"✗ Test failed: {e}")
            results.append((name, False))

    print("\n" + "=" * 50)
    print("TEST SUMMARY")
    print("=" * 50)
    for name, passed in results:
        print(f"{name}: {'PASSED' if passed else 'FAILED'}")
    print("=" * 50)

    sys.exit(0 if all(passed for _, passed in results) else 1)
