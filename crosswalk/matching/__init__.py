"""
Crosswalk Matching Module

Resolves competitor HVAC products to catalog products:
- Exact, fuzzy (rapidfuzz) and specification-tolerance matchers
- AI-enhanced matching and web research, behind a response cache
- Result normalization with flags, quality score and schema checks
- Batch scheduling with priority, concurrency and rate limits
"""

from crosswalk.matching.cache import ResponseCache, build_fingerprint
from crosswalk.matching.clients import AnthropicMatchClient, HttpWebResearchClient
from crosswalk.matching.errors import (
    CrosswalkError,
    ExternalCallError,
    JobError,
    RecordError,
    StageError,
    StageUnavailable,
    ValidationError,
)
from crosswalk.matching.escalation import AiMatcher, ExternalCallBudget, WebResearchMatcher
from crosswalk.matching.matchers import ExactMatcher, FuzzyMatcher, SpecificationMatcher
from crosswalk.matching.normalizer import (
    MatchFlag,
    NormalizedResult,
    ResultNormalizer,
    map_method_to_storage,
    to_flat_record,
)
from crosswalk.matching.resolver import ResolverConfig, SequentialResolver
from crosswalk.matching.scheduler import (
    BatchScheduler,
    CancellationToken,
    JobStatus,
    SchedulerConfig,
)
from crosswalk.matching.types import (
    CatalogRecord,
    CompetitorRecord,
    MatchCandidate,
    Method,
    Priority,
    ProductSpecs,
    Stage,
)

__all__ = [
    "AiMatcher",
    "AnthropicMatchClient",
    "BatchScheduler",
    "CancellationToken",
    "CatalogRecord",
    "CompetitorRecord",
    "CrosswalkError",
    "ExactMatcher",
    "ExternalCallBudget",
    "ExternalCallError",
    "FuzzyMatcher",
    "HttpWebResearchClient",
    "JobError",
    "JobStatus",
    "MatchCandidate",
    "MatchFlag",
    "Method",
    "NormalizedResult",
    "Priority",
    "ProductSpecs",
    "RecordError",
    "ResolverConfig",
    "ResponseCache",
    "ResultNormalizer",
    "SchedulerConfig",
    "SequentialResolver",
    "SpecificationMatcher",
    "Stage",
    "StageError",
    "StageUnavailable",
    "ValidationError",
    "WebResearchMatcher",
    "build_fingerprint",
    "map_method_to_storage",
    "to_flat_record",
]
