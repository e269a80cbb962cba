"""
Composition root for the matching pipeline.

Builds the cache, clients, resolver and scheduler from settings. Nothing
below this module reads settings directly.
"""

import asyncio
from typing import Optional, Union

from config.logging import logger
from crosswalk.database import create_cache_engine, init_db, make_session_factory
from crosswalk.matching.cache import ResponseCache
from crosswalk.matching.clients import AnthropicMatchClient, HttpWebResearchClient
from crosswalk.matching.escalation import AiMatcher, ExternalCallBudget, WebResearchMatcher
from crosswalk.matching.normalizer import NormalizedResult, ResultNormalizer
from crosswalk.matching.resolver import ResolverConfig, SequentialResolver
from crosswalk.matching.scheduler import BatchScheduler, SchedulerConfig
from crosswalk.matching.types import CatalogRecord, CompetitorRecord, Priority


class CrosswalkService:
    """
    One wired-up matching pipeline.

    Usage:
        service = CrosswalkService.from_settings(settings)
        async with service:
            result = await service.resolve(competitor, catalog)
            job_id = await service.submit(records, catalog)
            job = await service.scheduler.wait_for(job_id)
    """

    def __init__(
        self,
        resolver: SequentialResolver,
        scheduler: BatchScheduler,
        cache: Optional[ResponseCache] = None,
        max_external_calls: int = 0,
    ):
        self.resolver = resolver
        self.scheduler = scheduler
        self.cache = cache
        self.max_external_calls = max_external_calls
        self._sweep_stop: Optional[asyncio.Event] = None
        self._sweep_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings, database_url: Optional[str] = None) -> "CrosswalkService":
        engine = create_cache_engine(database_url or settings.DATABASE_URL)
        init_db(engine)
        cache = ResponseCache(
            make_session_factory(engine),
            ttl_days=settings.CACHE_TTL_DAYS,
            max_entries=settings.CACHE_MAX_ENTRIES,
            sweep_interval_hours=settings.CACHE_SWEEP_INTERVAL_HOURS,
        )

        ai_matcher = None
        if settings.ANTHROPIC_API_KEY:
            ai_matcher = AiMatcher(
                AnthropicMatchClient(
                    api_key=settings.ANTHROPIC_API_KEY,
                    model=settings.AI_MODEL,
                    max_tokens=settings.AI_MAX_TOKENS,
                    timeout=settings.AI_TIMEOUT_SECONDS,
                    max_retries=settings.AI_MAX_RETRIES,
                ),
                cache=cache,
                context_size=settings.AI_CONTEXT_SIZE,
                confidence_cap=settings.AI_CONFIDENCE_CAP,
                schema_version=settings.CACHE_SCHEMA_VERSION,
            )
        else:
            logger.info("ANTHROPIC_API_KEY not set - AI-enhanced stage disabled")

        web_matcher = None
        if settings.WEB_RESEARCH_URL:
            web_matcher = WebResearchMatcher(
                HttpWebResearchClient(
                    base_url=settings.WEB_RESEARCH_URL,
                    api_key=settings.WEB_RESEARCH_API_KEY,
                    timeout=settings.WEB_RESEARCH_TIMEOUT_SECONDS,
                ),
                cache=cache,
                schema_version=settings.CACHE_SCHEMA_VERSION,
            )
        else:
            logger.info("WEB_RESEARCH_URL not set - web research stage disabled")

        resolver = SequentialResolver(
            ai_matcher=ai_matcher,
            web_matcher=web_matcher,
            normalizer=ResultNormalizer(),
            config=ResolverConfig(
                min_confidence=settings.MIN_CONFIDENCE_THRESHOLD,
                fuzzy_threshold=settings.FUZZY_MATCH_THRESHOLD,
            ),
        )
        scheduler = BatchScheduler(
            resolver,
            SchedulerConfig(
                max_batch_size=settings.MAX_BATCH_SIZE,
                max_concurrent_batches=settings.MAX_CONCURRENT_BATCHES,
                rate_limit_rpm=settings.RATE_LIMIT_RPM,
                poll_interval=settings.QUEUE_POLL_INTERVAL_SECONDS,
                max_external_calls_per_job=settings.MAX_EXTERNAL_CALLS_PER_JOB,
                event_queue_size=settings.EVENT_QUEUE_SIZE,
            ),
        )
        return cls(resolver, scheduler, cache, settings.MAX_EXTERNAL_CALLS_PER_JOB)

    def start(self):
        """Start the scheduler pump and the periodic cache sweep."""
        self.scheduler.start()
        if self.cache and self._sweep_task is None:
            self._sweep_stop = asyncio.Event()
            self._sweep_task = asyncio.create_task(self.cache.run_periodic_sweep(self._sweep_stop))

    async def stop(self):
        await self.scheduler.stop()
        if self._sweep_task:
            self._sweep_stop.set()
            await self._sweep_task
            self._sweep_task = None

    async def __aenter__(self) -> "CrosswalkService":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def resolve(
        self,
        competitor: Union[CompetitorRecord, dict],
        catalog: list[Union[CatalogRecord, dict]],
    ) -> NormalizedResult:
        """Resolve a single record outside the batch queue."""
        if isinstance(competitor, dict):
            competitor = CompetitorRecord.from_dict(competitor)
        records = [c if isinstance(c, CatalogRecord) else CatalogRecord.from_dict(c) for c in catalog]
        return await self.resolver.resolve(
            competitor,
            records,
            source="single",
            budget=ExternalCallBudget(self.max_external_calls),
        )

    async def submit(
        self,
        records: list[Union[CompetitorRecord, dict]],
        catalog: list[Union[CatalogRecord, dict]],
        priority: Priority = Priority.NORMAL,
    ) -> str:
        return await self.scheduler.submit(records, catalog, priority)
