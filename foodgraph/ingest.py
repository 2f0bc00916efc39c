"""Batch ingestion orchestrator for the restaurant/dish graph.

This module provides the `IngestionOrchestrator`, which drives extracted
mentions through the engine:

**Per batch (in parallel, bounded by ``max_workers``):**
    1. Resolve names onto entities, upsert connections, append mentions
    2. Rebuild metrics of every connection the batch wrote to or boosted
    3. Mark the touched entities dirty

**Once per ingestion cycle:**
    1. Recompute quality scores of the dirty entities
    2. Invalidate cached query results that reference a changed id

Batches share nothing but the keyed stores, so one failing batch never
blocks or corrupts another. Mentions whose writes lost every optimistic
retry are re-queued up to ``max_requeues`` times and then parked, together
with their batch id and error, for later reprocessing. Reprocessing is
always safe because mention writes are deduplicated.

Example usage:
    ```python
    orchestrator = IngestionOrchestrator(
        resolver=resolver,
        aggregator=aggregator,
        quality=quality,
        cache=cache,
        extractor=my_extractor,
    )

    result = await orchestrator.ingest(extracted_mentions)
    print(f"Wrote {result.mentions_written} mentions, parked {len(result.parked)}")

    if result.parked:
        await orchestrator.reprocess(result.parked)
    ```
"""

import asyncio
import uuid
from typing import Sequence

from pydantic import BaseModel, ConfigDict, Field

from foodgraph.config import IngestConfig
from foodgraph.entity import EntityType
from foodgraph.errors import ConflictRetryExhausted, UpstreamTimeout
from foodgraph.logging import setup_logging
from foodgraph.mention import ExtractedMention
from foodgraph.pipeline.interfaces import MentionExtractorInterface, SourcePost
from foodgraph.pipeline.upstream import call_with_timeout
from foodgraph.query.cache import CacheLayer
from foodgraph.resolution import EntityResolver
from foodgraph.scoring import (
    DirtyEntityQueue,
    MetricAggregator,
    QualityScoreComputer,
    QualityScoreUpdateResult,
)


class ParkedItem(BaseModel):
    """A mention or post set aside for reprocessing.

    Exactly one of ``mention`` and ``post`` is set.
    """

    model_config = {"frozen": True}

    batch_id: str
    source_key: str
    reason: str
    mention: ExtractedMention | None = None
    post: SourcePost | None = None


class BatchResult(BaseModel):
    """Result of running one batch through resolution and metric aggregation.

    Attributes:
        batch_id: Identifier carried in logs and parked items.
        mentions_processed: Mentions in the batch.
        mentions_written: Mentions newly stored.
        duplicates_skipped: Mentions already stored from an earlier run.
        connections_boosted: Boosts applied by restaurant-level category mentions.
        retryable: Mentions that hit ConflictRetryExhausted and may be re-queued.
        touched_ids: Entity and connection ids whose query-visible data changed.
        errors: Mentions skipped as malformed.
    """

    model_config = {"frozen": True}

    batch_id: str
    mentions_processed: int = 0
    mentions_written: int = 0
    duplicates_skipped: int = 0
    connections_boosted: int = 0
    retryable: tuple[ParkedItem, ...] = ()
    touched_ids: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()


class IngestionResult(BaseModel):
    """Result of one ingestion cycle.

    Attributes:
        batches_processed: Batches run, re-queued batches included.
        failed_batches: Ids of batches that raised; their mentions were parked.
        mentions_written: Mentions newly stored across all batches.
        duplicates_skipped: Mentions skipped by deduplication.
        parked: Items set aside for reprocessing.
        score_update: Summary of the quality score flush.
        cache_entries_invalidated: Cached results dropped after the flush.
        batch_results: Per-batch breakdown.
        errors: Skipped mentions and batch-level failures.
    """

    model_config = {"frozen": True}

    batches_processed: int = 0
    failed_batches: tuple[str, ...] = ()
    mentions_written: int = 0
    duplicates_skipped: int = 0
    parked: tuple[ParkedItem, ...] = ()
    score_update: QualityScoreUpdateResult = Field(default_factory=QualityScoreUpdateResult)
    cache_entries_invalidated: int = 0
    batch_results: tuple[BatchResult, ...] = ()
    errors: tuple[str, ...] = ()


def chunk(mentions: Sequence[ExtractedMention], size: int) -> list[list[ExtractedMention]]:
    return [list(mentions[i : i + size]) for i in range(0, len(mentions), size)]


class IngestionOrchestrator(BaseModel):
    """Run extracted mentions through resolution, aggregation and scoring.

    Attributes:
        resolver: Maps mentions onto entities, connections and mentions.
        aggregator: Rebuilds connection metrics from stored evidence.
        quality: Recomputes quality scores for dirty entities.
        cache: Result cache to invalidate after score changes, if any.
        extractor: Text-understanding collaborator used by :meth:`ingest_posts`.
        config: Batch size, worker count and upstream-call settings.
        dirty: Entities awaiting score recomputation. Ids that failed to
            update in one flush stay here for the next.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    resolver: EntityResolver
    aggregator: MetricAggregator
    quality: QualityScoreComputer
    cache: CacheLayer | None = None
    extractor: MentionExtractorInterface | None = None
    config: IngestConfig = Field(default_factory=IngestConfig)
    dirty: DirtyEntityQueue = Field(default_factory=DirtyEntityQueue)

    async def ingest(self, mentions: Sequence[ExtractedMention]) -> IngestionResult:
        """Split mentions into ``batch_size`` batches and ingest them."""
        return await self.ingest_batches(chunk(mentions, self.config.batch_size))

    async def ingest_batches(self, batches: Sequence[Sequence[ExtractedMention]]) -> IngestionResult:
        """Process batches in parallel, then flush scores and invalidate the cache once.

        A batch that raises is recorded in ``failed_batches`` and its
        mentions are parked; the other batches are unaffected.
        """
        run_id = uuid.uuid4().hex[:8]
        logger = setup_logging(__name__).bind(run=run_id)
        semaphore = asyncio.Semaphore(self.config.max_workers)

        async def worker(batch_id: str, batch: Sequence[ExtractedMention]) -> BatchResult:
            async with semaphore:
                return await self._process_batch(batch_id, batch)

        pending = [(f"{run_id}-{i}", list(batch)) for i, batch in enumerate(batches) if batch]
        batch_results: list[BatchResult] = []
        failed: list[str] = []
        parked: list[ParkedItem] = []
        errors: list[str] = []
        requeues = 0

        while pending:
            outcomes = await asyncio.gather(
                *(worker(batch_id, batch) for batch_id, batch in pending), return_exceptions=True
            )
            retry: list[tuple[str, list[ExtractedMention]]] = []
            for (batch_id, batch), outcome in zip(pending, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    logger.bind(batch=batch_id).error(f"Batch failed: {outcome!r}")
                    failed.append(batch_id)
                    errors.append(f"{batch_id}: {outcome}")
                    parked.extend(
                        ParkedItem(batch_id=batch_id, source_key=m.source_key, reason=repr(outcome), mention=m)
                        for m in batch
                    )
                    continue
                batch_results.append(outcome)
                errors.extend(outcome.errors)
                if not outcome.retryable:
                    continue
                if requeues < self.config.max_requeues:
                    retry.append(
                        (f"{batch_id}.r{requeues + 1}", [item.mention for item in outcome.retryable if item.mention])
                    )
                else:
                    for item in outcome.retryable:
                        logger.bind(batch=item.batch_id).error(f"Parking {item.source_key}: {item.reason}")
                    parked.extend(outcome.retryable)
            pending = retry
            requeues += 1

        score_update = await self.quality.flush(self.dirty)
        invalidated = 0
        if self.cache is not None:
            touched = set(score_update.changed_ids)
            for batch_result in batch_results:
                touched.update(batch_result.touched_ids)
            invalidated = await self.cache.invalidate_entities(touched)

        result = IngestionResult(
            batches_processed=len(batch_results) + len(failed),
            failed_batches=tuple(failed),
            mentions_written=sum(r.mentions_written for r in batch_results),
            duplicates_skipped=sum(r.duplicates_skipped for r in batch_results),
            parked=tuple(parked),
            score_update=score_update,
            cache_entries_invalidated=invalidated,
            batch_results=tuple(batch_results),
            errors=tuple(errors),
        )
        logger.info(
            f"Ingested {result.batches_processed} batches: {result.mentions_written} new mentions, "
            f"{result.duplicates_skipped} duplicates, {len(result.parked)} parked, "
            f"{len(result.failed_batches)} failed"
        )
        return result

    async def _process_batch(self, batch_id: str, batch: Sequence[ExtractedMention]) -> BatchResult:
        logger = setup_logging(__name__).bind(batch=batch_id)
        results = await self.resolver.resolve(batch, batch_id=batch_id)

        written = duplicates = boosted = 0
        errors: list[str] = []
        retryable: list[ParkedItem] = []
        to_rebuild: dict[str, list[ExtractedMention]] = {}
        touched: set[str] = set()

        for mention, result in zip(batch, results):
            if not result.ok:
                if result.retryable:
                    retryable.append(
                        ParkedItem(
                            batch_id=batch_id,
                            source_key=result.source_key,
                            reason=result.error or "",
                            mention=mention,
                        )
                    )
                else:
                    errors.append(f"{result.source_key}: {result.error}")
                continue
            if result.connection_id is not None:
                to_rebuild.setdefault(result.connection_id, []).append(mention)
                if result.mention_created:
                    written += 1
                    touched.update((result.connection_id, *result.entity_ids))
                else:
                    duplicates += 1
            for connection_id in result.boosted_connection_ids:
                to_rebuild.setdefault(connection_id, []).append(mention)
            boosted += len(result.boosted_connection_ids)
            self.dirty.mark(*result.entity_ids)

        # Every mention of the batch is stored by now, so one rebuild per connection suffices.
        connections = self.aggregator.connection_storage
        for connection_id, mentions in to_rebuild.items():
            try:
                before = await connections.get(connection_id)
                await self.aggregator.rebuild(connection_id)
            except ConflictRetryExhausted as exc:
                logger.warning(f"Metric rebuild for {connection_id} did not land: {exc}")
                retryable.extend(
                    ParkedItem(batch_id=batch_id, source_key=m.source_key, reason=str(exc), mention=m)
                    for m in mentions
                )
                continue
            after = await connections.get(connection_id)
            if after is not None:
                self.dirty.mark(after.restaurant_id, after.dish_id, *after.categories, *after.dish_attributes)
                if before is None or after.version != before.version:
                    touched.update((connection_id, after.restaurant_id, after.dish_id))

        result = BatchResult(
            batch_id=batch_id,
            mentions_processed=len(batch),
            mentions_written=written,
            duplicates_skipped=duplicates,
            connections_boosted=boosted,
            retryable=tuple(retryable),
            touched_ids=tuple(sorted(touched)),
            errors=tuple(errors),
        )
        logger.debug(result)
        return result

    async def ingest_posts(self, posts: Sequence[SourcePost]) -> IngestionResult:
        """Extract mentions from raw posts, then ingest them.

        The extractor call carries a deadline and bounded retries; if it
        still times out, the posts are parked and nothing is written.

        Raises:
            ValueError: If no extractor is configured.
        """
        if self.extractor is None:
            raise ValueError("ingest_posts needs a mention extractor")
        extractor = self.extractor
        batch_id = f"extract-{uuid.uuid4().hex[:8]}"
        try:
            mentions = await call_with_timeout(
                "mention extraction",
                lambda: extractor.extract(posts),
                timeout=self.config.upstream_timeout_seconds,
                max_attempts=self.config.upstream_max_attempts,
                backoff=self.config.upstream_backoff_seconds,
            )
        except UpstreamTimeout as exc:
            setup_logging(__name__).bind(batch=batch_id).error(f"Parking {len(posts)} posts: {exc}")
            return IngestionResult(
                parked=tuple(
                    ParkedItem(
                        batch_id=batch_id,
                        source_key=f"{post.source_type.value}:{post.source_id}",
                        reason=str(exc),
                        post=post,
                    )
                    for post in posts
                ),
                errors=(str(exc),),
            )
        return await self.ingest(mentions)

    async def reprocess(self, parked: Sequence[ParkedItem]) -> IngestionResult:
        """Run parked items through ingestion again.

        Parked posts are extracted first; if extraction times out again they
        come back parked.
        """
        mentions = [item.mention for item in parked if item.mention is not None]
        posts = [item.post for item in parked if item.post is not None]
        result = await self.ingest(mentions)
        if not posts:
            return result
        from_posts = await self.ingest_posts(posts)
        return _combine(result, from_posts)

    async def rebuild_all_metrics(self) -> QualityScoreUpdateResult:
        """Replay the Mention Store into every connection and rescore everything."""
        await self.aggregator.rebuild_all()
        for entity_type in EntityType:
            for entity in await self.quality.entity_storage.list_by_type(entity_type):
                self.dirty.mark(entity.entity_id)
        score_update = await self.quality.flush(self.dirty)
        if self.cache is not None:
            await self.cache.invalidate_entities(score_update.changed_ids)
        return score_update


def _combine(first: IngestionResult, second: IngestionResult) -> IngestionResult:
    return IngestionResult(
        batches_processed=first.batches_processed + second.batches_processed,
        failed_batches=first.failed_batches + second.failed_batches,
        mentions_written=first.mentions_written + second.mentions_written,
        duplicates_skipped=first.duplicates_skipped + second.duplicates_skipped,
        parked=first.parked + second.parked,
        score_update=QualityScoreUpdateResult(
            entities_updated=first.score_update.entities_updated + second.score_update.entities_updated,
            connections_updated=first.score_update.connections_updated
            + second.score_update.connections_updated,
            changed_ids=tuple(dict.fromkeys(first.score_update.changed_ids + second.score_update.changed_ids)),
            errors=first.score_update.errors + second.score_update.errors,
        ),
        cache_entries_invalidated=first.cache_entries_invalidated + second.cache_entries_invalidated,
        batch_results=first.batch_results + second.batch_results,
        errors=first.errors + second.errors,
    )
