"""Connection metric aggregation.

Metrics are a pure function of a connection's mentions, its boost records
and the current time, so applying a mention and rebuilding from the
Mention Store produce the same result. Replaying the same evidence any
number of times leaves the metrics unchanged.
"""

import logging
from datetime import datetime
from typing import Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from foodgraph.clock import IngestionClock, age_in_days, current_time
from foodgraph.config import ResolutionConfig, ScoringConfig
from foodgraph.connection import ActivityLevel, BoostRecord, ConnectionMetrics, TopMention
from foodgraph.errors import ConflictRetryExhausted, VersionConflict
from foodgraph.mention import Mention
from foodgraph.storage.interfaces import ConnectionStorageInterface, MentionStorageInterface

logger = logging.getLogger(__name__)


def decay_weights(ages_days: np.ndarray, decay_days: float) -> np.ndarray:
    """``exp(-age / decay_days)`` for an array of ages in days."""
    return np.exp(-np.asarray(ages_days, dtype=float) / decay_days)


def mention_score(upvotes: int, age_days: float, decay_days: float = 60.0) -> float:
    """Time-decayed score of one mention: ``upvotes * exp(-age_days / decay_days)``."""
    return float(upvotes * np.exp(-age_days / decay_days))


def compute_metrics(
    mentions: Sequence[Mention],
    boosts: Sequence[BoostRecord],
    now: datetime,
    config: ScoringConfig,
) -> tuple[ConnectionMetrics, ActivityLevel, datetime | None]:
    """Compute metrics, activity level and last-mentioned time from raw evidence.

    Boosts count toward mention/upvote totals, diversity and recency but
    never toward ``top_mentions``: they carry no quotable excerpt.

    Returns:
        ``(metrics, activity_level, last_mentioned_at)``.
    """
    upvotes = np.array(
        [m.upvotes for m in mentions] + [b.upvotes for b in boosts], dtype=float
    )
    ages = np.array(
        [age_in_days(m.posted_at, now) for m in mentions]
        + [age_in_days(b.posted_at, now) for b in boosts],
        dtype=float,
    )
    weights = decay_weights(ages, config.decay_days)
    scores = upvotes * weights

    sources = {(m.source, m.author) for m in mentions} | {(b.source, b.author) for b in boosts}

    # Ties fall back to mention_id so the slice is stable across replays.
    mention_scores = scores[: len(mentions)]
    order = sorted(
        range(len(mentions)), key=lambda i: (-mention_scores[i], mentions[i].mention_id)
    )
    top = tuple(
        TopMention(
            mention_id=mentions[i].mention_id,
            score=round(float(mention_scores[i]), 6),
            upvotes=mentions[i].upvotes,
            age_days=round(float(ages[i]), 4),
        )
        for i in order[: config.top_mention_limit]
    )

    timestamps = [m.posted_at for m in mentions] + [b.posted_at for b in boosts]
    last_mentioned_at = max(timestamps) if timestamps else None

    metrics = ConnectionMetrics(
        mention_count=len(upvotes),
        total_upvotes=int(upvotes.sum()),
        source_diversity=len(sources),
        recent_mention_count=int((ages <= config.recent_days).sum()),
        decayed_upvotes=round(float(scores.sum()), 6),
        top_mentions=top,
        computed_at=now,
    )
    return metrics, activity_level_for(top, last_mentioned_at, now, config), last_mentioned_at


def activity_level_for(
    top_mentions: Sequence[TopMention],
    last_mentioned_at: datetime | None,
    now: datetime,
    config: ScoringConfig,
) -> ActivityLevel:
    """Trending if every retained top mention is recent, active if the latest is fresh."""
    if len(top_mentions) >= config.trending_min_mentions and all(
        m.age_days <= config.recent_days for m in top_mentions
    ):
        return ActivityLevel.TRENDING
    if last_mentioned_at is not None and age_in_days(last_mentioned_at, now) <= config.active_days:
        return ActivityLevel.ACTIVE
    return ActivityLevel.NORMAL


class MetricAggregator(BaseModel):
    """Keep connection metrics in step with the Mention Store.

    Every write is a versioned read-modify-write on the connection row, so
    two workers applying mentions to the same connection never lose an update.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    connection_storage: ConnectionStorageInterface
    mention_storage: MentionStorageInterface
    config: ScoringConfig = Field(default_factory=ScoringConfig)
    max_update_attempts: int = Field(default=ResolutionConfig().max_update_attempts, ge=1)
    clock: IngestionClock | None = None

    async def apply_mention(self, connection_id: str, mention: Mention) -> ConnectionMetrics:
        """Fold a newly stored mention into its connection's metrics.

        The mention must already be in the Mention Store; metrics are
        recomputed from the stored evidence, which makes this idempotent.
        """
        if mention.connection_id != connection_id:
            raise ValueError(
                f"mention {mention.mention_id} belongs to {mention.connection_id}, not {connection_id}"
            )
        return await self.rebuild(connection_id)

    async def rebuild(self, connection_id: str) -> ConnectionMetrics:
        """Recompute a connection's metrics from its mentions and boosts.

        The connection is read before its mentions, so a concurrent writer
        whose mention this pass misses must bump the version first and
        force a retry.
        """
        now = current_time(self.clock)
        for _ in range(self.max_update_attempts):
            connection = await self.connection_storage.get(connection_id)
            if connection is None:
                raise KeyError(connection_id)
            mentions = await self.mention_storage.list_by_connection(connection_id)
            metrics, activity, last = compute_metrics(mentions, connection.boosts, now, self.config)
            if (
                metrics == connection.metrics
                and activity == connection.activity_level
                and last == connection.last_mentioned_at
            ):
                return connection.metrics
            updated = connection.model_copy(
                update={
                    "metrics": metrics,
                    "activity_level": activity,
                    "last_mentioned_at": last,
                    "updated_at": now,
                }
            )
            try:
                stored = await self.connection_storage.update(updated, connection.version)
            except VersionConflict:
                continue
            logger.debug(
                "Metrics for %s: mentions=%d upvotes=%d activity=%s",
                connection_id,
                stored.metrics.mention_count,
                stored.metrics.total_upvotes,
                stored.activity_level.value,
            )
            return stored.metrics
        raise ConflictRetryExhausted(connection_id, self.max_update_attempts)

    async def rebuild_all(self) -> int:
        """Replay the Mention Store into every connection. Returns the count rebuilt."""
        connections = await self.connection_storage.list_all()
        for connection in connections:
            await self.rebuild(connection.connection_id)
        logger.info("Rebuilt metrics for %d connections", len(connections))
        return len(connections)
