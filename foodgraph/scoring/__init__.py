from foodgraph.scoring.metrics import MetricAggregator, compute_metrics, mention_score
from foodgraph.scoring.quality import (
    DirtyEntityQueue,
    QualityScoreComputer,
    QualityScoreUpdateResult,
    evidence_strength,
)

__all__ = [
    "DirtyEntityQueue",
    "MetricAggregator",
    "QualityScoreComputer",
    "QualityScoreUpdateResult",
    "compute_metrics",
    "evidence_strength",
    "mention_score",
]
