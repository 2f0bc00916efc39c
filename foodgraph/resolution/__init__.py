from foodgraph.resolution.resolver import (
    EntityResolver,
    NameMatch,
    ResolutionResult,
    ResolutionStats,
    ResolutionTier,
)

__all__ = ["EntityResolver", "NameMatch", "ResolutionResult", "ResolutionStats", "ResolutionTier"]
