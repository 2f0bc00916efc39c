"""Error kinds raised by the resolution, ingestion and query components."""


class FoodGraphError(Exception):
    """Base class for all foodgraph errors."""


class ResolutionError(FoodGraphError):
    """A mention is malformed or cannot be mapped onto the graph.

    The resolver logs it, skips the mention, and carries on with the batch.
    """

    def __init__(self, message: str, source_key: str | None = None):
        super().__init__(message)
        self.source_key = source_key


class ConflictRetryExhausted(FoodGraphError):
    """An entity creation race did not converge after the allowed attempts.

    Transient: the orchestrator re-queues the item, then parks it.
    """

    def __init__(self, entity_key: str, attempts: int):
        super().__init__(f"entity {entity_key!r} did not converge after {attempts} attempts")
        self.entity_key = entity_key
        self.attempts = attempts


class VersionConflict(FoodGraphError):
    """An optimistic write found a different version than the one it read."""

    def __init__(self, record_id: str, expected_version: int, actual_version: int | None = None):
        super().__init__(
            f"version conflict on {record_id}: expected {expected_version}, found {actual_version}"
        )
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class QueryError(FoodGraphError):
    """A query references an entity that does not exist."""

    def __init__(self, message: str, reference: str | None = None):
        super().__init__(message)
        self.reference = reference


class UpstreamTimeout(FoodGraphError):
    """An external collaborator call exceeded its deadline on every attempt."""

    def __init__(self, operation: str, attempts: int):
        super().__init__(f"{operation} timed out after {attempts} attempt(s)")
        self.operation = operation
        self.attempts = attempts
