from __future__ import annotations

from concurrent.futures import TimeoutError as FutureTimeoutError


class NewsHarvestError(Exception):
    kind = "error"


class TransientInfrastructureError(NewsHarvestError):
    """Cache or queue backend unreachable. Callers degrade instead of failing."""

    kind = "transient_infrastructure"


class ExternalCallError(NewsHarvestError):
    """A fetch or completion call failed or timed out."""

    kind = "external_call"


class ValidationFailure(NewsHarvestError):
    kind = "validation"


class PersistenceConflict(NewsHarvestError):
    kind = "persistence_conflict"


class FatalConfigurationError(NewsHarvestError, ValueError):
    """Missing capability or invalid configuration. The only error that escapes a batch run."""

    kind = "fatal_configuration"


def error_kind(exc: BaseException) -> str:
    if isinstance(exc, NewsHarvestError):
        return exc.kind
    if isinstance(exc, (TimeoutError, FutureTimeoutError)):
        return "timeout"
    return "unexpected"
