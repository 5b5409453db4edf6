from typing import Dict, Optional


class JobFeedError(Exception):
    pass


class TierMiss(JobFeedError):
    """A tier answered, but had nothing for the query."""

    def __init__(self, tier: str):
        self.tier = tier
        super().__init__(f"{tier} miss")


class AdapterFailure(JobFeedError):
    def __init__(self, source: str, message: str):
        self.source = source
        self.message = message
        super().__init__(f"{source}: {message}")


class TierTimeout(JobFeedError):
    def __init__(self, tier: str, timeout_ms: float):
        self.tier = tier
        self.timeout_ms = timeout_ms
        super().__init__(f"{tier} exceeded {timeout_ms:.0f}ms deadline")


class PersistenceFailure(JobFeedError):
    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {cause}" if cause else f"{operation} failed")


class UpstreamExhaustion(JobFeedError):
    """Every tier was empty or failed for a retrieval request."""

    def __init__(self, attempts: Optional[Dict[str, str]] = None):
        self.attempts = dict(attempts or {})
        detail = ', '.join(f"{tier}={outcome}" for tier, outcome in self.attempts.items())
        super().__init__(
            "All job sources are currently unavailable"
            + (f" ({detail})" if detail else "")
        )
