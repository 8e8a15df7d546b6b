from __future__ import annotations


class SyncWardenError(Exception):
    """Base error for SyncWarden."""


class ProviderConfigError(SyncWardenError):
    """Missing or invalid provider configuration."""


class NotFoundError(SyncWardenError):
    """Unknown job id or provider type."""

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(f"{resource} not found: {identifier}")
        self.resource = resource
        self.identifier = identifier


class InvalidTransitionError(SyncWardenError):
    """Job state machine violation, including lost compare-and-swap races."""

    def __init__(self, job_id: str, current_status: str, action: str) -> None:
        super().__init__(f"Cannot {action} job {job_id} in status '{current_status}'")
        self.job_id = job_id
        self.current_status = current_status
        self.action = action


class QuotaExhaustedError(SyncWardenError):
    """Outbound provider budget unavailable; callers should defer."""

    def __init__(self, provider: str, feature: str | None = None) -> None:
        scope = f"{provider}/{feature}" if feature else provider
        super().__init__(f"Daily quota exhausted for {scope}")
        self.provider = provider
        self.feature = feature


class RateLimitedError(SyncWardenError):
    """Inbound admission denied."""

    def __init__(
        self,
        partition: str,
        retry_after_s: int,
        *,
        retry_after_ms: int | None = None,
        reason: str = "token_bucket_exhausted",
    ) -> None:
        super().__init__("Rate limit exceeded")
        self.partition = partition
        self.retry_after_s = retry_after_s
        self.retry_after_ms = retry_after_ms
        self.reason = reason


class SyncFailureError(SyncWardenError):
    """Provider sync routine failed during a cycle."""

    def __init__(self, provider: str, message: str, details: str | None = None) -> None:
        super().__init__(f"{provider} sync failed: {message}")
        self.provider = provider
        self.message = message
        self.details = details
