"""
Exception hierarchy for the payment orchestrator.

Transient provider errors are retried by the monitoring loop, lock
coordinator outages make scheduled ticks skip, charge declines are
escalated by the renewal sweep.
"""


class PaycycleError(Exception):
    """Base class for orchestrator errors"""


class ProviderError(PaycycleError):
    """The payment provider returned something we cannot use."""

    def __init__(self, message: str, provider: str = "", status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderUnavailableError(ProviderError):
    """Network error, timeout, rate limit or 5xx from the provider."""


class ProviderNotConfiguredError(ProviderError):
    """Credentials for the provider are missing."""


class InvalidSignatureError(PaycycleError):
    """Webhook signature did not verify."""


class ChargeError(PaycycleError):
    """A card charge could not be created."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        provider_payment_id: str | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.provider_payment_id = provider_payment_id


class ChargeDeclinedError(ChargeError):
    """The card network declined the charge."""


class LockCoordinatorUnavailable(PaycycleError):
    """The lease store cannot be reached. Callers must not proceed."""


class CoordinationStoreError(PaycycleError):
    """A Redis command used for coordination failed."""
