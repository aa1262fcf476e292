from typing import Optional


class GatewayError(Exception):
    """Base exception class for the AI completion gateway."""
    pass

class ConfigError(GatewayError):
    """Raised when there is an error in a configuration file or setting."""
    pass

class ProviderError(GatewayError):
    """Raised by a provider adapter when an upstream call fails.

    ``status_code`` carries the HTTP-like status of the failure (if any) so the
    retry policy can classify it.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.provider = provider

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"[{self.status_code}] {self.message}"
        return self.message

class FatalRequestError(ProviderError):
    """Bad input, auth failure, unknown model. Never retried."""
    pass

class TransientProviderError(ProviderError):
    """Timeout, rate limit, 5xx, overloaded. Retried, then falls back."""
    pass

class ModelNotFoundError(GatewayError, LookupError):
    """Raised when a model id is not present in the registry."""
    pass

class ModelUnavailableError(FatalRequestError):
    """Raised when no model can be resolved for a request."""
    pass

class NoModelsAvailableError(ModelUnavailableError):
    """Raised when the registry holds no available model at all."""
    pass

class AugmentationError(GatewayError):
    """Raised when the knowledge-base lookup fails."""
    pass

class CacheError(GatewayError):
    """Raised when the response cache store is unavailable."""
    pass

class AllProvidersExhaustedError(GatewayError):
    """Raised when every candidate model failed for a request."""

    def __init__(self, attempted: list, errors: list):
        messages = "; ".join(str(e) for e in errors)
        super().__init__(f"All AI models failed: {messages}")
        self.attempted = attempted
        self.errors = errors

class LoggingError(GatewayError):
    """Raised when an interaction log entry cannot be persisted."""
    pass
