from typing import Optional


class GatewayError(Exception):
    """Base exception class for the llmgate execution layer."""
    pass

class ConfigError(GatewayError):
    """Raised when there is an error in a configuration file."""
    pass

class CacheMiss(GatewayError):
    """Internal signal used by cache backends. Never leaves the cache module."""
    pass

class UnknownModelError(GatewayError):
    """Raised when no pricing entry exists for a provider/model pair."""

    def __init__(self, provider: str, model: str):
        self.provider = provider
        self.model = model
        super().__init__(f"unknown model {provider}/{model}")


class ProviderError(GatewayError):
    """
    Normalized failure of an upstream LLM call.

    ``code`` is a stable machine-readable string, ``cause`` keeps the raw
    transport exception (also chained as ``__cause__``).
    """
    retryable = False
    default_code = "PROVIDER_ERROR"

    def __init__(
        self,
        provider: str,
        message: str,
        code: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.provider = provider
        self.message = message
        self.code = code or self.default_code
        self.cause = cause
        super().__init__(f"[{self.provider}] {self.code}: {message}")

class TransportError(ProviderError):
    """Network or connection failure before a response arrived."""
    retryable = True
    default_code = "TRANSPORT_ERROR"

class RateLimitedError(ProviderError):
    """HTTP 429 from the provider."""
    retryable = True
    default_code = "RATE_LIMIT_ERROR"

    def __init__(self, provider: str, message: str, retry_after: Optional[float] = None, **kwargs):
        self.retry_after = retry_after
        self.status = 429
        super().__init__(provider, message, **kwargs)

class ServerError(ProviderError):
    """HTTP 5xx from the provider."""
    retryable = True
    default_code = "SERVER_ERROR"

    def __init__(self, provider: str, message: str, status: int = 500, **kwargs):
        self.status = status
        super().__init__(provider, message, **kwargs)

class ClientError(ProviderError):
    """HTTP 4xx other than 429. Retrying will not help."""
    default_code = "HTTP_ERROR"

    def __init__(self, provider: str, message: str, status: int = 400, **kwargs):
        self.status = status
        if "code" not in kwargs or kwargs["code"] is None:
            kwargs["code"] = _CLIENT_CODES.get(status, self.default_code)
        super().__init__(provider, message, **kwargs)

class CircuitOpenError(ProviderError):
    """The provider's circuit is open; the call was rejected without being attempted."""
    default_code = "CIRCUIT_OPEN"

class NoResponseChoiceError(ProviderError):
    """The provider answered successfully but returned no usable choice."""
    default_code = "NO_RESPONSE_CHOICE"

class ResponseFormatError(ProviderError):
    """JSON mode response could not be parsed or failed the schema check."""
    default_code = "RESPONSE_FORMAT_ERROR"


_CLIENT_CODES = {
    401: "AUTHENTICATION_ERROR",
    403: "PERMISSION_ERROR",
}
