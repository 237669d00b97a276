"""Error taxonomy for the request-governance layer.

Registry and limiter only raise these for store failures or unknown ids;
expected outcomes (bad key, exhausted window) are returned as values.
The gateway turns every one of them into an HTTP response.
"""

from fastapi import status


class GatewayError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    public_message = "Internal server error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class InvalidCredential(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    public_message = "Invalid API key"


class CredentialRequired(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    public_message = "API key required"


class RateLimitExceeded(GatewayError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    public_message = "Rate limit exceeded"

    def __init__(self, result=None, message: str | None = None):
        super().__init__(message)
        # the RateLimitResult that was refused, used for the retry headers
        self.result = result


class PersistenceError(GatewayError):
    public_message = "Database operation failed"


class RateLimiterUnavailable(PersistenceError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    public_message = "Rate limiting service error"


class HandlerError(GatewayError):
    public_message = "Internal server error"


class KeyNotFound(GatewayError):
    status_code = status.HTTP_404_NOT_FOUND
    public_message = "API key not found"
