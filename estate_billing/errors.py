from typing import Any, Dict, Optional


class ConfigurationError(Exception):
    """
    Raised when an invalid or unsupported configuration is requested.
    """
    pass


class BillingError(Exception):
    """Base class for every billing failure that reaches a caller."""

    code = "BILLING_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.operation = operation
        self.details = details or {}

    def context(self) -> Dict[str, Any]:
        return {"provider": self.provider, "operation": self.operation}

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "error": self.code,
            "message": self.message,
        }
        if self.provider:
            payload["provider"] = self.provider
        if self.operation:
            payload["operation"] = self.operation
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(BillingError):
    """Malformed caller input, e.g. a tax id with a bad checksum."""

    code = "VALIDATION_ERROR"
    status_code = 400


class ProviderError(BillingError):
    """The upstream provider rejected the call."""

    code = "PROVIDER_ERROR"
    status_code = 502


class ConflictError(BillingError):
    """The upstream state does not permit the requested transition."""

    code = "CONFLICT"
    status_code = 409


class AuthenticationError(BillingError):
    code = "INVALID_SIGNATURE"
    status_code = 401


class TenantResolutionError(BillingError):
    """A webhook event references a provider customer no tenant owns."""

    code = "TENANT_NOT_RESOLVED"
    status_code = 422


class NotFoundError(BillingError):
    code = "NOT_FOUND"
    status_code = 404
