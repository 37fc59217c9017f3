"""
Error taxonomy for the contract signing service
"""


class ContractServiceError(Exception):
    http_status = 500

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {'error': self.message}
        payload.update(self.details)
        return payload


class ConfigurationError(ContractServiceError):
    """Deployment defect: missing template or fragment files, missing secrets."""
    http_status = 500


class LayoutError(ConfigurationError):
    """A field rectangle fell outside the page, or a signature block is not in the layout."""


class ValidationError(ContractServiceError, ValueError):
    http_status = 400


class InvalidTransitionError(ValidationError):
    http_status = 409


class PaymentRequiredError(ValidationError):
    http_status = 402


class QuotaExceededError(ValidationError):
    http_status = 403


class ContractNotFoundError(ContractServiceError):
    http_status = 404


class UpstreamError(ContractServiceError):
    """Rendering engine or signing provider failure."""
    http_status = 502


class WebhookAuthError(ContractServiceError):
    http_status = 401
