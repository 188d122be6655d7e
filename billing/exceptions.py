from typing import Any, Optional

from rest_framework import status
from rest_framework.exceptions import APIException


class BillingError(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Billing operation failed."
    default_code = "billing_error"


class ConfigurationError(BillingError):
    """Missing plan parameter, unusable provider config or unsupported feature."""

    default_detail = "Billing is not configured for this operation."
    default_code = "configuration_error"


class GatewayError(BillingError):
    """A provider call failed. ``indeterminate`` marks timeouts whose outcome is unknown."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Payment provider request failed."
    default_code = "gateway_error"

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        provider_status: Optional[int] = None,
        code: str = "",
        payload: Any = None,
        indeterminate: bool = False,
    ):
        super().__init__(detail=message, code=code or self.default_code)
        self.message = message
        self.provider = provider
        self.provider_status = provider_status
        self.payload = payload
        self.indeterminate = indeterminate

    def __str__(self):
        return self.message


class SignatureVerificationFailure(BillingError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Webhook signature verification failed."
    default_code = "signature_invalid"


class RetryExhausted(BillingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Charge has reached the maximum number of automatic attempts."
    default_code = "retry_exhausted"

    def __init__(self, charge, max_retries: int):
        super().__init__(
            detail=f"Charge {charge.id} failed {charge.failed_attempts} automatic attempts (limit {max_retries}).",
        )
        self.charge = charge
        self.max_retries = max_retries
