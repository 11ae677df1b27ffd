# consent_portal/errors.py
from typing import Dict, Optional

GENERIC_DENIAL = "You do not have permission to perform this action."
GENERIC_STORE_FAILURE = "Something went wrong. Please try again."


class ConsentError(Exception):
    """Base for every error surfaced to the submitting user."""

    status_code = 400
    default_message = "Unable to complete this request."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ConsentError):
    status_code = 400
    default_message = "Check the form and try again."

    def __init__(self, message: Optional[str] = None, field_errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.field_errors = field_errors or {}


class PermissionDeniedError(ConsentError):
    """The message is always generic; `reason` is for server logs only."""

    status_code = 403
    default_message = GENERIC_DENIAL

    def __init__(self, reason: str = "denied"):
        super().__init__(GENERIC_DENIAL)
        self.reason = reason


class NotFoundError(ConsentError):
    status_code = 404
    default_message = "Not found."


class AlreadyResolvedError(ConsentError):
    status_code = 409
    default_message = "Consent request has already been resolved."


class StoreError(ConsentError):
    status_code = 503
    default_message = GENERIC_STORE_FAILURE
