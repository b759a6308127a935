"""
Service error taxonomy.

Every error raised deliberately by the service derives from ServiceError and
carries the HTTP status it maps to. main.py renders them as
{"success": false, "error": ...}.
"""


class ServiceError(Exception):
    """Base class for errors rendered to API callers."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PayloadValidationError(ServiceError):
    """Missing, empty or oversized input."""

    status_code = 400


class NotFoundError(ServiceError):
    """Resource looked up by id does not exist."""

    status_code = 404


class StoreError(ServiceError):
    """Unrecognized database failure. The message echoes the store's error text."""

    status_code = 500


class SchemaDriftError(ServiceError):
    """
    Recoverable mismatch between the live schema and the models.

    Handled internally by reconciliation and a single retry; only reaches a
    caller when recovery was not possible.
    """

    status_code = 500

    def __init__(self, message: str, drift=None):
        super().__init__(message)
        self.drift = drift
