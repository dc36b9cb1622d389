"""Error taxonomy for order, payment and reconciliation operations."""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for every error raised by the payment core"""

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class NotFound(ReconciliationError):
    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class Unauthorized(ReconciliationError):
    """Caller identity could not be verified"""


class Forbidden(ReconciliationError):
    """Verified caller lacks ownership or admin rights"""


class SignatureInvalid(ReconciliationError):
    """Webhook payload failed signature verification"""


class ValidationError(ReconciliationError):
    """Request is well-formed but not acceptable for the current order"""


class TransientStorageError(ReconciliationError):
    """Storage failure worth retrying"""


class StorageUnavailable(TransientStorageError):
    pass


class ProcessorUnavailable(ReconciliationError):
    """Payment processor could not be reached or rejected the call"""


class Exhausted(ReconciliationError):
    """Retry envelope ran out of attempts"""

    def __init__(self, last_error: Optional[BaseException], attempts: int):
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts
