# payments/__init__.py
# ============================================================================
# MOTOWORLD PAYMENTS — PAYMENT CORE
# ============================================================================
# Gateway, retry envelope, reconciliation engine and checkout flow live in
# their own modules; only the error taxonomy is re-exported here so storage
# modules can import it without pulling in the engine.
# ============================================================================

from payments.errors import (
    Exhausted,
    Forbidden,
    NotFound,
    ProcessorUnavailable,
    ReconciliationError,
    SignatureInvalid,
    StorageUnavailable,
    TransientStorageError,
    Unauthorized,
    ValidationError,
)

__all__ = [
    "Exhausted",
    "Forbidden",
    "NotFound",
    "ProcessorUnavailable",
    "ReconciliationError",
    "SignatureInvalid",
    "StorageUnavailable",
    "TransientStorageError",
    "Unauthorized",
    "ValidationError",
]
