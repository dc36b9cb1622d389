# services/__init__.py
# ============================================================================
# MOTOWORLD PAYMENTS — SERVICES MODULE
# ============================================================================
# Identity verification and outbound notifications
# ============================================================================

from services.identity import (
    AdminPolicy,
    IIdentityVerifier,
    Identity,
    JwtIdentityVerifier,
)
from services.notifications import (
    INotificationSink,
    InMemoryNotificationSink,
    OrderConfirmation,
    PaymentReminder,
    SendGridNotificationSink,
)

__all__ = [
    # Identity
    "AdminPolicy",
    "IIdentityVerifier",
    "Identity",
    "JwtIdentityVerifier",
    # Notifications
    "INotificationSink",
    "InMemoryNotificationSink",
    "OrderConfirmation",
    "PaymentReminder",
    "SendGridNotificationSink",
]
