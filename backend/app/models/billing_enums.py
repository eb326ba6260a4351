"""
Billing enumerations.
"""

import enum


class InvoiceStatus(str, enum.Enum):
    """Invoice status enumeration."""
    UNPAID = "Unpaid"  # Issued, waiting for payment
    PAID = "Paid"  # Payment confirmed by the gateway or an admin
    CANCELLED = "Cancelled"  # Administrative override


class SettlementStatus(str, enum.Enum):
    """Settlement status enumeration."""
    DRAFT = "Draft"  # Calculated, adjustments still editable
    PENDING_PAYMENT = "PendingPayment"  # Statement sent to seller
    PAID = "Paid"  # Payout made
    CANCELLED = "Cancelled"  # Items released for a future settlement


class AdjustmentType(str, enum.Enum):
    """Settlement adjustment type. Both reduce the payout."""
    EXPENSE = "expense"
    DEDUCTION = "deduction"


class ReconcileOutcome(str, enum.Enum):
    """Result of a payment reconciliation attempt."""
    APPLIED = "Applied"
    ALREADY_APPLIED = "AlreadyApplied"
