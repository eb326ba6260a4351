"""
Allowed status transitions per entity.

Every status change in the engine is checked here; call sites never compare
statuses ad hoc.
"""

from typing import Dict, FrozenSet, Mapping

from backend.app.core.exceptions import InvalidTransitionError
from backend.app.models.auction_enums import AuctionStatus
from backend.app.models.billing_enums import InvoiceStatus, SettlementStatus


AUCTION_TRANSITIONS: Dict[AuctionStatus, FrozenSet[AuctionStatus]] = {
    AuctionStatus.UPCOMING: frozenset({AuctionStatus.LIVE, AuctionStatus.CLOSED, AuctionStatus.CANCELLED}),
    AuctionStatus.LIVE: frozenset({AuctionStatus.CLOSED, AuctionStatus.CANCELLED}),
    AuctionStatus.CLOSED: frozenset(),
    AuctionStatus.CANCELLED: frozenset(),
}

INVOICE_TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    InvoiceStatus.UNPAID: frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.CANCELLED: frozenset(),
}

SETTLEMENT_TRANSITIONS: Dict[SettlementStatus, FrozenSet[SettlementStatus]] = {
    SettlementStatus.DRAFT: frozenset({SettlementStatus.PENDING_PAYMENT, SettlementStatus.CANCELLED}),
    SettlementStatus.PENDING_PAYMENT: frozenset({SettlementStatus.PAID, SettlementStatus.CANCELLED}),
    SettlementStatus.PAID: frozenset(),
    SettlementStatus.CANCELLED: frozenset(),
}


def can_transition(table: Mapping, current, target) -> bool:
    return target in table.get(current, frozenset())


def ensure_transition(entity: str, table: Mapping, current, target) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if not can_transition(table, current, target):
        raise InvalidTransitionError(entity, current, target)
