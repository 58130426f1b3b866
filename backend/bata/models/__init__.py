from bata.models.user import User
from bata.models.product import Product
from bata.models.order import Order, OrderItem, OrderEvent
from bata.models.escrow_transition import EscrowTransition
from bata.models.ledger_entry import LedgerEntry
from bata.models.dispute import Dispute, DisputeMessage, DisputeStatus
from bata.models.penalty import Penalty
from bata.models.category_fee_rate import CategoryFeeRate
from bata.models.idempotency_key import IdempotencyKey
from bata.models.platform_event import PlatformEvent
from bata.models.job_run import JobRun
from bata.models.reconciliation_report import ReconciliationReport

__all__ = [
    "User",
    "Product",
    "Order",
    "OrderItem",
    "OrderEvent",
    "EscrowTransition",
    "LedgerEntry",
    "Dispute",
    "DisputeMessage",
    "DisputeStatus",
    "Penalty",
    "CategoryFeeRate",
    "IdempotencyKey",
    "PlatformEvent",
    "JobRun",
    "ReconciliationReport",
]
