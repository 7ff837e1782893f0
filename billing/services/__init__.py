from billing.services.editing import EditService
from billing.services.ledger import BalanceLedger, LedgerAudit
from billing.services.metering import UsageMeter
from billing.services.recharge import RechargeGuard, Settlement
from billing.services.store import LedgerStore

__all__ = [
    "BalanceLedger",
    "EditService",
    "LedgerAudit",
    "LedgerStore",
    "RechargeGuard",
    "Settlement",
    "UsageMeter",
]
