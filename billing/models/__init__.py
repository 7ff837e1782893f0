from billing.models.account import Account
from billing.models.edit import EditOperation
from billing.models.ledger_entry import LedgerEntry, LedgerEntryImmutableError
from billing.models.recharge import RechargeRequest
from billing.models.usage import UsageRecord

__all__ = [
    "Account",
    "EditOperation",
    "LedgerEntry",
    "LedgerEntryImmutableError",
    "RechargeRequest",
    "UsageRecord",
]
