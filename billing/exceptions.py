class LedgerError(Exception):
    """Base class for billing errors. `code` is stable and exposed over HTTP."""

    code = "ledger_error"


class InvalidAmount(LedgerError, ValueError):
    code = "invalid_amount"


class UnknownAction(LedgerError, ValueError):
    code = "unknown_action"


class InsufficientBalance(LedgerError):
    code = "insufficient_balance"

    def __init__(self, user_id, balance, amount):
        self.user_id = user_id
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"Insufficient balance: user={user_id} balance={balance} amount={amount}"
        )


class StorageError(LedgerError):
    """The database was unreachable or a lock timed out. Nothing was applied."""

    code = "storage_error"


class AlreadyTerminal(LedgerError):
    """The recharge request already reached a terminal state that forbids this call."""

    code = "already_terminal"

    def __init__(self, transaction_id, status):
        self.transaction_id = transaction_id
        self.status = status
        super().__init__(f"Recharge {transaction_id} is already {status}")


class IdempotencyConflict(LedgerError):
    """An idempotency key was replayed with different parameters."""

    code = "idempotency_conflict"
