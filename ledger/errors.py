class LedgerServiceError(Exception):
    code = "ledger_error"


class InsufficientBalanceError(LedgerServiceError):
    code = "insufficient_balance"


class DuplicateApplicationError(LedgerServiceError):
    code = "duplicate_application"


class InvalidAmountError(LedgerServiceError):
    code = "invalid_amount"


class NotFoundError(LedgerServiceError):
    code = "not_found"


class AccountNotFoundError(NotFoundError):
    pass


class RedemptionNotFoundError(NotFoundError):
    pass


class RewardNotFoundError(LedgerServiceError):
    code = "reward_not_found"


class AccountInactiveError(LedgerServiceError):
    code = "account_inactive"


class OutOfStockError(LedgerServiceError):
    code = "out_of_stock"


class InvalidTransitionError(LedgerServiceError):
    code = "invalid_transition"


class TransientFailureError(LedgerServiceError):
    """The unit of work was rolled back; the whole operation may be retried."""

    code = "transient_failure"


class UnavailableError(LedgerServiceError):
    code = "unavailable"
