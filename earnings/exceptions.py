# ==========================================================
#                  LEDGER EXCEPTIONS
# ==========================================================


class LedgerError(Exception):
    """Base ledger exception. `user_message` is safe to show to the account holder."""
    code = "ledger_error"
    http_status = 400
    default_message = "Request could not be processed"

    def __init__(self, user_message=None, **details):
        self.user_message = user_message or self.default_message
        self.details = details
        super().__init__(self.user_message)

    def to_dict(self):
        payload = {"error": self.user_message, "code": self.code}
        payload.update({k: v for k, v in self.details.items() if v is not None})
        return payload


class ValidationError(LedgerError):
    code = "validation_error"
    default_message = "Invalid request"


class InsufficientBalance(LedgerError):
    code = "insufficient_balance"
    default_message = "Insufficient balance"


class BelowMinimum(LedgerError):
    code = "below_minimum"
    default_message = "Amount is below the minimum withdrawal"


class OnCooldown(LedgerError):
    code = "on_cooldown"
    http_status = 429
    default_message = "This task type is on cooldown"


class WeeklyLimitReached(LedgerError):
    code = "weekly_limit_reached"
    http_status = 429
    default_message = "You've reached the maximum tasks for this category this week"


class TaskNotFound(LedgerError):
    code = "task_not_found"
    http_status = 404
    default_message = "Task not found"


class UnknownTransaction(LedgerError):
    code = "unknown_transaction"
    http_status = 404
    default_message = "Transaction not found. Please try again"


class ProviderUnavailable(LedgerError):
    code = "provider_unavailable"
    http_status = 503
    default_message = "Payment provider is unavailable. Please try again"


class DuplicateActivation(LedgerError):
    """Raised for an already-activated account; callers treat it as success."""
    code = "already_activated"
    http_status = 200
    default_message = "Account is already activated"


class InvalidTransition(LedgerError):
    code = "invalid_transition"
    http_status = 409
    default_message = "Operation not allowed in the current state"
