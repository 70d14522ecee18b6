"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class ClipLedgerError(Exception):
    """Base exception for all ledger and generation errors."""

    pass


# ============================================================================
# Ledger Errors
# ============================================================================


class InsufficientCreditsError(ClipLedgerError):
    """Raised when account balance cannot cover a reservation."""

    def __init__(self, account_id: str, balance: int, required: int) -> None:
        self.account_id = account_id
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits. Balance: {balance}, Required: {required}")


class AccountNotFoundError(ClipLedgerError):
    """Raised when a balance update targets an account that doesn't exist."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class InvalidAmountError(ClipLedgerError):
    """Raised when a ledger operation is given a non-positive amount."""

    def __init__(self, amount: int) -> None:
        self.amount = amount
        super().__init__(f"Credit amount must be positive: {amount}")


# ============================================================================
# Generation Errors
# ============================================================================


class ProviderRejectedError(ClipLedgerError):
    """Raised when a provider refuses a generation request at submission time."""

    def __init__(self, provider: str, reason: str, code: int | None = None) -> None:
        self.provider = provider
        self.reason = reason
        self.code = code
        super().__init__(f"Provider {provider} rejected request: {reason}")


class TransientFetchError(ClipLedgerError):
    """Raised when a status fetch fails for a reason worth retrying."""

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"Transient status fetch error from {provider}: {reason}")


class UnsupportedModeError(ClipLedgerError):
    """Raised when a request is routed to a provider that cannot serve its mode."""

    def __init__(self, provider: str, mode: str) -> None:
        self.provider = provider
        self.mode = mode
        super().__init__(f"Provider {provider} does not support mode {mode}")


class InvalidGenerationRequestError(ClipLedgerError):
    """Raised when a generation request is internally inconsistent."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid generation request: {message}")


class TaskNotFoundError(ClipLedgerError):
    """Raised when a generation task doesn't exist (or belongs to someone else)."""

    def __init__(self, task_id: UUID) -> None:
        self.task_id = task_id
        super().__init__(f"Generation task not found: {task_id}")


class InvalidTransitionError(ClipLedgerError):
    """Raised when a task state change violates the lifecycle."""

    def __init__(self, task_id: UUID, current: str, target: str) -> None:
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(f"Task {task_id} cannot move from {current} to {target}")


# ============================================================================
# Payment Errors
# ============================================================================


class PaymentProviderError(ClipLedgerError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class UnknownPlanError(ClipLedgerError):
    """Raised when a pricing plan ID is not in the catalog."""

    def __init__(self, plan_id: str) -> None:
        self.plan_id = plan_id
        super().__init__(f"Unknown pricing plan: {plan_id}")


class WebhookVerificationError(ClipLedgerError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class AuthenticationError(ClipLedgerError):
    """Raised when the bearer token cannot be verified."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
