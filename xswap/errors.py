"""
Error taxonomy for xswap settlement.

Every settlement-fatal condition has its own exception type carrying a stable
`code`. The orchestrator records that code (plus the message as detail) in the
order's terminal `failed` status. Nothing here is retried automatically.
"""


class SettlementError(Exception):
    """Base class for settlement-fatal errors."""
    code = "SettlementError"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class UnmappedIdentity(SettlementError):
    """No Ledger-B identity is registered for an order's proxy address."""
    code = "UnmappedIdentity"


class InsufficientFunds(SettlementError):
    """Funding account holds no eligible asset units for the escrow."""
    code = "InsufficientFunds"


class SubmissionFailed(SettlementError):
    """Transaction could not be signed, submitted or executed."""
    code = "SubmissionFailed"


class ConfirmationTimeout(SettlementError):
    """Transaction did not reach finality within the wait bound."""
    code = "ConfirmationTimeout"


class InvalidSecret(SettlementError):
    """Secret does not hash to the escrow commitment."""
    code = "InvalidSecret"


class EscrowExpired(SettlementError):
    """Escrow deadline passed, only the cancellation path remains."""
    code = "EscrowExpired"


class EscrowNotFound(SettlementError):
    """Escrow reference does not resolve to a live escrow."""
    code = "EscrowNotFound"


class SecretUnavailable(SettlementError):
    """Relayer refused to disclose the secret for an order."""
    code = "SecretUnavailable"


class SettlementAbandoned(SettlementError):
    """Settlement stayed in flight past the watchdog deadline."""
    code = "SettlementAbandoned"


class ConfigError(Exception):
    """Invalid or missing configuration. Raised before any chain call."""
    pass


class OrderNotFound(LookupError):
    """No order (or status) is stored under the given id."""
    pass
