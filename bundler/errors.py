"""
Error taxonomy for bundler operations.

Every error carries a short ``kind`` string so that component boundaries can
turn it into a structured ``ErrorDetail`` instead of letting it propagate.
"""

from typing import Optional


class BundlerError(Exception):
    """Base exception for bundler errors."""
    kind = "BundlerError"


class InvalidArgumentError(BundlerError):
    """Exception raised when a request is malformed."""
    kind = "InvalidArgument"


class MissingTargetError(InvalidArgumentError):
    """Exception raised when no mint was given and none was recorded earlier."""
    kind = "MissingTarget"


class CorruptWalletDataError(BundlerError):
    """Exception raised for bad persisted or imported secret material."""
    kind = "CorruptWalletData"

    def __init__(self, message: str, index: Optional[int] = None, name: Optional[str] = None):
        super().__init__(message)
        self.index = index
        self.name = name

    def __str__(self) -> str:
        label = self.name or "unnamed"
        if self.index is None:
            return f"{label}: {self.args[0]}"
        return f"record {self.index} ({label}): {self.args[0]}"


class KeyMismatchError(CorruptWalletDataError):
    """Stored public key disagrees with the one derived from the secret."""
    kind = "KeyMismatch"


class InsufficientFundsError(BundlerError):
    """Exception raised when a pre-flight balance check fails."""
    kind = "InsufficientFunds"

    def __init__(self, message: str, required_lamports: int = 0, available_lamports: int = 0):
        super().__init__(message)
        self.required_lamports = required_lamports
        self.available_lamports = available_lamports


class TransientRpcError(BundlerError):
    """Timeouts, throttling and 5xx-style failures. Safe to retry."""
    kind = "TransientRpcFailure"


class PermanentTradeError(BundlerError):
    """Slippage, liquidity, rejected transaction. Retrying cannot help."""
    kind = "PermanentTradeFailure"


class UnconfirmedSubmissionError(PermanentTradeError):
    """A transaction was sent but never confirmed; it must not be re-sent."""
    kind = "UnconfirmedSubmission"

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message)
        self.signature = signature


class WalletNotFoundError(BundlerError):
    """A named wallet is required by an operation but does not exist."""
    kind = "NotFound"


class WalletBusyError(BundlerError):
    """A wallet is already being used by another running operation."""
    kind = "WalletBusy"
