"""
Models for bundler operations.
"""
import base64
from decimal import Decimal
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Union

import base58
from pydantic import BaseModel, ConfigDict, Field
from solders.keypair import Keypair

from bundler.config import (
    CHILD_WALLET_PREFIX,
    DEV_WALLET_NAME,
    FIRST_BUNDLED_PREFIX,
    LAMPORTS_PER_SOL,
    MAX_BUYERS_IN_CREATE,
)
from bundler.errors import InvalidArgumentError

SECRET_KEY_LENGTH = 64


def keypair_from_secret(secret: bytes) -> Keypair:
    """Build a keypair from 64 secret bytes, deriving the public half from the seed."""
    if len(secret) != SECRET_KEY_LENGTH:
        raise ValueError(f"expected {SECRET_KEY_LENGTH} bytes of secret material, got {len(secret)}")
    return Keypair.from_seed(bytes(secret[:32]))


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def sol_to_lamports(sol: float) -> int:
    return int(round(sol * LAMPORTS_PER_SOL))


@dataclass(frozen=True)
class Wallet:
    """A named keypair. The address is always derived from the keypair."""
    keypair: Keypair
    name: Optional[str] = None

    @property
    def public_key(self) -> str:
        return str(self.keypair.pubkey())

    @property
    def secret_base64(self) -> str:
        return base64.b64encode(bytes(self.keypair)).decode("ascii")

    @property
    def secret_base58(self) -> str:
        return base58.b58encode(bytes(self.keypair)).decode("ascii")

    @classmethod
    def generate(cls, name: Optional[str] = None) -> "Wallet":
        return cls(keypair=Keypair(), name=name)

    def __repr__(self) -> str:
        return f"Wallet(name={self.name!r}, public_key={self.public_key!r})"


@dataclass
class NamingScheme:
    """
    Deterministic naming for generated child wallets.

    With ``include_dev`` the first wallet is the dev wallet, the next
    ``first_bundled`` wallets are the create-bundle buyers and the rest are
    ``<base_name><n>`` numbered from 1. Without it every wallet is
    ``<base_name><index>`` numbered from 1.
    """
    include_dev: bool = True
    base_name: str = CHILD_WALLET_PREFIX
    first_bundled: int = MAX_BUYERS_IN_CREATE

    def name_for(self, index: int) -> str:
        if not self.include_dev:
            return f"{self.base_name}{index + 1}"
        if index == 0:
            return DEV_WALLET_NAME
        if index <= self.first_bundled:
            return f"{FIRST_BUNDLED_PREFIX} {index}"
        return f"{self.base_name}{index - self.first_bundled}"


@dataclass
class WalletSet:
    """Mother wallet plus uniquely named child wallets, in targeting order."""
    identifier: str
    mother: Optional[Wallet] = None
    children: List[Wallet] = field(default_factory=list)

    def __post_init__(self):
        seen = set()
        for wallet in self.children:
            if wallet.name in seen:
                raise InvalidArgumentError(f"Duplicate wallet name in set {self.identifier}: {wallet.name}")
            seen.add(wallet.name)

    def __len__(self) -> int:
        return len(self.children)

    @property
    def names(self) -> List[str]:
        return [w.name for w in self.children]

    @property
    def is_empty(self) -> bool:
        return self.mother is None and not self.children

    def get(self, name: str) -> Optional[Wallet]:
        if self.mother is not None and self.mother.name == name:
            return self.mother
        return next((w for w in self.children if w.name == name), None)

    @property
    def dev_wallet(self) -> Optional[Wallet]:
        return next((w for w in self.children if w.name == DEV_WALLET_NAME), None)

    @property
    def first_bundled(self) -> List[Wallet]:
        return [w for w in self.children if is_first_bundled(w.name)]

    def select(self, names: Optional[List[str]] = None, eligible: Optional[List[Wallet]] = None) -> List[Wallet]:
        """
        Resolve an explicit subset of wallet names.

        Args:
            names: Wallet names to act on, or None for every eligible wallet
            eligible: Wallets the operation may touch (defaults to all children)

        Returns:
            Wallets in the order the names were given

        Raises:
            InvalidArgumentError: If a name is unknown or not eligible
        """
        pool = list(self.children) if eligible is None else list(eligible)
        if names is None:
            return pool
        by_name = {w.name: w for w in pool}
        missing = [n for n in names if n not in by_name]
        if missing:
            raise InvalidArgumentError(f"Unknown or ineligible wallets: {', '.join(missing)}")
        if len(set(names)) != len(names):
            raise InvalidArgumentError("Wallet names must not repeat")
        return [by_name[n] for n in names]


def is_first_bundled(name: Optional[str]) -> bool:
    return bool(name) and name.startswith(f"{FIRST_BUNDLED_PREFIX} ")


class WalletRecord(BaseModel):
    """Persisted form of a wallet."""
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    public_key: str = Field(alias="publicKey")
    private_key: str = Field(alias="privateKey")  # base64 of the 64-byte secret

    @classmethod
    def from_wallet(cls, wallet: Wallet) -> "WalletRecord":
        return cls(name=wallet.name, public_key=wallet.public_key, private_key=wallet.secret_base64)


class OutcomeStatus(str, Enum):
    """Status of one wallet's part in a batch."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ErrorDetail(BaseModel):
    kind: str
    message: str

    @classmethod
    def from_exception(cls, error: BaseException) -> "ErrorDetail":
        kind = getattr(error, "kind", None) or type(error).__name__
        return cls(kind=kind, message=str(error) or type(error).__name__)


class OperationOutcome(BaseModel):
    """Result for a single wallet."""
    wallet_name: Optional[str] = None
    public_key: str
    action: str
    status: OutcomeStatus
    signature: Optional[str] = None
    error_detail: Optional[ErrorDetail] = None
    retries_used: int = 0

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


def outcome_for(wallet: Wallet, action: str, status: OutcomeStatus, signature: Optional[str] = None,
                error: Optional[Union[BaseException, str]] = None, retries_used: int = 0) -> OperationOutcome:
    if isinstance(error, str):
        detail = ErrorDetail(kind="Skipped" if status == OutcomeStatus.SKIPPED else "Error", message=error)
    elif error is not None:
        detail = ErrorDetail.from_exception(error)
    else:
        detail = None
    return OperationOutcome(
        wallet_name=wallet.name,
        public_key=wallet.public_key,
        action=action,
        status=status,
        signature=signature,
        error_detail=detail,
        retries_used=retries_used,
    )


class BatchResult(BaseModel):
    """Aggregated outcomes of one logical operation."""
    operation: str
    succeeded: List[OperationOutcome] = Field(default_factory=list)
    failed: List[OperationOutcome] = Field(default_factory=list)
    skipped: List[OperationOutcome] = Field(default_factory=list)
    asset_id: Optional[str] = None
    error: Optional[ErrorDetail] = None

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed) + len(self.skipped)

    @property
    def overall_success(self) -> bool:
        return self.error is None and not self.failed and self.total > 0

    @property
    def outcomes(self) -> List[OperationOutcome]:
        return self.succeeded + self.failed + self.skipped

    @classmethod
    def from_outcomes(cls, operation: str, outcomes: List[OperationOutcome],
                      asset_id: Optional[str] = None) -> "BatchResult":
        result = cls(operation=operation, asset_id=asset_id)
        for outcome in outcomes:
            if outcome.status == OutcomeStatus.SUCCESS:
                result.succeeded.append(outcome)
            elif outcome.status == OutcomeStatus.FAILED:
                result.failed.append(outcome)
            else:
                result.skipped.append(outcome)
        return result

    @classmethod
    def fail_fast(cls, operation: str, error: BaseException, asset_id: Optional[str] = None) -> "BatchResult":
        return cls(operation=operation, error=ErrorDetail.from_exception(error), asset_id=asset_id)

    def to_dict(self) -> Dict:
        data = self.model_dump(mode="json")
        data["overall_success"] = self.overall_success
        return data


class TokenBalance(BaseModel):
    mint: str
    amount: int = 0  # raw base units
    decimals: int = 0

    @property
    def ui_amount(self) -> float:
        return self.amount / (10 ** self.decimals) if self.decimals else float(self.amount)


class WalletSummary(BaseModel):
    """Best-effort balances for one wallet."""
    public_key: str
    native_lamports: Optional[int] = None
    tokens: List[TokenBalance] = Field(default_factory=list)
    query_duration_ms: float = 0.0
    warnings: List[str] = Field(default_factory=list)

    @property
    def native_sol(self) -> Optional[float]:
        if self.native_lamports is None:
            return None
        return lamports_to_sol(self.native_lamports)


class WalletSetReport(BaseModel):
    """Structured result of a key management request."""
    success: bool
    identifier: str
    wallets: List[Dict[str, Optional[str]]] = Field(default_factory=list)
    errors: List[ErrorDetail] = Field(default_factory=list)

    @classmethod
    def from_wallets(cls, identifier: str, wallets: List[Wallet],
                     errors: Optional[List[ErrorDetail]] = None) -> "WalletSetReport":
        errors = errors or []
        return cls(
            success=not errors and bool(wallets),
            identifier=identifier,
            wallets=[{"name": w.name, "public_key": w.public_key} for w in wallets],
            errors=errors,
        )


# Amount specifications, decided once during validation.

@dataclass(frozen=True)
class FixedAmount:
    sol: float


@dataclass(frozen=True)
class PercentageAmount:
    percent: float

    @property
    def canonical(self) -> str:
        return f"{format(Decimal(str(self.percent)).normalize(), 'f')}%"


@dataclass(frozen=True)
class PerWalletAmounts:
    amounts: Dict[str, float]

    def amount_for(self, name: Optional[str]) -> Optional[float]:
        return self.amounts.get(name)


AmountSpec = Union[FixedAmount, PercentageAmount, PerWalletAmounts]


class TradeAction(str, Enum):
    CREATE_AND_BUY = "create_and_buy"
    BATCH_BUY = "batch_buy"
    DEV_SELL = "dev_sell"
    BATCH_SELL = "batch_sell"


@dataclass
class OperationRequest:
    """Input to a trade batch before validation."""
    action: TradeAction
    amount: object = None
    mint: Optional[str] = None
    slippage_bps: Optional[int] = None
    wallet_names: Optional[List[str]] = None
    metadata: Optional[object] = None
    media: Optional[object] = None
