"""Domain value types produced by the protocol readers."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Literal

TxStatus = Literal["success", "failed"]

# Ratio reported for a position that carries no debt.
UNBOUNDED_RATIO = Decimal(2**53 - 1)

WAD_DECIMALS = 18


def from_units(raw: int, decimals: int = WAD_DECIMALS) -> Decimal:
    """Scale an on-chain integer amount by its token decimals."""
    return Decimal(int(raw)).scaleb(-decimals)


def collateral_ratio(collateral: Decimal, debt: Decimal, price: Decimal) -> Decimal:
    """collateral * price / debt, saturating when there is no debt."""
    if debt == 0:
        return UNBOUNDED_RATIO
    return collateral * price / debt


@dataclass(frozen=True)
class Trove:
    """A single collateralized debt position."""

    owner: str
    collateral: Decimal
    principal_debt: Decimal
    interest: Decimal
    collateralization_ratio: Decimal
    status: int = 1
    interest_rate: int = 0

    @property
    def total_debt(self) -> Decimal:
        return self.principal_debt + self.interest


@dataclass(frozen=True)
class SystemState:
    """Aggregate protocol state at the current block."""

    collateral: Decimal
    debt: Decimal
    ratio: Decimal
    btc_price: Decimal


@dataclass(frozen=True)
class LiquidationEvent:
    borrower: str
    debt: Decimal
    collateral: Decimal
    operation: int
    tx_hash: str
    block_number: int
    log_index: int
    timestamp: int
    status: TxStatus

    @property
    def event_id(self) -> str:
        return f"{self.tx_hash}:{self.log_index}"


@dataclass(frozen=True)
class RedemptionEvent:
    attempted_amount: Decimal
    actual_amount: Decimal
    collateral_sent: Decimal
    collateral_fee: Decimal
    affected_borrowers: tuple[str, ...]
    tx_hash: str
    block_number: int
    log_index: int
    timestamp: int
    status: TxStatus

    @property
    def event_id(self) -> str:
        return f"{self.tx_hash}:{self.log_index}"


@dataclass(frozen=True)
class GaugeReward:
    """Bribe amount for one token at one epoch.

    Adjacent-epoch amounts are only present when the current epoch is empty
    and the neighbouring epoch recorded something.
    """

    token: str
    amount: int
    epoch_start: int
    previous_epoch_amount: int | None = None
    next_epoch_amount: int | None = None


@dataclass(frozen=True)
class GaugeIncentive:
    pool: str
    gauge: str
    votes: int
    pool_name: str | None = None
    bribe: str | None = None
    duration: int = 0
    epoch_start: int = 0
    rewards: tuple[GaugeReward, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class EpochTiming:
    epoch_start: int
    epoch_end: int
    vote_end: int


@dataclass(frozen=True)
class BridgeAsset:
    token_symbol: str
    ethereum_symbol: str
    mezo_address: str
    ethereum_address: str
    bridge_address: str
    decimals: int
    balance_raw: int
    balance_formatted: Decimal


def to_units(amount: Decimal | int | str, decimals: int = WAD_DECIMALS) -> int:
    """Inverse of from_units; fractional dust below 10**-decimals is dropped."""
    return int(Decimal(amount).scaleb(decimals))
