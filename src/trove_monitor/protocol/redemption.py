"""Redemption hint computation, simulation and submission.

Redeeming walks the sorted trove list from the riskiest trove upward. The
HintHelpers contract tells us where the walk stops (first hint, partial
NICR, truncated amount); SortedTroves then refines an approximate insert
position so the partially-redeemed trove can be re-inserted cheaply.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal

from trove_monitor.chain import abi
from trove_monitor.chain.client import ChainReader, ContractCall, to_hex
from trove_monitor.chain.signer import TransactionSigner
from trove_monitor.config import MAX_REDEMPTION_ITERATIONS
from trove_monitor.protocol.models import to_units
from trove_monitor.protocol.troves import TroveReader

logger = logging.getLogger(__name__)

# Redemptions are refused below 110% total collateral ratio.
MIN_TCR = 1_100_000_000_000_000_000
APPROX_HINT_TRIALS = 32
DEFAULT_MAX_ITERATIONS = 50


class RedemptionError(Exception):
    """Base exception for redemption errors."""


class ZeroRedeemableError(RedemptionError):
    """Nothing is redeemable for the requested amount."""


class MissingSignerError(RedemptionError):
    """No signer (or sender address) is available."""


class InsufficientBalanceError(RedemptionError):
    """Signer holds less of the redeemable asset than the truncated amount."""


class RecoveryModeBlockedError(RedemptionError):
    """The system is below the minimum TCR; redemptions must not be attempted."""


def clamp_iterations(max_iterations: int) -> int:
    return max(1, min(MAX_REDEMPTION_ITERATIONS, int(max_iterations)))


def wall_clock_nonce() -> int:
    return time.time_ns() // 1_000_000


def ensure_redemptions_allowed(tcr: int, *, recovery_mode: bool = False) -> None:
    """Raise RecoveryModeBlockedError unless TCR (18 decimals) is at least 110%."""
    if recovery_mode or tcr < MIN_TCR:
        raise RecoveryModeBlockedError(f"TCR {Decimal(tcr).scaleb(-16):.2f}% is below the 110% redemption floor")


@dataclass(frozen=True)
class RedemptionHints:
    """Everything `redeemCollateral` needs, plus the inputs that produced it."""

    requested_amount: int
    price: int
    first_hint: str
    upper_hint: str
    lower_hint: str
    partial_nicr: int
    truncated_amount: int
    max_iterations: int

    @property
    def redeemable(self) -> bool:
        return self.truncated_amount != 0


@dataclass(frozen=True)
class SimulationResult:
    truncated_amount: int
    gas_estimate: int


@dataclass(frozen=True)
class ExecutionResult:
    tx_hash: str
    truncated_amount: int
    gas_estimate: int
    approval_tx_hash: str | None = None


class RedemptionHintEngine:
    """Computes redemption hints and optionally submits the redemption.

    The approximate-hint seed comes from `nonce_source` (wall-clock
    milliseconds by default) so tests can pin it.
    """

    def __init__(
        self,
        reader: ChainReader,
        troves: TroveReader,
        *,
        hint_helpers: str,
        sorted_troves: str,
        musd: str,
        signer: TransactionSigner | None = None,
        nonce_source: Callable[[], int] = wall_clock_nonce,
    ) -> None:
        self._reader = reader
        self._troves = troves
        self._hint_helpers = hint_helpers
        self._sorted_troves = sorted_troves
        self._musd = musd
        self._signer = signer
        self._nonce_source = nonce_source

    async def compute_hints(self, amount: Decimal | int, max_iterations: int = DEFAULT_MAX_ITERATIONS) -> RedemptionHints:
        """Compute hints for redeeming `amount` MUSD.

        A zero partial NICR short-circuits to zero-address upper/lower hints;
        check `hints.redeemable` before simulating or executing.
        """
        amount_raw = to_units(amount) if isinstance(amount, Decimal) else int(amount)
        iterations = clamp_iterations(max_iterations)
        price = await self._troves.get_price_raw()

        first_hint, partial_nicr, truncated = await self._reader.call(
            ContractCall(self._hint_helpers, abi.GET_REDEMPTION_HINTS, (amount_raw, price, iterations))
        )

        upper_hint = lower_hint = abi.ZERO_ADDRESS
        if partial_nicr != 0:
            approx_hint, _, _ = await self._reader.call(
                ContractCall(
                    self._hint_helpers,
                    abi.GET_APPROX_HINT,
                    (partial_nicr, APPROX_HINT_TRIALS, self._nonce_source()),
                )
            )
            upper_hint, lower_hint = await self._reader.call(
                ContractCall(self._sorted_troves, abi.FIND_INSERT_POSITION, (partial_nicr, approx_hint, approx_hint))
            )

        hints = RedemptionHints(
            requested_amount=amount_raw,
            price=int(price),
            first_hint=str(first_hint),
            upper_hint=str(upper_hint),
            lower_hint=str(lower_hint),
            partial_nicr=int(partial_nicr),
            truncated_amount=int(truncated),
            max_iterations=iterations,
        )
        logger.info(
            "Redemption hints: requested=%d truncated=%d nicr=%d first=%s",
            hints.requested_amount,
            hints.truncated_amount,
            hints.partial_nicr,
            hints.first_hint,
        )
        return hints

    def _redeem_call(self, hints: RedemptionHints, max_iterations: int | None = None) -> ContractCall:
        iterations = hints.max_iterations if max_iterations is None else clamp_iterations(max_iterations)
        return ContractCall(
            self._troves.trove_manager,
            abi.REDEEM_COLLATERAL,
            (
                hints.truncated_amount,
                hints.first_hint,
                hints.upper_hint,
                hints.lower_hint,
                hints.partial_nicr,
                iterations,
            ),
        )

    async def simulate(
        self,
        hints: RedemptionHints,
        *,
        account: str | None = None,
        max_iterations: int | None = None,
    ) -> SimulationResult:
        """Estimate gas for the redemption without submitting it.

        `max_iterations` overrides the count the hints were computed with.
        """
        sender = account or (self._signer.address if self._signer else None)
        if not sender:
            raise MissingSignerError("An account or signer is required to simulate a redemption")

        call = self._redeem_call(hints, max_iterations)
        gas = await self._reader.estimate_gas(
            {"from": sender, "to": call.address, "data": to_hex(call.encode())}
        )
        return SimulationResult(truncated_amount=hints.truncated_amount, gas_estimate=gas)

    async def execute(self, hints: RedemptionHints, *, max_iterations: int | None = None) -> ExecutionResult:
        """Submit the redemption.

        Checks, in order: something is redeemable, a signer exists, the
        signer holds enough MUSD. Approves the TroveManager only when the
        current allowance is short, then re-simulates and submits.
        """
        if not hints.redeemable:
            raise ZeroRedeemableError("Nothing redeemable for the requested amount")
        if self._signer is None:
            raise MissingSignerError("A signer is required to submit a redemption")

        owner = self._signer.address
        balance = int(await self._reader.call(ContractCall(self._musd, abi.BALANCE_OF, (owner,))))
        if balance < hints.truncated_amount:
            raise InsufficientBalanceError(
                f"Balance {balance} is below the redeemable amount {hints.truncated_amount}"
            )

        approval_tx_hash = await self._ensure_allowance(self._signer, hints.truncated_amount)

        simulation = await self.simulate(hints, max_iterations=max_iterations)
        tx_hash = await self._signer.send(
            self._redeem_call(hints, max_iterations), gas=simulation.gas_estimate
        )
        logger.info("Redemption submitted: tx=%s truncated=%d", tx_hash, hints.truncated_amount)
        return ExecutionResult(
            tx_hash=tx_hash,
            truncated_amount=hints.truncated_amount,
            gas_estimate=simulation.gas_estimate,
            approval_tx_hash=approval_tx_hash,
        )

    async def _ensure_allowance(self, signer: TransactionSigner, required: int) -> str | None:
        owner = signer.address
        spender = self._troves.trove_manager
        allowance = int(await self._reader.call(ContractCall(self._musd, abi.ALLOWANCE, (owner, spender))))
        if allowance >= required:
            return None
        logger.info("Approving %d MUSD for %s (current allowance %d)", required, spender, allowance)
        return await signer.send(ContractCall(self._musd, abi.APPROVE, (spender, required)))
