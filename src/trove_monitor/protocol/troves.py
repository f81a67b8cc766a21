"""Trove, system-state and trove-event reads against the TroveManager.

All per-trove reads go through chunked multicall; event reads go through
the EventLogScanner so they share its ordering and memoization.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from trove_monitor.chain import abi
from trove_monitor.chain.batching import DEFAULT_MULTICALL_BATCH_SIZE, multicall_in_chunks
from trove_monitor.chain.client import ChainReader, ContractCall, RPCError
from trove_monitor.chain.events import Decoded, EventLogScanner
from trove_monitor.protocol.models import (
    LiquidationEvent,
    RedemptionEvent,
    SystemState,
    Trove,
    collateral_ratio,
    from_units,
)

logger = logging.getLogger(__name__)

DEFAULT_EVENT_CHUNK_SIZE = 10_000


class TroveReader:
    """Reads the trove universe, system aggregates and trove events.

    Example:
        ```python
        troves = TroveReader(reader, EventLogScanner(reader), trove_manager=addr)
        price = await troves.get_btc_price()
        state = await troves.get_system_state(price)
        positions = await troves.get_troves(price)
        ```
    """

    def __init__(
        self,
        reader: ChainReader,
        scanner: EventLogScanner,
        *,
        trove_manager: str,
        price_feed: str | None = None,
        batch_size: int = DEFAULT_MULTICALL_BATCH_SIZE,
    ) -> None:
        self._reader = reader
        self._scanner = scanner
        self._trove_manager = trove_manager
        self._price_feed = price_feed
        self._batch_size = batch_size

    @property
    def trove_manager(self) -> str:
        return self._trove_manager

    async def get_price_feed_address(self) -> str:
        if self._price_feed is None:
            self._price_feed = str(await self._reader.call(ContractCall(self._trove_manager, abi.PRICE_FEED)))
        return self._price_feed

    async def get_price_raw(self) -> int:
        """Oracle BTC price as an 18-decimal integer."""
        price_feed = await self.get_price_feed_address()
        return int(await self._reader.call(ContractCall(price_feed, abi.FETCH_PRICE)))

    async def get_btc_price(self) -> Decimal:
        return from_units(await self.get_price_raw())

    async def get_system_state(self, btc_price: Decimal) -> SystemState:
        """Entire system collateral/debt and the resulting TCR at `btc_price`.

        Raises:
            RPCError: If either aggregate cannot be read.
        """
        coll_result, debt_result = await self._reader.multicall(
            [
                ContractCall(self._trove_manager, abi.GET_ENTIRE_SYSTEM_COLL),
                ContractCall(self._trove_manager, abi.GET_ENTIRE_SYSTEM_DEBT),
            ]
        )
        if not (coll_result.success and debt_result.success):
            raise RPCError("Failed to read system collateral/debt")

        collateral = from_units(coll_result.value)
        debt = from_units(debt_result.value)
        return SystemState(
            collateral=collateral,
            debt=debt,
            ratio=collateral_ratio(collateral, debt, btc_price),
            btc_price=btc_price,
        )

    async def get_tcr(self, price_raw: int) -> tuple[int, bool]:
        """Raw TCR (18 decimals) and the recovery-mode flag at `price_raw`."""
        tcr_result, recovery_result = await self._reader.multicall(
            [
                ContractCall(self._trove_manager, abi.GET_TCR, (price_raw,)),
                ContractCall(self._trove_manager, abi.CHECK_RECOVERY_MODE, (price_raw,)),
            ]
        )
        if not (tcr_result.success and recovery_result.success):
            raise RPCError("Failed to read TCR/recovery mode")
        return int(tcr_result.value), bool(recovery_result.value)

    async def get_trove_owners(self) -> list[str]:
        count = int(await self._reader.call(ContractCall(self._trove_manager, abi.GET_TROVE_OWNERS_COUNT)))
        if count == 0:
            return []
        calls = [ContractCall(self._trove_manager, abi.GET_TROVE_FROM_OWNERS_ARRAY, (i,)) for i in range(count)]
        results = await multicall_in_chunks(self._reader, calls, batch_size=self._batch_size)
        owners = [str(r.value) for r in results if r.success]
        if len(owners) != count:
            logger.warning("Resolved %d of %d trove owners", len(owners), count)
        return owners

    async def get_troves(self, btc_price: Decimal) -> list[Trove]:
        """Read every active trove with entire (pending-inclusive) debt and collateral.

        A trove whose debt/coll, status or stake read fails is left out;
        interest rate falls back to 0.
        """
        owners = await self.get_trove_owners()
        if not owners:
            return []

        per_trove = (abi.GET_ENTIRE_DEBT_AND_COLL, abi.GET_TROVE_STATUS, abi.GET_TROVE_STAKE, abi.GET_TROVE_INTEREST_RATE)
        calls = [ContractCall(self._trove_manager, fn, (owner,)) for owner in owners for fn in per_trove]
        results = await multicall_in_chunks(self._reader, calls, batch_size=self._batch_size)

        troves: list[Trove] = []
        width = len(per_trove)
        for i, owner in enumerate(owners):
            debt_coll, status, stake, rate = results[i * width : (i + 1) * width]
            if not (debt_coll.success and status.success and stake.success):
                logger.debug("Skipping trove %s: incomplete reads", owner)
                continue
            coll, principal, interest, pending_coll, pending_principal, pending_interest = debt_coll.value
            collateral = from_units(coll + pending_coll)
            principal_debt = from_units(principal + pending_principal)
            total_interest = from_units(interest + pending_interest)
            troves.append(
                Trove(
                    owner=owner,
                    collateral=collateral,
                    principal_debt=principal_debt,
                    interest=total_interest,
                    collateralization_ratio=collateral_ratio(collateral, principal_debt + total_interest, btc_price),
                    status=int(status.value),
                    interest_rate=int(rate.value) if rate.success else 0,
                )
            )
        return troves

    async def get_liquidations(self, *, from_block: int, to_block: int, chunk_size: int = DEFAULT_EVENT_CHUNK_SIZE) -> list[LiquidationEvent]:
        entries = await self._scanner.scan(
            address=self._trove_manager,
            event_abi=abi.TROVE_LIQUIDATED,
            from_block=from_block,
            to_block=to_block,
            chunk_size=chunk_size,
        )
        if not entries:
            return []

        timestamps = await self._scanner.block_timestamps(e.block_number for e in entries)
        statuses = await self._scanner.receipt_statuses(e.tx_hash for e in entries)
        return [
            LiquidationEvent(
                borrower=str(e.args["_borrower"]),
                debt=from_units(e.args["_debt"]),
                collateral=from_units(e.args["_coll"]),
                operation=int(e.args["operation"]),
                tx_hash=e.tx_hash,
                block_number=e.block_number,
                log_index=e.log_index,
                timestamp=timestamps.get(e.block_number, 0),
                status=statuses.get(e.tx_hash, "success"),
            )
            for e in entries
        ]

    async def get_redemptions(self, *, from_block: int, to_block: int, chunk_size: int = DEFAULT_EVENT_CHUNK_SIZE) -> list[RedemptionEvent]:
        entries = await self._scanner.scan(
            address=self._trove_manager,
            event_abi=abi.REDEMPTION,
            from_block=from_block,
            to_block=to_block,
            chunk_size=chunk_size,
        )
        if not entries:
            return []

        tx_hashes = [e.tx_hash for e in entries]
        updates = await self._scanner.companion_logs(
            tx_hashes,
            address=self._trove_manager,
            event_abi=abi.TROVE_UPDATED,
            predicate=_is_redemption_update,
        )
        timestamps = await self._scanner.block_timestamps(e.block_number for e in entries)
        statuses = await self._scanner.receipt_statuses(tx_hashes)
        return [
            RedemptionEvent(
                attempted_amount=from_units(e.args["_attemptedAmount"]),
                actual_amount=from_units(e.args["_actualAmount"]),
                collateral_sent=from_units(e.args["_collateralSent"]),
                collateral_fee=from_units(e.args["_collateralFee"]),
                affected_borrowers=tuple(str(d.args["_borrower"]) for d in updates.get(e.tx_hash, [])),
                tx_hash=e.tx_hash,
                block_number=e.block_number,
                log_index=e.log_index,
                timestamp=timestamps.get(e.block_number, 0),
                status=statuses.get(e.tx_hash, "success"),
            )
            for e in entries
        ]


def _is_redemption_update(decoded: Decoded) -> bool:
    return int(decoded.args.get("operation", -1)) == abi.REDEMPTION_OPERATION
