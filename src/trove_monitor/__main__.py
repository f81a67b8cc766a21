"""Command line entry point.

    python -m trove_monitor index
    python -m trove_monitor redeem --amount 1000 [--max-iterations 50] [--execute]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from decimal import Decimal, InvalidOperation

from pydantic import ValidationError

from trove_monitor.chain.client import ChainReader, ChainReaderError
from trove_monitor.chain.events import EventLogScanner
from trove_monitor.chain.signer import LocalSigner
from trove_monitor.config import Settings, get_settings
from trove_monitor.indexer import build_indexer
from trove_monitor.protocol.models import from_units
from trove_monitor.protocol.redemption import (
    RedemptionError,
    RedemptionHintEngine,
    ensure_redemptions_allowed,
)
from trove_monitor.protocol.troves import TroveReader

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _decimal(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation as e:
        raise argparse.ArgumentTypeError(f"invalid amount: {value}") from e
    if amount <= 0:
        raise argparse.ArgumentTypeError("amount must be > 0")
    return amount


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="trove_monitor", description="Trove protocol indexer and redemption tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("index", help="Run one synchronization pass")

    redeem = subparsers.add_parser("redeem", help="Compute redemption hints and optionally submit")
    redeem.add_argument("--amount", type=_decimal, required=True, help="MUSD amount to redeem")
    redeem.add_argument("--max-iterations", type=int, help="Hint search iterations (1..250)")
    redeem.add_argument("--account", help="Sender used for the gas estimate when no key is configured")
    redeem.add_argument("--execute", action="store_true", help="Submit approve/redeem transactions")
    return parser


async def run_index(settings: Settings) -> int:
    indexer = build_indexer(settings)
    try:
        state = await indexer.run()
    finally:
        await indexer.aclose()
    stats = indexer.last_stats
    if stats is not None:
        print(
            f"blocks {stats.from_block}..{stats.to_block}: "
            f"{stats.troves} troves, {stats.liquidations} liquidations, {stats.redemptions} redemptions"
        )
    print(f"watermark: {state.last_block}")
    return 0


async def run_redeem(settings: Settings, args: argparse.Namespace) -> int:
    contracts = settings.contracts
    reader = ChainReader(settings.mezo.rpc_url, multicall_address=contracts.multicall3)
    try:
        troves = TroveReader(
            reader,
            EventLogScanner(reader),
            trove_manager=contracts.trove_manager,
            price_feed=contracts.price_feed,
        )
        signer = None
        if settings.redemption.private_key is not None:
            signer = LocalSigner(
                reader.w3,
                settings.redemption.private_key.get_secret_value(),
                chain_id=settings.mezo.chain_id,
            )
        engine = RedemptionHintEngine(
            reader,
            troves,
            hint_helpers=contracts.hint_helpers,
            sorted_troves=contracts.sorted_troves,
            musd=contracts.musd,
            signer=signer,
        )

        price_raw = await troves.get_price_raw()
        tcr, recovery_mode = await troves.get_tcr(price_raw)
        ensure_redemptions_allowed(tcr, recovery_mode=recovery_mode)
        print(f"TCR: {from_units(tcr) * 100:.2f}%")

        max_iterations = args.max_iterations or settings.redemption.max_iterations
        hints = await engine.compute_hints(args.amount, max_iterations)
        print(f"truncated amount: {from_units(hints.truncated_amount)} MUSD")
        print(f"first hint: {hints.first_hint}")
        print(f"upper hint: {hints.upper_hint}")
        print(f"lower hint: {hints.lower_hint}")
        print(f"partial NICR: {hints.partial_nicr}")
        if not hints.redeemable:
            print("Nothing redeemable for the requested amount.")
            return 0

        if args.account or signer is not None:
            simulation = await engine.simulate(hints, account=args.account)
            print(f"gas estimate: {simulation.gas_estimate}")

        if args.execute:
            result = await engine.execute(hints)
            if result.approval_tx_hash:
                print(f"approval tx: {result.approval_tx_hash}")
            print(f"redeem tx: {result.tx_hash}")
        return 0
    finally:
        await reader.aclose()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = get_settings()
    except ValidationError as e:
        logging.basicConfig(format=LOG_FORMAT)
        logger.error("Invalid configuration: %s", e)
        return 2
    logging.basicConfig(level=settings.get_logging_level(), format=LOG_FORMAT)

    try:
        settings.validate_requirements(command=args.command, execute=getattr(args, "execute", False))
    except ValueError as e:
        logger.error("%s", e)
        return 2
    logger.debug("Settings: %s", settings.redacted_summary())

    try:
        if args.command == "index":
            return asyncio.run(run_index(settings))
        return asyncio.run(run_redeem(settings, args))
    except RedemptionError as e:
        logger.error("Redemption refused: %s", e)
        return 1
    except ChainReaderError as e:
        logger.error("Chain read failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
