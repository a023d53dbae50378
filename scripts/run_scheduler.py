#!/usr/bin/env python3
"""Run the trigger order scheduler.

Builds the SQL stores, session store, custody service, DexScreener client,
Telegram notifier and swap executor, then polls until interrupted.

Sessions live in process memory, so orders only execute for wallets that were
unlocked in the same process. Front ends embed `build_runtime()` and unlock
through `runtime.custody`; run standalone, the scheduler marks orders of
locked wallets as failed.

Usage:
    # Paper trading against the configured database, forever
    python -m scripts.run_scheduler --paper

    # One cycle, verbose
    python -m scripts.run_scheduler --paper --once --log-level DEBUG

    # Live executor supplied by a module-level factory taking no arguments
    python -m scripts.run_scheduler --executor mypkg.swaps:build_executor
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import signal
import sys
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Sequence

from dotenv import load_dotenv

from core.config import AppConfig, ConfigError
from core.custody import CustodyService, SessionStore
from core.execution import PaperSwapExecutor, SwapExecutor
from core.market_data import DexScreenerClient
from core.notifications import TelegramNotifier
from core.storage import SqlConfig, SqlStores
from core.triggers import TriggerOrderService, TriggerScheduler

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Wired components sharing one store and one session store."""

    stores: SqlStores
    sessions: SessionStore
    custody: CustodyService
    market_data: DexScreenerClient
    scheduler: TriggerScheduler
    orders: TriggerOrderService

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.sessions.stop_cleanup()
        await self.market_data.aclose()
        self.stores.dispose()


def load_executor(spec: str) -> SwapExecutor:
    """Instantiate an executor from `module:factory`."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Executor must be given as module:factory, got {spec!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()


def build_runtime(config: AppConfig, *, executor: SwapExecutor) -> Runtime:
    stores = SqlStores(
        config=SqlConfig(database_url=config.database_url),
        login_attempt_retention=timedelta(hours=config.custody.login_attempt_retention_hours),
    )
    stores.create_schema()

    sessions = SessionStore(
        timeout_seconds=config.custody.session_timeout_seconds,
        max_sessions=config.custody.max_sessions,
        cleanup_interval_seconds=config.custody.session_cleanup_interval_seconds,
    )
    custody = CustodyService(store=stores, sessions=sessions, config=config.custody)
    market_data = DexScreenerClient(
        base_url=config.dexscreener_base_url,
        timeout=config.scheduler.price_timeout_seconds,
    )
    notifier = TelegramNotifier(config.telegram_bot_token) if config.telegram_bot_token else None
    scheduler = TriggerScheduler(
        store=stores,
        custody=custody,
        market_data=market_data,
        executor=executor,
        notifier=notifier,
        config=config.scheduler,
    )
    orders = TriggerOrderService(store=stores, scheduler=scheduler)
    return Runtime(
        stores=stores,
        sessions=sessions,
        custody=custody,
        market_data=market_data,
        scheduler=scheduler,
        orders=orders,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the trigger order scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--once", action="store_true", help="Run a single poll cycle and exit")
    parser.add_argument(
        "--iterations",
        type=int,
        default=None,
        help="Stop after N cycles (default: run until interrupted)",
    )
    parser.add_argument("--paper", action="store_true", help="Use the paper swap executor (no real trades)")
    parser.add_argument("--executor", help="Live swap executor factory as module:factory")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    return parser.parse_args(argv)


async def _serve(runtime: Runtime, *, once: bool) -> None:
    if once:
        report = await runtime.scheduler.run_once()
        logger.info(
            "Cycle done: %d token(s), %d executed, %d failed",
            report.tokens_checked,
            len(report.executed),
            len(report.failed),
        )
        return

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # pragma: no cover - Windows
            pass

    runtime.sessions.start_cleanup()
    task = runtime.scheduler.start()
    stopper = asyncio.create_task(stop_event.wait())
    await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
    if stop_event.is_set():
        logger.info("Shutdown requested")
    stopper.cancel()


async def _main_async(config: AppConfig, executor: SwapExecutor, *, once: bool) -> None:
    runtime = build_runtime(config, executor=executor)
    try:
        await _serve(runtime, once=once)
    finally:
        await runtime.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    load_dotenv()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        config = AppConfig.from_env()
        config.validate()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    if args.iterations is not None:
        config = replace(config, scheduler=replace(config.scheduler, max_iterations=args.iterations))

    executor: SwapExecutor
    if args.executor:
        try:
            executor = load_executor(args.executor)
        except (ImportError, AttributeError, ValueError) as exc:
            logger.error("Cannot load executor %s: %s", args.executor, exc)
            return 1
    elif args.paper:
        executor = PaperSwapExecutor()
    else:
        logger.error("No swap executor configured: pass --paper or --executor module:factory")
        return 1

    logger.info("Mode: %s", "PAPER TRADING" if isinstance(executor, PaperSwapExecutor) else "LIVE TRADING")
    asyncio.run(_main_async(config, executor, once=args.once))
    return 0


if __name__ == "__main__":
    sys.exit(main())
