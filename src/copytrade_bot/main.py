from __future__ import annotations

import argparse
from dataclasses import replace
import json
import logging
import signal
import threading
import time
from typing import Callable, Iterable

from copytrade_bot.balances import BalanceCache
from copytrade_bot.clients_clob import ClobClient
from copytrade_bot.clients_data import ActivityClient
from copytrade_bot.clients_gamma import GammaClient, MarketTitleCache
from copytrade_bot.config import BotConfig, load_config, validate_config
from copytrade_bot.discovery import DiscoveryService
from copytrade_bot.engine import ExecutionEngine
from copytrade_bot.execution import BaseExecutor, LiveExecutor, PaperExecutor
from copytrade_bot.ledger import PositionLedger
from copytrade_bot.rpc_pool import ProviderPool, TimedDedupCache
from copytrade_bot.storage import Storage

LOGGER = logging.getLogger("copytrade_bot")


class BotRuntime:
    def __init__(self, config: BotConfig) -> None:
        self.config = config
        self.storage = Storage(config.database_path)
        self.activity = ActivityClient(config.data_api_url, timeout_seconds=config.api_timeout_seconds)
        self.gamma = GammaClient(config.gamma_url, timeout_seconds=config.api_timeout_seconds)
        self.clob = ClobClient(config.clob_url, timeout_seconds=config.api_timeout_seconds)
        self.titles = MarketTitleCache(self.gamma)
        self.pool = ProviderPool.from_urls(
            config.rpc_urls,
            timeout_seconds=config.rpc_timeout_seconds,
            race_width=config.rpc_race_width,
            cooldown_seconds=config.rpc_cooldown_seconds,
        )
        self.balances = BalanceCache(self.pool, config.usdc_address, ttl_seconds=config.balance_ttl_seconds)
        self.new_trade_event = threading.Event()
        self.discovery = DiscoveryService(
            config,
            self.storage,
            self.activity,
            self.titles,
            pool=self.pool,
            new_trade_event=self.new_trade_event,
            block_cache=TimedDedupCache(config.dedup_ttl_seconds),
            tx_cache=TimedDedupCache(config.dedup_ttl_seconds),
        )

        self.executor: BaseExecutor
        self.ledger: PositionLedger | None = None
        if config.live_mode:
            self.executor = LiveExecutor(config)
        else:
            self.executor = PaperExecutor()
            self.ledger = PositionLedger(self.storage, self.clob)
        self.engine = ExecutionEngine(
            config,
            self.storage,
            self.executor,
            self.clob,
            self.activity,
            ledger=self.ledger,
            balances=self.balances,
            target_wallet=lambda: self.discovery.proxy_address or config.target_address,
        )
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    def stop(self) -> None:
        self._stop_event.set()
        # Wake the execution loop so it notices the stop promptly.
        self.new_trade_event.set()

    def preflight(self) -> None:
        if not self.config.live_mode:
            return
        self.executor.preflight()

    def run(self) -> None:
        self._spawn("discovery-poll", self._loop, self.discovery.poll_once, self.config.poll_interval_seconds)
        if self.config.enable_chain_listener:
            self._threads.extend(self.discovery.start_chain_listener(self._stop_event))
        self._spawn("execution", self._execution_loop)
        if self.ledger is not None:
            self._spawn(
                "resolution",
                self._loop,
                self.ledger.resolve_markets,
                self.config.resolution_interval_seconds,
            )
        while not self._stop_event.is_set():
            self._stop_event.wait(1.0)
        for thread in self._threads:
            thread.join(timeout=5.0)

    def close(self) -> None:
        self._stop_event.set()
        self.pool.close()
        self.storage.close()

    def _spawn(self, name: str, target: Callable[..., None], *args: object) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _loop(self, step: Callable[[], object], interval_seconds: float) -> None:
        name = threading.current_thread().name
        while not self._stop_event.is_set():
            started = time.time()
            try:
                step()
            except Exception as exc:
                LOGGER.warning("loop_error loop=%s error=%s", name, exc)
            elapsed = time.time() - started
            self._stop_event.wait(max(0.0, interval_seconds - elapsed))

    def _execution_loop(self) -> None:
        while not self._stop_event.is_set():
            self.new_trade_event.wait(self.config.execution_poll_seconds)
            self.new_trade_event.clear()
            if self._stop_event.is_set():
                break
            try:
                self.engine.dispatch_cycle()
            except Exception as exc:
                LOGGER.warning("loop_error loop=execution error=%s", exc)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("urllib3", "web3"):
        logging.getLogger(noisy).setLevel(logging.ERROR)


def _checked_config(config: BotConfig) -> BotConfig | None:
    problems = validate_config(config)
    for problem in problems:
        LOGGER.error("config_error %s", problem)
    return None if problems else config


def _run_command(args: argparse.Namespace) -> int:
    config = load_config()
    if args.mode:
        config = replace(config, mode=args.mode.lower())
    if args.chain is not None:
        config = replace(config, enable_chain_listener=bool(args.chain))
    _setup_logging(config.log_level)
    if _checked_config(config) is None:
        return 2

    runtime = BotRuntime(config)
    try:
        runtime.preflight()
    except Exception as exc:
        LOGGER.error("Live preflight failed: %s", exc)
        runtime.close()
        return 2
    LOGGER.info(
        "Starting copy bot mode=%s target=%s policy=%s chain=%s filter=%s",
        config.mode,
        config.target_address,
        config.sizing_policy,
        config.enable_chain_listener,
        config.title_filter or "-",
    )
    signal_count = {"count": 0}

    def _handle_signal(signum: int, _frame: object) -> None:
        signal_count["count"] += 1
        if signal_count["count"] >= 2:
            LOGGER.error("Received signal %s again, forcing exit now", signum)
            raise SystemExit(130)
        LOGGER.warning(
            "Received signal %s, stopping loops (press Ctrl+C again to force-exit)",
            signum,
        )
        runtime.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    try:
        runtime.run()
        return 0
    except Exception as exc:
        LOGGER.error("Fatal runtime error: %s", exc)
        return 2
    finally:
        runtime.close()


def _report_command(args: argparse.Namespace) -> int:
    config = load_config()
    _setup_logging(config.log_level)
    storage = Storage(config.database_path)
    try:
        print(json.dumps(storage.report(config.target_address), indent=2, default=str))
    finally:
        storage.close()
    return 0


def _reset_command(args: argparse.Namespace) -> int:
    config = load_config()
    _setup_logging(config.log_level)
    if not config.target_address:
        LOGGER.error("config_error USER_ADDRESS is not defined")
        return 2
    storage = Storage(config.database_path)
    try:
        removed = storage.reset_discovery(config.target_address)
        LOGGER.warning("discovery_reset target=%s removed=%s", config.target_address, removed)
        if args.paper:
            storage.reset_paper()
            LOGGER.warning("paper_ledger_reset")
    finally:
        storage.close()
    return 0


def _resolve_command(args: argparse.Namespace) -> int:
    config = load_config()
    _setup_logging(config.log_level)
    storage = Storage(config.database_path)
    try:
        ledger = PositionLedger(storage, ClobClient(config.clob_url, timeout_seconds=config.api_timeout_seconds))
        closed = ledger.resolve_markets()
        print(json.dumps({"closed_positions": closed, "stats": storage.get_stats().to_dict()}, indent=2))
        return 0
    except Exception as exc:
        LOGGER.error("resolve failed: %s", exc)
        return 2
    finally:
        storage.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="copytrade_bot", description="Polymarket copy-trading bot")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Discover and copy the target's trades")
    run.add_argument("--mode", choices=("paper", "live"), default=None)
    run.add_argument(
        "--chain",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Also decode the target's trades straight from new blocks",
    )
    run.set_defaults(func=_run_command)

    report = sub.add_parser("report", help="Print paper stats, positions and discovery counts")
    report.set_defaults(func=_report_command)

    reset = sub.add_parser("reset", help="Forget discovered trades for the target")
    reset.add_argument("--paper", action="store_true", help="Also clear paper positions, trades and stats")
    reset.set_defaults(func=_reset_command)

    resolve = sub.add_parser("resolve", help="Run one market resolution pass over open paper positions")
    resolve.set_defaults(func=_resolve_command)
    return parser


def cli(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return int(args.func(args))


def main() -> None:
    raise SystemExit(cli())


if __name__ == "__main__":
    main()
