from __future__ import annotations

from dataclasses import dataclass, field
import logging
import threading
from typing import Callable

from copytrade_bot.aggregator import aggregate_pending
from copytrade_bot.balances import BalanceCache
from copytrade_bot.clients_clob import ClobClient
from copytrade_bot.clients_data import ActivityClient
from copytrade_bot.config import BotConfig
from copytrade_bot.execution import BaseExecutor
from copytrade_bot.ledger import PositionLedger
from copytrade_bot.models import ExecutionState, OrderResult, Side, WorkItem
from copytrade_bot.sizing import SizingPolicy, buy_amount, sell_shares
from copytrade_bot.storage import Storage

LOGGER = logging.getLogger("copytrade_bot")

_DUST = 1e-6


@dataclass
class ExecutionOutcome:
    item: WorkItem
    state: ExecutionState = ExecutionState.PENDING
    reason: str = ""
    requested: float = 0.0
    filled: float = 0.0
    attempts: int = 0
    fills: list[OrderResult] = field(default_factory=list)


class ExecutionEngine:
    """Sizes each work item, walks the book with fill-or-kill orders and settles its records.

    BUY quantities are USDC; SELL and MERGE quantities are shares.
    """

    def __init__(
        self,
        config: BotConfig,
        storage: Storage,
        executor: BaseExecutor,
        clob: ClobClient,
        activity: ActivityClient,
        *,
        ledger: PositionLedger | None = None,
        balances: BalanceCache | None = None,
        target_wallet: Callable[[], str] | None = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.executor = executor
        self.clob = clob
        self.activity = activity
        self.ledger = ledger
        self.balances = balances
        self.policy = SizingPolicy(config.sizing_policy)
        self.target_wallet = target_wallet or (
            lambda: config.target_proxy_address or config.target_address
        )
        self._cycle_lock = threading.Lock()

    def dispatch_cycle(self) -> list[ExecutionOutcome] | None:
        if not self._cycle_lock.acquire(blocking=False):
            LOGGER.debug("dispatch_cycle_busy")
            return None
        try:
            records = self.storage.find_pending(self.config.target_address, self.config.retry_limit)
            items = aggregate_pending(records, self.config.title_filter)
            outcomes: list[ExecutionOutcome] = []
            for item in items:
                try:
                    outcomes.append(self.execute(item))
                except Exception as exc:
                    LOGGER.warning(
                        "execute_failed asset=%s side=%s records=%s error=%s",
                        item.asset,
                        item.side.value,
                        len(item.record_ids),
                        exc,
                    )
            return outcomes
        finally:
            self._cycle_lock.release()

    def execute(self, item: WorkItem) -> ExecutionOutcome:
        outcome = ExecutionOutcome(item=item, state=ExecutionState.SIZING)
        try:
            remaining, reason = self._size(item)
        except Exception as exc:
            return self._sizing_failed(outcome, exc)
        outcome.requested = remaining
        if reason or remaining <= _DUST:
            return self._finish(outcome, ExecutionState.SKIPPED, reason or "size not positive")

        outcome.state = ExecutionState.BOOK_WALK
        retry = 0
        final_state = ExecutionState.FILLED
        final_reason = ""
        while remaining > _DUST:
            if retry >= self.config.retry_limit:
                final_state = ExecutionState.RETRY_EXHAUSTED
                final_reason = "retry limit reached"
                break
            try:
                book = self.clob.get_book(item.asset)
            except Exception as exc:
                retry += 1
                LOGGER.warning(
                    "book_fetch_failed asset=%s retry=%s/%s error=%s",
                    item.asset,
                    retry,
                    self.config.retry_limit,
                    exc,
                )
                continue
            level = book.best_ask_level if item.side == Side.BUY else book.best_bid_level
            if level is None:
                final_state, final_reason = ExecutionState.SKIPPED, "empty book"
                break
            drift = abs(level.price - item.price)
            if drift > self.config.max_price_diff:
                final_state = ExecutionState.SKIPPED
                final_reason = f"price drift {drift:.4f} (live {level.price:.4f} vs trade {item.price:.4f})"
                break

            amount = min(remaining, level.notional if item.side == Side.BUY else level.size)
            try:
                result = self.executor.submit(item.asset, item.side, amount, level.price)
            except Exception as exc:
                result = OrderResult(success=False, amount=amount, price=level.price, shares=0.0, error=str(exc))
            self.storage.record_order(
                mode=self.executor.mode,
                asset=item.asset,
                side=item.side,
                result=result,
                metadata={"title": item.title, "outcome": item.outcome, "record_ids": item.record_ids},
            )
            if not result.success:
                retry += 1
                LOGGER.warning(
                    "order_failed asset=%s side=%s amount=%.4f price=%.4f retry=%s/%s error=%s",
                    item.asset,
                    item.side.value,
                    amount,
                    level.price,
                    retry,
                    self.config.retry_limit,
                    result.error,
                )
                continue

            retry = 0
            remaining -= amount
            outcome.filled += amount
            outcome.fills.append(result)
            LOGGER.info(
                "order_filled asset=%s side=%s amount=%.4f price=%.4f shares=%.4f remaining=%.4f",
                item.asset,
                item.side.value,
                result.amount,
                result.price,
                result.shares,
                max(0.0, remaining),
            )
            self._apply_fill(item, result, first_fill=len(outcome.fills) == 1)

        outcome.attempts = retry
        return self._finish(outcome, final_state, final_reason)

    def _size(self, item: WorkItem) -> tuple[float, str]:
        if self.config.paper_mode and not item.condition_id:
            return 0.0, "market unresolved"
        if item.side == Side.BUY:
            bot_balance = 0.0
            target_balance = 0.0
            if self.policy == SizingPolicy.PROPORTIONAL:
                if self.config.paper_mode:
                    bot_balance = self.config.paper_bankroll_usdc
                else:
                    bot_balance = self._balance(self.config.bot_address)
                target_balance = self._balance(self.target_wallet())
            amount = buy_amount(
                item,
                self.policy,
                bot_balance=bot_balance,
                target_balance=target_balance,
                trade_scale=self.config.trade_scale,
                max_trade_amount=self.config.max_trade_amount,
            )
            LOGGER.info(
                "sized_buy asset=%s policy=%s target_usdc=%.4f bot_balance=%.4f target_balance=%.4f amount=%.4f",
                item.asset,
                self.policy.value,
                item.usdc_size,
                bot_balance,
                target_balance,
                amount,
            )
            return amount, ""

        bot_shares = self._bot_shares(item)
        if bot_shares <= _DUST:
            return 0.0, "no position"
        target_shares = None
        if item.side == Side.SELL and self.policy != SizingPolicy.PAPER_MATCH:
            target_shares = self.activity.position_size(self.target_wallet(), item.asset)
        shares = sell_shares(
            item,
            self.policy,
            bot_shares=bot_shares,
            target_shares=target_shares,
            trade_scale=self.config.trade_scale,
        )
        LOGGER.info(
            "sized_sell asset=%s side=%s bot_shares=%.4f target_shares=%s shares=%.4f",
            item.asset,
            item.side.value,
            bot_shares,
            "-" if target_shares is None else f"{target_shares:.4f}",
            shares,
        )
        return shares, ""

    def _balance(self, address: str) -> float:
        if self.balances is None:
            raise RuntimeError("proportional sizing requires a balance cache")
        return self.balances.get(address)

    def _bot_shares(self, item: WorkItem) -> float:
        if self.config.paper_mode:
            if self.ledger is None:
                return 0.0
            return self.ledger.bot_shares(item)
        return self.activity.position_size(self.config.bot_address, item.asset)

    def _apply_fill(self, item: WorkItem, result: OrderResult, *, first_fill: bool = True) -> None:
        if self.config.paper_mode:
            if self.ledger is None:
                return
            if item.side == Side.BUY:
                self.ledger.record_buy(item, result, include_target=first_fill)
            else:
                self.ledger.record_sell(item, result, include_target=first_fill)
            return
        if self.balances is not None:
            try:
                self.balances.refresh(self.config.bot_address)
            except Exception as exc:
                LOGGER.warning("balance_refresh_failed address=%s error=%s", self.config.bot_address, exc)

    def _sizing_failed(self, outcome: ExecutionOutcome, exc: Exception) -> ExecutionOutcome:
        item = outcome.item
        attempts = self.storage.bump_attempts(item.record_ids, self.config.retry_limit)
        outcome.attempts = attempts
        outcome.reason = f"sizing failed: {exc}"
        if attempts >= self.config.retry_limit:
            outcome.state = ExecutionState.RETRY_EXHAUSTED
            LOGGER.warning(
                "retry_exhausted asset=%s side=%s attempts=%s records=%s error=%s",
                item.asset,
                item.side.value,
                attempts,
                len(item.record_ids),
                exc,
            )
        else:
            outcome.state = ExecutionState.PENDING
            LOGGER.warning(
                "sizing_failed asset=%s side=%s retry=%s/%s error=%s",
                item.asset,
                item.side.value,
                attempts,
                self.config.retry_limit,
                exc,
            )
        return outcome

    def _finish(self, outcome: ExecutionOutcome, state: ExecutionState, reason: str) -> ExecutionOutcome:
        outcome.state = state
        outcome.reason = reason
        item = outcome.item
        if state == ExecutionState.RETRY_EXHAUSTED:
            self.storage.mark_dispatched(item.record_ids, attempts=outcome.attempts)
            LOGGER.warning(
                "retry_exhausted asset=%s side=%s attempts=%s filled=%.4f requested=%.4f records=%s",
                item.asset,
                item.side.value,
                outcome.attempts,
                outcome.filled,
                outcome.requested,
                len(item.record_ids),
            )
        else:
            self.storage.mark_dispatched(item.record_ids)
            if state == ExecutionState.FILLED:
                LOGGER.info(
                    "filled asset=%s side=%s amount=%.4f orders=%s title=%s",
                    item.asset,
                    item.side.value,
                    outcome.filled,
                    len(outcome.fills),
                    item.title or "-",
                )
            else:
                LOGGER.info(
                    "execution_skipped asset=%s side=%s reason=%s filled=%.4f title=%s",
                    item.asset,
                    item.side.value,
                    reason,
                    outcome.filled,
                    item.title or "-",
                )
        return outcome
