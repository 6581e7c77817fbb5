from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
import logging
import time
from typing import Callable

from copytrade_bot.clients_clob import ClobClient
from copytrade_bot.models import MarketStatus, OrderResult, Position, Side, WorkItem
from copytrade_bot.storage import Storage

LOGGER = logging.getLogger("copytrade_bot")

_DUST = 1e-9


def _reduce(spend: float, shares: float, sold: float) -> tuple[float, float]:
    """Removes ``sold`` shares at average cost, returning the new (spend, shares)."""
    if shares <= _DUST or sold >= shares - _DUST:
        return 0.0, 0.0
    return spend - spend * (sold / shares), shares - sold


def _average(spend: float, shares: float) -> float:
    return spend / shares if shares > _DUST else 0.0


class PositionLedger:
    """Paper-mode cost basis for the bot and, alongside it, for the target."""

    def __init__(
        self,
        storage: Storage,
        clob: ClobClient | None = None,
        *,
        max_workers: int = 8,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.clob = clob
        self.max_workers = max(1, int(max_workers))
        self._clock = clock

    def position_for(self, item: WorkItem) -> Position | None:
        if item.condition_id:
            position = self.storage.get_position(item.condition_id, item.outcome)
            if position is not None and not position.is_closed:
                return position
        return self.storage.find_open_position_by_asset(item.asset)

    def bot_shares(self, item: WorkItem) -> float:
        position = self.position_for(item)
        return position.total_shares if position is not None else 0.0

    def record_buy(self, item: WorkItem, fill: OrderResult, *, include_target: bool = True) -> Position:
        """Adds one bot fill.

        The target columns take the whole source trade, so only the first fill of a
        work item should pass ``include_target``.
        """
        with self.storage.transaction():
            position = self.storage.get_position(item.condition_id, item.outcome)
            if position is None or position.is_closed:
                position = Position(
                    condition_id=item.condition_id,
                    outcome=item.outcome,
                    title=item.title,
                    asset=item.asset,
                )
            position.total_spend += fill.amount
            position.total_shares += fill.shares
            position.avg_price = _average(position.total_spend, position.total_shares)
            if include_target:
                position.target_spend += item.usdc_size
                position.target_shares += item.size
                position.target_avg_price = _average(position.target_spend, position.target_shares)
            self.storage.upsert_position(position)
            self._record_fill(position, item, fill, Side.BUY)
        return position

    def record_sell(self, item: WorkItem, fill: OrderResult, *, include_target: bool = True) -> Position | None:
        with self.storage.transaction():
            position = self.position_for(item)
            if position is None:
                LOGGER.warning("ledger_sell_without_position asset=%s", item.asset)
                return None
            sold = min(fill.shares, position.total_shares)
            position.total_spend, position.total_shares = _reduce(position.total_spend, position.total_shares, sold)
            position.avg_price = _average(position.total_spend, position.total_shares)
            if include_target:
                target_sold = min(item.size, position.target_shares)
                position.target_spend, position.target_shares = _reduce(
                    position.target_spend, position.target_shares, target_sold
                )
                position.target_avg_price = _average(position.target_spend, position.target_shares)
            self.storage.upsert_position(position)
            self._record_fill(position, item, fill, item.side)
        return position

    def _record_fill(self, position: Position, item: WorkItem, fill: OrderResult, side: Side) -> None:
        latency = max(0.0, self._clock() - item.timestamp)
        self.storage.record_paper_trade(
            position,
            side=side,
            shares=fill.shares,
            price=fill.price,
            amount=fill.amount,
            target_size=item.size,
            target_usdc_size=item.usdc_size,
            target_timestamp=item.timestamp,
            latency_seconds=latency,
        )
        stats = self.storage.get_stats()
        count = stats.total_trades_with_latency
        stats.avg_latency = (stats.avg_latency * count + latency) / (count + 1)
        stats.total_trades_with_latency = count + 1
        self.storage.save_stats(stats)

    def resolve_markets(self) -> int:
        if self.clob is None:
            raise RuntimeError("market resolution requires a CLOB client")
        condition_ids = sorted(
            {position.condition_id for position in self.storage.list_open_positions() if position.condition_id}
        )
        if not condition_ids:
            return 0

        statuses: dict[str, MarketStatus] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(condition_ids))) as executor:
            futures = {executor.submit(self.clob.get_market, condition_id): condition_id for condition_id in condition_ids}
            for future in as_completed(futures):
                condition_id = futures[future]
                try:
                    statuses[condition_id] = future.result()
                except Exception as exc:
                    LOGGER.warning("resolution_query_failed condition=%s error=%s", condition_id, exc)

        closed: list[Position] = []
        with self.storage.transaction():
            stats = self.storage.get_stats()
            market_spend: dict[str, tuple[float, str]] = {}
            for position in self.storage.list_open_positions():
                status = statuses.get(position.condition_id)
                if status is None or not status.closed:
                    continue
                winner = status.winning_token
                if winner is None:
                    # Closed but not yet settled; booked as a loss until a winner is flagged.
                    LOGGER.warning(
                        "market_closed_without_winner condition=%s outcome=%s closing_at_zero_return",
                        position.condition_id,
                        position.outcome,
                    )
                    is_winner = False
                else:
                    is_winner = position.outcome.strip().lower() == winner.outcome.strip().lower()

                position.is_closed = True
                position.is_winner = is_winner
                position.total_return = position.total_shares if is_winner else 0.0
                position.target_return = position.target_shares if is_winner else 0.0
                position.pnl = position.total_return - position.total_spend
                position.target_pnl = position.target_return - position.target_spend
                closed.append(position)

                stats.total_spend += position.total_spend
                stats.total_returns += position.total_return
                stats.net_pnl += position.pnl
                if position.pnl > 0:
                    stats.total_wins += position.pnl
                    stats.winning_positions += 1
                elif position.pnl < 0:
                    stats.total_losses += -position.pnl
                    stats.losing_positions += 1
                stats.target_total_spend += position.target_spend
                stats.target_total_returns += position.target_return
                stats.target_net_pnl += position.target_pnl

                spent, _ = market_spend.get(position.condition_id, (0.0, ""))
                market_spend[position.condition_id] = (
                    spent + position.total_spend,
                    position.title or status.question,
                )
                LOGGER.info(
                    "position_resolved condition=%s outcome=%s winner=%s spend=%.4f return=%.4f pnl=%.4f target_pnl=%.4f",
                    position.condition_id,
                    position.outcome,
                    is_winner,
                    position.total_spend,
                    position.total_return,
                    position.pnl,
                    position.target_pnl,
                )

            for spent, title in market_spend.values():
                if spent > stats.largest_market_spend:
                    stats.largest_market_spend = spent
                    stats.largest_market_title = title
            if closed:
                self.storage.close_positions(closed, stats)
        return len(closed)
