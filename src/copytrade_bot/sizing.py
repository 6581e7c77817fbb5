from __future__ import annotations

from enum import Enum

from copytrade_bot.models import Side, WorkItem


class SizingPolicy(str, Enum):
    EXACT = "exact"
    PROPORTIONAL = "proportional"
    PAPER_MATCH = "paper_match"


def cap_amount(amount: float, max_trade_amount: float) -> float:
    if max_trade_amount > 0 and amount > max_trade_amount:
        return max_trade_amount
    return amount


def buy_amount(
    item: WorkItem,
    policy: SizingPolicy,
    *,
    bot_balance: float,
    target_balance: float,
    trade_scale: float,
    max_trade_amount: float,
) -> float:
    """USDC to spend copying a BUY, truncated to ``max_trade_amount``."""
    if policy == SizingPolicy.EXACT:
        amount = item.usdc_size * trade_scale
    elif policy == SizingPolicy.PAPER_MATCH:
        amount = item.size * item.price
    else:
        denominator = target_balance + item.usdc_size
        ratio = bot_balance / denominator if denominator > 0 else 0.0
        amount = item.usdc_size * ratio * trade_scale
    return max(0.0, cap_amount(amount, max_trade_amount))


def sell_shares(
    item: WorkItem,
    policy: SizingPolicy,
    *,
    bot_shares: float,
    target_shares: float | None,
    trade_scale: float,
) -> float:
    """Shares to sell copying a SELL or MERGE; never more than the bot holds."""
    if bot_shares <= 0:
        return 0.0
    if item.side == Side.MERGE:
        return bot_shares
    if policy == SizingPolicy.PAPER_MATCH:
        return min(item.size, bot_shares)
    if target_shares is None or target_shares <= 0:
        # The target closed its whole position.
        return bot_shares
    ratio = item.size / (target_shares + item.size)
    return max(0.0, min(bot_shares * ratio * trade_scale, bot_shares))
