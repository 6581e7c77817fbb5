from __future__ import annotations

from copytrade_bot.models import DiscoveryRecord, WorkItem


def aggregate_pending(records: list[DiscoveryRecord], title_filter: str = "") -> list[WorkItem]:
    """Folds pending fills sharing (asset, side, outcome) into one volume-weighted work item."""
    needle = title_filter.strip().lower()
    groups: dict[tuple[str, str, str], list[DiscoveryRecord]] = {}
    for record in sorted(records, key=lambda item: item.timestamp):
        if needle and needle not in record.title.lower():
            continue
        key = (record.asset, record.side.value.lower(), record.outcome)
        groups.setdefault(key, []).append(record)

    items: list[WorkItem] = []
    for members in groups.values():
        first = members[0]
        if len(members) == 1:
            price = first.price
        else:
            total_size = sum(member.size for member in members)
            total_usdc = sum(member.usdc_size for member in members)
            price = total_usdc / total_size if total_size > 0 else first.price
        items.append(
            WorkItem(
                asset=first.asset,
                side=first.side,
                outcome=first.outcome,
                condition_id=first.condition_id,
                title=first.title,
                size=sum(member.size for member in members),
                usdc_size=sum(member.usdc_size for member in members),
                price=price,
                timestamp=max(member.timestamp for member in members),
                record_ids=[member.record_id for member in members if member.record_id is not None],
            )
        )
    return items
