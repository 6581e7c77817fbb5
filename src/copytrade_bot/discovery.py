from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Callable

from copytrade_bot.chain_decoder import ChainDecoder, read_field, to_hex
from copytrade_bot.clients_data import ActivityClient, ActivityEvent
from copytrade_bot.clients_gamma import MarketTitleCache
from copytrade_bot.config import BotConfig
from copytrade_bot.models import DiscoveryRecord, MarketRef, Origin, Side, parse_float, parse_timestamp
from copytrade_bot.rpc_pool import ProviderPool, ProviderPoolError, TimedDedupCache
from copytrade_bot.storage import Storage

LOGGER = logging.getLogger("copytrade_bot")

# Blocks behind the head that a watcher replays after falling behind.
MAX_BLOCK_CATCHUP = 20


class DiscoveryService:
    """Finds the target's trades and persists each one exactly once.

    Two producers feed ``_ingest``: paging through the activity feed
    (``poll_once``) and, when enabled, decoding the target's transactions
    from new blocks (``process_block``). Records are keyed by transaction
    hash, so a trade seen by both producers is stored once.
    """

    def __init__(
        self,
        config: BotConfig,
        storage: Storage,
        activity: ActivityClient,
        titles: MarketTitleCache,
        *,
        pool: ProviderPool | None = None,
        decoder: ChainDecoder | None = None,
        new_trade_event: threading.Event | None = None,
        block_cache: TimedDedupCache | None = None,
        tx_cache: TimedDedupCache | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.storage = storage
        self.activity = activity
        self.titles = titles
        self.pool = pool
        self.decoder = decoder or ChainDecoder(config.usdc_address, clock=clock)
        self.new_trade_event = new_trade_event or threading.Event()
        self.block_cache = block_cache or TimedDedupCache(config.dedup_ttl_seconds, clock=clock)
        self.tx_cache = tx_cache or TimedDedupCache(config.dedup_ttl_seconds, clock=clock)
        self.target = config.target_address
        self.proxy_address = config.target_proxy_address
        self._clock = clock
        self._blocks: queue.Queue[int] = queue.Queue()
        self._ingest_lock = threading.Lock()

    @property
    def watched_addresses(self) -> set[str]:
        return {address for address in (self.target, self.proxy_address) if address}

    # activity feed

    def poll_once(self) -> int:
        cutoff = self._clock() - self.config.too_old_minutes * 60
        page_size = max(1, self.config.activity_page_size)
        candidates: list[DiscoveryRecord] = []
        for page in range(max(1, self.config.activity_max_pages)):
            events = self.activity.list_activity(
                self.target,
                limit=page_size,
                offset=page * page_size,
                types=self.config.activity_types,
            )
            reached_stale = False
            for event in events:
                self._learn_proxy(event)
                timestamp = parse_timestamp(event.get("timestamp"))
                if timestamp is None:
                    continue
                if timestamp < cutoff:
                    reached_stale = True
                    continue
                record = self._record_from_activity(event, timestamp)
                if record is not None:
                    candidates.append(record)
            if reached_stale or len(events) < page_size:
                break
        return self._ingest(candidates)

    def _learn_proxy(self, event: ActivityEvent) -> None:
        if self.proxy_address:
            return
        proxy = str(event.get("proxyWallet") or "").strip().lower()
        if proxy.startswith("0x") and proxy != self.target:
            self.proxy_address = proxy
            LOGGER.info("target_proxy_learned target=%s proxy=%s", self.target, proxy)

    def _record_from_activity(self, event: ActivityEvent, timestamp: int) -> DiscoveryRecord | None:
        tx_hash = str(event.get("transactionHash") or "").strip().lower()
        asset = str(event.get("asset") or "").strip()
        if not tx_hash:
            return None
        if not asset:
            LOGGER.debug("activity_skip tx=%s reason=no_asset type=%s", tx_hash, event.get("type"))
            return None
        if str(event.get("type") or "").strip().upper() == "MERGE":
            side = Side.MERGE
        else:
            side = Side.parse(event.get("side"))
        if side is None:
            LOGGER.debug("activity_skip tx=%s reason=unknown_side side=%s", tx_hash, event.get("side"))
            return None
        title = str(event.get("title") or "").strip()
        condition_id = str(event.get("conditionId") or "").strip().lower()
        outcome = str(event.get("outcome") or "").strip()
        if title:
            self.titles.remember(MarketRef(condition_id=condition_id, title=title, outcome=outcome, token_id=asset))
        return DiscoveryRecord(
            transaction_hash=tx_hash,
            condition_id=condition_id,
            asset=asset,
            side=side,
            size=parse_float(event.get("size")),
            usdc_size=parse_float(event.get("usdcSize")),
            price=parse_float(event.get("price")),
            title=title,
            outcome=outcome,
            timestamp=timestamp,
            origin=Origin.REST,
        )

    # shared ingest

    def should_copy(self, title: str) -> bool:
        if not self.config.filter_enabled:
            return True
        if not title:
            return False
        return self.config.title_filter.lower() in title.lower()

    def _ingest(self, candidates: list[DiscoveryRecord]) -> int:
        inserted = 0
        with self._ingest_lock:
            for record in sorted(candidates, key=lambda item: item.timestamp):
                if self.storage.has_transaction(self.target, record.transaction_hash):
                    continue
                record.copy = self.should_copy(record.title)
                if not self.storage.insert_discovery(self.target, record):
                    continue
                inserted += 1
                LOGGER.info(
                    "trade_discovered tx=%s origin=%s side=%s asset=%s size=%.4f usdc=%.4f price=%.4f copy=%s title=%s",
                    record.transaction_hash,
                    record.origin.value,
                    record.side.value,
                    record.asset,
                    record.size,
                    record.usdc_size,
                    record.price,
                    record.copy,
                    record.title or "-",
                )
                if record.copy:
                    self.new_trade_event.set()
        return inserted

    # chain listener

    def process_block(self, number: int) -> int:
        if self.pool is None:
            return 0
        key = str(int(number))
        if self.block_cache.seen_or_add(key):
            return 0
        try:
            block = self.pool.race(
                lambda w3: w3.eth.get_block(int(number), full_transactions=True),
                label="get_block",
            )
        except ProviderPoolError as exc:
            self.block_cache.discard(key)
            LOGGER.warning("block_fetch_failed block=%s error=%s", number, exc)
            return 0
        block_timestamp = int(read_field(block, "timestamp") or 0) or None
        records: list[DiscoveryRecord] = []
        for tx in read_field(block, "transactions") or []:
            if isinstance(tx, (bytes, str)) or not self._involves_watched(tx):
                continue
            tx_hash = to_hex(read_field(tx, "hash"))
            if not tx_hash or self.tx_cache.seen_or_add(tx_hash):
                continue
            if self.storage.has_transaction(self.target, tx_hash):
                continue
            record = self._decode_transaction(tx_hash, block_timestamp)
            if record is not None:
                records.append(record)
        return self._ingest(records)

    def _involves_watched(self, tx: Any) -> bool:
        watched = self.watched_addresses
        sender = str(read_field(tx, "from") or "").lower()
        if sender in watched:
            return True
        # Relayed meta-transactions carry the signer's address in the call data.
        call_data = to_hex(read_field(tx, "input"))
        return any(address[2:] in call_data for address in watched)

    def _decode_transaction(self, tx_hash: str, block_timestamp: int | None) -> DiscoveryRecord | None:
        try:
            receipt = self.pool.race(
                lambda w3: w3.eth.get_transaction_receipt(tx_hash),
                label="get_receipt",
            )
        except ProviderPoolError as exc:
            self.tx_cache.discard(tx_hash)
            LOGGER.warning("receipt_fetch_failed tx=%s error=%s", tx_hash, exc)
            return None
        decoded = self.decoder.decode(receipt, self.target, self.proxy_address, timestamp=block_timestamp)
        if decoded is None:
            LOGGER.debug("chain_no_trade tx=%s", tx_hash)
            return None
        ref = self.titles.lookup(decoded.asset)
        return DiscoveryRecord(
            transaction_hash=decoded.transaction_hash or tx_hash,
            condition_id=ref.condition_id if ref else "",
            asset=decoded.asset,
            side=decoded.side,
            size=decoded.size,
            usdc_size=decoded.usdc_size,
            price=decoded.price,
            title=ref.title if ref else "",
            outcome=ref.outcome if ref else "",
            timestamp=decoded.timestamp,
            origin=Origin.CHAIN,
        )

    def start_chain_listener(self, stop_event: threading.Event) -> list[threading.Thread]:
        if self.pool is None:
            raise RuntimeError("chain listener requires an RPC provider pool")
        threads = [
            threading.Thread(
                target=self._watch_blocks,
                args=(index, stop_event),
                name=f"block-watch-{index}",
                daemon=True,
            )
            for index, _, _ in self.pool.endpoints()
        ]
        threads.append(
            threading.Thread(target=self._coordinate_blocks, args=(stop_event,), name="block-coordinator", daemon=True)
        )
        for thread in threads:
            thread.start()
        LOGGER.info("chain_listener_started providers=%s", len(self.pool))
        return threads

    def _watch_blocks(self, index: int, stop_event: threading.Event) -> None:
        last_seen: int | None = None
        while not stop_event.is_set():
            if self.pool.is_available(index):
                try:
                    head = int(self.pool.call_on(index, lambda w3: w3.eth.block_number))
                except Exception as exc:
                    LOGGER.debug("block_watch_error provider=%s error=%s", index, exc)
                else:
                    if last_seen is None or head - last_seen > MAX_BLOCK_CATCHUP:
                        last_seen = head - 1
                    for number in range(last_seen + 1, head + 1):
                        self._blocks.put(number)
                    last_seen = max(last_seen, head)
            stop_event.wait(self.config.block_poll_seconds)

    def _coordinate_blocks(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                number = self._blocks.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self.process_block(number)
            except Exception as exc:
                LOGGER.warning("block_process_failed block=%s error=%s", number, exc)
