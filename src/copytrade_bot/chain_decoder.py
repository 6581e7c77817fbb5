from __future__ import annotations

import logging
import time
from typing import Any, Callable

from eth_abi import decode as abi_decode

from copytrade_bot.models import DecodedTrade, Side

LOGGER = logging.getLogger("copytrade_bot")

# keccak256 of the canonical event signatures.
TRANSFER_SINGLE_TOPIC = "0xc3d58168c5ae7397731d063d5bbf3d657854427343f4c083240f7aacaa2d0f62"
TRANSFER_BATCH_TOPIC = "0x4a39dc06d4c0dbc64b70af90fd698a233a518aa5d07e595d983b8c0526c8f7fb"
ERC20_TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

TOKEN_DECIMALS = 6


def to_hex(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if hasattr(value, "hex") and not isinstance(value, str):
        text = str(value.hex())
        return text.lower() if text.startswith("0x") else "0x" + text.lower()
    text = str(value).strip().lower()
    if text and not text.startswith("0x"):
        return "0x" + text
    return text


def to_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = to_hex(value)
    return bytes.fromhex(text[2:]) if text else b""


def topic_address(topic: Any) -> str:
    text = to_hex(topic)
    if len(text) < 42:
        return ""
    return "0x" + text[-40:]


def read_field(obj: Any, key: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


class ChainDecoder:
    """Turns a transaction receipt into the target's net trade, if it made one.

    Share movements come from ERC-1155 ``TransferSingle``/``TransferBatch`` logs;
    the cash leg comes from USDC ``Transfer`` logs. Matching is done on transfer
    participants, so trades routed through a relayer still decode.
    """

    def __init__(self, usdc_address: str, clock: Callable[[], float] = time.time) -> None:
        self.usdc_address = usdc_address.strip().lower()
        self._clock = clock

    def decode(
        self,
        receipt: Any,
        target_address: str,
        proxy_address: str | None = None,
        *,
        timestamp: int | None = None,
    ) -> DecodedTrade | None:
        watched = {target_address.strip().lower()}
        if proxy_address:
            watched.add(proxy_address.strip().lower())
        watched.discard("")
        if not watched:
            return None

        # token id -> signed share movement (received minus sent), insertion ordered
        net_shares: dict[int, int] = {}
        usdc_total = 0

        for log in read_field(receipt, "logs") or []:
            topics = [to_hex(topic) for topic in (read_field(log, "topics") or [])]
            if not topics:
                continue
            signature = topics[0]
            try:
                if signature == TRANSFER_SINGLE_TOPIC and len(topics) >= 4:
                    token_id, value = abi_decode(["uint256", "uint256"], to_bytes(read_field(log, "data")))
                    self._apply_share_transfer(
                        net_shares, token_id, value, topic_address(topics[2]), topic_address(topics[3]), watched
                    )
                elif signature == TRANSFER_BATCH_TOPIC and len(topics) >= 4:
                    token_ids, values = abi_decode(["uint256[]", "uint256[]"], to_bytes(read_field(log, "data")))
                    sender = topic_address(topics[2])
                    receiver = topic_address(topics[3])
                    for token_id, value in zip(token_ids, values):
                        self._apply_share_transfer(net_shares, token_id, value, sender, receiver, watched)
                elif (
                    signature == ERC20_TRANSFER_TOPIC
                    and len(topics) >= 3
                    and str(read_field(log, "address") or "").lower() == self.usdc_address
                ):
                    (value,) = abi_decode(["uint256"], to_bytes(read_field(log, "data")))
                    if topic_address(topics[1]) in watched or topic_address(topics[2]) in watched:
                        usdc_total += int(value)
            except Exception as exc:
                LOGGER.debug("decoder_skip_log tx=%s error=%s", to_hex(read_field(receipt, "transactionHash")), exc)
                continue

        best_token: int | None = None
        best_net = 0
        for token_id, net in net_shares.items():
            if abs(net) > abs(best_net):
                best_token = token_id
                best_net = net
        if best_token is None or best_net == 0:
            return None

        scale = float(10**TOKEN_DECIMALS)
        size = abs(best_net) / scale
        usdc_size = usdc_total / scale
        price = usdc_size / size if size > 0 else 0.0
        if price < 0.0 or price > 1.0:
            tx_hash = to_hex(read_field(receipt, "transactionHash"))
            LOGGER.warning("decoder_price_out_of_range tx=%s price=%.6f forcing=0", tx_hash, price)
            price = 0.0

        return DecodedTrade(
            transaction_hash=to_hex(read_field(receipt, "transactionHash")),
            side=Side.BUY if best_net > 0 else Side.SELL,
            asset=str(best_token),
            size=size,
            usdc_size=usdc_size,
            price=price,
            timestamp=int(timestamp) if timestamp else int(self._clock()),
        )

    @staticmethod
    def _apply_share_transfer(
        net_shares: dict[int, int],
        token_id: int,
        value: int,
        sender: str,
        receiver: str,
        watched: set[str],
    ) -> None:
        received = receiver in watched
        sent = sender in watched
        if received == sent:
            # Unrelated transfer, or an internal move between the target's own wallets.
            return
        delta = int(value) if received else -int(value)
        net_shares[int(token_id)] = net_shares.get(int(token_id), 0) + delta
