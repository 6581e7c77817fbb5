from __future__ import annotations

import logging
import os
import time
from typing import Any

from eth_account import Account
from py_clob_client.client import ClobClient as PyClobClient
from py_clob_client.clob_types import MarketOrderArgs, OrderType

from copytrade_bot.config import BotConfig
from copytrade_bot.models import OrderResult, Side, parse_float

LOGGER = logging.getLogger("copytrade_bot")


class BaseExecutor:
    """Submits one fill-or-kill market order at a known book level.

    ``amount`` is USDC for BUY and shares for SELL/MERGE.
    """

    mode = "base"

    def preflight(self) -> None:
        return None

    def submit(self, asset: str, side: Side, amount: float, price: float) -> OrderResult:
        raise NotImplementedError


class PaperExecutor(BaseExecutor):
    mode = "paper"

    def submit(self, asset: str, side: Side, amount: float, price: float) -> OrderResult:
        if amount <= 0 or price <= 0:
            return OrderResult(success=False, amount=amount, price=price, shares=0.0, error="nothing to fill")
        if side == Side.BUY:
            usdc = amount
            shares = amount / price
        else:
            shares = amount
            usdc = amount * price
        return OrderResult(
            success=True,
            amount=usdc,
            price=price,
            shares=shares,
            raw={"simulated": True, "asset": asset},
        )


class LiveExecutor(BaseExecutor):
    mode = "live"

    def __init__(self, config: BotConfig) -> None:
        self.config = config
        self.client: Any = None
        self._signer_address = ""
        self._funder_address = ""
        self._signature_type = -1

    @staticmethod
    def _api_creds_from_env() -> dict[str, str] | None:
        key = (os.getenv("POLY_API_KEY") or os.getenv("CLOB_API_KEY") or "").strip()
        secret = (os.getenv("POLY_API_SECRET") or os.getenv("CLOB_API_SECRET") or "").strip()
        passphrase = (os.getenv("POLY_API_PASSPHRASE") or os.getenv("CLOB_API_PASSPHRASE") or "").strip()
        if key and secret and passphrase:
            return {"key": key, "secret": secret, "passphrase": passphrase}
        return None

    @staticmethod
    def _exception_payload(exc: Exception) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": exc.__class__.__name__, "error": str(exc)}
        for name in ("status_code", "error_msg"):
            if hasattr(exc, name):
                payload[name] = getattr(exc, name)
        return payload

    @staticmethod
    def _derive_api_creds_with_retry(client: Any, attempts: int = 4) -> Any:
        last_exc: Exception | None = None
        for attempt in range(max(1, attempts)):
            try:
                return client.create_or_derive_api_creds()
            except Exception as exc:
                last_exc = exc
                if attempt + 1 < attempts:
                    time.sleep(0.4 * (attempt + 1))
        if last_exc is not None:
            raise last_exc
        return None

    def _infer_signature_type(self, signer_address: str, funder_address: str) -> int:
        if self.config.poly_signature_type is not None:
            return int(self.config.poly_signature_type)
        if funder_address.strip().lower() != signer_address.strip().lower():
            # Proxy wallet funded by the signing key.
            return 2
        return 0

    def preflight(self) -> None:
        if self.client is not None:
            return
        if not self.config.poly_private_key:
            raise RuntimeError("Missing PRIVATE_KEY for live mode")

        signer_address = Account.from_key(self.config.poly_private_key).address
        funder_address = self.config.bot_address.strip() or signer_address
        signature_type = self._infer_signature_type(signer_address, funder_address)
        client = PyClobClient(
            host=self.config.clob_url,
            key=self.config.poly_private_key,
            chain_id=self.config.poly_chain_id,
            signature_type=signature_type,
            funder=funder_address,
        )
        try:
            creds = self._derive_api_creds_with_retry(client)
        except Exception as exc:
            creds = self._api_creds_from_env()
            if creds is None:
                raise RuntimeError(
                    "Unable to derive Polymarket API credentials. "
                    f"signer={signer_address} funder={funder_address} signature_type={signature_type} "
                    f"error={self._exception_payload(exc)}"
                ) from exc
            LOGGER.warning("Using CLOB API creds from environment fallback after derive failure")
        client.set_api_creds(creds)

        self.client = client
        self._signer_address = signer_address
        self._funder_address = funder_address
        self._signature_type = signature_type
        LOGGER.info(
            "live_auth signer=%s funder=%s signature_type=%s",
            signer_address,
            funder_address,
            signature_type,
        )

    def submit(self, asset: str, side: Side, amount: float, price: float) -> OrderResult:
        self.preflight()
        clob_side = "BUY" if side == Side.BUY else "SELL"
        try:
            order_args = MarketOrderArgs(token_id=asset, amount=float(amount), side=clob_side, price=float(price))
            signed_order = self.client.create_market_order(order_args)
            response = self.client.post_order(signed_order, OrderType.FOK)
        except Exception as exc:
            payload = self._exception_payload(exc)
            return OrderResult(
                success=False,
                amount=amount,
                price=price,
                shares=0.0,
                error=str(payload.get("error_msg") or payload["error"]),
                raw=payload,
            )

        payload = response if isinstance(response, dict) else {"response": str(response)}
        if not payload.get("success"):
            return OrderResult(
                success=False,
                amount=amount,
                price=price,
                shares=0.0,
                error=str(payload.get("errorMsg") or payload.get("error") or "order rejected"),
                raw=payload,
            )
        making = parse_float(payload.get("makingAmount"))
        taking = parse_float(payload.get("takingAmount"))
        if side == Side.BUY:
            usdc = making or amount
            shares = taking or (amount / price if price > 0 else 0.0)
        else:
            shares = making or amount
            usdc = taking or amount * price
        return OrderResult(success=True, amount=usdc, price=price, shares=shares, raw=payload)
