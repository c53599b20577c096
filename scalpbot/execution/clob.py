from __future__ import annotations

import asyncio
import math
from typing import Any

from py_clob_client.client import ClobClient
from py_clob_client.clob_types import ApiCreds, AssetType, BalanceAllowanceParams, OrderArgs, OrderType

from scalpbot.config import Settings
from scalpbot.execution.manager import FillResult, OrderStatus
from scalpbot.infra import ErrorTracker, get_logger

log = get_logger("scalpbot.clob")

MIN_SHARES = 1.0
USDC_SCALE = 1e6
FILLED_STATUSES = {"matched", "filled"}


def buy_shares(stake: float, price: float) -> float:
    return math.ceil(stake / price * 100) / 100


def sell_shares(size: float) -> float:
    return math.floor(size * 100) / 100


def build_client(settings: Settings) -> ClobClient:
    client = ClobClient(
        host=settings.clob_host,
        key=settings.private_key,
        chain_id=settings.chain_id,
        signature_type=settings.signature_type,
        funder=settings.funder or None,
    )
    if settings.api_key and settings.api_secret and settings.api_passphrase:
        client.set_api_creds(ApiCreds(settings.api_key, settings.api_secret, settings.api_passphrase))
    else:
        client.set_api_creds(client.create_or_derive_api_creds())
    return client


class ClobExecution:
    """Live order routing through the CLOB client. Blocking client calls run in the default executor."""

    def __init__(self, client: ClobClient, errors: ErrorTracker | None = None):
        self.clob = client
        self.errors = errors or ErrorTracker()

    async def _run(self, fn):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    async def _place(self, token_id: str, price: float, shares: float, side: str, order_type: Any) -> FillResult:
        args = OrderArgs(token_id=token_id, price=round(price, 2), size=round(shares, 2), side=side)
        try:
            signed = await self._run(lambda: self.clob.create_order(args))
            resp = await self._run(lambda: self.clob.post_order(signed, order_type))
        except Exception as exc:
            self.errors.tick(f"clob_{side.lower()}", log.warning, exc)
            return FillResult(False, error=str(exc))
        if not isinstance(resp, dict) or not (resp.get("success", True)):
            return FillResult(False, error=str(resp))
        order_id = resp.get("orderID") or resp.get("id", "")
        if not order_id:
            return FillResult(False, error=resp.get("errorMsg") or "no_order_id")
        log.info("[CLOB] %s %.2f @ %.3f id=%s status=%s", side, shares, price, order_id, resp.get("status", ""))
        return FillResult(True, order_id=order_id, exec_price=round(price, 2), shares=shares)

    async def buy(self, token_id: str, stake: float, limit_price: float) -> FillResult:
        shares = buy_shares(stake, limit_price)
        if shares < MIN_SHARES:
            return FillResult(False, error="below_min_shares")
        return await self._place(token_id, limit_price, shares, "BUY", OrderType.GTC)

    async def sell(self, token_id: str, shares: float, limit_price: float, urgent: bool) -> FillResult:
        qty = sell_shares(shares)
        if qty < MIN_SHARES:
            return FillResult(False, error="below_min_shares")
        order_type = OrderType.FOK if urgent else OrderType.GTC
        return await self._place(token_id, limit_price, qty, "SELL", order_type)

    async def verify_filled(self, order_id: str) -> OrderStatus:
        try:
            order = await self._run(lambda: self.clob.get_order(order_id))
        except Exception as exc:
            self.errors.tick("clob_get_order", log.warning, exc)
            return OrderStatus(False)
        if not isinstance(order, dict):
            return OrderStatus(False)
        status = str(order.get("status", "")).lower()
        matched = float(order.get("size_matched") or order.get("filled_size") or 0)
        return OrderStatus(status in FILLED_STATUSES or matched > 0, matched)

    async def cancel(self, order_id: str) -> bool:
        try:
            await self._run(lambda: self.clob.cancel(order_id))
        except Exception as exc:
            self.errors.tick("clob_cancel", log.warning, exc)
            return False
        return True

    async def balance(self) -> float | None:
        try:
            resp = await self._run(
                lambda: self.clob.get_balance_allowance(BalanceAllowanceParams(asset_type=AssetType.COLLATERAL))
            )
        except Exception as exc:
            self.errors.tick("clob_balance", log.warning, exc)
            return None
        return float(resp.get("balance") or 0) / USDC_SCALE

    async def position_shares(self, token_id: str) -> float | None:
        try:
            resp = await self._run(
                lambda: self.clob.get_balance_allowance(
                    BalanceAllowanceParams(asset_type=AssetType.CONDITIONAL, token_id=token_id)
                )
            )
        except Exception as exc:
            self.errors.tick("clob_shares", log.warning, exc)
            return None
        return float(resp.get("balance") or 0) / USDC_SCALE
