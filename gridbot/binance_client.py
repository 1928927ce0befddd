import time
import hmac
import hashlib
import logging
from dataclasses import replace
from decimal import ROUND_CEILING, ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import requests

from .order_sizing import Number, SymbolFilters, to_decimal

DEFAULT_BASE_URL = "https://api.binance.us"


class BinanceClient:
    """Minimal REST client for Binance spot limit-order trading.

    One instance per trading session: requests are signed with the session's
    own key and secret.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str = DEFAULT_BASE_URL,
        *,
        quantity_precision: int = 6,
        price_precision: int = 4,
        recv_window: int = 5000,
        timeout: float = 30,
    ):
        if not api_key or not api_secret:
            raise ValueError("API key and secret must be provided for live trading")
        self.api_key = api_key
        self.api_secret = api_secret.encode()
        self.base_url = base_url.rstrip("/")
        self.quantity_precision = quantity_precision
        self.price_precision = price_precision
        self.recv_window = recv_window
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({"X-MBX-APIKEY": api_key})
        self._symbol_cache: Dict[str, Dict[str, Any]] = {}

    def __repr__(self) -> str:
        return f"BinanceClient(base_url={self.base_url!r})"

    def _sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        payload = urlencode(params, doseq=True)
        signature = hmac.new(self.api_secret, payload.encode(), hashlib.sha256).hexdigest()
        params["signature"] = signature
        return params

    def _request(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        params = params.copy() if params else {}
        if signed:
            params.setdefault("recvWindow", self.recv_window)
            params.setdefault("timestamp", int(time.time() * 1000))
            params = self._sign(params)
        url = f"{self.base_url}{path}"
        resp = self._session.request(method, url, params=params if method == "GET" else None,
                                     data=params if method != "GET" else None, timeout=self.timeout)
        if resp.status_code >= 400:
            logging.error("Binance error %s: %s", resp.status_code, resp.text)
        resp.raise_for_status()
        return resp.json()

    def get_exchange_info(self) -> Dict[str, Any]:
        return self._request("GET", "/api/v3/exchangeInfo")

    def get_symbol_info(self, symbol: str) -> Dict[str, Any]:
        symbol = symbol.upper()
        if symbol not in self._symbol_cache:
            info = self.get_exchange_info()
            symbols = {s["symbol"]: s for s in info.get("symbols", [])}
            if symbol not in symbols:
                raise ValueError(f"Symbol {symbol} not found in exchange info")
            self._symbol_cache[symbol] = symbols[symbol]
        return self._symbol_cache[symbol]

    @staticmethod
    def _coarsen(step: Decimal, minimum: Decimal, precision: int) -> Tuple[Decimal, Decimal]:
        quantum = Decimal(1).scaleb(-precision)
        if step >= quantum:
            return step, minimum
        return quantum, (minimum / quantum).to_integral_value(rounding=ROUND_CEILING) * quantum

    def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        """Exchange filters, coarsened to the decimals this client sends.

        ``limit_order`` truncates quantity and price to ``quantity_precision`` /
        ``price_precision``, so sizing and the notional check must use steps
        no finer than that or the order on the wire can fall below minNotional.
        """
        filters = SymbolFilters.from_symbol_info(self.get_symbol_info(symbol))
        step, min_qty = self._coarsen(filters.step_size, filters.min_qty, self.quantity_precision)
        tick, min_price = self._coarsen(filters.tick_size, filters.min_price, self.price_precision)
        return replace(filters, step_size=step, min_qty=min_qty, tick_size=tick, min_price=min_price)

    def get_ticker_price(self, symbol: str) -> Decimal:
        data = self._request("GET", "/api/v3/ticker/price", params={"symbol": symbol.upper()})
        try:
            return to_decimal(data.get("price"))
        except (TypeError, ValueError, InvalidOperation):
            return Decimal("0")

    @staticmethod
    def _format_number(value: Number, precision: int = 8) -> str:
        quantum = Decimal(1).scaleb(-precision)
        fixed = to_decimal(value).quantize(quantum, rounding=ROUND_DOWN)
        return f"{fixed:f}".rstrip("0").rstrip(".") or "0"

    def get_open_orders(self, symbol: str) -> List[Dict[str, Any]]:
        """Return open orders for ``symbol`` as ``{orderId, side, price, quantity}``."""

        data = self._request("GET", "/api/v3/openOrders", params={"symbol": symbol.upper()}, signed=True)
        orders = []
        for raw in data or []:
            orders.append({
                "orderId": raw["orderId"],
                "side": str(raw.get("side", "")).upper(),
                "price": to_decimal(raw["price"]),
                "quantity": to_decimal(raw["origQty"]),
            })
        logging.info("Fetched %d open orders for %s", len(orders), symbol.upper())
        return orders

    def get_order_status(self, symbol: str, order_id: Any) -> Dict[str, Any]:
        params = {"symbol": symbol.upper(), "orderId": order_id}
        return self._request("GET", "/api/v3/order", params=params, signed=True)

    def limit_order(self, symbol: str, side: str, quantity: Number, price: Number, time_in_force: str = "GTC") -> Dict[str, Any]:
        qty_str = self._format_number(quantity, self.quantity_precision)
        if to_decimal(qty_str) <= 0:
            raise ValueError("Quantity rounds to zero at the configured precision")
        params = {
            "symbol": symbol.upper(),
            "side": side.upper(),
            "type": "LIMIT",
            "timeInForce": time_in_force,
            "quantity": qty_str,
            "price": self._format_number(price, self.price_precision),
        }
        logging.info("Submitting LIMIT %s for %s qty %s @ %s", side.upper(), symbol, params["quantity"], params["price"])
        return self._request("POST", "/api/v3/order", params=params, signed=True)
