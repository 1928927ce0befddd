"""One-level percentage grid: buy on drops, sell fills at a profit, rebase on rises.

The controller keeps a single floating reference price (``base_price``). A drop
of ``percentage_drop`` percent below it places a limit buy slightly under the
market and moves the reference to the current price; a rise of
``percentage_rise`` percent moves the reference without trading. Every tick
also sweeps the tracked buys and answers each fill with a limit sell at
``target_profit_ratio`` above the buy price.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests

from .ledger import OrderLedger, TrackedOrder
from .order_sizing import SymbolFilters, to_decimal

STATE_INITIALIZING = "INITIALIZING"
STATE_RUNNING = "RUNNING"
STATE_STOPPED = "STOPPED"

SKIP_BELOW_MIN_NOTIONAL = "BELOW_MIN_NOTIONAL"

# (message, kind) -> None
Notifier = Callable[[str, str], None]


class StartupError(RuntimeError):
    """Raised when a session cannot fetch the data it needs to start trading."""


_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def as_bool(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"Expected a boolean, got {value!r}")


@dataclass
class GridConfig:
    percentage_drop: Decimal = Decimal("0.6")
    percentage_rise: Decimal = Decimal("1.2")
    investment_amount: Decimal = Decimal("2")
    entry_discount: Decimal = Decimal("0.01")
    target_profit_ratio: Decimal = Decimal("0.03")
    poll_interval_ms: int = 120_000
    no_buys: bool = False

    def __post_init__(self) -> None:
        for name in ("percentage_drop", "percentage_rise", "investment_amount",
                     "entry_discount", "target_profit_ratio"):
            setattr(self, name, to_decimal(getattr(self, name)))
        self.poll_interval_ms = int(self.poll_interval_ms)
        self.no_buys = as_bool(self.no_buys)
        if self.percentage_drop <= 0 or self.percentage_rise <= 0:
            raise ValueError("percentage_drop and percentage_rise must be positive")
        if self.investment_amount <= 0:
            raise ValueError("investment_amount must be positive")
        if not (0 <= self.entry_discount < 1):
            raise ValueError("entry_discount must be in [0, 1)")
        if self.target_profit_ratio <= 0:
            raise ValueError("target_profit_ratio must be positive")
        if self.poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms must be positive")

    @property
    def poll_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "GridConfig":
        defaults = cls()
        poll_ms = raw.get("poll_interval_ms")
        if poll_ms is None and raw.get("poll_seconds") is not None:
            poll_ms = float(raw["poll_seconds"]) * 1000
        return cls(
            percentage_drop=raw.get("percentage_drop", defaults.percentage_drop),
            percentage_rise=raw.get("percentage_rise", defaults.percentage_rise),
            investment_amount=raw.get("investment_amount", defaults.investment_amount),
            entry_discount=raw.get("entry_discount", defaults.entry_discount),
            target_profit_ratio=raw.get("target_profit_ratio", defaults.target_profit_ratio),
            poll_interval_ms=int(poll_ms if poll_ms is not None else defaults.poll_interval_ms),
            no_buys=raw.get("no_buys", defaults.no_buys),
        )

    def as_dict(self) -> Dict[str, object]:
        return {
            "percentage_drop": str(self.percentage_drop),
            "percentage_rise": str(self.percentage_rise),
            "investment_amount": str(self.investment_amount),
            "entry_discount": str(self.entry_discount),
            "target_profit_ratio": str(self.target_profit_ratio),
            "poll_interval_ms": self.poll_interval_ms,
            "no_buys": self.no_buys,
        }


@dataclass
class TickResult:
    price: Decimal
    drop_pct: Decimal
    rise_pct: Decimal
    filled: List[TrackedOrder] = field(default_factory=list)
    sell_order_ids: List[Any] = field(default_factory=list)
    buy: Optional[TrackedOrder] = None
    skip_reason: Optional[str] = None
    rebased: bool = False


def _fmt(value: Decimal) -> str:
    return f"{value:f}"


class GridController:
    """Polling state machine for one (user, symbol) session.

    ``client`` must provide ``get_ticker_price``, ``get_symbol_filters``,
    ``get_open_orders``, ``get_order_status`` and ``limit_order`` the way
    :class:`gridbot.binance_client.BinanceClient` does.
    """

    def __init__(self, client, symbol: str, config: GridConfig, notify: Optional[Notifier] = None):
        self.client = client
        self.symbol = symbol.upper()
        self.config = config
        self.ledger = OrderLedger()
        self.filters: Optional[SymbolFilters] = None
        self.base_price: Optional[Decimal] = None
        self.state = STATE_INITIALIZING
        self.ticks = 0
        self._notify_sink = notify

    def _notify(self, message: str, kind: str = "info", level: int = logging.INFO) -> None:
        logging.log(level, "[%s] %s", self.symbol, message)
        if self._notify_sink is not None:
            try:
                self._notify_sink(message, kind)
            except Exception:  # pylint: disable=broad-except
                logging.warning("Notification sink failed for %s", self.symbol, exc_info=True)

    def _fetch_price(self) -> Decimal:
        price = to_decimal(self.client.get_ticker_price(self.symbol))
        if price <= 0:
            raise ValueError(f"Invalid price {price} for {self.symbol}")
        return price

    def _reconcile(self, open_orders) -> int:
        """Track the exchange's open buys; returns how many non-buy orders were ignored."""

        skipped = 0
        for raw in open_orders:
            side = str(raw.get("side") or "BUY").upper()
            if side != "BUY":
                skipped += 1
                continue
            order = TrackedOrder(
                order_id=raw["orderId"],
                quantity=to_decimal(raw["quantity"]),
                price=to_decimal(raw["price"]),
            )
            if order.order_id not in self.ledger:
                self.ledger.add(order)
        return skipped

    def initialize(self) -> None:
        """Fetch filters, reconcile open buys and set the reference price."""

        if self.state != STATE_INITIALIZING:
            raise RuntimeError(f"Cannot initialize {self.symbol} from state {self.state}")
        try:
            filters = self.client.get_symbol_filters(self.symbol)
            skipped = self._reconcile(self.client.get_open_orders(self.symbol))
            base_price = self._fetch_price()
        except Exception as exc:
            self._notify(f"Error starting GridBot: {exc}", kind="error", level=logging.ERROR)
            raise StartupError(f"Unable to start grid for {self.symbol}: {exc}") from exc

        self.filters = filters
        self.base_price = base_price
        self.state = STATE_RUNNING
        self._notify(f"GridBot started for {self.symbol}. Base price set to ${_fmt(base_price)}", kind="status")
        self._notify(
            f"Fetched {len(self.ledger)} active orders."
            + (f" Ignored {skipped} open sell orders." if skipped else ""),
            kind="status",
        )
        if self.config.no_buys:
            self._notify("NoBuys mode enabled: Bot will not place new buy orders.", kind="status")

    def stop(self) -> None:
        if self.state != STATE_STOPPED:
            self.state = STATE_STOPPED
            self._notify(f"GridBot stopped for {self.symbol}.", kind="status")

    def _sweep_fills(self, result: TickResult) -> None:
        for order in self.ledger.snapshot():
            try:
                status = self.client.get_order_status(self.symbol, order.order_id)
                if str(status.get("status", "")).upper() != "FILLED":
                    continue
                self._notify(
                    f"[FILLED] Buy order {order.order_id} filled for {_fmt(order.quantity)} "
                    f"at price {_fmt(order.price)}.",
                    kind="fill",
                )
                sell_price = self.filters.price(order.price * (1 + self.config.target_profit_ratio))
                response = self.client.limit_order(self.symbol, "SELL", order.quantity, sell_price)
            except Exception as exc:  # pylint: disable=broad-except
                self._notify(
                    f"Error checking order {order.order_id}: {exc}", kind="error", level=logging.ERROR
                )
                continue
            self.ledger.remove(order.order_id)
            sell_id = (response or {}).get("orderId")
            result.filled.append(order)
            result.sell_order_ids.append(sell_id)
            self._notify(
                f"[SELL ORDER PLACED] Order ID: {sell_id}, Quantity: {_fmt(order.quantity)}, "
                f"Sell Price: ${_fmt(sell_price)}",
                kind="order",
            )

    def _enter(self, price: Decimal, drop_pct: Decimal, result: TickResult) -> None:
        filters = self.filters
        self._notify(
            f"[ALERT] Price dropped by {drop_pct:.2f}% to ${_fmt(price)}. Placing buy order...",
            kind="alert",
        )
        qty = filters.quantity(self.config.investment_amount / price)
        buy_price = filters.price(price * (1 - self.config.entry_discount))
        if not filters.meets_notional(qty, buy_price):
            result.skip_reason = SKIP_BELOW_MIN_NOTIONAL
            self._notify(
                f"Order notional {_fmt(qty * buy_price)} does not meet the minimum requirement "
                f"({_fmt(filters.min_notional)}). Skipping order.",
                kind="skip",
                level=logging.WARNING,
            )
            return
        response = self.client.limit_order(self.symbol, "BUY", qty, buy_price)
        order = TrackedOrder(order_id=response["orderId"], quantity=qty, price=buy_price)
        self.ledger.add(order)
        self.base_price = price
        result.buy = order
        self._notify(
            f"Buy order placed: {_fmt(qty)} {self.symbol} at ${_fmt(buy_price)}. Order ID: {order.order_id}",
            kind="order",
        )

    def tick(self) -> Optional[TickResult]:
        """Run one polling step. Exchange errors propagate to the caller."""

        if self.state != STATE_RUNNING:
            return None
        self.ticks += 1
        price = self._fetch_price()
        self._notify(f"Current price of {self.symbol}: ${_fmt(price)}", kind="price")

        base = self.base_price
        drop_pct = (base - price) / base * 100
        rise_pct = (price - base) / base * 100
        result = TickResult(price=price, drop_pct=drop_pct, rise_pct=rise_pct)

        self._sweep_fills(result)

        if not self.config.no_buys and drop_pct >= self.config.percentage_drop:
            self._enter(price, drop_pct, result)
        elif rise_pct >= self.config.percentage_rise:
            self._notify(
                f"Price rose by {rise_pct:.2f}% to ${_fmt(price)}. Updating base price...",
                kind="rebase",
            )
            self.base_price = price
            result.rebased = True
        return result

    def run_tick(self) -> Optional[TickResult]:
        """Run :meth:`tick`, reporting failures instead of raising them."""

        try:
            return self.tick()
        except requests.RequestException as exc:
            self._notify(f"Network error during grid trading: {exc}", kind="error", level=logging.ERROR)
        except Exception as exc:  # pylint: disable=broad-except
            logging.exception("Unexpected error in %s tick", self.symbol)
            self._notify(f"Error during grid trading: {exc}", kind="error", level=logging.DEBUG)
        return None

    def status(self) -> Dict[str, object]:
        return {
            "symbol": self.symbol,
            "state": self.state,
            "base_price": _fmt(self.base_price) if self.base_price is not None else None,
            "ticks": self.ticks,
            "tracked_orders": [o.as_dict() for o in self.ledger.snapshot()],
            "config": self.config.as_dict(),
        }
