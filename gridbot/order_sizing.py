"""Exchange filter helpers for quantizing order quantity and price."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Union

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Convert ``value`` to ``Decimal`` without picking up binary float noise."""

    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(str(value))


def _floor_to_step(raw: Number, step: Number) -> Decimal:
    raw = to_decimal(raw)
    step = to_decimal(step)
    if step <= 0:
        raise ValueError("step must be positive")
    steps = (raw / step).to_integral_value(rounding=ROUND_FLOOR)
    return (steps * step).normalize()


def quantize_quantity(raw: Number, step_size: Number, min_qty: Number) -> Decimal:
    """Floor ``raw`` to a multiple of ``step_size``, never below ``min_qty``.

    Rounding is always down so the notional of the quantized order never
    exceeds what the caller asked for.
    """

    qty = _floor_to_step(raw, step_size)
    min_qty = to_decimal(min_qty)
    return qty if qty >= min_qty else min_qty


def quantize_price(raw: Number, tick_size: Number, min_price: Number) -> Decimal:
    """Floor ``raw`` to a multiple of ``tick_size``, never below ``min_price``."""

    price = _floor_to_step(raw, tick_size)
    min_price = to_decimal(min_price)
    return price if price >= min_price else min_price


def meets_notional(qty: Number, price: Number, min_notional: Number) -> bool:
    return to_decimal(qty) * to_decimal(price) >= to_decimal(min_notional)


def _find_filter(info: Mapping[str, Any], *filter_types: str) -> Optional[Dict[str, Any]]:
    for f in info.get("filters", []):
        if f.get("filterType") in filter_types:
            return f
    return None


@dataclass(frozen=True)
class SymbolFilters:
    min_qty: Decimal
    step_size: Decimal
    min_price: Decimal
    tick_size: Decimal
    min_notional: Decimal

    def __post_init__(self) -> None:
        if self.step_size <= 0:
            raise ValueError("stepSize must be positive")
        if self.tick_size <= 0:
            raise ValueError("tickSize must be positive")

    @classmethod
    def from_symbol_info(cls, info: Mapping[str, Any]) -> "SymbolFilters":
        """Build filters from a ``symbols[]`` entry of ``/api/v3/exchangeInfo``."""

        symbol = info.get("symbol", "?")
        lot = _find_filter(info, "LOT_SIZE")
        price_filter = _find_filter(info, "PRICE_FILTER")
        if lot is None or price_filter is None:
            raise ValueError(f"Symbol {symbol} is missing LOT_SIZE or PRICE_FILTER")
        notional = _find_filter(info, "MIN_NOTIONAL", "NOTIONAL")
        min_notional = Decimal("0")
        if notional is not None:
            raw = notional.get("minNotional") or notional.get("notional")
            if raw is not None:
                min_notional = to_decimal(raw)
        try:
            return cls(
                min_qty=to_decimal(lot["minQty"]),
                step_size=to_decimal(lot["stepSize"]),
                min_price=to_decimal(price_filter["minPrice"]),
                tick_size=to_decimal(price_filter["tickSize"]),
                min_notional=min_notional,
            )
        except (KeyError, InvalidOperation) as exc:
            raise ValueError(f"Symbol {symbol} has an unusable filter value: {exc!r}") from exc

    def quantity(self, raw: Number) -> Decimal:
        return quantize_quantity(raw, self.step_size, self.min_qty)

    def price(self, raw: Number) -> Decimal:
        return quantize_price(raw, self.tick_size, self.min_price)

    def meets_notional(self, qty: Number, price: Number) -> bool:
        return meets_notional(qty, price, self.min_notional)
