"""In-memory book of outstanding buy orders awaiting a fill."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from threading import Lock
from typing import Dict, Iterator, List, Optional, Tuple, Union

OrderId = Union[int, str]


@dataclass(frozen=True)
class TrackedOrder:
    order_id: OrderId
    quantity: Decimal
    price: Decimal
    side: str = "BUY"

    def as_dict(self) -> Dict[str, object]:
        return {
            "order_id": self.order_id,
            "quantity": f"{self.quantity:f}",
            "price": f"{self.price:f}",
            "side": self.side,
        }


class OrderLedger:
    """Ordered set of :class:`TrackedOrder` keyed by exchange order id.

    The polling thread mutates the ledger while status endpoints read it, so
    every access goes through a lock. Iterate over :meth:`snapshot` when the
    loop body may remove entries.
    """

    def __init__(self, orders: Optional[List[TrackedOrder]] = None):
        self._lock = Lock()
        self._orders: List[TrackedOrder] = []
        for order in orders or []:
            self.add(order)

    def add(self, order: TrackedOrder) -> None:
        with self._lock:
            if any(o.order_id == order.order_id for o in self._orders):
                raise ValueError(f"Order {order.order_id} is already tracked")
            self._orders.append(order)

    def remove(self, order_id: OrderId) -> Optional[TrackedOrder]:
        with self._lock:
            for idx, order in enumerate(self._orders):
                if order.order_id == order_id:
                    return self._orders.pop(idx)
        return None

    def get(self, order_id: OrderId) -> Optional[TrackedOrder]:
        with self._lock:
            return next((o for o in self._orders if o.order_id == order_id), None)

    def snapshot(self) -> Tuple[TrackedOrder, ...]:
        with self._lock:
            return tuple(self._orders)

    def __len__(self) -> int:
        with self._lock:
            return len(self._orders)

    def __contains__(self, order_id: object) -> bool:
        return self.get(order_id) is not None  # type: ignore[arg-type]

    def __iter__(self) -> Iterator[TrackedOrder]:
        return iter(self.snapshot())
