"""Resting orders and the price-time priority queue that holds them."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, ClassVar, Optional

from tradematch.trade_types import OrderSide, OrderType

_ZERO = Decimal(0)


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(eq=False)
class Order:
    """An order as seen by the matching engine.

    ``amount`` only matters for market orders; limit orders leave it at zero.
    ``index`` is the order's slot in the queue it sits in, or -1 when it sits
    in none.
    """

    SIDE: ClassVar[OrderSide]

    unique_id: str
    price: Decimal
    quantity: Decimal
    create_time: int
    order_type: OrderType = OrderType.LIMIT
    amount: Decimal = _ZERO
    index: int = -1

    def __post_init__(self) -> None:
        self.price = _to_decimal(self.price)
        self.quantity = _to_decimal(self.quantity)
        self.amount = _to_decimal(self.amount)
        self.order_type = OrderType(self.order_type)

    def side(self) -> OrderSide:
        """The book side this order belongs to."""
        return self.SIDE

    def precedes(self, other: "Order") -> bool:
        """Whether this order comes before ``other``: best price first, then oldest."""
        if self.price == other.price:
            return self.create_time < other.create_time
        if self.side() is OrderSide.SELL:
            return self.price < other.price
        return self.price > other.price


@dataclass(eq=False)
class AskItem(Order):
    """A sell order; the lowest price is matched first."""

    SIDE: ClassVar[OrderSide] = OrderSide.SELL


@dataclass(eq=False)
class BidItem(Order):
    """A buy order; the highest price is matched first."""

    SIDE: ClassVar[OrderSide] = OrderSide.BUY


def ask_limit_item(unique_id: str, price: Any, quantity: Any, create_time: int) -> AskItem:
    """A limit sell order."""
    return AskItem(unique_id, price, quantity, create_time, OrderType.LIMIT, _ZERO)


def ask_market_qty_item(unique_id: str, quantity: Any, create_time: int) -> AskItem:
    """A market sell order for a fixed quantity."""
    return AskItem(unique_id, _ZERO, quantity, create_time, OrderType.MARKET_QUANTITY, _ZERO)


def ask_market_amount_item(
    unique_id: str, amount: Any, max_hold_qty: Any, create_time: int
) -> AskItem:
    """A market sell order for a target amount, capped by the quantity held."""
    return AskItem(unique_id, _ZERO, max_hold_qty, create_time, OrderType.MARKET_AMOUNT, amount)


def bid_limit_item(unique_id: str, price: Any, quantity: Any, create_time: int) -> BidItem:
    """A limit buy order."""
    return BidItem(unique_id, price, quantity, create_time, OrderType.LIMIT, _ZERO)


def bid_market_qty_item(
    unique_id: str, quantity: Any, max_amount: Any, create_time: int
) -> BidItem:
    """A market buy order for a fixed quantity, capped by the funds available."""
    return BidItem(unique_id, _ZERO, quantity, create_time, OrderType.MARKET_QUANTITY, max_amount)


def bid_market_amount_item(unique_id: str, amount: Any, create_time: int) -> BidItem:
    """A market buy order that spends up to ``amount``."""
    return BidItem(unique_id, _ZERO, _ZERO, create_time, OrderType.MARKET_AMOUNT, amount)


class OrderQueue:
    """A binary heap of orders keyed by unique id, best order on top."""

    def __init__(
        self,
        on_update: Optional[Callable[[Order], None]] = None,
        on_remove: Optional[Callable[[Order], None]] = None,
    ) -> None:
        self._heap: list[Order] = []
        self._by_id: dict[str, Order] = {}
        self.lock = threading.RLock()
        self.on_update = on_update
        self.on_remove = on_remove

    def __len__(self) -> int:
        return len(self._heap)

    def __contains__(self, unique_id: object) -> bool:
        return unique_id in self._by_id

    def push(self, item: Order) -> bool:
        """Add an order; return True, and change nothing, if its id is already queued."""
        with self.lock:
            if item.unique_id in self._by_id:
                return True
            item.index = len(self._heap)
            self._heap.append(item)
            self._up(item.index)
            self._by_id[item.unique_id] = item
        if self.on_update is not None:
            self.on_update(item)
        return False

    def get(self, index: int) -> Optional[Order]:
        """The order in heap slot ``index``, or None past the end."""
        if index < 0 or index >= len(self._heap):
            return None
        return self._heap[index]

    def top(self) -> Optional[Order]:
        """The best order, or None when the queue is empty."""
        return self.get(0)

    def remove(self, unique_id: str) -> Optional[Order]:
        """Take the order with ``unique_id`` out of the queue and return it."""
        with self.lock:
            found = self._by_id.pop(unique_id, None)
            if found is None:
                return None
            i = found.index
            last = len(self._heap) - 1
            if i != last:
                self._swap(i, last)
                if not self._down(i, last):
                    self._up(i)
            item = self._heap.pop()
            item.index = -1
        if self.on_remove is not None:
            self.on_remove(item)
        return item

    def set_quantity(self, item: Order, quantity: Any) -> Order:
        """Change an order's remaining quantity and report the update."""
        item.quantity = _to_decimal(quantity)
        if self.on_update is not None:
            self.on_update(item)
        return item

    def items(self) -> list[Order]:
        """The queued orders in heap order; only the first is guaranteed best."""
        with self.lock:
            return list(self._heap)

    def clean(self) -> None:
        """Drop every order."""
        with self.lock:
            self._heap = []
            self._by_id = {}

    def _less(self, i: int, j: int) -> bool:
        return self._heap[i].precedes(self._heap[j])

    def _swap(self, i: int, j: int) -> None:
        heap = self._heap
        heap[i], heap[j] = heap[j], heap[i]
        heap[i].index = i
        heap[j].index = j

    def _up(self, j: int) -> None:
        while j > 0:
            parent = (j - 1) // 2
            if not self._less(j, parent):
                break
            self._swap(parent, j)
            j = parent

    def _down(self, start: int, n: int) -> bool:
        i = start
        while True:
            left = 2 * i + 1
            if left >= n:
                break
            child = left
            right = left + 1
            if right < n and self._less(right, left):
                child = right
            if not self._less(child, i):
                break
            self._swap(i, child)
            i = child
        return i > start