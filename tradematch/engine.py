"""Price-time priority matching engine for one trading pair."""

from __future__ import annotations

import logging
import threading
import time
from decimal import ROUND_DOWN, ROUND_HALF_EVEN, Decimal, localcontext
from typing import Any, Callable, Mapping, Optional, Union

from tradematch.order_queue import Order, OrderQueue
from tradematch.trade_types import (
    OrderSide,
    OrderType,
    RemoveResult,
    RemoveType,
    TradeBy,
    TradeResult,
)

_ZERO = Decimal(0)
_IDLE_SECONDS = 0.1
_DEBUG_PAUSE_SECONDS = 1.0
_BOOK_INTERVAL_SECONDS = 0.05

Level = tuple[str, str]
Event = Union[TradeResult, RemoveResult]


class EnginePausedError(RuntimeError):
    """The engine is not accepting new orders."""


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _truncate(value: Decimal, places: int) -> Decimal:
    """Cut ``value`` down to ``places`` decimals without rounding up."""
    exponent = value.as_tuple().exponent
    if not isinstance(exponent, int) or exponent >= -places:
        return value
    with localcontext() as ctx:
        ctx.prec = 100
        return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN)


def _fixed_bank(value: Decimal, places: int) -> str:
    """Format with exactly ``places`` decimals, rounding half to even."""
    with localcontext() as ctx:
        ctx.prec = 100
        quantum = Decimal(1).scaleb(-places)
        return format(value.quantize(quantum, rounding=ROUND_HALF_EVEN), "f")


def sort_levels(levels: Mapping[str, str], side: OrderSide | str) -> list[Level]:
    """Order price levels best first: ascending for asks, descending for bids."""
    side = OrderSide(side)
    keys = sorted(levels, key=Decimal, reverse=side is not OrderSide.SELL)
    return [(price, levels[price]) for price in keys]


class Engine:
    """Matches asks against bids for a single symbol.

    Limit orders rest in the book and are crossed by ``match_once``; market
    orders are filled against the opposite side as soon as they arrive and
    any unfilled remainder is withdrawn with a system removal notice.
    Trade and removal notices go to the registered callbacks.
    """

    def __init__(
        self,
        symbol: str,
        *,
        price_decimals: int = 2,
        quantity_decimals: int = 4,
        debug: bool = False,
        min_trade_quantity: Any = 0,
        order_book_max_len: int = 50,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.symbol = symbol
        self.price_decimals = price_decimals
        self.quantity_decimals = quantity_decimals
        self.debug = debug
        self.min_trade_quantity = _to_decimal(min_trade_quantity)
        self.order_book_max_len = order_book_max_len
        self.pause_accept_item = False
        self.pause_matching = False
        self.logger = logger or logging.getLogger(__name__)

        self.asks = OrderQueue()
        self.bids = OrderQueue()
        self._books: dict[int, list[Level]] = {id(self.asks): [], id(self.bids): []}

        self._lock = threading.RLock()
        self._dispatch_lock = threading.RLock()
        self._on_trade: Optional[Callable[[TradeResult], None]] = None
        self._on_remove: Optional[Callable[[RemoveResult], None]] = None

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    # lifecycle

    def start(self) -> "Engine":
        """Start the background matching loop and order-book refresher."""
        if self._threads:
            return self
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._matching_loop, name=f"{self.symbol}-matching", daemon=True),
            threading.Thread(target=self._book_loop, name=f"{self.symbol}-book", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        return self

    def stop(self) -> None:
        """Stop the background threads and wait for them to finish."""
        self._stop.set()
        for thread in self._threads:
            thread.join()
        self._threads = []

    def __enter__(self) -> "Engine":
        return self.start()

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    def _matching_loop(self) -> None:
        self.logger.debug("[matching] start...")
        while not self._stop.is_set():
            if self.match_once() is None:
                self._stop.wait(_IDLE_SECONDS)
            elif self.debug:
                self._stop.wait(_DEBUG_PAUSE_SECONDS)

    def _book_loop(self) -> None:
        while not self._stop.wait(_BOOK_INTERVAL_SECONDS):
            self.refresh_order_books()

    # orders

    def add_item(self, item: Order) -> None:
        """Accept an order: rest a limit order, or fill a market order now."""
        with self._lock:
            self.logger.debug("[matching] add_item %s", item)
            if self.pause_accept_item:
                raise EnginePausedError("engine is paused")
            if item.order_type is OrderType.LIMIT:
                queue = self.asks if item.side() is OrderSide.SELL else self.bids
                queue.push(item)
                return
            if item.side() is OrderSide.SELL:
                events = self._market_sell(item)
            else:
                events = self._market_buy(item)
        self._emit(events)

    def remove_item(self, side: OrderSide | str, unique_id: str, remove_type: RemoveType) -> None:
        """Take an order off the book and announce its removal."""
        with self._lock:
            queue = self.asks if OrderSide(side) is OrderSide.SELL else self.bids
            queue.remove(unique_id)
            event = RemoveResult(symbol=self.symbol, unique_id=unique_id, type=RemoveType(remove_type))
        self._emit([event])

    def on_trade_result(self, callback: Optional[Callable[[TradeResult], None]]) -> None:
        """Register the callback that receives every trade."""
        self._on_trade = callback

    def on_remove_result(self, callback: Optional[Callable[[RemoveResult], None]]) -> None:
        """Register the callback that receives every removal notice."""
        self._on_remove = callback

    def clean(self) -> None:
        """Empty both sides of the book; only honoured in debug mode."""
        if not self.debug:
            return
        with self._lock:
            self.asks.clean()
            self.bids.clean()

    def _emit(self, events: list[Event]) -> None:
        with self._dispatch_lock:
            for event in events:
                if isinstance(event, TradeResult):
                    self.logger.debug("[matching] result %s", event)
                    if self._on_trade is not None:
                        self._on_trade(event)
                else:
                    self.logger.debug("[matching] remove %s", event)
                    if self._on_remove is not None:
                        self._on_remove(event)

    def _trade(
        self, ask: Order, bid: Order, price: Decimal, quantity: Decimal, trade_at: int, remainder: str
    ) -> TradeResult:
        trade_by = TradeBy.BUYER if ask.create_time < bid.create_time else TradeBy.SELLER
        return TradeResult(
            symbol=self.symbol,
            ask_order_id=ask.unique_id,
            bid_order_id=bid.unique_id,
            trade_quantity=quantity,
            trade_price=price,
            trade_by=trade_by,
            trade_time=trade_at,
            remainder_market_order_id=remainder,
        )

    def _system_removal(self, item: Order) -> RemoveResult:
        return RemoveResult(symbol=self.symbol, unique_id=item.unique_id, type=RemoveType.BY_SYSTEM)

    # limit orders

    def match_once(self) -> Optional[TradeResult]:
        """Cross the best ask and best bid once; return the trade, if any."""
        with self._lock:
            result = self._match_tops()
        if result is not None:
            self._emit([result])
        return result

    def _match_tops(self) -> Optional[TradeResult]:
        if self.pause_matching or not len(self.asks) or not len(self.bids):
            return None
        ask = self.asks.top()
        bid = self.bids.top()
        try:
            if bid.price < ask.price:
                return None
            quantity = ask.quantity if bid.quantity >= ask.quantity else bid.quantity
            self.asks.set_quantity(ask, ask.quantity - quantity)
            self.bids.set_quantity(bid, bid.quantity - quantity)
            price = bid.price if ask.create_time >= bid.create_time else ask.price
            return self._trade(ask, bid, price, quantity, time.time_ns(), "")
        finally:
            if ask.quantity == 0:
                self.asks.remove(ask.unique_id)
            if bid.quantity == 0:
                self.bids.remove(bid.unique_id)

    # market orders

    def _fill_against(self, queue: OrderQueue, resting: Order, max_quantity: Decimal) -> Decimal:
        """Take up to ``max_quantity`` from a resting order; return what was taken."""
        if resting.quantity <= max_quantity:
            taken = resting.quantity
            queue.remove(resting.unique_id)
        else:
            taken = max_quantity
            queue.set_quantity(resting, resting.quantity - taken)
        return taken

    def _market_buy(self, item: Order) -> list[Event]:
        events: list[Event] = []
        while True:
            trade = self._market_buy_step(item)
            if trade is None:
                events.append(self._system_removal(item))
                return events
            events.append(trade)

    def _market_buy_step(self, item: Order) -> Optional[TradeResult]:
        if not len(self.asks):
            return None
        ask = self.asks.top()
        places = self.quantity_decimals
        minimum = self.min_trade_quantity

        if item.order_type is OrderType.MARKET_QUANTITY:

            def max_qty(amount: Decimal, price: Decimal, need: Decimal) -> Decimal:
                if price <= 0:
                    return _ZERO
                return _truncate(min(amount / price, need), places)

            if ask.price <= 0:
                return None
            max_trade = max_qty(item.amount, ask.price, item.quantity)
            if max_trade < minimum:
                return None
            price = ask.price
            taken = self._fill_against(self.asks, ask, max_trade)
            if taken == 0:
                return None
            item.quantity -= taken
            item.amount -= taken * price
            finished = (
                not len(self.asks)
                or item.quantity == 0
                or max_qty(item.amount, self.asks.top().price, item.quantity) <= minimum
            )
        elif item.order_type is OrderType.MARKET_AMOUNT:
            if ask.price <= 0:
                return None

            def max_qty_for(amount: Decimal, price: Decimal) -> Decimal:
                if price <= 0:
                    return _ZERO
                return _truncate(amount / price, places)

            max_trade = max_qty_for(item.amount, ask.price)
            if max_trade < minimum:
                return None
            price = ask.price
            taken = self._fill_against(self.asks, ask, max_trade)
            if taken == 0:
                return None
            item.amount -= taken * price
            item.quantity += taken
            finished = (
                not len(self.asks)
                or item.quantity == 0
                or max_qty_for(item.amount, self.asks.top().price) <= minimum
            )
        else:
            return None

        remainder = item.unique_id if finished else ""
        return self._trade(ask, item, price, taken, time.time_ns(), remainder)

    def _market_sell(self, item: Order) -> list[Event]:
        events: list[Event] = []
        while True:
            trade = self._market_sell_step(item)
            if trade is None:
                events.append(self._system_removal(item))
                return events
            events.append(trade)

    def _market_sell_step(self, item: Order) -> Optional[TradeResult]:
        if not len(self.bids):
            return None
        bid = self.bids.top()
        places = self.quantity_decimals
        minimum = self.min_trade_quantity

        if item.order_type is OrderType.MARKET_QUANTITY:
            if item.quantity == 0:
                return None
            price = bid.price
            taken = self._fill_against(self.bids, bid, item.quantity)
            item.quantity -= taken
            finished = not len(self.bids) or item.quantity == 0
        elif item.order_type is OrderType.MARKET_AMOUNT:
            if bid.price <= 0:
                return None

            def max_qty(amount: Decimal, price: Decimal, need: Decimal) -> Decimal:
                if price <= 0:
                    return _ZERO
                return _truncate(min(_truncate(amount / price, places), need), places)

            max_trade = max_qty(item.amount, bid.price, item.quantity)
            if max_trade < minimum:
                return None
            price = bid.price
            taken = self._fill_against(self.bids, bid, max_trade)
            if taken == 0:
                return None
            item.amount -= taken * price
            item.quantity -= taken
            finished = (
                not len(self.bids)
                or max_qty(item.amount, self.bids.top().price, item.quantity) <= minimum
            )
        else:
            return None

        remainder = item.unique_id if finished else ""
        return self._trade(item, bid, price, taken, time.time_ns(), remainder)

    # order book

    def ask_order_book(self, size: int) -> list[Level]:
        """Up to ``size`` aggregated ask levels, best first; all when ``size`` <= 0."""
        return self._order_book(self.asks, size)

    def bid_order_book(self, size: int) -> list[Level]:
        """Up to ``size`` aggregated bid levels, best first; all when ``size`` <= 0."""
        return self._order_book(self.bids, size)

    def _order_book(self, queue: OrderQueue, size: int) -> list[Level]:
        with queue.lock:
            book = self._books[id(queue)]
            if size <= 0 or size > len(book):
                size = len(book)
            return list(book[:size])

    def refresh_order_books(self) -> None:
        """Rebuild the aggregated depth snapshots of both sides."""
        for queue in (self.asks, self.bids):
            with self._lock, queue.lock:
                self._books[id(queue)] = self._build_book(queue)

    def _build_book(self, queue: OrderQueue) -> list[Level]:
        top = queue.top()
        if top is None:
            return []
        levels: dict[str, str] = {}
        for item in queue.items():
            if len(levels) > self.order_book_max_len:
                break
            price = _fixed_bank(item.price, self.price_decimals)
            previous = levels.get(price)
            total = item.quantity if previous is None else Decimal(previous) + item.quantity
            levels[price] = _fixed_bank(total, self.quantity_decimals)
        return sort_levels(levels, top.side())