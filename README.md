# tradematch

Building blocks for a small exchange back end, using only the standard
library:

- a matching engine that pairs buy (bid) and sell (ask) orders by price
  first, then by time;
- per-side order queues and aggregated order-book depth;
- candlestick (k-line) bars built up one trade at a time for any standard
  period;
- a uniform success/failure response envelope;
- a bounded worker pool that runs a batch of tasks and collects their results.

Prices, quantities and amounts are `decimal.Decimal` values. Factories and
setters that take them also accept ints, floats or strings, which are
converted through `str`.

## Installation

```
pip install tradematch
```

To run the test suite as well:

```
pip install "tradematch[test]"
pytest
```

## Modules

| Module | What it holds |
| --- | --- |
| `tradematch.trade_types` | `OrderType`, `OrderSide`, `TradeBy`, `RemoveType`, `TradeResult`, `RemoveResult` |
| `tradematch.order_queue` | `Order`, `AskItem`, `BidItem`, `OrderQueue` and the order factories |
| `tradematch.engine` | `Engine`, `EnginePausedError`, `sort_levels` |
| `tradematch.period` | `PeriodType`, `KLine`, `periods`, `parse_period`, `parse_period_time` |
| `tradematch.kline` | `KLineCalculator`, `KLineLockError`, `cache_key` |
| `tradematch.response` | `Code`, `Response`, `success`, `fail` |
| `tradematch.concurrency` | `Executor` |

## Orders

Orders are built with the factory functions in `tradematch.order_queue`:

```python
from decimal import Decimal
from tradematch.order_queue import ask_limit_item, bid_limit_item

sell = ask_limit_item("a1", Decimal("1.10"), Decimal("2"), 1112)
buy = bid_limit_item("b1", Decimal("1.10"), Decimal("1.3"), 1113)
```

| Factory | Arguments |
| --- | --- |
| `ask_limit_item` | `unique_id, price, quantity, create_time` |
| `bid_limit_item` | `unique_id, price, quantity, create_time` |
| `ask_market_qty_item` | `unique_id, quantity, create_time` |
| `ask_market_amount_item` | `unique_id, amount, max_hold_qty, create_time` |
| `bid_market_qty_item` | `unique_id, quantity, max_amount, create_time` |
| `bid_market_amount_item` | `unique_id, amount, create_time` |

- A market buy by quantity carries the quantity wanted and the most money
  that may be spent; a market buy by amount carries only the money.
- A market sell by quantity carries the quantity to sell; a market sell by
  amount carries the money wanted and the most the seller holds, so the
  order never sells more than that.

`create_time` breaks ties between orders at the same price: the earlier one
goes first. `order.side()` gives the `OrderSide`, and `a.precedes(b)` tells
whether `a` ranks before `b` on its side of the book.

## Order queues

`OrderQueue` keeps one side of the book as a heap with the best order on
top: the lowest ask, or the highest bid.

```python
from tradematch.order_queue import OrderQueue

asks = OrderQueue()
asks.push(ask_limit_item("1", Decimal("1.8"), Decimal("1"), 11111111))
asks.push(ask_limit_item("2", Decimal("0.99"), Decimal("10"), 11111111))

asks.top().unique_id        # "2", the cheapest ask
"1" in asks                 # True
asks.remove("2")            # takes it out and returns it
len(asks)                   # 1
```

`push` returns `True`, and changes nothing, when the id is already queued.
`get(index)` returns the order in a heap slot (or `None`), `items()` a copy
of the heap, `set_quantity(item, quantity)` changes an order's quantity, and
`clean()` empties the queue. Optional `on_update` and `on_remove` callbacks
passed to the constructor are called when orders are added, changed or
removed.

## Matching

`Engine(symbol, ...)` holds an ask queue (`engine.asks`) and a bid queue
(`engine.bids`) for one symbol. Keyword options: `price_decimals` (2),
`quantity_decimals` (4), `debug` (False), `min_trade_quantity` (0),
`order_book_max_len` (50) and `logger`.

Limit orders rest in their queue until they cross. Market orders are
matched straight away against the opposite side when added; when they stop
matching, a `RemoveResult` with `RemoveType.BY_SYSTEM` is issued for them,
and their last trade carries their id in `remainder_market_order_id`.

```python
from tradematch.engine import Engine

engine = Engine("BTCUSDT")
engine.on_trade_result(lambda trade: print(trade.to_json()))
engine.on_remove_result(lambda removed: print(removed.unique_id, removed.type))

engine.add_item(ask_limit_item("a1", Decimal("1.1"), Decimal("1.2"), 1))
engine.add_item(bid_limit_item("b1", Decimal("1.1"), Decimal("1.2"), 2))
engine.match_once()   # crosses the two orders and returns the TradeResult
```

`match_once()` performs one matching step and returns the trade or `None`.
`engine.start()` instead runs matching and depth refreshing on background
threads, and `engine.stop()` ends them; the engine can also be used as a
context manager. A limit trade is priced at the earlier order's price, and
`TradeResult.trade_by` is `TradeBy.BUYER` when the ask was older than the
bid, otherwise `TradeBy.SELLER`.

Setting `engine.pause_accept_item = True` makes `add_item` raise
`EnginePausedError`; `engine.pause_matching = True` stops limit orders from
crossing. `engine.remove_item(side, unique_id, remove_type)` takes an order
off the book and reports it through the remove callback. `engine.clean()`
empties both queues, but only when the engine was built with `debug=True`.

### Depth

`engine.refresh_order_books()` rebuilds the aggregated depth of both sides
(the background thread does this every 50 ms). `engine.ask_order_book(size)`
and `engine.bid_order_book(size)` then return `(price, quantity)` string
pairs, rounded half-to-even to the engine's price and quantity decimals,
asks lowest first and bids highest first. A size of zero or less returns
every level. `sort_levels(levels, side)` applies the same ordering to a
mapping of price strings to quantity strings.

## Trade types

`TradeResult.to_json()` returns compact JSON bytes with the keys `symbol`,
`ask`, `bid`, `trade_quantity`, `trade_price`, `trade_by`, `trade_time`
(nanoseconds) and `remainder_market_order_id`; `TradeResult.from_json(data)`
reads it back.

## Candlesticks

`parse_period("H1")` turns a name into a `PeriodType` (case does not
matter; an unknown name raises `ValueError`), and `periods()` lists every
supported period from one minute (`m1`) to one month (`mn`).
`parse_period_time(at, period)` gives the first and last second of the bar
that contains `at`; weeks start on Monday.

`KLineCalculator(symbol, store=None, *, price_precision=2,
quantity_precision=2, amount_precision=2, logger=None)` folds each
`TradeResult` into the bar it belongs to, in local time, and keeps the
running bar in `store` under `cache_key(symbol, open_at, close_at)`. The
store may be any object with Redis-style `set`, `get`, `delete` and
`expire` methods; without one an in-process store is used.

```python
from tradematch.kline import KLineCalculator

calc = KLineCalculator("BTCUSDT")
bar = calc.get_formatted_data("m1", trade)   # trade is a TradeResult
bar.open, bar.high, bar.low, bar.close, bar.volume, bar.amount
calc.clean_cache(bar.open_at, bar.close_at)
```

Trades may arrive out of order: the open is the earliest trade's price and
the close the latest's. `get_data` returns the bar with plain decimal
strings; `get_formatted_data` rounds them half-to-even to the configured
precisions. If the bar is locked by another caller at that moment,
`KLineLockError` is raised.

## Responses

```python
from tradematch.response import success, fail

success().to_json()                          # '{"code":0}'
success().with_data("hi").to_json()          # '{"code":0,"data":"hi"}'
fail().to_json()                             # '{"code":2,"message":"unknown error"}'
fail().with_error(21000, "custom error")     # your own code and message
```

Empty messages and `None` data are left out; `to_dict()` gives the same
content as a dict.

## Running tasks in parallel

```python
from tradematch.concurrency import Executor

executor = Executor(5)
for n in range(20):
    executor.execute(lambda n=n: n * n)
results = executor.run()   # 20 results, at most 5 tasks at a time
```

Results come back in the order the tasks finish. A worker count below one
raises `ValueError`.

## What this package does not do

It is a library only: there is no command-line program, no HTTP or other
network server, and no message queue integration. Resting orders live only
in memory and are lost when the process ends; account balances, fees and
settlement are left to the calling system. Candlestick bars are kept only
as long as the chosen store keeps them.