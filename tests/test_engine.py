import json
import threading
import time
from decimal import Decimal

import pytest

from tradematch.engine import Engine, EnginePausedError, sort_levels
from tradematch.order_queue import (
    ask_limit_item,
    ask_market_amount_item,
    ask_market_qty_item,
    bid_limit_item,
    bid_market_amount_item,
    bid_market_qty_item,
)
from tradematch.trade_types import OrderSide, RemoveType, TradeBy


def d(value):
    return Decimal(str(value))


@pytest.fixture
def engine():
    eng = Engine("btcusdt", price_decimals=2, quantity_decimals=2, debug=True)
    eng.clean()
    return eng


def _record(engine):
    trades, removals = [], []
    engine.on_trade_result(trades.append)
    engine.on_remove_result(removals.append)
    return trades, removals


def _dump(book):
    return json.dumps(book, separators=(",", ":"))


def test_ask_depth(engine):
    engine.add_item(ask_limit_item("id1", d(1.01), d(2), 1112))
    engine.add_item(ask_limit_item("id2", d(1.01), d(2), 1113))
    engine.add_item(ask_limit_item("id3", d(1.1), d(2), 1114))
    engine.refresh_order_books()
    assert _dump(engine.ask_order_book(0)) == '[["1.01","4.00"],["1.10","2.00"]]'


def test_bid_depth(engine):
    engine.add_item(bid_limit_item("id4", d(1.02), d(2), 1115))
    engine.add_item(bid_limit_item("id5", d(1.3), d(2), 1116))
    engine.add_item(bid_limit_item("id6", d(1.02), d(2), 1117))
    engine.add_item(bid_limit_item("id7", d(0.02), d(1), 1118))
    engine.refresh_order_books()
    assert _dump(engine.bid_order_book(0)) == '[["1.30","2.00"],["1.02","4.00"],["0.02","1.00"]]'


def test_order_book_size_limits(engine):
    engine.add_item(bid_limit_item("a", d(1), d(1), 1))
    engine.add_item(bid_limit_item("b", d(2), d(1), 2))
    engine.add_item(bid_limit_item("c", d(3), d(1), 3))
    engine.refresh_order_books()
    assert engine.bid_order_book(2) == [("3.00", "1.00"), ("2.00", "1.00")]
    assert len(engine.bid_order_book(10)) == 3
    assert engine.ask_order_book(0) == []


def test_order_book_max_len():
    eng = Engine("btcusdt", price_decimals=2, quantity_decimals=2, order_book_max_len=2)
    for i in range(6):
        eng.add_item(ask_limit_item(f"a{i}", d(i + 1), d(1), i))
    eng.refresh_order_books()
    assert len(eng.ask_order_book(0)) == 3


def test_sort_levels():
    levels = {"1.10": "1", "10.00": "2", "9.50": "3"}
    assert sort_levels(levels, OrderSide.SELL) == [("1.10", "1"), ("9.50", "3"), ("10.00", "2")]
    assert sort_levels(levels, OrderSide.BUY) == [("10.00", "2"), ("9.50", "3"), ("1.10", "1")]


def test_add_limit_bid(engine):
    engine.add_item(bid_limit_item("id11", d(1.1), d(1.2), 1112))
    assert len(engine.asks) == 0
    assert len(engine.bids) == 1
    top = engine.bids.top()
    assert top.price == d(1.1)
    assert top.unique_id == "id11"
    assert top.quantity == d(1.2)
    assert top.create_time == 1112


def test_add_limit_ask(engine):
    engine.add_item(ask_limit_item("id12", d(1.1), d(1.2), 1112))
    assert len(engine.asks) == 1
    assert len(engine.bids) == 0
    top = engine.asks.top()
    assert top.price == d(1.1)
    assert top.unique_id == "id12"
    assert top.quantity == d(1.2)
    assert top.create_time == 1112


def test_clean_empties_queues(engine):
    engine.add_item(ask_limit_item("x", d(1), d(1), 1))
    engine.add_item(bid_limit_item("y", d(0.5), d(1), 2))
    engine.clean()
    assert len(engine.asks) == 0
    assert len(engine.bids) == 0


def test_clean_ignored_outside_debug():
    eng = Engine("btcusdt")
    eng.add_item(ask_limit_item("x", d(1), d(1), 1))
    eng.clean()
    assert len(eng.asks) == 1


def test_limit_full_match(engine):
    trades, _ = _record(engine)
    engine.add_item(ask_limit_item("id13", d(1.1), d(1.2), time.time_ns()))
    engine.add_item(bid_limit_item("id23", d(1.1), d(1.2), time.time_ns() + 1))
    result = engine.match_once()
    assert trades == [result]
    assert result.ask_order_id == "id13"
    assert result.bid_order_id == "id23"
    assert result.trade_price == d(1.1)
    assert result.trade_quantity == d(1.2)
    assert result.trade_by is TradeBy.BUYER
    assert len(engine.asks) == 0
    assert len(engine.bids) == 0


def test_limit_bid_partial(engine):
    trades, _ = _record(engine)
    engine.add_item(bid_limit_item("id24", d(1.1), d(2.3), time.time_ns()))
    engine.add_item(ask_limit_item("id14", d(1.1), d(1.2), time.time_ns() + 1))
    engine.match_once()
    trade = trades[0]
    assert trade.ask_order_id == "id14"
    assert trade.bid_order_id == "id24"
    assert trade.trade_price == d(1.1)
    assert trade.trade_quantity == d(1.2)
    assert engine.bids.top().quantity == d(1.1)
    assert len(engine.bids) == 1
    assert len(engine.asks) == 0
    assert trade.trade_by is TradeBy.SELLER


def test_limit_ask_partial(engine):
    trades, _ = _record(engine)
    engine.add_item(ask_limit_item("id15", d(1.1), d(2.2), 1112))
    engine.add_item(bid_limit_item("id25", d(1.1), d(1.3), 1113))
    engine.match_once()
    trade = trades[0]
    assert trade.ask_order_id == "id15"
    assert trade.bid_order_id == "id25"
    assert trade.trade_price == d(1.1)
    assert trade.trade_quantity == d(1.3)
    assert engine.asks.top().quantity == d(0.9)
    assert len(engine.asks) == 1
    assert len(engine.bids) == 0


def test_time_priority(engine):
    trades, _ = _record(engine)
    engine.add_item(ask_limit_item("id16", d(1.1), d(2.2), 1112))
    engine.add_item(ask_limit_item("id26", d(1.1), d(2.2), 1110))
    engine.add_item(bid_limit_item("id36", d(1.1), d(1.3), 1113))
    engine.match_once()
    trade = trades[0]
    assert trade.ask_order_id == "id26"
    assert trade.bid_order_id == "id36"
    assert trade.trade_price == d(1.1)
    assert trade.trade_quantity == d(1.3)
    assert engine.asks.top().quantity == d(0.9)
    assert len(engine.asks) == 2
    assert len(engine.bids) == 0


def test_price_priority(engine):
    trades, _ = _record(engine)
    engine.add_item(ask_limit_item("id17", d(1.01), d(2.2), 1112))
    engine.add_item(ask_limit_item("id27", d(1.1), d(2.2), 1110))
    engine.add_item(bid_limit_item("id37", d(1.1), d(1.3), 1113))
    engine.match_once()
    trade = trades[0]
    assert trade.ask_order_id == "id17"
    assert trade.bid_order_id == "id37"
    assert trade.trade_price == d(1.01)
    assert trade.trade_quantity == d(1.3)
    assert trade.remainder_market_order_id == ""
    assert engine.asks.top().quantity == d(0.9)
    assert len(engine.asks) == 2
    assert len(engine.bids) == 0


def test_no_cross_returns_none(engine):
    engine.add_item(ask_limit_item("a", d(2), d(1), 1))
    engine.add_item(bid_limit_item("b", d(1), d(1), 2))
    assert engine.match_once() is None
    assert len(engine.asks) == 1 and len(engine.bids) == 1


def test_pause_matching(engine):
    engine.add_item(ask_limit_item("a", d(1), d(1), 1))
    engine.add_item(bid_limit_item("b", d(1), d(1), 2))
    engine.pause_matching = True
    assert engine.match_once() is None
    engine.pause_matching = False
    assert engine.match_once().trade_quantity == d(1)


def test_pause_accept_item(engine):
    engine.pause_accept_item = True
    with pytest.raises(EnginePausedError):
        engine.add_item(ask_limit_item("a", d(1), d(1), 1))
    assert len(engine.asks) == 0


def test_remove_item_notifies(engine):
    _, removals = _record(engine)
    engine.add_item(bid_limit_item("b1", d(1), d(1), 1))
    engine.remove_item(OrderSide.BUY, "b1", RemoveType.BY_USER)
    assert len(engine.bids) == 0
    assert len(removals) == 1
    assert removals[0].unique_id == "b1"
    assert removals[0].type is RemoveType.BY_USER
    assert removals[0].symbol == "btcusdt"


def test_market_buy_quantity_full(engine):
    trades, removals = _record(engine)
    engine.add_item(ask_limit_item("id18", d(1.01), d(2.2), 1112))
    engine.add_item(bid_market_qty_item("id28", d(1.1), d(100), 1113))
    trade = trades[0]
    assert trade.ask_order_id == "id18"
    assert trade.bid_order_id == "id28"
    assert trade.trade_price == d(1.01)
    assert trade.trade_quantity == d(1.1)
    assert trade.remainder_market_order_id == "id28"
    assert [r.unique_id for r in removals] == ["id28"]
    assert removals[0].type is RemoveType.BY_SYSTEM


def test_market_buy_quantity_book_exhausted(engine):
    trades, _ = _record(engine)
    engine.add_item(ask_limit_item("id19", d(1.01), d(2.2), 1112))
    engine.add_item(bid_market_qty_item("id29", d(100), d(100), 1113))
    trade = trades[0]
    assert trade.ask_order_id == "id19"
    assert trade.bid_order_id == "id29"
    assert trade.trade_price == d(1.01)
    assert trade.trade_quantity == d(2.2)
    assert trade.remainder_market_order_id == "id29"


def test_market_buy_quantity_insufficient_funds(engine):
    trades, _ = _record(engine)
    engine.add_item(ask_limit_item("id110", d(100), d(20), 1112))
    engine.add_item(bid_market_qty_item("id210", d(20), d(100), 1113))
    trade = trades[0]
    assert trade.ask_order_id == "id110"
    assert trade.bid_order_id == "id210"
    assert trade.trade_price == d(100)
    assert trade.trade_quantity == d(1)
    assert trade.remainder_market_order_id == "id210"
    assert len(engine.asks) == 1
    assert len(engine.bids) == 0


def test_market_buy_amount_full(engine):
    trades, _ = _record(engine)
    engine.add_item(ask_limit_item("id111", d(10.00), d(100), 1112))
    engine.add_item(bid_market_amount_item("id211", d(50), 1113))
    assert len(trades) == 1
    trade = trades[0]
    assert trade.ask_order_id == "id111"
    assert trade.bid_order_id == "id211"
    assert trade.trade_price == d(10)
    assert trade.trade_quantity == d(5)
    assert trade.remainder_market_order_id == "id211"
    assert len(engine.asks) == 1
    assert engine.asks.top().quantity == d(95)


def test_market_buy_amount_partial(engine):
    trades, _ = _record(engine)
    engine.add_item(ask_limit_item("id112", d(10.00), d(100), 1112))
    engine.add_item(bid_market_amount_item("id212", d(6000), 1113))
    trade = trades[0]
    assert trade.ask_order_id == "id112"
    assert trade.bid_order_id == "id212"
    assert trade.trade_price == d(10)
    assert trade.trade_quantity == d(100)
    assert trade.remainder_market_order_id == "id212"
    assert len(engine.asks) == 0
    assert len(engine.bids) == 0


def test_market_sell_quantity_full(engine):
    trades, _ = _record(engine)
    engine.add_item(bid_limit_item("id113", d(10.00), d(100), 1112))
    engine.add_item(ask_market_qty_item("id213", d(6), 1113))
    trade = trades[0]
    assert trade.ask_order_id == "id213"
    assert trade.bid_order_id == "id113"
    assert trade.trade_price == d(10)
    assert trade.trade_quantity == d(6)
    assert trade.remainder_market_order_id == "id213"
    assert len(engine.asks) == 0
    assert len(engine.bids) == 1


def test_market_sell_quantity_partial(engine):
    trades, _ = _record(engine)
    engine.add_item(bid_limit_item("id114", d(10.00), d(100), 1112))
    engine.add_item(ask_market_qty_item("id214", d(6000), 1113))
    trade = trades[0]
    assert trade.ask_order_id == "id214"
    assert trade.bid_order_id == "id114"
    assert trade.trade_price == d(10)
    assert trade.trade_quantity == d(100)
    assert trade.remainder_market_order_id == "id214"
    assert len(engine.asks) == 0
    assert len(engine.bids) == 0


def test_market_sell_amount_full(engine):
    trades, _ = _record(engine)
    engine.add_item(bid_limit_item("id115", d(10.00), d(1000), 1112))
    engine.add_item(ask_market_amount_item("id215", d(6000), d(1000000), 1113))
    trade = trades[0]
    assert trade.ask_order_id == "id215"
    assert trade.bid_order_id == "id115"
    assert trade.trade_price == d(10)
    assert trade.trade_quantity == d(600)
    assert trade.remainder_market_order_id == "id215"
    assert len(engine.asks) == 0
    assert len(engine.bids) == 1


def test_market_sell_amount_book_exhausted(engine):
    trades, _ = _record(engine)
    engine.add_item(bid_limit_item("id116", d(10.00), d(50), 1112))
    engine.add_item(ask_market_amount_item("id216", d(6000), d(1000000), 1113))
    trade = trades[0]
    assert trade.ask_order_id == "id216"
    assert trade.bid_order_id == "id116"
    assert trade.trade_price == d(10)
    assert trade.trade_quantity == d(50)
    assert trade.remainder_market_order_id == "id216"
    assert len(engine.asks) == 0
    assert len(engine.bids) == 0


def test_market_sell_amount_holding_short(engine):
    trades, _ = _record(engine)
    engine.add_item(bid_limit_item("id117", d(100.00), d(50), 1112))
    engine.add_item(ask_market_amount_item("id217", d(500), d(3), 1113))
    trade = trades[0]
    assert trade.ask_order_id == "id217"
    assert trade.bid_order_id == "id117"
    assert trade.trade_price == d(100)
    assert trade.trade_quantity == d(3)
    assert trade.remainder_market_order_id == "id217"
    assert len(engine.asks) == 0
    assert len(engine.bids) == 1


def test_market_sell_amount_no_fill_only_removal(engine):
    trades, removals = _record(engine)
    engine.add_item(bid_limit_item("id1118", d(1000.00), d(50), 1112))
    engine.add_item(ask_market_amount_item("id2218", d(1), d(30), 1113))
    assert trades == []
    assert [r.unique_id for r in removals] == ["id2218"]
    assert engine.bids.top().quantity == d(50)
    assert len(engine.asks) == 0


def test_many_limit_orders_match_out():
    eng = Engine("BTCUSDT")
    for i in range(100):
        eng.add_item(ask_limit_item(f"ask{i}", d(10), d(1), 1))
    for i in range(100):
        eng.add_item(bid_limit_item(f"bid{i}", d(10), d(1), 1))
    trades = []
    while (result := eng.match_once()) is not None:
        trades.append(result)
    assert len(trades) == 100
    assert all(t.trade_price == d(10) for t in trades)
    assert len(eng.asks) == 0
    assert len(eng.bids) == 0


def test_background_threads_match_and_publish():
    eng = Engine("btcusdt", price_decimals=2, quantity_decimals=2)
    done = threading.Event()
    trades = []

    def on_trade(result):
        trades.append(result)
        done.set()

    eng.on_trade_result(on_trade)
    with eng:
        eng.add_item(ask_limit_item("s1", d(5), d(3), 1))
        eng.add_item(bid_limit_item("b1", d(5), d(1), 2))
        assert done.wait(2)
        deadline = time.monotonic() + 2
        book = []
        while time.monotonic() < deadline:
            book = eng.ask_order_book(0)
            if book == [("5.00", "2.00")]:
                break
            time.sleep(0.02)
    assert trades[0].trade_quantity == d(1)
    assert book == [("5.00", "2.00")]