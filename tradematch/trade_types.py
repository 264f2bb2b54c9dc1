"""Order, trade and removal types shared by the matching engine."""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any


class OrderType(str, Enum):
    """How an order is priced and filled."""

    LIMIT = "limit"
    MARKET = "market"
    MARKET_QUANTITY = "marketQty"
    MARKET_AMOUNT = "marketAmount"

    def __str__(self) -> str:
        return _ORDER_TYPE_NAMES.get(self, "limit")


_ORDER_TYPE_NAMES = {
    OrderType.MARKET: "market",
    OrderType.MARKET_AMOUNT: "market_amount",
    OrderType.MARKET_QUANTITY: "market_qty",
}


class OrderSide(str, Enum):
    """Book side of an order: bids buy, asks sell."""

    BUY = "bid"
    SELL = "ask"

    def __str__(self) -> str:
        return "ask" if self is OrderSide.SELL else "bid"


class TradeBy(IntEnum):
    """Which party took liquidity in a trade."""

    SELLER = 1
    BUYER = 2


class RemoveType(IntEnum):
    """Why an order left the book."""

    BY_SYSTEM = 1
    BY_USER = 2
    BY_PARTIAL = 3


def _decimal_string(value: Decimal) -> str:
    """Render a decimal in plain notation without trailing zeros."""
    if value == 0:
        return "0"
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass
class TradeResult:
    """One match between an ask and a bid."""

    symbol: str
    ask_order_id: str
    bid_order_id: str
    trade_quantity: Decimal
    trade_price: Decimal
    trade_by: TradeBy
    trade_time: int  # nanoseconds since the epoch
    remainder_market_order_id: str = ""

    def to_json(self) -> bytes:
        """Serialise to the JSON wire form."""
        payload = {
            "symbol": self.symbol,
            "ask": self.ask_order_id,
            "bid": self.bid_order_id,
            "trade_quantity": _decimal_string(self.trade_quantity),
            "trade_price": _decimal_string(self.trade_price),
            "trade_by": int(self.trade_by),
            "trade_time": self.trade_time,
            "remainder_market_order_id": self.remainder_market_order_id,
        }
        return json.dumps(payload, separators=(",", ":")).encode()

    @classmethod
    def from_json(cls, data: bytes | str) -> "TradeResult":
        """Build a trade result from its JSON wire form."""
        raw = json.loads(data)
        return cls(
            symbol=raw.get("symbol", ""),
            ask_order_id=raw.get("ask", ""),
            bid_order_id=raw.get("bid", ""),
            trade_quantity=_to_decimal(raw.get("trade_quantity", "0")),
            trade_price=_to_decimal(raw.get("trade_price", "0")),
            trade_by=TradeBy(raw["trade_by"]),
            trade_time=int(raw.get("trade_time", 0)),
            remainder_market_order_id=raw.get("remainder_market_order_id", ""),
        )


@dataclass
class RemoveResult:
    """Notice that an order was taken off the book."""

    symbol: str
    unique_id: str
    type: RemoveType