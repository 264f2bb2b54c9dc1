"""Incremental k-line bars built from trades and kept in a key-value store."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation, localcontext
from typing import Any, Optional, Protocol

from tradematch.period import KLine, PeriodType, parse_period_time
from tradematch.trade_types import TradeResult

_DAY_SECONDS = 3600 * 24
_LOCK_SECONDS = 10


class KLineLockError(RuntimeError):
    """Another calculation holds the lock for the same bar."""


class _KeyValueStore(Protocol):
    """The subset of a Redis client the calculator needs."""

    def set(self, name: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> Any: ...

    def get(self, name: str) -> Any: ...

    def delete(self, *names: str) -> Any: ...

    def expire(self, name: str, time: int) -> Any: ...


class _MemoryStore:
    """An in-process key-value store with expiring keys."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._expires: dict[str, float] = {}
        self._lock = threading.Lock()

    def _purge(self, key: str) -> None:
        deadline = self._expires.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self._data.pop(key, None)
            self._expires.pop(key, None)

    def set(self, name: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> Optional[bool]:
        with self._lock:
            self._purge(name)
            if nx and name in self._data:
                return None
            self._data[name] = str(value)
            if ex:
                self._expires[name] = time.monotonic() + ex
            else:
                self._expires.pop(name, None)
            return True

    def get(self, name: str) -> Optional[str]:
        with self._lock:
            self._purge(name)
            return self._data.get(name)

    def delete(self, *names: str) -> int:
        with self._lock:
            removed = 0
            for name in names:
                self._purge(name)
                if self._data.pop(name, None) is not None:
                    removed += 1
                self._expires.pop(name, None)
            return removed

    def expire(self, name: str, time_: int) -> bool:
        with self._lock:
            self._purge(name)
            if name not in self._data:
                return False
            self._expires[name] = time.monotonic() + int(time_)
            return True


def cache_key(symbol: str, open_at: datetime, close_at: datetime) -> str:
    """Store key of the bar spanning ``open_at`` to ``close_at``."""
    return f"kline:{symbol}:{int(open_at.timestamp())}:{int(close_at.timestamp())}"


def _plain(value: Decimal) -> str:
    if value == 0:
        return "0"
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def _fixed_bank(value: Decimal, places: int) -> str:
    with localcontext() as ctx:
        ctx.prec = 100
        quantum = Decimal(1).scaleb(-places)
        return format(value.quantize(quantum, rounding=ROUND_HALF_EVEN), "f")


@dataclass
class _CachedBar:
    open: Optional[str] = None
    high: Optional[str] = None
    low: Optional[str] = None
    close: Optional[str] = None
    volume: Optional[str] = None
    amount: Optional[str] = None
    open_last_time: int = 0
    close_last_time: int = 0

    @classmethod
    def from_json(cls, raw: str | bytes) -> "_CachedBar":
        payload = json.loads(raw)
        data = payload.get("Data") or {}
        return cls(
            open=data.get("Open"),
            high=data.get("High"),
            low=data.get("Low"),
            close=data.get("Close"),
            volume=data.get("Volume"),
            amount=data.get("Amount"),
            open_last_time=int(payload.get("OpenLastTime", 0)),
            close_last_time=int(payload.get("CloseLastTime", 0)),
        )

    def to_json(self, bar: KLine) -> str:
        payload = {
            "Data": {
                "Symbol": bar.symbol,
                "OpenAt": bar.open_at.isoformat(),
                "CloseAt": bar.close_at.isoformat(),
                "Open": self.open,
                "High": self.high,
                "Low": self.low,
                "Close": self.close,
                "Volume": self.volume,
                "Amount": self.amount,
                "Period": bar.period.value,
            },
            "OpenLastTime": self.open_last_time,
            "CloseLastTime": self.close_last_time,
        }
        return json.dumps(payload, separators=(",", ":"))


class KLineCalculator:
    """Folds trades of one symbol into bars held in a shared store.

    ``store`` may be any client with Redis-style ``set``, ``get``, ``delete``
    and ``expire``; by default an in-process store is used.
    """

    def __init__(
        self,
        symbol: str,
        store: Optional[_KeyValueStore] = None,
        *,
        price_precision: int = 2,
        quantity_precision: int = 2,
        amount_precision: int = 2,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.symbol = symbol
        self.store = store if store is not None else _MemoryStore()
        self.price_precision = price_precision
        self.quantity_precision = quantity_precision
        self.amount_precision = amount_precision
        self.logger = logger or logging.getLogger(__name__)

    def clean_cache(self, open_at: datetime, close_at: datetime) -> None:
        """Forget the stored bar spanning ``open_at`` to ``close_at``."""
        self.store.delete(cache_key(self.symbol, open_at, close_at))

    def get_formatted_data(self, period: PeriodType | str, trade_result: TradeResult) -> KLine:
        """Like ``get_data``, with values rounded to the configured precisions."""
        bar = self.get_data(period, trade_result)
        bar.open = _fixed_bank(self._parse(bar.open), self.price_precision)
        bar.high = _fixed_bank(self._parse(bar.high), self.price_precision)
        bar.low = _fixed_bank(self._parse(bar.low), self.price_precision)
        bar.close = _fixed_bank(self._parse(bar.close), self.price_precision)
        bar.volume = _fixed_bank(self._parse(bar.volume), self.quantity_precision)
        bar.amount = _fixed_bank(self._parse(bar.amount), self.amount_precision)
        return bar

    def get_data(self, period: PeriodType | str, trade_result: TradeResult) -> KLine:
        """Add a trade to the bar of ``period`` that holds it and return the bar."""
        period = PeriodType(period)
        trade_at = datetime.fromtimestamp(trade_result.trade_time // 1_000_000_000)
        open_at, close_at = parse_period_time(trade_at, period)
        key = cache_key(self.symbol, open_at, close_at)

        lock_key = f"lock:{key}"
        if not self.store.set(lock_key, 1, ex=_LOCK_SECONDS, nx=True):
            self.logger.warning("[kline] failed to acquire lock for kline calculation")
            raise KLineLockError("failed to acquire lock for kline calculation")
        try:
            raw = self.store.get(key)
            if raw is None:
                cached = _CachedBar()
            else:
                try:
                    cached = _CachedBar.from_json(raw)
                except ValueError:
                    self.logger.error("[kline] unmarshal kline cache data failed")
                    raise
            self._merge(cached, trade_result)

            bar = KLine(
                symbol=self.symbol,
                open_at=open_at,
                close_at=close_at,
                period=period,
                open=cached.open,
                high=cached.high,
                low=cached.low,
                close=cached.close,
                volume=cached.volume,
                amount=cached.amount,
            )
            self.store.set(key, cached.to_json(bar))

            ttl = int(close_at.timestamp()) - int(time.time()) + _DAY_SECONDS
            if ttl < 0:
                ttl = _DAY_SECONDS
            self.store.expire(key, ttl)
            return bar
        finally:
            self.store.delete(lock_key)

    def _merge(self, cached: _CachedBar, trade: TradeResult) -> None:
        price = trade.trade_price
        quantity = trade.trade_quantity
        price_text = _plain(price)

        if cached.open is None or trade.trade_time < cached.open_last_time:
            cached.open = price_text
            cached.open_last_time = trade.trade_time

        if cached.high is None or price > self._parse(cached.high):
            cached.high = price_text

        if cached.low is None or price < self._parse(cached.low):
            cached.low = price_text

        if cached.close is None or trade.trade_time > cached.close_last_time:
            cached.close = price_text
            cached.close_last_time = trade.trade_time

        if cached.volume is None:
            cached.volume = _plain(quantity)
        else:
            cached.volume = _plain(self._parse(cached.volume) + quantity)

        amount = price * quantity
        if cached.amount is None:
            cached.amount = _plain(amount)
        else:
            cached.amount = _plain(self._parse(cached.amount) + amount)

    def _parse(self, text: Optional[str]) -> Decimal:
        try:
            return Decimal(str(text))
        except InvalidOperation:
            self.logger.error("[kline] new decimal from string failed: %s", text)
            return Decimal(0)