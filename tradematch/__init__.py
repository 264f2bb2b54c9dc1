"""Order matching, order-book depth, candlestick bars, response envelopes and a task pool."""

__version__ = "0.1.0"