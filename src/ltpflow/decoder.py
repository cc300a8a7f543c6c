"""
Payload decoding for inbound feed messages.

The feed publishes the same LTP information in several encodings. Each
encoding is a strategy that either returns the prices it found or None, and
the Decoder walks them in priority order until one matches.
"""

import json
import logging
import math
from typing import Any, Dict, List, Optional, Sequence

from .market_data import DecodeError, MarketData, MarketDataBatch

logger = logging.getLogger(__name__)


def _finite_price(value: Any) -> Optional[float]:
    """Return value as float if it is a real, finite number."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    if not math.isfinite(value):
        return None
    return value


class DecoderStrategy:
    """Base class for a single wire encoding."""

    name = "base"

    def try_decode(self, payload: bytes) -> Optional[List[float]]:
        """Return decoded prices, or None if the payload is not in this encoding."""
        raise NotImplementedError


class SingleMarketDataStrategy(DecoderStrategy):
    """Protobuf MarketData carrying a single ltp."""

    name = "protobuf"

    def try_decode(self, payload: bytes) -> Optional[List[float]]:
        message = MarketData()
        try:
            message.ParseFromString(payload)
        except DecodeError:
            return None
        if not message.HasField("ltp"):
            return None
        price = _finite_price(message.ltp)
        return [price] if price is not None else []


class BatchMarketDataStrategy(DecoderStrategy):
    """Protobuf MarketDataBatch: one price per element that carries an ltp."""

    name = "protobuf_batch"

    def try_decode(self, payload: bytes) -> Optional[List[float]]:
        batch = MarketDataBatch()
        try:
            batch.ParseFromString(payload)
        except DecodeError:
            return None
        if not batch.data:
            return None

        prices = []
        for item in batch.data:
            if not item.HasField("ltp"):
                continue
            price = _finite_price(item.ltp)
            if price is not None:
                prices.append(price)
        return prices


class JsonLtpStrategy(DecoderStrategy):
    """UTF-8 JSON object with a numeric "ltp" key."""

    name = "json"

    def try_decode(self, payload: bytes) -> Optional[List[float]]:
        try:
            decoded = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return None
        if not isinstance(decoded, dict) or "ltp" not in decoded:
            return None
        price = _finite_price(decoded["ltp"])
        return [price] if price is not None else []


DEFAULT_STRATEGIES = (
    SingleMarketDataStrategy(),
    BatchMarketDataStrategy(),
    JsonLtpStrategy(),
)


class Decoder:
    """Decodes raw payloads into LTP values. Never raises."""

    def __init__(self, strategies: Optional[Sequence[DecoderStrategy]] = None):
        self.strategies = list(strategies) if strategies is not None else list(DEFAULT_STRATEGIES)
        self.stats: Dict[str, int] = {strategy.name: 0 for strategy in self.strategies}
        self.stats["unparseable"] = 0

    def decode(self, payload: bytes, topic: Optional[str] = None) -> List[float]:
        """
        Decode a payload using the first strategy that recognises it.

        Args:
            payload: Raw message bytes
            topic: Source topic, only used for logging

        Returns:
            List of finite prices, possibly empty
        """
        for strategy in self.strategies:
            try:
                prices = strategy.try_decode(payload)
            except Exception as e:
                logger.debug(f"{strategy.name} decoder raised for topic {topic}: {e}")
                continue
            if prices is not None:
                self.stats[strategy.name] = self.stats.get(strategy.name, 0) + 1
                return prices

        self.stats["unparseable"] += 1
        logger.error(f"Failed to decode message as protobuf or JSON for topic: {topic}")
        return []

    def get_stats(self) -> Dict[str, int]:
        return dict(self.stats)
