"""
Per-message ingestion pipeline.

Decodes each inbound (topic, payload), classifies the topic as an index or an
option, drives ATM option expansion on the first index tick, and hands every
price to the batch writer.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Set

from .batch_writer import BatchWriter
from .decoder import Decoder
from .strikes import StrikeRounder, round_to_nearest_strike
from .subscription_manager import SubscriptionController, is_option_suffix, series_key_for

logger = logging.getLogger(__name__)


class IngestionDispatcher:
    """Entry point invoked by the transport for every inbound message."""

    def __init__(
        self,
        subscriptions: SubscriptionController,
        batch_writer: BatchWriter,
        decoder: Optional[Decoder] = None,
        strike_rounder: StrikeRounder = round_to_nearest_strike,
    ):
        self.subscriptions = subscriptions
        self.batch_writer = batch_writer
        self.decoder = decoder or Decoder()
        self.strike_rounder = strike_rounder

        # Latest LTP and first-message ATM per index
        self.index_ltp: Dict[str, float] = {}
        self.atm_strikes: Dict[str, float] = {}

        self._expansion_tasks: Set[asyncio.Task] = set()
        self._accepting = True

        self.stats = {
            "messages_received": 0,
            "messages_discarded": 0,
            "prices_forwarded": 0,
            "index_prices": 0,
            "option_prices": 0,
            "untagged_option_prices": 0,
            "processing_errors": 0,
            "last_message_time": None,
        }

    async def handle(self, topic: str, payload: bytes) -> None:
        """
        Process one message. Never raises: a bad message must not stop ingestion.

        Args:
            topic: Full topic, <prefix>/<suffix>
            payload: Raw message bytes
        """
        if not self._accepting:
            logger.debug(f"Dispatcher stopped, ignoring message on {topic}")
            return

        self.stats["messages_received"] += 1
        self.stats["last_message_time"] = datetime.now()

        try:
            parts = topic.split("/")
            if len(parts) < 2:
                self.stats["messages_discarded"] += 1
                logger.debug(f"Discarding message on malformed topic: {topic}")
                return

            prices = self.decoder.decode(payload, topic=topic)
            if not prices:
                return

            topic_suffix = parts[1]
            if is_option_suffix(topic_suffix):
                await self._handle_option_prices(topic_suffix, prices)
            else:
                await self._handle_index_prices(topic_suffix.upper(), prices)

        except Exception as e:
            self.stats["processing_errors"] += 1
            logger.error(f"Error processing message on {topic}: {e}")

    async def _handle_option_prices(self, topic_suffix: str, prices) -> None:
        entry = self.subscriptions.get_option_entry(topic_suffix)
        series_key = series_key_for(topic_suffix)

        for ltp in prices:
            if entry:
                await self.batch_writer.record(
                    series_key, ltp, entry.index_name, entry.instrument_type, entry.strike
                )
            else:
                self.stats["untagged_option_prices"] += 1
                await self.batch_writer.record(series_key, ltp)
            self.stats["option_prices"] += 1
            self.stats["prices_forwarded"] += 1

    async def _handle_index_prices(self, index_name: str, prices) -> None:
        series_key = series_key_for(index_name)

        for ltp in prices:
            self.index_ltp[index_name] = ltp

            if self.subscriptions.claim_first_message(index_name):
                self._start_expansion(index_name, ltp)

            await self.batch_writer.record(series_key, ltp, index_name)
            self.stats["index_prices"] += 1
            self.stats["prices_forwarded"] += 1

    def _start_expansion(self, index_name: str, ltp: float) -> None:
        """Compute the ATM strike and expand option subscriptions in the background."""
        try:
            strike_diff = self.subscriptions.get_strike_diff(index_name)
            atm_strike = self.strike_rounder(index_name, ltp, strike_diff)
        except Exception as e:
            logger.error(f"Failed to compute ATM strike for {index_name} at {ltp}: {e}")
            return

        self.atm_strikes[index_name] = atm_strike
        logger.info(f"First LTP for {index_name}: {ltp}, ATM strike {atm_strike}")

        task = asyncio.create_task(self._run_expansion(index_name, atm_strike))
        self._expansion_tasks.add(task)
        task.add_done_callback(self._expansion_tasks.discard)

    async def _run_expansion(self, index_name: str, atm_strike: float) -> None:
        try:
            await self.subscriptions.expand_around_strike(index_name, atm_strike)
        except asyncio.CancelledError:
            logger.debug(f"Option expansion for {index_name} cancelled")
            raise
        except Exception as e:
            self.stats["processing_errors"] += 1
            logger.error(f"Option expansion failed for {index_name}: {e}")

    async def wait_for_expansions(self) -> None:
        """Wait until all scheduled option expansions have finished."""
        if self._expansion_tasks:
            await asyncio.gather(*list(self._expansion_tasks), return_exceptions=True)

    async def stop(self) -> None:
        """Stop accepting messages and cancel outstanding option expansions."""
        self._accepting = False
        tasks = list(self._expansion_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Ingestion dispatcher stopped")

    def get_live_price(self, index_name: str) -> Optional[float]:
        return self.index_ltp.get(index_name.upper())

    def get_atm_strike(self, index_name: str) -> Optional[float]:
        return self.atm_strikes.get(index_name.upper())

    def get_stats(self) -> Dict[str, Any]:
        stats = dict(self.stats)
        if stats["last_message_time"]:
            stats["last_message_time"] = stats["last_message_time"].isoformat()
        stats.update({
            "pending_expansions": len(self._expansion_tasks),
            "index_ltp": dict(self.index_ltp),
            "atm_strikes": dict(self.atm_strikes),
            "decoder": self.decoder.get_stats(),
        })
        return stats
