"""
Subscription state for index and option topics.

Index topics are subscribed once at startup. The first LTP seen for each
index fixes its ATM strike, and the controller then subscribes to the CE/PE
option topics for a window of strikes around it, resolving each contract to
a feed token through the token resolver.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Protocol, Set, Tuple

from .models import OptionType, SubscriptionEntry
from .resolver import TokenResolver
from .strikes import strike_window

logger = logging.getLogger(__name__)

OPTION_TOPIC_PREFIX = "NSE_FO|"
SERIES_PREFIX = "index"


class Subscriber(Protocol):
    """Transport side of a subscription: raises if the broker rejects the topic."""

    async def subscribe(self, topic: str) -> None:
        ...


def is_option_suffix(topic_suffix: str) -> bool:
    return topic_suffix.startswith(OPTION_TOPIC_PREFIX)


def series_key_for(topic_suffix: str) -> str:
    """Series name under which a topic's prices are stored."""
    return f"{SERIES_PREFIX}/{topic_suffix}"


class SubscriptionController:
    """Owns subscribed topics, first-message flags and option topic metadata."""

    def __init__(
        self,
        subscriber: Subscriber,
        resolver: TokenResolver,
        indices: List[str],
        strike_diffs: Dict[str, float],
        index_prefix: str = "index",
        strike_range: int = 10,
        max_concurrency: int = 8,
        default_strike_diff: float = 50.0,
    ):
        """
        Initialize the subscription controller.

        Args:
            subscriber: Transport used to issue subscriptions
            resolver: Token resolver for option contracts
            indices: Fixed index universe
            strike_diffs: Strike increment per index
            index_prefix: Topic prefix, topics are <prefix>/<suffix>
            strike_range: Strikes on each side of ATM (window half-width)
            max_concurrency: Max concurrent resolver lookups per expansion
            default_strike_diff: Increment for indices missing from strike_diffs
        """
        self.subscriber = subscriber
        self.resolver = resolver
        self.indices = [name.upper() for name in indices]
        self.strike_diffs = {name.upper(): diff for name, diff in strike_diffs.items()}
        self.index_prefix = index_prefix
        self.strike_range = strike_range
        self.default_strike_diff = default_strike_diff
        self._resolver_semaphore = asyncio.Semaphore(max_concurrency)

        self.active_subscriptions: Set[str] = set()
        self.first_message: Dict[str, bool] = {}
        self.option_topics: Dict[str, SubscriptionEntry] = {}
        # Topics with a subscribe request in flight, claimed before awaiting the broker
        self._pending_topics: Set[str] = set()

        self.stats = {
            "subscribe_requests": 0,
            "subscribe_failures": 0,
            "resolver_failures": 0,
            "expansions": 0,
        }

    def topic_for(self, topic_suffix: str) -> str:
        return f"{self.index_prefix}/{topic_suffix}"

    def get_strike_diff(self, index_name: str) -> float:
        return self.strike_diffs.get(index_name.upper(), self.default_strike_diff)

    def initialize_first_message_tracking(self) -> None:
        """Mark every index in the universe as awaiting its first message."""
        for index_name in self.indices:
            self.first_message[index_name] = True

    def claim_first_message(self, index_name: str) -> bool:
        """
        Atomically check and clear the first-message flag for an index.

        Returns True exactly once per index; False for later messages and for
        indices outside the universe.
        """
        if self.first_message.get(index_name) is True:
            self.first_message[index_name] = False
            return True
        return False

    def get_option_entry(self, topic_suffix: str) -> Optional[SubscriptionEntry]:
        return self.option_topics.get(topic_suffix)

    def is_active(self, topic: str) -> bool:
        return topic in self.active_subscriptions

    async def subscribe_base_instruments(self) -> int:
        """Subscribe to every index topic in the universe. Returns successful acks."""
        subscribed = 0
        for index_name in self.indices:
            topic = self.topic_for(index_name)
            logger.info(f"Subscribing to index: {topic}")
            if await self._subscribe(topic):
                logger.info(f"Subscribed to topic: {topic}")
                subscribed += 1
        return subscribed

    def strike_window(self, index_name: str, atm_strike: float) -> List[float]:
        return strike_window(atm_strike, self.get_strike_diff(index_name), self.strike_range)

    async def expand_around_strike(self, index_name: str, atm_strike: float) -> int:
        """
        Subscribe to CE and PE topics for every strike in the window around ATM.

        Resolver lookups run concurrently (bounded by the semaphore); a failed
        lookup or subscription only skips that (strike, type) combination.
        Topics already active or in flight are never re-subscribed.

        Returns:
            Number of new option subscriptions
        """
        index_name = index_name.upper()
        strikes = self.strike_window(index_name, atm_strike)
        logger.info(
            f"Subscribing to {index_name} options around ATM {atm_strike} "
            f"({len(strikes)} strikes x {len(OptionType)} types)"
        )
        self.stats["expansions"] += 1

        combinations: List[Tuple[float, OptionType]] = [
            (strike, option_type) for strike in strikes for option_type in OptionType
        ]
        results = await asyncio.gather(
            *(self._subscribe_option(index_name, strike, option_type) for strike, option_type in combinations),
            return_exceptions=True
        )

        added = 0
        for (strike, option_type), result in zip(combinations, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                self.stats["resolver_failures"] += 1
                logger.error(f"Failed to subscribe {index_name} {strike} {option_type.value}: {result}")
            elif result:
                added += 1

        logger.info(f"Added {added} option subscriptions for {index_name} around ATM {atm_strike}")
        return added

    async def _subscribe_option(self, index_name: str, strike: float, option_type: OptionType) -> bool:
        async with self._resolver_semaphore:
            token = await self.resolver.resolve_token(index_name, strike, option_type)

        if not token:
            self.stats["resolver_failures"] += 1
            return False

        topic_suffix = f"{OPTION_TOPIC_PREFIX}{token}"
        topic = self.topic_for(topic_suffix)
        if topic in self.active_subscriptions or topic in self._pending_topics:
            logger.debug(f"Option topic already subscribed: {topic}")
            return False

        entry = SubscriptionEntry(
            topic=topic,
            series_key=series_key_for(topic_suffix),
            index_name=index_name,
            instrument_type=option_type,
            strike=strike,
        )
        if not await self._subscribe(topic):
            return False

        self.option_topics.setdefault(topic_suffix, entry)
        logger.info(f"Subscribed to option topic: {topic} ({index_name} {strike} {option_type.value})")
        return True

    async def _subscribe(self, topic: str) -> bool:
        """Issue one subscription; claims the topic while the request is in flight."""
        if topic in self.active_subscriptions or topic in self._pending_topics:
            return False

        self._pending_topics.add(topic)
        self.stats["subscribe_requests"] += 1
        try:
            await self.subscriber.subscribe(topic)
        except Exception as e:
            self.stats["subscribe_failures"] += 1
            logger.error(f"Failed to subscribe to topic: {topic}: {e}")
            return False
        finally:
            self._pending_topics.discard(topic)

        self.active_subscriptions.add(topic)
        return True

    async def resubscribe_all(self) -> int:
        """Re-issue every active subscription, e.g. after a transport reconnect."""
        topics = sorted(self.active_subscriptions)
        if topics:
            logger.info(f"Re-subscribing to {len(topics)} topics")

        restored = 0
        for topic in topics:
            try:
                await self.subscriber.subscribe(topic)
                restored += 1
            except Exception as e:
                self.stats["subscribe_failures"] += 1
                logger.error(f"Failed to re-subscribe to topic: {topic}: {e}")
        return restored

    def get_stats(self) -> Dict[str, object]:
        return {
            **self.stats,
            "active_subscriptions": len(self.active_subscriptions),
            "option_topics": len(self.option_topics),
            "pending_first_message": sorted(name for name, pending in self.first_message.items() if pending),
        }
