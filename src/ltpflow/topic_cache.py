"""
In-memory topic_name -> topic_id cache in front of the topics table.

The store is the source of truth. Ids resolved inside an open transaction are
staged and only published to the cache after the caller commits, so a
rolled-back insert can never leave a dangling id in memory.

Series first seen without classification (an option tick that arrived before
its subscription entry) are remembered; the next lookup that carries an
index_name goes back to the store once to fill the row in.
"""

import asyncio
import logging
from typing import Dict, Optional, Set

from .database import Database

logger = logging.getLogger(__name__)


class TopicCache:
    """Caches series identifiers to avoid repeated lookups and inserts."""

    def __init__(self, database: Database):
        self.database = database
        self._cache: Dict[str, int] = {}
        self._unclassified: Set[str] = set()
        self._inflight: Dict[str, asyncio.Future] = {}

        self.stats = {
            "hits": 0,
            "misses": 0,
            "reclassified": 0,
            "preloaded": 0,
        }

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, series_key: str) -> bool:
        return series_key in self._cache

    def get(self, series_key: str) -> Optional[int]:
        return self._cache.get(series_key)

    def is_classified(self, series_key: str) -> bool:
        return series_key not in self._unclassified

    async def preload(self) -> int:
        """Load all existing series from the store. Run once at startup."""
        series = await self.database.fetch_series()
        self._cache.update(series)
        self._unclassified.update(await self.database.fetch_unclassified_series())
        self.stats["preloaded"] = len(series)
        logger.info(
            f"Preloaded {len(series)} topics into cache "
            f"({len(self._unclassified)} without classification)"
        )
        return len(series)

    async def resolve_series_id(
        self,
        series_key: str,
        index_name: Optional[str] = None,
        instrument_type: Optional[str] = None,
        strike: Optional[float] = None,
        conn=None,
        staged: Optional[Dict[str, int]] = None,
        classified: Optional[Set[str]] = None,
    ) -> int:
        """
        Resolve the topic_id for a series, creating the series row if needed.

        Args:
            series_key: Series name (topic_name column)
            index_name: Optional underlying index; fills a row stored without one
            instrument_type: Optional CE/PE, stored with index_name
            strike: Optional strike, stored with index_name
            conn: Open transaction connection; when omitted a pooled
                autocommit connection is used
            staged: Receives ids resolved on `conn`; publish them with
                commit_staged() once the transaction has committed
            classified: Receives names whose classification was written on
                `conn`; pass it to commit_staged() as well

        Returns:
            The series identifier
        """
        needs_classification = (
            index_name is not None
            and series_key in self._unclassified
            and not (classified is not None and series_key in classified)
        )

        topic_id = self._cache.get(series_key)
        if topic_id is None and staged is not None:
            topic_id = staged.get(series_key)

        if topic_id is not None and not needs_classification:
            self.stats["hits"] += 1
            return topic_id

        if topic_id is None:
            self.stats["misses"] += 1
        else:
            self.stats["reclassified"] += 1

        if conn is not None:
            topic_id = await self.database.upsert_series(
                conn, series_key, index_name, instrument_type, strike
            )
            if staged is not None:
                staged[series_key] = topic_id
            if index_name is None:
                self._unclassified.add(series_key)
            elif classified is not None:
                classified.add(series_key)
            return topic_id

        # Concurrent misses for the same key share one round trip
        pending = self._inflight.get(series_key)
        if pending is not None:
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._inflight[series_key] = future
        try:
            async with self.database.get_connection() as own_conn:
                topic_id = await self.database.upsert_series(
                    own_conn, series_key, index_name, instrument_type, strike
                )
            self._cache[series_key] = topic_id
            if index_name is None:
                self._unclassified.add(series_key)
            else:
                self._unclassified.discard(series_key)
            future.set_result(topic_id)
            return topic_id
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so a failure with no concurrent waiter is not reported as unhandled
            future.exception()
            raise
        finally:
            del self._inflight[series_key]

    def commit_staged(self, staged: Dict[str, int], classified: Optional[Set[str]] = None) -> None:
        """Publish ids resolved inside a transaction that has now committed."""
        for series_key, topic_id in staged.items():
            self._cache.setdefault(series_key, topic_id)
        if classified:
            self._unclassified.difference_update(classified)

    def get_stats(self):
        return {
            **self.stats,
            "size": len(self._cache),
            "unclassified": len(self._unclassified),
        }
