"""
Batched, transactional persistence of LTP observations.

Observations accumulate in memory and are written to PostgreSQL in a single
transaction when either the batch size threshold is reached (in-line with the
triggering record() call) or the flush timer fires, whichever comes first.

Failure policy for a flush:
1. The transaction is rolled back (all-or-nothing per batch).
2. The write is retried with exponential backoff.
3. After the final attempt the batch is appended to a local JSONL spill log
   that is replayed on the next start. Without a spill log the batch is
   logged as lost.
"""

import os
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from .database import Database
from .models import Observation, OptionType
from .topic_cache import TopicCache

logger = logging.getLogger(__name__)


class BatchWriter:
    """Accumulates observations and flushes them to storage in transactions."""

    def __init__(
        self,
        database: Database,
        topic_cache: Optional[TopicCache] = None,
        batch_size: int = 100,
        batch_interval: float = 5.0,
        flush_timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.1,
        spill_path: Optional[str] = None,
    ):
        """
        Initialize the batch writer.

        Args:
            database: Storage backend
            topic_cache: Series id cache (created over `database` if omitted)
            batch_size: Observations per batch before an immediate flush
            batch_interval: Max seconds an observation waits before a timed flush
            flush_timeout: Seconds allowed for one flush transaction
            retry_attempts: Transaction attempts per flush before giving up
            retry_base_delay: First backoff delay in seconds, doubled per retry
            spill_path: JSONL file receiving batches that could not be written
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if batch_interval <= 0:
            raise ValueError(f"batch_interval must be positive, got {batch_interval}")

        self.database = database
        self.topic_cache = topic_cache or TopicCache(database)
        self.batch_size = batch_size
        self.batch_interval = batch_interval
        self.flush_timeout = flush_timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_base_delay = retry_base_delay
        self.spill_path = spill_path

        self._batch: List[Observation] = []
        self._timer_task: Optional[asyncio.Task] = None
        self._accepting = True
        self._shutting_down = False

        # In-flight flush tracking so shutdown can wait for them
        self._flush_tasks: Set[asyncio.Task] = set()
        self._active_flushes = 0
        self._flushes_idle = asyncio.Event()
        self._flushes_idle.set()

        self.stats = {
            "observations_recorded": 0,
            "observations_written": 0,
            "observations_spilled": 0,
            "observations_replayed": 0,
            "observations_lost": 0,
            "observations_rejected": 0,
            "flushes": 0,
            "size_flushes": 0,
            "timer_flushes": 0,
            "flush_errors": 0,
            "last_flush_time": None,
        }

        logger.info(
            f"BatchWriter initialized: batch_size={self.batch_size}, "
            f"batch_interval={self.batch_interval}s, spill_path={self.spill_path}"
        )

    @property
    def pending(self) -> int:
        """Number of observations waiting for the next flush."""
        return len(self._batch)

    @property
    def timer_armed(self) -> bool:
        return self._timer_task is not None

    async def start(self) -> None:
        """Initialize storage, preload the series cache and replay any spilled batches."""
        await self.database.initialize()
        await self.topic_cache.preload()
        await self.replay_spill()

    async def record(
        self,
        series_key: str,
        price: float,
        index_name: Optional[str] = None,
        instrument_type: Optional[OptionType] = None,
        strike: Optional[float] = None,
    ) -> bool:
        """
        Queue one observation for persistence.

        Returns:
            True if the observation was accepted, False after shutdown started
        """
        if not self._accepting:
            self.stats["observations_rejected"] += 1
            logger.error(f"Batch writer is shut down, observation lost: {series_key} ltp={price}")
            return False

        self._batch.append(Observation(
            series_key=series_key,
            price=price,
            index_name=index_name,
            instrument_type=instrument_type,
            strike=strike,
        ))
        self.stats["observations_recorded"] += 1

        if len(self._batch) >= self.batch_size:
            self.stats["size_flushes"] += 1
            await self.flush()
        elif self._timer_task is None:
            self._timer_task = asyncio.create_task(self._flush_after_interval())

        return True

    async def flush(self) -> int:
        """
        Write every pending observation in one transaction.

        No-op on an empty batch. The batch is detached before the first await
        so records arriving during the write go into a fresh batch.

        The write runs in its own task. Cancelling the caller (e.g. the
        transport loop stopping mid-message) does not abort a commit in
        progress; shutdown() waits for it.

        Returns:
            Number of rows committed
        """
        self._cancel_timer()

        if not self._batch:
            return 0

        batch, self._batch = self._batch, []
        self.stats["flushes"] += 1

        self._active_flushes += 1
        self._flushes_idle.clear()
        task = asyncio.create_task(self._run_flush(batch))
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                logger.info(f"Flush caller cancelled, write of {len(batch)} observations continues")
            raise

    async def _run_flush(self, batch: List[Observation]) -> int:
        try:
            return await self._write_with_retry(batch)
        except asyncio.CancelledError:
            logger.error(f"Flush of {len(batch)} observations was cancelled")
            self._handle_failed_batch(batch)
            raise
        finally:
            self._active_flushes -= 1
            if self._active_flushes == 0:
                self._flushes_idle.set()

    async def shutdown(self) -> None:
        """Stop accepting observations, flush the tail batch and release storage."""
        if self._shutting_down:
            return

        logger.info("Shutting down batch writer and flushing remaining observations...")
        self._accepting = False
        self._shutting_down = True
        self._cancel_timer()

        if self._batch:
            logger.info(f"Flushing {len(self._batch)} remaining observations")
            await self.flush()

        # Timer-triggered or size-triggered flushes may still be writing
        await self._flushes_idle.wait()

        try:
            await self.database.close()
        except Exception as e:
            logger.warning(f"Error closing database: {e}")

        logger.info(
            f"Batch writer stopped. Final stats: recorded={self.stats['observations_recorded']}, "
            f"written={self.stats['observations_written']}, spilled={self.stats['observations_spilled']}, "
            f"lost={self.stats['observations_lost']}"
        )

    async def _flush_after_interval(self) -> None:
        try:
            await asyncio.sleep(self.batch_interval)
        except asyncio.CancelledError:
            return

        # Disarm before flushing so flush() does not cancel the running timer
        self._timer_task = None
        self.stats["timer_flushes"] += 1
        await self.flush()

    def _cancel_timer(self) -> None:
        if self._timer_task is not None:
            if self._timer_task is not asyncio.current_task():
                self._timer_task.cancel()
            self._timer_task = None

    async def _write_with_retry(self, batch: List[Observation]) -> int:
        logger.info(f"Flushing {len(batch)} items to database...")

        for attempt in range(1, self.retry_attempts + 1):
            try:
                count = await asyncio.wait_for(self._write_batch(batch), timeout=self.flush_timeout)

                self.stats["observations_written"] += count
                self.stats["last_flush_time"] = datetime.now()
                logger.info(f"Batch insert of {count} rows committed to database")
                return count

            except asyncio.TimeoutError:
                self.stats["flush_errors"] += 1
                error = f"flush timed out after {self.flush_timeout}s"
            except Exception as e:
                self.stats["flush_errors"] += 1
                error = str(e)

            if attempt < self.retry_attempts:
                # Exponential backoff: 0.1s, 0.2s, 0.4s
                retry_delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"Batch write failed (attempt {attempt}/{self.retry_attempts}), "
                    f"retrying in {retry_delay}s: {error}"
                )
                await asyncio.sleep(retry_delay)
            else:
                logger.error(
                    f"Batch write failed after {self.retry_attempts} attempts, "
                    f"transaction rolled back for {len(batch)} observations: {error}"
                )

        self._handle_failed_batch(batch)
        return 0

    async def _write_batch(self, batch: List[Observation]) -> int:
        """Resolve series ids and insert all rows inside a single transaction."""
        staged: Dict[str, int] = {}
        classified: Set[str] = set()

        async with self.database.transaction() as conn:
            rows = []
            for observation in batch:
                topic_id = await self.topic_cache.resolve_series_id(
                    observation.series_key,
                    observation.index_name,
                    observation.instrument_type.value if observation.instrument_type else None,
                    observation.strike,
                    conn=conn,
                    staged=staged,
                    classified=classified,
                )
                rows.append((topic_id, observation.price))

            count = await self.database.insert_ltp_rows(conn, rows)

        # Only reached after COMMIT
        self.topic_cache.commit_staged(staged, classified)
        return count

    def _handle_failed_batch(self, batch: List[Observation]) -> None:
        if self.spill_path:
            try:
                self._spill(batch)
                self.stats["observations_spilled"] += len(batch)
                logger.error(
                    f"Spilled {len(batch)} observations to {self.spill_path}; "
                    f"they will be replayed on next start"
                )
                return
            except OSError as e:
                logger.error(f"Failed to spill batch to {self.spill_path}: {e}")

        self.stats["observations_lost"] += len(batch)
        level = logging.CRITICAL if self._shutting_down else logging.ERROR
        logger.log(
            level,
            f"DATA LOSS: {len(batch)} observations could not be persisted and were dropped"
        )

    def _spill(self, batch: List[Observation]) -> None:
        directory = os.path.dirname(self.spill_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.spill_path, "a", encoding="utf-8") as f:
            for observation in batch:
                f.write(observation.model_dump_json())
                f.write("\n")

    async def replay_spill(self) -> int:
        """
        Re-queue observations from the spill log and flush them.

        The spill file is removed before flushing; a failing flush spills the
        observations again.

        Returns:
            Number of observations replayed
        """
        if not self.spill_path or not os.path.exists(self.spill_path):
            return 0

        observations = []
        with open(self.spill_path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    observations.append(Observation.model_validate_json(line))
                except ValueError as e:
                    logger.error(f"Skipping corrupt spill record at {self.spill_path}:{line_number}: {e}")
                    self.stats["observations_lost"] += 1
        os.remove(self.spill_path)

        if not observations:
            return 0

        logger.info(f"Replaying {len(observations)} spilled observations from {self.spill_path}")
        self._batch = observations + self._batch
        self.stats["observations_replayed"] += len(observations)
        await self.flush()
        return len(observations)

    def get_stats(self) -> Dict[str, Any]:
        """Get batch writer statistics."""
        stats = dict(self.stats)
        if stats["last_flush_time"]:
            stats["last_flush_time"] = stats["last_flush_time"].isoformat()
        stats.update({
            "pending": len(self._batch),
            "timer_armed": self._timer_task is not None,
            "active_flushes": self._active_flushes,
            "accepting": self._accepting,
            "config": {
                "batch_size": self.batch_size,
                "batch_interval": self.batch_interval,
                "flush_timeout": self.flush_timeout,
                "retry_attempts": self.retry_attempts,
                "spill_path": self.spill_path,
            },
            "topic_cache": self.topic_cache.get_stats(),
        })
        return stats
