"""
Unit tests for BatchWriter.

Focuses on the flush triggers (size threshold vs timer), per-batch
all-or-nothing persistence, the spill log and shutdown draining.
"""

import asyncio
import json
import logging

import pytest

from conftest import FakeDatabase
from ltpflow.batch_writer import BatchWriter
from ltpflow.models import OptionType
from ltpflow.topic_cache import TopicCache


def make_writer(db, **kwargs):
    params = {
        "batch_size": 3,
        "batch_interval": 60.0,
        "flush_timeout": 5.0,
        "retry_attempts": 2,
        "retry_base_delay": 0.0,
    }
    params.update(kwargs)
    return BatchWriter(db, TopicCache(db), **params)


class TestBatchWriterConfig:

    def test_rejects_non_positive_batch_size(self, fake_db):
        with pytest.raises(ValueError, match="batch_size"):
            BatchWriter(fake_db, batch_size=0)

    def test_rejects_non_positive_interval(self, fake_db):
        with pytest.raises(ValueError, match="batch_interval"):
            BatchWriter(fake_db, batch_interval=0)

    def test_creates_topic_cache_when_omitted(self, fake_db):
        writer = BatchWriter(fake_db)
        assert isinstance(writer.topic_cache, TopicCache)
        assert writer.topic_cache.database is fake_db


class TestFlushTriggers:
    """Size threshold and timer flushes."""

    @pytest.mark.asyncio
    async def test_batch_size_records_flush_once_without_timer(self, fake_db):
        """Exactly B records cause one flush and leave no timer armed."""
        writer = make_writer(fake_db, batch_size=3)

        for price in (100.0, 101.0, 102.0):
            assert await writer.record("index/NIFTY", price, "NIFTY")

        assert writer.stats["flushes"] == 1
        assert writer.stats["size_flushes"] == 1
        assert writer.stats["timer_flushes"] == 0
        assert not writer.timer_armed
        assert writer.pending == 0
        assert [ltp for _, ltp in fake_db.rows] == [100.0, 101.0, 102.0]
        assert fake_db.commits == 1

    @pytest.mark.asyncio
    async def test_fewer_than_batch_size_does_not_flush(self, fake_db):
        """Below the threshold nothing is written until the interval elapses."""
        writer = make_writer(fake_db, batch_size=3, batch_interval=60.0)

        await writer.record("index/NIFTY", 100.0, "NIFTY")
        await writer.record("index/NIFTY", 101.0, "NIFTY")

        assert writer.stats["flushes"] == 0
        assert writer.pending == 2
        assert writer.timer_armed
        assert fake_db.rows == []

        await writer.shutdown()

    @pytest.mark.asyncio
    async def test_timer_flushes_partial_batch(self, fake_db):
        writer = make_writer(fake_db, batch_size=100, batch_interval=0.05)

        await writer.record("index/NIFTY", 100.0, "NIFTY")
        await asyncio.sleep(0.2)

        assert writer.stats["timer_flushes"] == 1
        assert writer.stats["flushes"] == 1
        assert not writer.timer_armed
        assert len(fake_db.rows) == 1

    @pytest.mark.asyncio
    async def test_timer_rearms_for_next_batch(self, fake_db):
        writer = make_writer(fake_db, batch_size=2, batch_interval=60.0)

        await writer.record("index/NIFTY", 1.0)
        await writer.record("index/NIFTY", 2.0)
        assert not writer.timer_armed

        await writer.record("index/NIFTY", 3.0)
        assert writer.timer_armed

        await writer.shutdown()

    @pytest.mark.asyncio
    async def test_empty_flush_is_noop(self, fake_db):
        writer = make_writer(fake_db)

        assert await writer.flush() == 0
        assert writer.stats["flushes"] == 0
        assert fake_db.commits == 0

    @pytest.mark.asyncio
    async def test_records_during_flush_go_to_next_batch(self, fake_db):
        """The batch is detached before the write starts."""
        fake_db.insert_delay = 0.05
        writer = make_writer(fake_db, batch_size=100)

        await writer.record("index/NIFTY", 1.0)
        await writer.record("index/NIFTY", 2.0)
        flush_task = asyncio.create_task(writer.flush())
        await asyncio.sleep(0.01)

        await writer.record("index/NIFTY", 3.0)
        written = await flush_task

        assert written == 2
        assert writer.pending == 1
        assert [ltp for _, ltp in fake_db.rows] == [1.0, 2.0]

        await writer.shutdown()
        assert [ltp for _, ltp in fake_db.rows] == [1.0, 2.0, 3.0]


class TestFlushFailures:
    """Retry, rollback and data-loss handling."""

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, fake_db):
        fake_db.fail_inserts = 1
        writer = make_writer(fake_db, batch_size=2, retry_attempts=3)

        await writer.record("index/NIFTY", 1.0, "NIFTY")
        await writer.record("index/NIFTY", 2.0, "NIFTY")

        assert writer.stats["flush_errors"] == 1
        assert writer.stats["observations_written"] == 2
        assert fake_db.rollbacks == 1
        assert fake_db.commits == 1
        assert len(fake_db.rows) == 2

    @pytest.mark.asyncio
    async def test_failed_batch_is_all_or_nothing(self, fake_db):
        """A failed flush persists no rows and leaves no series id in the cache."""
        fake_db.fail_inserts = 2
        writer = make_writer(fake_db, batch_size=2, retry_attempts=2)

        await writer.record("index/NSE_FO|200001", 55.5, "NIFTY", OptionType.CALL, 20000.0)
        await writer.record("index/NIFTY", 20010.0, "NIFTY")

        assert fake_db.rows == []
        assert fake_db.topics == {}
        assert "index/NSE_FO|200001" not in writer.topic_cache
        assert "index/NIFTY" not in writer.topic_cache
        assert writer.stats["observations_lost"] == 2
        assert writer.stats["observations_written"] == 0

        # Store recovers: the series is created afresh and cache matches the store
        await writer.record("index/NIFTY", 20020.0, "NIFTY")
        await writer.flush()

        topic_id = writer.topic_cache.get("index/NIFTY")
        assert fake_db.topics["index/NIFTY"] == topic_id
        assert fake_db.rows == [(topic_id, 20020.0)]

    @pytest.mark.asyncio
    async def test_flush_timeout_rolls_back(self, fake_db):
        fake_db.insert_delay = 1.0
        writer = make_writer(fake_db, batch_size=100, flush_timeout=0.05, retry_attempts=1)

        await writer.record("index/NIFTY", 1.0)
        written = await writer.flush()

        assert written == 0
        assert fake_db.rows == []
        assert fake_db.rollbacks == 1
        assert writer.stats["observations_lost"] == 1

    @pytest.mark.asyncio
    async def test_data_loss_logged_as_critical_on_shutdown(self, fake_db, caplog):
        fake_db.fail_inserts = 10
        writer = make_writer(fake_db, batch_size=100, retry_attempts=1)

        await writer.record("index/NIFTY", 1.0)

        with caplog.at_level(logging.ERROR, logger="ltpflow.batch_writer"):
            await writer.shutdown()

        critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert critical
        assert "DATA LOSS" in critical[0].getMessage()


class TestSpillLog:
    """Batches that cannot be written go to a JSONL file replayed on start."""

    @pytest.mark.asyncio
    async def test_failed_batch_is_spilled(self, fake_db, tmp_path):
        spill_path = tmp_path / "spill" / "ltp.jsonl"
        fake_db.fail_inserts = 10
        writer = make_writer(fake_db, batch_size=2, retry_attempts=1, spill_path=str(spill_path))

        await writer.record("index/NSE_FO|200001", 55.5, "NIFTY", OptionType.CALL, 20000.0)
        await writer.record("index/NIFTY", 20010.0, "NIFTY")

        assert writer.stats["observations_spilled"] == 2
        assert writer.stats["observations_lost"] == 0

        lines = spill_path.read_text().splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["series_key"] == "index/NSE_FO|200001"
        assert first["instrument_type"] == "CE"
        assert first["strike"] == 20000.0

    @pytest.mark.asyncio
    async def test_spill_replayed_on_start(self, fake_db, tmp_path):
        spill_path = tmp_path / "ltp.jsonl"
        failing_db = FakeDatabase()
        failing_db.fail_inserts = 10
        failing = make_writer(failing_db, batch_size=2, retry_attempts=1, spill_path=str(spill_path))
        await failing.record("index/NSE_FO|200001", 55.5, "NIFTY", OptionType.CALL, 20000.0)
        await failing.record("index/NIFTY", 20010.0, "NIFTY")

        writer = make_writer(fake_db, spill_path=str(spill_path))
        await writer.start()

        assert fake_db.initialized
        assert writer.stats["observations_replayed"] == 2
        assert not spill_path.exists()
        assert [ltp for _, ltp in fake_db.rows] == [55.5, 20010.0]
        assert fake_db.topic_meta["index/NSE_FO|200001"][1:] == ("NIFTY", "CE", 20000.0)

    @pytest.mark.asyncio
    async def test_corrupt_spill_lines_are_skipped(self, fake_db, tmp_path):
        spill_path = tmp_path / "ltp.jsonl"
        spill_path.write_text(
            '{"series_key": "index/NIFTY", "price": 20010.0}\n'
            'not-json\n'
            '\n'
        )
        writer = make_writer(fake_db, spill_path=str(spill_path))

        replayed = await writer.replay_spill()

        assert replayed == 1
        assert writer.stats["observations_lost"] == 1
        assert len(fake_db.rows) == 1

    @pytest.mark.asyncio
    async def test_replay_without_spill_file(self, fake_db, tmp_path):
        writer = make_writer(fake_db, spill_path=str(tmp_path / "missing.jsonl"))
        assert await writer.replay_spill() == 0


class TestShutdown:

    @pytest.mark.asyncio
    async def test_shutdown_flushes_tail_and_closes(self, fake_db):
        writer = make_writer(fake_db, batch_size=100)

        await writer.record("index/NIFTY", 1.0)
        await writer.record("index/NIFTY", 2.0)
        await writer.shutdown()

        assert len(fake_db.rows) == 2
        assert fake_db.closed
        assert not writer.timer_armed

    @pytest.mark.asyncio
    async def test_record_after_shutdown_is_rejected(self, fake_db):
        writer = make_writer(fake_db)
        await writer.shutdown()

        accepted = await writer.record("index/NIFTY", 1.0)

        assert accepted is False
        assert writer.stats["observations_rejected"] == 1
        assert writer.pending == 0

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, fake_db):
        writer = make_writer(fake_db)
        await writer.record("index/NIFTY", 1.0)

        await writer.shutdown()
        await writer.shutdown()

        assert len(fake_db.rows) == 1

    @pytest.mark.asyncio
    async def test_get_stats(self, fake_db):
        writer = make_writer(fake_db, batch_size=1)
        await writer.record("index/NIFTY", 1.0)

        stats = writer.get_stats()

        assert stats["observations_written"] == 1
        assert stats["pending"] == 0
        assert isinstance(stats["last_flush_time"], str)
        assert stats["config"]["batch_size"] == 1
        assert stats["topic_cache"]["size"] == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_running_flush(self, fake_db):
        """A commit in progress survives cancellation of the task that triggered it."""
        fake_db.insert_delay = 0.1
        writer = make_writer(fake_db, batch_size=3)

        await writer.record("index/NIFTY", 1.0, "NIFTY")
        await writer.record("index/NIFTY", 2.0, "NIFTY")
        caller = asyncio.create_task(writer.record("index/NIFTY", 3.0, "NIFTY"))
        await asyncio.sleep(0.02)
        assert writer.get_stats()["active_flushes"] == 1

        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        await writer.shutdown()

        assert [ltp for _, ltp in fake_db.rows] == [1.0, 2.0, 3.0]
        assert fake_db.commits == 1
        assert fake_db.rollbacks == 0
        assert writer.stats["observations_lost"] == 0
        assert writer.get_stats()["active_flushes"] == 0


class TestSeriesIdentity:
    """Series ids across overlapping flushes and late classification."""

    @pytest.mark.asyncio
    async def test_overlapping_flushes_share_one_series_id(self, fake_db):
        """A timer flush and a size flush that both insert a new series agree on its id."""
        series_key = "index/NSE_FO|200001"
        fake_db.insert_delay = 0.05
        writer = make_writer(fake_db, batch_size=2, batch_interval=0.01)

        await writer.record(series_key, 55.0)
        # Timer flush is now holding its transaction open with the new row
        await asyncio.sleep(0.02)
        assert writer.get_stats()["active_flushes"] == 1

        await writer.record(series_key, 56.0)
        await writer.record(series_key, 57.0)
        await writer.shutdown()

        topic_id = fake_db.topics[series_key]
        assert writer.stats["timer_flushes"] == 1
        assert writer.stats["size_flushes"] == 1
        assert fake_db.conflict_waits >= 1
        assert len(fake_db.topics) == 1
        assert sorted(fake_db.rows) == [(topic_id, 55.0), (topic_id, 56.0), (topic_id, 57.0)]
        assert writer.topic_cache.get(series_key) == topic_id

    @pytest.mark.asyncio
    async def test_late_classification_fills_series_row(self, fake_db):
        """An untagged tick stored first does not leave the series unclassified for good."""
        series_key = "index/NSE_FO|200001"
        writer = make_writer(fake_db, batch_size=1)

        await writer.record(series_key, 55.0)
        assert fake_db.topic_meta[series_key][1:] == (None, None, None)
        assert not writer.topic_cache.is_classified(series_key)

        await writer.record(series_key, 56.0, "NIFTY", OptionType.CALL, 20000.0)
        await writer.record(series_key, 57.0, "NIFTY", OptionType.CALL, 20000.0)

        topic_id = fake_db.topics[series_key]
        assert fake_db.topic_meta[series_key] == (topic_id, "NIFTY", "CE", 20000.0)
        assert {row_id for row_id, _ in fake_db.rows} == {topic_id}
        assert writer.topic_cache.is_classified(series_key)
        assert writer.topic_cache.stats["reclassified"] == 1
        assert fake_db.upsert_calls == 2

    @pytest.mark.asyncio
    async def test_rolled_back_classification_is_retried(self, fake_db):
        series_key = "index/NSE_FO|200001"
        writer = make_writer(fake_db, batch_size=1, retry_attempts=1)

        await writer.record(series_key, 55.0)
        fake_db.fail_inserts = 1
        await writer.record(series_key, 56.0, "NIFTY", OptionType.PUT, 20000.0)

        assert fake_db.topic_meta[series_key][1] is None
        assert not writer.topic_cache.is_classified(series_key)

        await writer.record(series_key, 57.0, "NIFTY", OptionType.PUT, 20000.0)

        assert fake_db.topic_meta[series_key][1:] == ("NIFTY", "PE", 20000.0)
        assert writer.topic_cache.is_classified(series_key)
