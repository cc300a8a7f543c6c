"""
Pytest configuration and shared fixtures for ltpflow tests.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Set, Tuple

import pytest

# Set up test environment variables BEFORE any imports
os.environ.update({
    "ENVIRONMENT": "test",
    "LOG_LEVEL": "DEBUG",
})

from ltpflow.models import OptionType  # noqa: E402


class MockAsyncContextManager:
    """Helper class for mocking async context managers."""

    def __init__(self, return_value):
        self.return_value = return_value

    async def __aenter__(self):
        return self.return_value

    async def __aexit__(self, *args):
        pass


class FakeConnection:
    """Connection handle; inside a transaction writes are held until commit."""

    def __init__(self, in_transaction: bool):
        self.in_transaction = in_transaction
        self.topics: Dict[str, tuple] = {}
        self.rows: List[Tuple[int, float]] = []
        # Names this transaction inserted; other transactions block on them
        self.inserting: Dict[str, asyncio.Future] = {}


class FakeDatabase:
    """
    In-memory stand-in for Database with the same surface the batch writer
    and topic cache use. Transactions commit on clean exit and discard their
    writes on any exception, including cancellation.

    topic_name is unique: a transaction upserting a name that another open
    transaction has inserted waits for that transaction to finish, then
    returns the committed id or inserts afresh after a rollback. Upserts
    fill classification left NULL and never overwrite it.
    """

    def __init__(self):
        self.topics: Dict[str, int] = {}
        self.topic_meta: Dict[str, tuple] = {}
        self.rows: List[Tuple[int, float]] = []
        self._next_id = 1
        self._inserting: Dict[str, asyncio.Future] = {}

        self.initialized = False
        self.closed = False
        self.commits = 0
        self.rollbacks = 0
        self.upsert_calls = 0
        self.conflict_waits = 0

        # Failure and latency switches
        self.fail_inserts = 0
        self.fail_upserts = 0
        self.insert_delay = 0.0
        self.upsert_delay = 0.0

    async def initialize(self):
        self.initialized = True

    async def close(self):
        self.closed = True

    async def fetch_series(self) -> Dict[str, int]:
        return dict(self.topics)

    async def fetch_unclassified_series(self) -> Set[str]:
        return {name for name, meta in self.topic_meta.items() if meta[1] is None}

    @asynccontextmanager
    async def get_connection(self):
        yield FakeConnection(in_transaction=False)

    @asynccontextmanager
    async def transaction(self):
        conn = FakeConnection(in_transaction=True)
        try:
            try:
                yield conn
            except BaseException:
                self.rollbacks += 1
                raise
            for name, meta in conn.topics.items():
                self._store_topic(name, meta)
            self.rows.extend(conn.rows)
            self.commits += 1
        finally:
            for name, future in conn.inserting.items():
                self._inserting.pop(name, None)
                if not future.done():
                    future.set_result(None)

    def _store_topic(self, name: str, meta: tuple) -> None:
        self.topics[name] = meta[0]
        self.topic_meta[name] = meta

    def _write_topic(self, conn, name: str, meta: tuple) -> None:
        if conn.in_transaction:
            conn.topics[name] = meta
        else:
            self._store_topic(name, meta)

    @staticmethod
    def _coalesce(meta: tuple, index_name, instrument_type, strike) -> tuple:
        topic_id, current_index, current_type, current_strike = meta
        return (
            topic_id,
            current_index if current_index is not None else index_name,
            current_type if current_type is not None else instrument_type,
            current_strike if current_strike is not None else strike,
        )

    async def upsert_series(
        self,
        conn,
        topic_name: str,
        index_name: Optional[str] = None,
        instrument_type: Optional[str] = None,
        strike: Optional[float] = None,
    ) -> int:
        self.upsert_calls += 1
        if self.upsert_delay:
            await asyncio.sleep(self.upsert_delay)
        if self.fail_upserts:
            self.fail_upserts -= 1
            raise ConnectionResetError("connection reset by peer")

        if topic_name in conn.topics:
            meta = self._coalesce(conn.topics[topic_name], index_name, instrument_type, strike)
            conn.topics[topic_name] = meta
            return meta[0]

        while topic_name in self._inserting:
            self.conflict_waits += 1
            await asyncio.shield(self._inserting[topic_name])

        if topic_name in self.topics:
            current = self.topic_meta.get(topic_name, (self.topics[topic_name], None, None, None))
            meta = self._coalesce(current, index_name, instrument_type, strike)
            if meta != current:
                self._write_topic(conn, topic_name, meta)
            return meta[0]

        # Like a SERIAL, ids are consumed even when the insert rolls back
        topic_id = self._next_id
        self._next_id += 1
        if conn.in_transaction:
            future = asyncio.get_running_loop().create_future()
            conn.inserting[topic_name] = future
            self._inserting[topic_name] = future
        self._write_topic(conn, topic_name, (topic_id, index_name, instrument_type, strike))
        return topic_id

    async def insert_ltp_rows(self, conn, rows) -> int:
        rows = list(rows)
        if self.insert_delay:
            await asyncio.sleep(self.insert_delay)
        if self.fail_inserts:
            self.fail_inserts -= 1
            raise ConnectionResetError("connection reset by peer")
        if conn.in_transaction:
            conn.rows.extend(rows)
        else:
            self.rows.extend(rows)
        return len(rows)


class FakeSubscriber:
    """Transport double that records subscriptions and can reject topics."""

    def __init__(self, fail_topics=None):
        self.subscribed: List[str] = []
        self.fail_topics = set(fail_topics or [])

    async def subscribe(self, topic: str) -> None:
        await asyncio.sleep(0)
        if topic in self.fail_topics:
            raise RuntimeError(f"broker rejected {topic}")
        self.subscribed.append(topic)


def token_for(strike: float, option_type: OptionType) -> str:
    """Deterministic token used by FakeResolver: strike digits plus 1 (CE) or 2 (PE)."""
    return f"{int(strike)}{1 if option_type == OptionType.CALL else 2}"


class FakeResolver:
    """Token resolver double returning deterministic tokens."""

    def __init__(self, missing=None):
        self.calls: List[tuple] = []
        self.missing = set(missing or [])
        self.closed = False

    async def resolve_token(self, index_name, strike, option_type):
        await asyncio.sleep(0)
        self.calls.append((index_name, strike, option_type))
        if (strike, option_type) in self.missing:
            return None
        return token_for(strike, option_type)

    async def close(self):
        self.closed = True

    def get_stats(self):
        return {"requests": len(self.calls)}


@pytest.fixture
def fake_db():
    """In-memory database double."""
    return FakeDatabase()


@pytest.fixture
def fake_subscriber():
    return FakeSubscriber()


@pytest.fixture
def fake_resolver():
    return FakeResolver()
