"""Tests for cache_serde.orchestrator — the check/execute/persist protocol."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from pathlib import Path

import pytest
from pydantic import BaseModel

from cache_serde.codec import JsonCodec
from cache_serde.exceptions import InvalidKeyError, StorageError, WrappedOperationError
from cache_serde.freshness import FreshnessPolicy
from cache_serde.keys import hash_key
from cache_serde.models import FailureInfo, FailurePayload, SuccessPayload
from cache_serde.orchestrator import Memoizer, Outcome, memoize
from cache_serde.store import DiskcacheStore, FileStore

KEY = hash_key("orchestrator-test")
INTERVAL = 3600


class User(BaseModel):
    id: int
    name: str


@pytest.fixture()
def memoizer(file_store: FileStore, clock) -> Memoizer:
    return Memoizer(file_store, JsonCodec(User), FreshnessPolicy(INTERVAL, clock=clock))


async def _seed(store: FileStore, codec: JsonCodec, payload) -> None:
    await store.write(KEY, codec.encode(payload))


# ------------------------------------------------------------------ #
# Miss then hit
# ------------------------------------------------------------------ #


class TestMissThenHit:
    @pytest.mark.asyncio
    async def test_first_call_executes_and_persists(self, memoizer, file_store, make_producer) -> None:
        producer = make_producer(User(id=1, name="ada"))

        outcome = await memoizer.execute(KEY, producer)

        assert producer.calls == 1
        assert outcome.ok
        assert outcome.value == User(id=1, name="ada")
        assert outcome.from_cache is False
        assert file_store.path_for(KEY).is_file()

    @pytest.mark.asyncio
    async def test_second_call_served_from_cache(self, memoizer, make_producer) -> None:
        producer = make_producer(User(id=1, name="ada"))

        await memoizer.execute(KEY, producer)
        outcome = await memoizer.execute(KEY, producer)

        assert producer.calls == 1
        assert outcome.from_cache is True
        assert outcome.unwrap() == User(id=1, name="ada")
        assert isinstance(outcome.value, User)

    @pytest.mark.asyncio
    async def test_survives_new_memoizer_instance(self, file_store, clock, make_producer) -> None:
        """A fresh Memoizer (as after a restart) reads what the previous one wrote."""
        producer = make_producer(User(id=2, name="grace"))
        first = Memoizer(file_store, JsonCodec(User), FreshnessPolicy(INTERVAL, clock=clock))
        await first.execute(KEY, producer)

        second = Memoizer(FileStore(file_store.root), JsonCodec(User), FreshnessPolicy(INTERVAL, clock=clock))
        outcome = await second.execute(KEY, producer)

        assert producer.calls == 1
        assert outcome.value == User(id=2, name="grace")

    @pytest.mark.asyncio
    async def test_idempotent_hit_on_seeded_entry(self, memoizer, file_store, make_producer) -> None:
        codec = JsonCodec(User)
        await _seed(file_store, codec, SuccessPayload(value=User(id=9, name="seeded")))
        producer = make_producer(User(id=0, name="never"))

        first = await memoizer.execute(KEY, producer)
        second = await memoizer.execute(KEY, producer)

        assert producer.calls == 0
        assert first.value == second.value == User(id=9, name="seeded")


# ------------------------------------------------------------------ #
# Expiry
# ------------------------------------------------------------------ #


class TestExpiry:
    @pytest.mark.asyncio
    async def test_stale_entry_recomputed_and_overwritten(self, memoizer, file_store, clock, make_producer) -> None:
        producer = make_producer(User(id=1, name="v1"), User(id=1, name="v2"))
        await memoizer.execute(KEY, producer)

        clock.advance(INTERVAL + 1)
        outcome = await memoizer.execute(KEY, producer)

        assert producer.calls == 2
        assert outcome.value == User(id=1, name="v2")
        stored = JsonCodec(User).decode(await file_store.read(KEY))
        assert stored.value == User(id=1, name="v2")

    @pytest.mark.asyncio
    async def test_old_mtime_is_stale(self, memoizer, file_store, make_producer) -> None:
        """Expiry driven by the file's real mtime, not only the injected clock."""
        producer = make_producer(User(id=1, name="v1"), User(id=1, name="v2"))
        await memoizer.execute(KEY, producer)
        old = datetime.now().timestamp() - INTERVAL - 60
        os.utime(file_store.path_for(KEY), (old, old))

        outcome = await memoizer.execute(KEY, producer)

        assert producer.calls == 2
        assert outcome.value.name == "v2"

    @pytest.mark.asyncio
    async def test_just_inside_interval_is_fresh(self, memoizer, clock, make_producer) -> None:
        producer = make_producer(User(id=1, name="v1"), User(id=1, name="v2"))
        await memoizer.execute(KEY, producer)

        clock.advance(INTERVAL - 5)
        outcome = await memoizer.execute(KEY, producer)

        assert producer.calls == 1
        assert outcome.value.name == "v1"

    @pytest.mark.asyncio
    async def test_zero_interval_always_recomputes(self, file_store, make_producer) -> None:
        memo = Memoizer(file_store, JsonCodec(int), FreshnessPolicy(0))
        producer = make_producer(1, 2, 3)

        results = [(await memo.execute(KEY, producer)).value for _ in range(3)]

        assert results == [1, 2, 3]
        assert producer.calls == 3


# ------------------------------------------------------------------ #
# Corrupt entries
# ------------------------------------------------------------------ #


class TestCorruptRecovery:
    @pytest.mark.asyncio
    async def test_garbage_entry_recomputed_and_rewritten(
        self, memoizer, file_store, make_producer, caplog: pytest.LogCaptureFixture
    ) -> None:
        await file_store.write(KEY, b"\x00\x01 definitely not json")
        producer = make_producer(User(id=3, name="fixed"))

        with caplog.at_level(logging.WARNING, logger="cache_serde"):
            outcome = await memoizer.execute(KEY, producer)

        assert producer.calls == 1
        assert outcome.value == User(id=3, name="fixed")
        assert "corrupt" in caplog.text
        repaired = JsonCodec(User).decode(await file_store.read(KEY))
        assert repaired.value == User(id=3, name="fixed")

    @pytest.mark.asyncio
    async def test_entry_for_other_type_is_a_miss(self, memoizer, file_store, make_producer) -> None:
        await _seed(file_store, JsonCodec(str), SuccessPayload(value="a string"))
        producer = make_producer(User(id=4, name="typed"))

        outcome = await memoizer.execute(KEY, producer)

        assert producer.calls == 1
        assert outcome.value == User(id=4, name="typed")


# ------------------------------------------------------------------ #
# Failure caching
# ------------------------------------------------------------------ #


class TestFailureCaching:
    @pytest.mark.asyncio
    async def test_failure_replayed_without_reexecution(self, memoizer, make_producer) -> None:
        producer = make_producer(error=ValueError("upstream said no"))

        live = await memoizer.execute(KEY, producer)
        replayed = await memoizer.execute(KEY, producer)

        assert producer.calls == 1
        assert not live.ok and not replayed.ok
        assert live.error == replayed.error
        assert replayed.error.error_type == "ValueError"
        assert replayed.from_cache is True

    @pytest.mark.asyncio
    async def test_live_and_replayed_failures_raise_identically(self, memoizer, make_producer) -> None:
        producer = make_producer(error=ValueError("upstream said no"))

        with pytest.raises(WrappedOperationError) as live_info:
            (await memoizer.execute(KEY, producer)).unwrap()
        with pytest.raises(WrappedOperationError) as replay_info:
            (await memoizer.execute(KEY, producer)).unwrap()

        assert type(live_info.value) is type(replay_info.value)
        assert str(live_info.value) == str(replay_info.value) == "ValueError: upstream said no"
        assert live_info.value.failure == replay_info.value.failure
        assert live_info.value.__cause__ is None
        assert replay_info.value.__cause__ is None

    @pytest.mark.asyncio
    async def test_live_exception_kept_on_outcome_only(self, memoizer, make_producer) -> None:
        error = ValueError("upstream said no")
        producer = make_producer(error=error)

        live = await memoizer.execute(KEY, producer)
        replayed = await memoizer.execute(KEY, producer)

        assert live.exception is error
        assert replayed.exception is None
        assert live.error == replayed.error

    @pytest.mark.asyncio
    async def test_seeded_failure_replayed(self, memoizer, file_store, make_producer) -> None:
        failure = FailureInfo(error_type="HTTPStatusError", module="httpx", message="503")
        await _seed(file_store, JsonCodec(User), FailurePayload(error=failure))
        producer = make_producer(User(id=1, name="never"))

        outcome = await memoizer.execute(KEY, producer)

        assert producer.calls == 0
        assert outcome.error == failure

    @pytest.mark.asyncio
    async def test_failures_not_cached_when_disabled(self, file_store, clock, make_producer) -> None:
        memo = Memoizer(
            file_store, JsonCodec(int), FreshnessPolicy(INTERVAL, clock=clock), cache_failures=False
        )
        producer = make_producer(error=RuntimeError("flaky"))

        await memo.execute(KEY, producer)
        await memo.execute(KEY, producer)

        assert producer.calls == 2
        assert not file_store.path_for(KEY).exists()

    @pytest.mark.asyncio
    async def test_producer_may_return_outcome(self, memoizer, make_producer) -> None:
        failure = FailureInfo(error_type="QuotaExceeded", message="try later")
        producer = make_producer(Outcome.failure(failure))

        await memoizer.execute(KEY, producer)
        replayed = await memoizer.execute(KEY, producer)

        assert producer.calls == 1
        assert replayed.error == failure


# ------------------------------------------------------------------ #
# Storage problems
# ------------------------------------------------------------------ #


class _UnstattableStore(FileStore):
    async def last_modified(self, key: str):
        raise StorageError("entry vanished")


class _UnreadableStore(FileStore):
    async def read(self, key: str) -> bytes:
        raise StorageError("permission denied")


class TestStorageProblems:
    @pytest.mark.asyncio
    async def test_persist_failure_still_returns_value(
        self, tmp_path: Path, make_producer, caplog: pytest.LogCaptureFixture
    ) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        memo = Memoizer(FileStore(blocker), JsonCodec(int))
        producer = make_producer(42)

        with caplog.at_level(logging.WARNING, logger="cache_serde"):
            outcome = await memo.execute(KEY, producer)

        assert outcome.unwrap() == 42
        assert "Could not persist" in caplog.text

    @pytest.mark.asyncio
    async def test_unserializable_value_still_returned(
        self, file_store, make_producer, caplog: pytest.LogCaptureFixture
    ) -> None:
        sentinel = object()
        memo = Memoizer(file_store, JsonCodec())

        with caplog.at_level(logging.WARNING, logger="cache_serde"):
            outcome = await memo.execute(KEY, make_producer(sentinel))

        assert outcome.value is sentinel
        assert not file_store.path_for(KEY).exists()
        assert "Could not persist" in caplog.text

    @pytest.mark.asyncio
    async def test_unreadable_metadata_is_a_miss(self, cache_root, make_producer) -> None:
        store = _UnstattableStore(cache_root)
        await store.write(KEY, JsonCodec(int).encode(SuccessPayload(value=1)))
        producer = make_producer(2)

        outcome = await Memoizer(store, JsonCodec(int)).execute(KEY, producer)

        assert producer.calls == 1
        assert outcome.value == 2

    @pytest.mark.asyncio
    async def test_unreadable_entry_is_a_miss(self, cache_root, make_producer) -> None:
        store = _UnreadableStore(cache_root)
        await store.write(KEY, JsonCodec(int).encode(SuccessPayload(value=1)))
        producer = make_producer(2)

        outcome = await Memoizer(store, JsonCodec(int)).execute(KEY, producer)

        assert producer.calls == 1
        assert outcome.value == 2

    @pytest.mark.asyncio
    async def test_invalid_key_rejected(self, memoizer, make_producer) -> None:
        with pytest.raises(InvalidKeyError):
            await memoizer.execute("../../etc/passwd", make_producer(1))


# ------------------------------------------------------------------ #
# Cancellation and concurrency
# ------------------------------------------------------------------ #


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_producer_writes_nothing(self, memoizer, file_store, make_producer) -> None:
        producer = make_producer(error=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await memoizer.execute(KEY, producer)

        assert not file_store.path_for(KEY).exists()

    @pytest.mark.asyncio
    async def test_cancelled_task_keeps_previous_entry(self, memoizer, file_store, clock, make_producer) -> None:
        await memoizer.execute(KEY, make_producer(User(id=1, name="kept")))
        clock.advance(INTERVAL + 1)
        started = asyncio.Event()

        async def slow() -> User:
            started.set()
            await asyncio.sleep(10)
            return User(id=1, name="never")

        task = asyncio.create_task(memoizer.execute(KEY, slow))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        stored = JsonCodec(User).decode(await file_store.read(KEY))
        assert stored.value.name == "kept"


class TestConcurrentRace:
    @pytest.mark.asyncio
    async def test_both_execute_and_last_write_wins(self, memoizer, file_store) -> None:
        calls: list[str] = []

        def _producer(name: str):
            async def produce() -> User:
                calls.append(name)
                await asyncio.sleep(0.05)
                return User(id=1, name=name)

            return produce

        a, b = await asyncio.gather(
            memoizer.execute(KEY, _producer("a")),
            memoizer.execute(KEY, _producer("b")),
        )

        assert sorted(calls) == ["a", "b"]
        assert {a.value.name, b.value.name} == {"a", "b"}
        stored = JsonCodec(User).decode(await file_store.read(KEY))
        assert stored.value.name in {"a", "b"}


# ------------------------------------------------------------------ #
# Other stores and the one-shot helper
# ------------------------------------------------------------------ #


class TestWithDiskcacheStore:
    @pytest.mark.asyncio
    async def test_miss_then_hit(self, tmp_path: Path, make_producer) -> None:
        store = DiskcacheStore(tmp_path / "dc")
        try:
            memo = Memoizer(store, JsonCodec(User))
            producer = make_producer(User(id=5, name="dc"))
            await memo.execute(KEY, producer)
            outcome = await memo.execute(KEY, producer)
        finally:
            store.close()

        assert producer.calls == 1
        assert outcome.from_cache
        assert outcome.value == User(id=5, name="dc")


class TestMemoizeHelper:
    @pytest.mark.asyncio
    async def test_memoize_with_interval(self, file_store, make_producer) -> None:
        producer = make_producer(7)
        await memoize(KEY, producer, file_store, 60, codec=JsonCodec(int))
        outcome = await memoize(KEY, producer, file_store, 60, codec=JsonCodec(int))
        assert producer.calls == 1
        assert outcome.value == 7

    @pytest.mark.asyncio
    async def test_memoize_with_policy(self, file_store, clock, make_producer) -> None:
        producer = make_producer(1, 2)
        policy = FreshnessPolicy(60, clock=clock)
        await memoize(KEY, producer, file_store, policy, codec=JsonCodec(int))
        clock.advance(61)
        outcome = await memoize(KEY, producer, file_store, policy, codec=JsonCodec(int))
        assert outcome.value == 2
