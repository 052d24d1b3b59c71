"""Tests for event store adapters."""
import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from redis.exceptions import ConnectionError as RedisConnectionError
import orjson
from factory_monitor.adapters.base import (
    ConcurrentUpdateError,
    DuplicateEventError,
    StoreUnavailableError,
    WriteConflictError,
)
from factory_monitor.adapters.memory import InMemoryEventStore
from factory_monitor.adapters.redis_store import RedisEventStore, time_score
from factory_monitor.event_models import MachineEvent

T0 = datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)


def record(event_id, minutes=0, defect_count=1, machine_id="M-001", line_id="L-01", factory_id="F01"):
    return MachineEvent(
        event_id=event_id,
        event_time=T0 + timedelta(minutes=minutes),
        received_time=T0 + timedelta(hours=3),
        machine_id=machine_id,
        duration_ms=1000,
        defect_count=defect_count,
        line_id=line_id,
        factory_id=factory_id,
    )


@pytest.mark.asyncio
async def test_memory_store_insert_and_find():
    """Test in-memory store can insert and look up events."""
    store = InMemoryEventStore()

    await store.insert_all([record("E-1"), record("E-2")])

    assert (await store.find_by_id("E-1")).event_id == "E-1"
    assert await store.find_by_id("E-missing") is None
    found = await store.find_by_ids(["E-1", "E-2", "E-3"])
    assert set(found) == {"E-1", "E-2"}
    assert await store.count() == 2


@pytest.mark.asyncio
async def test_memory_store_returns_copies():
    """Test mutating a returned record does not change the store."""
    store = InMemoryEventStore()
    await store.insert_all([record("E-1", defect_count=1)])

    fetched = await store.find_by_id("E-1")
    fetched.defect_count = 99

    assert (await store.find_by_id("E-1")).defect_count == 1


@pytest.mark.asyncio
async def test_memory_store_insert_is_all_or_nothing():
    """Test a duplicate id aborts the whole insert."""
    store = InMemoryEventStore()
    await store.insert_all([record("E-1")])

    with pytest.raises(DuplicateEventError) as exc_info:
        await store.insert_all([record("E-2"), record("E-1")])

    assert exc_info.value.event_ids == ["E-1"]
    assert await store.find_by_id("E-2") is None
    assert await store.count() == 1


@pytest.mark.asyncio
async def test_memory_store_update_compare_and_set():
    """Test updates apply only when the expected receipt time still matches."""
    store = InMemoryEventStore()
    original = record("E-1", defect_count=1)
    await store.insert_all([original])

    newer = original.model_copy(update={"defect_count": 2, "received_time": T0 + timedelta(hours=4)})
    await store.update_all([newer], expected={"E-1": original.received_time})
    assert (await store.find_by_id("E-1")).defect_count == 2

    stale = original.model_copy(update={"defect_count": 3})
    with pytest.raises(ConcurrentUpdateError):
        await store.update_all([stale], expected={"E-1": original.received_time})
    assert (await store.find_by_id("E-1")).defect_count == 2


@pytest.mark.asyncio
async def test_memory_store_update_of_missing_event_fails():
    """Test updating an id that is not stored is a conflict."""
    store = InMemoryEventStore()

    with pytest.raises(ConcurrentUpdateError):
        await store.update_all([record("E-404")])


@pytest.mark.asyncio
async def test_memory_store_range_queries():
    """Test half-open range counting and sentinel-free sums."""
    store = InMemoryEventStore()
    await store.insert_all([
        record("E-1", minutes=0, defect_count=5),
        record("E-2", minutes=30, defect_count=-1),
        record("E-3", minutes=60, defect_count=3),
        record("E-4", minutes=10, defect_count=4, machine_id="M-002"),
    ])

    assert await store.count_in_range("M-001", T0, T0 + timedelta(hours=1)) == 2
    assert await store.sum_defects_in_range("M-001", T0, T0 + timedelta(hours=1)) == 5
    assert await store.sum_defects_in_range("M-001", T0, T0 + timedelta(hours=2)) == 8


@pytest.mark.asyncio
async def test_memory_store_group_by_line():
    """Test per-line grouping returns named rows ordered by defects."""
    store = InMemoryEventStore()
    await store.insert_all([
        record("E-1", defect_count=1, line_id="L-01"),
        record("E-2", defect_count=6, line_id="L-02"),
        record("E-3", defect_count=-1, line_id="L-02"),
        record("E-4", defect_count=9, line_id=None),
    ])

    rows = await store.group_defects_by_line("F01", T0, T0 + timedelta(hours=1))

    assert [(r.line_id, r.total_defects, r.event_count) for r in rows] == [
        ("L-02", 6, 2),
        ("L-01", 1, 1),
    ]


@pytest.mark.asyncio
async def test_memory_store_health_check():
    """Test in-memory store health check."""
    assert await InMemoryEventStore().health_check() is True


@pytest.mark.asyncio
async def test_memory_store_negative_defects_are_unknown():
    """Test any negative defect count is left out of the sums, not only -1."""
    store = InMemoryEventStore()
    await store.insert_all([
        record("E-1", minutes=0, defect_count=3),
        record("E-2", minutes=5, defect_count=-5),
        record("E-3", minutes=10, defect_count=-1),
    ])

    assert await store.sum_defects_in_range("M-001", T0, T0 + timedelta(hours=1)) == 3
    rows = await store.group_defects_by_line("F01", T0, T0 + timedelta(hours=1))
    assert [(r.line_id, r.total_defects, r.event_count) for r in rows] == [("L-01", 3, 3)]


@pytest.mark.asyncio
async def test_memory_store_batch_commits_both_writes():
    """Test inserts and updates made inside one batch are both kept."""
    store = InMemoryEventStore()
    old = record("E-1", defect_count=1)
    await store.insert_all([old])

    async with store.batch():
        await store.insert_all([record("E-2")])
        await store.update_all(
            [old.model_copy(update={"defect_count": 7, "received_time": T0 + timedelta(hours=4)})],
            expected={"E-1": old.received_time},
        )

    assert await store.count() == 2
    assert (await store.find_by_id("E-1")).defect_count == 7


@pytest.mark.asyncio
async def test_memory_store_batch_rolls_back_on_error():
    """Test a failure inside a batch leaves no trace of its earlier writes."""
    store = InMemoryEventStore()
    old = record("E-1", defect_count=1)
    await store.insert_all([old])

    with pytest.raises(StoreUnavailableError):
        async with store.batch():
            await store.insert_all([record("E-2")])
            await store.update_all(
                [old.model_copy(update={"defect_count": 7})],
                expected={"E-1": old.received_time},
            )
            raise StoreUnavailableError("write failed")

    assert await store.find_by_id("E-2") is None
    assert (await store.find_by_id("E-1")).defect_count == 1
    assert await store.count() == 1


@pytest.mark.asyncio
async def test_memory_store_batch_blocks_other_writers():
    """Test writers outside a batch wait until it has finished."""
    store = InMemoryEventStore()
    order = []

    async def other_writer():
        await store.insert_all([record("E-9")])
        order.append("other")

    async with store.batch():
        task = asyncio.create_task(other_writer())
        await asyncio.sleep(0.01)
        await store.insert_all([record("E-1")])
        order.append("batch")
    await task

    assert order == ["batch", "other"]
    assert await store.count() == 2


def _mock_client(mock_redis_class, pipe=None):
    mock_redis = MagicMock()
    mock_redis_class.from_url.return_value = mock_redis
    if pipe is not None:
        async def run(func, *keys):
            return await func(pipe)
        mock_redis.transaction = AsyncMock(side_effect=run)
    return mock_redis


def _pipe(existing):
    pipe = MagicMock()
    pipe.mget = AsyncMock(return_value=existing)
    return pipe


def _raw(evt):
    return orjson.dumps(evt.model_dump())


@pytest.mark.asyncio
async def test_redis_store_insert_with_mock():
    """Test Redis insert writes the record and both indexes inside MULTI."""
    with patch("factory_monitor.adapters.redis_store.Redis") as mock_redis_class:
        pipe = _pipe([None])
        mock_redis = _mock_client(mock_redis_class, pipe)

        store = RedisEventStore(redis_url="redis://localhost:6379", prefix="test")
        evt = record("E-1")
        await store.insert_all([evt])

        keys = mock_redis.transaction.call_args[0][1:]
        assert keys == ("test:event:E-1",)
        pipe.multi.assert_called_once()

        key, data = pipe.set.call_args[0]
        assert key == "test:event:E-1"
        assert orjson.loads(data)["machine_id"] == "M-001"

        zadds = {c[0][0]: c[0][1] for c in pipe.zadd.call_args_list}
        assert zadds["test:machine:M-001"] == {"E-1": time_score(evt.event_time)}
        assert zadds["test:factory:F01"] == {"E-1": time_score(evt.event_time)}
        pipe.sadd.assert_called_once_with("test:ids", "E-1")


@pytest.mark.asyncio
async def test_redis_store_insert_duplicate_with_mock():
    """Test Redis insert refuses ids that already exist and writes nothing."""
    with patch("factory_monitor.adapters.redis_store.Redis") as mock_redis_class:
        pipe = _pipe([None, _raw(record("E-2"))])
        _mock_client(mock_redis_class, pipe)

        store = RedisEventStore(redis_url="redis://localhost:6379", prefix="test")
        with pytest.raises(DuplicateEventError) as exc_info:
            await store.insert_all([record("E-1"), record("E-2")])

        assert exc_info.value.event_ids == ["E-2"]
        pipe.multi.assert_not_called()
        pipe.set.assert_not_called()


@pytest.mark.asyncio
async def test_redis_store_update_moves_indexes_with_mock():
    """Test Redis update re-indexes a record whose machine changed."""
    with patch("factory_monitor.adapters.redis_store.Redis") as mock_redis_class:
        old = record("E-1", machine_id="M-001")
        pipe = _pipe([_raw(old)])
        _mock_client(mock_redis_class, pipe)

        store = RedisEventStore(redis_url="redis://localhost:6379", prefix="test")
        new = old.model_copy(update={"machine_id": "M-009", "received_time": T0 + timedelta(hours=5)})
        await store.update_all([new], expected={"E-1": old.received_time})

        removed = [c[0] for c in pipe.zrem.call_args_list]
        assert ("test:machine:M-001", "E-1") in removed
        added = [c[0][0] for c in pipe.zadd.call_args_list]
        assert "test:machine:M-009" in added


@pytest.mark.asyncio
async def test_redis_store_update_conflict_with_mock():
    """Test Redis update refuses records changed since they were read."""
    with patch("factory_monitor.adapters.redis_store.Redis") as mock_redis_class:
        current = record("E-1")
        pipe = _pipe([_raw(current)])
        _mock_client(mock_redis_class, pipe)

        store = RedisEventStore(redis_url="redis://localhost:6379", prefix="test")
        with pytest.raises(ConcurrentUpdateError):
            await store.update_all([current], expected={"E-1": T0})
        pipe.multi.assert_not_called()


@pytest.mark.asyncio
async def test_redis_store_batch_commits_in_one_transaction_with_mock():
    """Test a batch's inserts and updates go out in a single WATCH/MULTI."""
    with patch("factory_monitor.adapters.redis_store.Redis") as mock_redis_class:
        old = record("E-2", defect_count=1)
        pipe = _pipe([None, _raw(old)])
        mock_redis = _mock_client(mock_redis_class, pipe)

        store = RedisEventStore(redis_url="redis://localhost:6379", prefix="test")
        changed = old.model_copy(update={"defect_count": 4, "received_time": T0 + timedelta(hours=5)})
        async with store.batch():
            await store.insert_all([record("E-1")])
            await store.update_all([changed], expected={"E-2": old.received_time})
            mock_redis.transaction.assert_not_called()

        mock_redis.transaction.assert_awaited_once()
        assert mock_redis.transaction.call_args[0][1:] == ("test:event:E-1", "test:event:E-2")
        pipe.multi.assert_called_once()
        assert [c[0][0] for c in pipe.set.call_args_list] == ["test:event:E-1", "test:event:E-2"]


@pytest.mark.asyncio
async def test_redis_store_batch_discarded_on_error_with_mock():
    """Test a batch whose block raises sends nothing to Redis."""
    with patch("factory_monitor.adapters.redis_store.Redis") as mock_redis_class:
        pipe = _pipe([None])
        mock_redis = _mock_client(mock_redis_class, pipe)

        store = RedisEventStore(redis_url="redis://localhost:6379", prefix="test")
        with pytest.raises(StoreUnavailableError):
            async with store.batch():
                await store.insert_all([record("E-1")])
                raise StoreUnavailableError("write failed")

        mock_redis.transaction.assert_not_called()


@pytest.mark.asyncio
async def test_redis_store_batch_reports_mixed_conflicts_with_mock():
    """Test a batch losing both an insert and an update names every id."""
    with patch("factory_monitor.adapters.redis_store.Redis") as mock_redis_class:
        old = record("E-2")
        pipe = _pipe([_raw(record("E-1")), _raw(old)])
        _mock_client(mock_redis_class, pipe)

        store = RedisEventStore(redis_url="redis://localhost:6379", prefix="test")
        with pytest.raises(WriteConflictError) as exc_info:
            async with store.batch():
                await store.insert_all([record("E-1")])
                await store.update_all([old], expected={"E-2": T0})

        assert exc_info.value.event_ids == ["E-1", "E-2"]
        assert exc_info.value.kind == "write"
        pipe.multi.assert_not_called()


@pytest.mark.asyncio
async def test_redis_store_find_by_ids_with_mock():
    """Test Redis batch lookup decodes records with one MGET."""
    with patch("factory_monitor.adapters.redis_store.Redis") as mock_redis_class:
        mock_redis = _mock_client(mock_redis_class)
        mock_redis.mget = AsyncMock(return_value=[_raw(record("E-1")), None])

        store = RedisEventStore(redis_url="redis://localhost:6379", prefix="test")
        found = await store.find_by_ids(["E-2", "E-1", "E-1"])

        mock_redis.mget.assert_awaited_once_with(["test:event:E-1", "test:event:E-2"])
        assert list(found) == ["E-1"]
        assert found["E-1"].event_time == T0


@pytest.mark.asyncio
async def test_redis_store_range_queries_with_mock():
    """Test Redis range queries use an exclusive upper score bound."""
    with patch("factory_monitor.adapters.redis_store.Redis") as mock_redis_class:
        mock_redis = _mock_client(mock_redis_class)
        mock_redis.zcount = AsyncMock(return_value=3)
        mock_redis.zrangebyscore = AsyncMock(return_value=[b"E-1", b"E-2", b"E-3", b"E-4"])
        mock_redis.mget = AsyncMock(return_value=[
            _raw(record("E-1", defect_count=5, line_id="L-01")),
            _raw(record("E-2", defect_count=-1, line_id="L-01")),
            _raw(record("E-3", defect_count=3, line_id="L-02")),
            _raw(record("E-4", defect_count=-7, line_id="L-02")),
        ])

        store = RedisEventStore(redis_url="redis://localhost:6379", prefix="test")
        end = T0 + timedelta(hours=2)

        assert await store.count_in_range("M-001", T0, end) == 3
        mock_redis.zcount.assert_awaited_once_with(
            "test:machine:M-001", time_score(T0), f"({time_score(end)}"
        )
        assert await store.sum_defects_in_range("M-001", T0, end) == 8

        rows = await store.group_defects_by_line("F01", T0, end)
        assert [(r.line_id, r.total_defects, r.event_count) for r in rows] == [
            ("L-01", 5, 2),
            ("L-02", 3, 2),
        ]


@pytest.mark.asyncio
async def test_redis_store_unavailable_with_mock():
    """Test Redis errors surface as StoreUnavailableError."""
    with patch("factory_monitor.adapters.redis_store.Redis") as mock_redis_class:
        mock_redis = _mock_client(mock_redis_class)
        mock_redis.mget = AsyncMock(side_effect=RedisConnectionError("Connection refused"))

        store = RedisEventStore(redis_url="redis://localhost:6379")
        with pytest.raises(StoreUnavailableError):
            await store.find_by_ids(["E-1"])


@pytest.mark.asyncio
async def test_redis_store_health_check_success():
    """Test Redis store health check when Redis is available."""
    with patch("factory_monitor.adapters.redis_store.Redis") as mock_redis_class:
        mock_redis = _mock_client(mock_redis_class)
        mock_redis.ping = AsyncMock(return_value=True)

        store = RedisEventStore(redis_url="redis://localhost:6379")

        assert await store.health_check() is True
        mock_redis.ping.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_store_health_check_failure():
    """Test Redis store health check when Redis is unavailable."""
    with patch("factory_monitor.adapters.redis_store.Redis") as mock_redis_class:
        mock_redis = _mock_client(mock_redis_class)
        mock_redis.ping = AsyncMock(side_effect=Exception("Connection refused"))

        store = RedisEventStore(redis_url="redis://localhost:6379")

        assert await store.health_check() is False


@pytest.mark.asyncio
async def test_redis_store_close_with_mock():
    """Test closing releases the client."""
    with patch("factory_monitor.adapters.redis_store.Redis") as mock_redis_class:
        mock_redis = _mock_client(mock_redis_class)
        mock_redis.aclose = AsyncMock()
        mock_redis.ping = AsyncMock(return_value=True)

        store = RedisEventStore(redis_url="redis://localhost:6379")
        await store.health_check()
        await store.close()

        mock_redis.aclose.assert_awaited_once()



def test_store_selection_defaults_to_memory():
    """Test that the memory store is selected by default."""
    from factory_monitor.services.event_store import create_default_store

    assert isinstance(create_default_store(), InMemoryEventStore)
