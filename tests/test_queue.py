import asyncio
import logging
import time

import pytest

from helpers import FlakySave, no_backoff

from savequeue.exceptions import PermanentSaveError
from savequeue.models import ItemStatus
from savequeue.queue import MIN_RETRY_DELAY, SaveQueue

MILK = {"barcode": "4601234567890", "name": "Молоко 3.2%", "has_price": True}
BREAD = {"barcode": "4609876543210", "name": "Хлеб", "has_price": True}


def run(coro):
    return asyncio.run(coro)


def test_always_failing_item_becomes_failed_after_ceiling():
    save = FlakySave(failures=1000)
    escalated = []

    async def scenario():
        queue = SaveQueue(save, backoff=no_backoff, on_failed=escalated.append)
        item_id = queue.enqueue(MILK)
        await queue.join()
        return queue, item_id

    queue, item_id = run(scenario())
    item = queue.get_item(item_id)
    assert item.status is ItemStatus.FAILED
    assert item.attempts == 10
    assert item.error == "backend unavailable"
    assert len(save.calls) == 10
    assert len(escalated) == 1
    assert escalated[0].id == item_id
    assert escalated[0].barcode == MILK["barcode"]
    assert escalated[0].name == MILK["name"]


def test_item_saved_after_two_failures():
    save = FlakySave(failures=2)

    async def scenario():
        queue = SaveQueue(save, backoff=no_backoff)
        item_id = queue.enqueue(BREAD)
        await queue.join()
        return queue.get_item(item_id)

    item = run(scenario())
    assert item.status is ItemStatus.SAVED
    assert item.attempts == 3
    assert item.error is None


def test_independent_items_reach_their_own_terminal_states():
    failing = FlakySave(failures=1000)
    working = FlakySave()

    async def save(payload):
        if payload["barcode"] == MILK["barcode"]:
            return await failing(payload)
        return await working(payload)

    async def scenario():
        queue = SaveQueue(save, backoff=no_backoff, on_failed=lambda item: None)
        queue.enqueue(MILK)
        queue.enqueue(BREAD)
        await queue.join()
        return queue.get_stats()

    stats = run(scenario())
    assert stats.model_dump() == {
        "pending": 0, "saving": 0, "saved": 1, "queued": 0, "failed": 1, "total": 2,
    }


def test_retry_failed_item_with_recovered_backend():
    save = FlakySave(failures=1000)
    escalated = []

    async def scenario():
        queue = SaveQueue(save, backoff=no_backoff, on_failed=escalated.append)
        item_id = queue.enqueue(MILK)
        await queue.join()
        save.failures = 0
        assert queue.retry_failed(item_id) is True
        assert queue.get_item(item_id).attempts == 0
        await queue.join()
        return queue, item_id

    queue, item_id = run(scenario())
    item = queue.get_item(item_id)
    assert item.status is ItemStatus.SAVED
    assert item.attempts == 1
    assert len(escalated) == 1
    assert queue.get_failed_items() == []


def test_retry_gets_full_budget_and_escalates_again():
    save = FlakySave(failures=1000)
    escalated = []

    async def scenario():
        queue = SaveQueue(save, max_attempts=3, backoff=no_backoff, on_failed=escalated.append)
        item_id = queue.enqueue(MILK)
        await queue.join()
        queue.retry_failed(item_id)
        await queue.join()
        return queue.get_item(item_id)

    item = run(scenario())
    assert item.status is ItemStatus.FAILED
    assert item.attempts == 3
    assert len(save.calls) == 6
    assert len(escalated) == 2


def test_retry_failed_ignores_items_not_in_failed_state():
    save = FlakySave()

    async def scenario():
        queue = SaveQueue(save, backoff=no_backoff)
        item_id = queue.enqueue(MILK)
        await queue.join()
        before = queue.get_item(item_id)
        assert queue.retry_failed(item_id) is False
        assert queue.retry_failed("no-such-item") is False
        return before, queue.get_item(item_id)

    before, after = run(scenario())
    assert after == before
    assert after.status is ItemStatus.SAVED


def test_attempts_progress_one_by_one_without_overlap():
    save = FlakySave(failures=4)
    history = []

    async def scenario():
        queue = SaveQueue(save, backoff=no_backoff)
        queue.subscribe(lambda item: history.append((item.status, item.attempts)))
        queue.enqueue(MILK)
        await queue.join()

    run(scenario())
    saving_attempts = [attempts for status, attempts in history if status is ItemStatus.SAVING]
    assert saving_attempts == [1, 2, 3, 4, 5]
    assert history[0] == (ItemStatus.PENDING, 0)
    assert history[-1] == (ItemStatus.SAVED, 5)
    assert save.max_in_flight_per_item == 1


def test_concurrent_items_never_share_an_attempt():
    save = FlakySave(failures=6)

    async def scenario():
        queue = SaveQueue(save, backoff=no_backoff, concurrency=3)
        ids = [queue.enqueue({"barcode": f"46000000000{i}", "name": f"Товар {i}"}) for i in range(4)]
        await queue.join()
        return [queue.get_item(item_id) for item_id in ids]

    items = run(scenario())
    assert all(item.status is ItemStatus.SAVED for item in items)
    assert sum(item.attempts for item in items) == len(save.calls)
    assert save.max_in_flight_per_item == 1
    assert save.max_in_flight <= 3


def test_concurrency_limit_serialises_saves():
    save = FlakySave()

    async def scenario():
        queue = SaveQueue(save, backoff=no_backoff, concurrency=1)
        for i in range(3):
            queue.enqueue({"barcode": f"1000{i}"})
        await queue.join()

    run(scenario())
    assert save.max_in_flight == 1


def test_retries_wait_a_non_zero_delay():
    save = FlakySave(failures=2)
    asked = []

    def backoff(attempts):
        asked.append(attempts)
        return 0

    async def scenario():
        queue = SaveQueue(save, backoff=backoff)
        queue.enqueue(MILK)
        started = time.monotonic()
        await queue.join()
        return time.monotonic() - started

    elapsed = run(scenario())
    assert asked == [1, 2]
    assert elapsed >= 2 * MIN_RETRY_DELAY


def test_permanent_rejection_fails_without_retrying():
    save = FlakySave(failures=1, error=PermanentSaveError("barcode already exists"))
    escalated = []

    async def scenario():
        queue = SaveQueue(save, backoff=no_backoff, on_failed=escalated.append)
        item_id = queue.enqueue(MILK)
        await queue.join()
        return queue.get_item(item_id)

    item = run(scenario())
    assert item.status is ItemStatus.FAILED
    assert item.attempts == 1
    assert item.error == "barcode already exists"
    assert len(escalated) == 1


def test_staged_result_counts_as_queued():
    save = FlakySave(result=ItemStatus.QUEUED)

    async def scenario():
        queue = SaveQueue(save, backoff=no_backoff)
        queue.enqueue({"barcode": "2000000000015", "has_price": False})
        queue.enqueue(BREAD)
        await queue.join()
        return queue.get_stats()

    stats = run(scenario())
    assert stats.queued == 2
    assert stats.saved == 0
    assert stats.total == 2


def test_failure_is_logged_when_no_callback_registered(caplog):
    save = FlakySave(failures=1000)

    async def scenario():
        queue = SaveQueue(save, max_attempts=2, backoff=no_backoff)
        queue.enqueue(MILK)
        await queue.join()

    with caplog.at_level(logging.CRITICAL, logger="savequeue.queue"):
        run(scenario())
    critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert len(critical) == 1
    assert MILK["barcode"] in critical[0].getMessage()


def test_escalation_fires_without_any_subscribers():
    save = FlakySave(failures=1000)
    escalated = []

    async def scenario():
        queue = SaveQueue(save, max_attempts=1, backoff=no_backoff)
        unsubscribe = queue.subscribe(lambda item: None)
        unsubscribe()
        queue.set_on_failed(escalated.append)
        queue.enqueue(MILK)
        await queue.join()

    run(scenario())
    assert [item.status for item in escalated] == [ItemStatus.FAILED]


def test_broken_listener_does_not_stop_processing():
    save = FlakySave()
    seen = []

    def broken(item):
        raise RuntimeError("UI crashed")

    async def scenario():
        queue = SaveQueue(save, backoff=no_backoff)
        queue.subscribe(broken)
        queue.subscribe(lambda item: seen.append(item.status))
        item_id = queue.enqueue(MILK)
        await queue.join()
        return queue.get_item(item_id)

    item = run(scenario())
    assert item.status is ItemStatus.SAVED
    assert seen == [ItemStatus.PENDING, ItemStatus.SAVING, ItemStatus.SAVED]


def test_unsubscribed_listener_gets_nothing():
    save = FlakySave()
    seen = []

    async def scenario():
        queue = SaveQueue(save, backoff=no_backoff)
        unsubscribe = queue.subscribe(seen.append)
        unsubscribe()
        queue.enqueue(MILK)
        await queue.join()

    run(scenario())
    assert seen == []


def test_enqueue_without_event_loop_waits_for_start():
    save = FlakySave()
    queue = SaveQueue(save, backoff=no_backoff)
    item_id = queue.enqueue(MILK)
    assert queue.get_stats().pending == 1
    assert save.calls == []

    async def scenario():
        await queue.start()
        await queue.join()

    run(scenario())
    assert queue.get_item(item_id).status is ItemStatus.SAVED
    assert save.calls == [MILK]


def test_stats_total_counts_every_enqueued_item():
    save = FlakySave(failures=3)

    async def scenario():
        queue = SaveQueue(save, max_attempts=2, backoff=no_backoff, on_failed=lambda item: None)
        for i in range(5):
            queue.enqueue({"barcode": f"5000{i}"})
        await queue.join()
        return queue.get_stats()

    stats = run(scenario())
    assert stats.total == 5
    assert stats.saved + stats.failed == 5


def test_clear_completed_keeps_failed_items():
    failing = FlakySave(failures=1000)
    working = FlakySave()

    async def save(payload):
        if payload["barcode"] == MILK["barcode"]:
            return await failing(payload)
        return await working(payload)

    async def scenario():
        queue = SaveQueue(save, max_attempts=1, backoff=no_backoff, on_failed=lambda item: None)
        failed_id = queue.enqueue(MILK)
        queue.enqueue(BREAD)
        await queue.join()
        assert queue.clear_completed() == 1
        return queue, failed_id

    queue, failed_id = run(scenario())
    assert [item.id for item in queue.get_items()] == [failed_id]
    assert [item.id for item in queue.get_failed_items()] == [failed_id]


def test_close_returns_in_flight_item_to_pending():
    release = None

    async def hanging_save(payload):
        await release.wait()

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        queue = SaveQueue(hanging_save, backoff=no_backoff)
        item_id = queue.enqueue(MILK)
        await asyncio.sleep(0.01)
        assert queue.get_item(item_id).status is ItemStatus.SAVING
        await queue.close()
        return queue.get_item(item_id)

    item = run(scenario())
    assert item.status is ItemStatus.PENDING
    assert item.attempts == 0
    assert item.error == "Save interrupted"


def test_interrupted_last_attempt_is_repeated_only_once():
    calls = []
    hanging = None

    async def save(payload):
        calls.append(payload)
        if len(calls) == 10:
            hanging.set()
            await asyncio.Event().wait()
        raise ConnectionError("backend unavailable")

    async def scenario():
        nonlocal hanging
        hanging = asyncio.Event()
        queue = SaveQueue(save, backoff=no_backoff, on_failed=lambda item: None)
        item_id = queue.enqueue(MILK)
        await hanging.wait()
        await queue.close()
        assert queue.get_item(item_id).attempts == 9
        await queue.start()
        await queue.join()
        return queue.get_item(item_id)

    item = run(scenario())
    assert item.status is ItemStatus.FAILED
    assert item.attempts == 10
    assert len(calls) == 11


@pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"concurrency": 0}])
def test_rejects_invalid_configuration(kwargs):
    with pytest.raises(ValueError):
        SaveQueue(FlakySave(), **kwargs)
