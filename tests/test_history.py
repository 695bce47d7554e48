import threading

import pytest

from selfheal.history import HistoryStore
from selfheal.models import ToolExecutionResult


def _result(name):
    return ToolExecutionResult.succeeded(name, None, 0.01, 1)


def test_history_is_fifo_trimmed_to_max_size():
    store = HistoryStore(max_size=5)
    for i in range(10):
        store.append("task", _result(f"t{i}"))

    assert [r.tool_name for r in store.get("task")] == ["t5", "t6", "t7", "t8", "t9"]


def test_history_unknown_id_is_empty():
    store = HistoryStore()
    assert store.get("never-seen") == []


def test_history_get_returns_snapshot():
    store = HistoryStore()
    store.append("task", _result("a"))
    snapshot = store.get("task")
    store.append("task", _result("b"))

    assert len(snapshot) == 1
    assert len(store.get("task")) == 2


def test_history_clear_and_ids():
    store = HistoryStore()
    store.append("a", _result("x"))
    store.append("b", _result("y"))
    assert sorted(store.correlation_ids()) == ["a", "b"]

    store.clear("a")
    assert store.get("a") == []
    assert store.correlation_ids() == ["b"]


def test_history_rejects_zero_size():
    with pytest.raises(ValueError):
        HistoryStore(max_size=0)


def test_concurrent_appends_are_not_lost():
    store = HistoryStore(max_size=1000)

    def worker(n):
        for i in range(50):
            store.append("shared", _result(f"w{n}-{i}"))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(store.get("shared")) == 200


def test_clear_racing_appends_never_raises():
    store = HistoryStore(max_size=10)
    errors = []
    stop = threading.Event()

    def appender():
        try:
            for i in range(2000):
                store.append("shared", _result(f"a{i}"))
        except Exception as exc:
            errors.append(exc)
        finally:
            stop.set()

    def clearer():
        while not stop.is_set():
            store.clear("shared")

    threads = [threading.Thread(target=appender), threading.Thread(target=clearer)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert errors == []
    assert len(store.get("shared")) <= 10
