import threading
import time

import pytest

from provisioning.domain.exceptions import ConnectorError
from provisioning.domain.propagation_models import PropagationStatus, PropagationTaskExecStatus
from provisioning.domain.virtual.cache import VirAttrCache, VirAttrCacheKey

KEY = VirAttrCacheKey("u1", "virtualdata", "R1")


def status(ok: bool) -> PropagationStatus:
    return PropagationStatus(
        resource="R1",
        status=PropagationTaskExecStatus.SUCCESS if ok else PropagationTaskExecStatus.FAILURE,
    )


def test_miss_loads_once_then_hits():
    cache = VirAttrCache()
    calls = []

    def loader():
        calls.append(1)
        return ["a@x.com"]

    assert cache.get_or_load(KEY, loader) == ["a@x.com"]
    assert cache.get_or_load(KEY, loader) == ["a@x.com"]
    assert len(calls) == 1


def test_loader_error_is_not_cached():
    cache = VirAttrCache()

    def failing():
        raise ConnectorError("down", resource="R1", retryable=True)

    with pytest.raises(ConnectorError):
        cache.get_or_load(KEY, failing)
    assert cache.get(KEY) is None
    assert cache.get_or_load(KEY, lambda: ["b@x.com"]) == ["b@x.com"]


def test_load_started_before_invalidation_is_not_stored():
    cache = VirAttrCache()
    started = threading.Event()
    release = threading.Event()
    result = {}

    def slow_loader():
        started.set()
        release.wait(5)
        return ["stale@x.com"]

    worker = threading.Thread(target=lambda: result.setdefault("values", cache.get_or_load(KEY, slow_loader)))
    worker.start()
    assert started.wait(5)
    cache.invalidate_entity("u1")
    release.set()
    worker.join(5)

    assert result["values"] == ["stale@x.com"]
    assert cache.get(KEY) is None


def test_reader_waiting_on_write_through_sees_new_value():
    cache = VirAttrCache()
    in_propagation = threading.Event()
    release = threading.Event()
    loader_calls = []
    result = {}

    def propagate():
        in_propagation.set()
        release.wait(5)
        return status(True)

    writer = threading.Thread(target=lambda: cache.write_through(KEY, ["b@x.com"], propagate))
    writer.start()
    assert in_propagation.wait(5)

    reader = threading.Thread(
        target=lambda: result.setdefault(
            "values", cache.get_or_load(KEY, lambda: loader_calls.append(1) or ["old@x.com"])
        )
    )
    reader.start()
    time.sleep(0.05)
    assert "values" not in result
    release.set()
    writer.join(5)
    reader.join(5)

    assert result["values"] == ["b@x.com"]
    assert loader_calls == []


def test_slow_load_does_not_block_other_keys():
    cache = VirAttrCache()
    other = VirAttrCacheKey("u2", "virtualdata", "R1")
    in_load = threading.Event()
    release = threading.Event()

    def slow():
        in_load.set()
        release.wait(5)
        return ["slow@x.com"]

    worker = threading.Thread(target=lambda: cache.get_or_load(KEY, slow))
    worker.start()
    assert in_load.wait(5)

    started = time.monotonic()
    assert cache.get_or_load(other, lambda: ["fast@x.com"]) == ["fast@x.com"]
    assert cache.write_through(other, ["new@x.com"], lambda: status(True)).ok
    assert time.monotonic() - started < 1.0

    release.set()
    worker.join(5)
    assert cache.get(KEY).values == ("slow@x.com",)
    assert cache._key_locks == {}


def test_failed_write_keeps_previous_value():
    cache = VirAttrCache()
    cache.put(KEY, ["a@x.com"])

    returned = cache.write_through(KEY, ["b@x.com"], lambda: status(False))

    assert not returned.ok
    assert list(cache.get(KEY).values) == ["a@x.com"]


def test_successful_write_bumps_version():
    cache = VirAttrCache()
    first = cache.put(KEY, ["a@x.com"])

    cache.write_through(KEY, ["b@x.com"], lambda: status(True))

    current = cache.get(KEY)
    assert current.values == ("b@x.com",)
    assert current.version > first.version


def test_invalidation_scopes():
    cache = VirAttrCache()
    cache.put(VirAttrCacheKey("u1", "virtualdata", "R1"), ["1"])
    cache.put(VirAttrCacheKey("u1", "badge", "R2"), ["2"])
    cache.put(VirAttrCacheKey("u2", "virtualdata", "R1"), ["3"])
    cache.put(VirAttrCacheKey("u3", "badge", "R3"), ["4"])

    assert cache.invalidate_resource("R1") == 2
    assert cache.invalidate_schema("badge") == 2
    assert cache.size() == 0

    cache.put(KEY, ["x"])
    cache.put(VirAttrCacheKey("u9", "virtualdata", "R1"), ["y"])
    assert cache.invalidate_entity("u9") == 1
    assert cache.clear() == 1
    assert cache.size() == 0
