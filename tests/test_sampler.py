import threading
import time
import tracemalloc

import pytest

from contprof.exceptions import SessionError
from contprof.folded import cpu_to_folded, heap_to_folded
from contprof.frames import parse_cpu_profile, parse_heap_profile
from contprof.sampler import SamplerSession


@pytest.fixture
def session():
    session = SamplerSession()
    session.connect()
    yield session
    session.disconnect()


def _spin(seconds):
    deadline = time.monotonic() + seconds
    total = 0
    while time.monotonic() < deadline:
        total += 1
    return total


def test_post_requires_connection():
    session = SamplerSession()

    with pytest.raises(SessionError):
        session.post("Profiler.enable")


def test_unknown_method(session):
    with pytest.raises(SessionError, match="Unknown method"):
        session.post("Debugger.pause")


def test_start_requires_enable(session):
    with pytest.raises(SessionError):
        session.post("Profiler.start")


def test_stop_requires_start(session):
    session.post("Profiler.enable")

    with pytest.raises(SessionError):
        session.post("Profiler.stop")


@pytest.mark.parametrize("interval", [0, -5, "fast", None])
def test_invalid_sampling_interval(session, interval):
    with pytest.raises(SessionError):
        session.post("Profiler.setSamplingInterval", {"interval": interval})


def test_cpu_profile(session):
    session.post("Profiler.enable")
    session.post("Profiler.setSamplingInterval", {"interval": 1_000})
    session.post("Profiler.start")
    _spin(0.2)
    profile = session.post("Profiler.stop")["profile"]

    assert profile["nodes"][0]["callFrame"]["functionName"] == "(root)"
    assert profile["samples"]
    assert len(profile["samples"]) == len(profile["timeDeltas"])
    assert profile["endTime"] >= profile["startTime"]

    folded = cpu_to_folded(parse_cpu_profile(profile))
    assert "_spin (tests/test_sampler.py" in folded
    # Frames inside the agent are folded away.
    assert "(contprof/" not in folded


def test_sampler_skips_profiler_threads(session):
    session.post("Profiler.enable")
    session.post("Profiler.setSamplingInterval", {"interval": 1_000})
    session.post("Profiler.start")
    _spin(0.1)
    profile = session.post("Profiler.stop")["profile"]

    names = {node["callFrame"]["functionName"] for node in profile["nodes"]}
    assert "_sample" not in names


def _wait_on(event):
    event.wait()


def test_blocked_threads_are_sampled(session):
    release = threading.Event()
    worker = threading.Thread(target=_wait_on, args=(release,))
    worker.start()
    try:
        session.post("Profiler.enable")
        session.post("Profiler.setSamplingInterval", {"interval": 1_000})
        session.post("Profiler.start")
        time.sleep(0.1)
        profile = session.post("Profiler.stop")["profile"]
    finally:
        release.set()
        worker.join()

    folded = cpu_to_folded(parse_cpu_profile(profile))
    assert "_wait_on (tests/test_sampler.py" in folded
    assert "(idle)" not in folded


def test_profiler_can_be_restarted(session):
    session.post("Profiler.enable")
    session.post("Profiler.start")
    session.post("Profiler.stop")
    session.post("Profiler.start")

    with pytest.raises(SessionError, match="already started"):
        session.post("Profiler.start")


def test_disconnect_stops_sampler():
    session = SamplerSession()
    session.connect()
    session.post("Profiler.enable")
    session.post("Profiler.start")

    session.disconnect()

    assert not [
        t for t in threading.enumerate() if t.name == "contprof-sampler" and t.is_alive()
    ]
    with pytest.raises(SessionError):
        session.post("Profiler.stop")


def allocate_blocks():
    return [bytearray(4096) for _ in range(64)]


@pytest.mark.skipif(tracemalloc.is_tracing(), reason="tracemalloc already in use")
def test_heap_profile(session):
    with pytest.raises(SessionError):
        session.post("HeapProfiler.startSampling", {"samplingInterval": 1024})

    session.post("HeapProfiler.enable")
    session.post("HeapProfiler.startSampling", {"samplingInterval": 1024})
    assert tracemalloc.is_tracing()

    blocks = allocate_blocks()
    profile = session.post("HeapProfiler.stopSampling")["profile"]

    assert not tracemalloc.is_tracing()
    assert profile["head"]["callFrame"]["functionName"] == "(root)"
    folded = heap_to_folded(parse_heap_profile(profile))
    assert "test_sampler.py" in folded
    assert len(blocks) == 64

    session.post("HeapProfiler.disable")
    with pytest.raises(SessionError):
        session.post("HeapProfiler.stopSampling")
