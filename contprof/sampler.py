"""
In-process sampler session for CPython.

Speaks the same small method protocol a runtime inspector session does, so
the profiler can drive it without knowing how samples are taken:

    session.connect()
    session.post("Profiler.enable")
    session.post("Profiler.setSamplingInterval", {"interval": 10_000})
    session.post("Profiler.start")
    ...
    profile = session.post("Profiler.stop")["profile"]
    session.disconnect()

CPU samples come from a background thread that periodically walks the stack
of every thread (`sys._current_frames`). Heap samples come from
`tracemalloc`. The session is not safe for concurrent use.
"""

import os
import sys
import threading
import time
import tracemalloc
from collections.abc import Callable
from types import FrameType
from typing import Any

from contprof import interruptible_threading
from contprof.exceptions import SessionError
from contprof.frames import PROFILER_OVERHEAD_URL, ROOT_FRAME_NAME
from contprof.interruptible_threading import InterruptibleThread
from contprof.logging import get_logger
from contprof.snapshot_types import RawCallFrame, RawCpuProfile, RawHeapProfile

log = get_logger()

# Threads started by the profiler itself are named with this prefix and never
# sampled.
PROFILER_THREAD_PREFIX = "contprof-"

DEFAULT_SAMPLING_INTERVAL_US = 10_000
# Frames kept per allocation traceback.
HEAP_TRACEBACK_LIMIT = 64

_PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__)) + os.sep


def _now_us() -> int:
    return time.monotonic_ns() // 1000


def _call_frame(function_name: str, url: str, line_number: int) -> RawCallFrame:
    # Our own frames (e.g. Profiler.tag wrapping user code) are marked as
    # overhead so they get folded away.
    if url.startswith(_PACKAGE_DIR):
        url = PROFILER_OVERHEAD_URL
    return {
        "functionName": function_name,
        "scriptId": "0",
        "url": url,
        "lineNumber": line_number,
        "columnNumber": -1,
    }


def _root_call_frame() -> RawCallFrame:
    return {
        "functionName": ROOT_FRAME_NAME,
        "scriptId": "0",
        "url": "",
        "lineNumber": -1,
        "columnNumber": -1,
    }


class _CallTree:
    """
    Call tree shared by all samples of one window, in the flat
    node-list-with-child-ids shape of a CPU profile.
    """

    ROOT_ID = 1

    def __init__(self) -> None:
        self.nodes: list[dict[str, Any]] = [
            {"id": self.ROOT_ID, "callFrame": _root_call_frame(), "children": []}
        ]
        self._node_by_id = {self.ROOT_ID: self.nodes[0]}
        self._child_ids: dict[tuple[int, str, str, int], int] = {}

    def add_stack(self, frame: "FrameType | None") -> int:
        """
        Insert the stack ending at `frame` and return the leaf node id.
        """
        stack = []
        while frame is not None:
            stack.append(frame.f_code)
            frame = frame.f_back

        node_id = self.ROOT_ID
        for code in reversed(stack):
            key = (node_id, code.co_name, code.co_filename, code.co_firstlineno)
            child_id = self._child_ids.get(key)
            if child_id is None:
                child_id = len(self.nodes) + 1
                child = {
                    "id": child_id,
                    "callFrame": _call_frame(
                        code.co_name, code.co_filename, code.co_firstlineno
                    ),
                    "children": [],
                }
                self.nodes.append(child)
                self._node_by_id[child_id] = child
                self._node_by_id[node_id]["children"].append(child_id)
                self._child_ids[key] = child_id
            node_id = child_id
        return node_id


class _StackSampler(InterruptibleThread):
    """
    Samples the stack of every application thread every `interval_us`
    microseconds.

    Threads blocked on sleep, locks or I/O are sampled like running ones and
    no "(idle)" frame is ever emitted, so the cpu stream built from these
    samples measures per-thread wall time and counts the same samples as the
    wall stream.
    """

    def __init__(self, interval_us: int) -> None:
        super().__init__()
        self.name = PROFILER_THREAD_PREFIX + "sampler"
        self.interval_us = interval_us
        self.tree = _CallTree()
        self.samples: list[int] = []
        self.time_deltas: list[int] = []
        self.start_time = _now_us()
        self.end_time = self.start_time

    def _run(self) -> None:
        last_tick = self.start_time
        while True:
            interruptible_threading.sleep(self.interval_us / 1_000_000)
            now = _now_us()
            self._sample(now - last_tick)
            last_tick = now

    def _sample(self, elapsed_us: int) -> None:
        thread_names = {
            thread.ident: thread.name for thread in threading.enumerate()
        }
        for ident, frame in sys._current_frames().items():
            if thread_names.get(ident, "").startswith(PROFILER_THREAD_PREFIX):
                continue
            self.samples.append(self.tree.add_stack(frame))
            # Threads run in parallel, so each one accrues the full tick.
            self.time_deltas.append(elapsed_us)

    def finish(self) -> RawCpuProfile:
        self.kill()
        self.end_time = _now_us()
        if self.exception is not None:
            raise SessionError(
                f"Stack sampler failed: {self.exception}"
            ) from self.exception
        return {
            "nodes": self.tree.nodes,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "samples": self.samples,
            "timeDeltas": self.time_deltas,
        }


def _build_heap_profile(snapshot: tracemalloc.Snapshot) -> RawHeapProfile:
    head: dict[str, Any] = {
        "id": 1,
        "callFrame": _root_call_frame(),
        "selfSize": 0,
        "children": [],
    }
    next_id = 2
    children_by_key: dict[tuple[int, str, int], dict[str, Any]] = {}

    for statistic in snapshot.statistics("traceback"):
        node = head
        # Traceback frames are ordered oldest to most recent.
        for frame in statistic.traceback:
            key = (node["id"], frame.filename, frame.lineno)
            child = children_by_key.get(key)
            if child is None:
                # tracemalloc doesn't record function names.
                child = {
                    "id": next_id,
                    "callFrame": _call_frame("", frame.filename, frame.lineno),
                    "selfSize": 0,
                    "children": [],
                }
                next_id += 1
                node["children"].append(child)
                children_by_key[key] = child
            node = child
        node["selfSize"] += statistic.size

    return {"head": head}  # type: ignore[typeddict-item]


class SamplerSession:
    def __init__(self) -> None:
        self._connected = False
        self._profiler_enabled = False
        self._sampling_interval_us = DEFAULT_SAMPLING_INTERVAL_US
        self._sampler: "_StackSampler | None" = None
        self._heap_enabled = False
        self._heap_sampling = False
        self._methods: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            "Profiler.enable": self._profiler_enable,
            "Profiler.setSamplingInterval": self._profiler_set_sampling_interval,
            "Profiler.start": self._profiler_start,
            "Profiler.stop": self._profiler_stop,
            "HeapProfiler.enable": self._heap_enable,
            "HeapProfiler.startSampling": self._heap_start_sampling,
            "HeapProfiler.stopSampling": self._heap_stop_sampling,
            "HeapProfiler.disable": self._heap_disable,
        }

    def connect(self) -> None:
        self._connected = True

    def disconnect(self) -> None:
        if self._sampler is not None:
            self._sampler.kill()
            self._sampler = None
        if self._heap_sampling:
            tracemalloc.stop()
            self._heap_sampling = False
        self._profiler_enabled = False
        self._heap_enabled = False
        self._connected = False

    def post(
        self, method: str, params: "dict[str, Any] | None" = None
    ) -> dict[str, Any]:
        if not self._connected:
            raise SessionError("Session is not connected")
        handler = self._methods.get(method)
        if handler is None:
            raise SessionError(f"Unknown method {method}")
        return handler(params or {})

    def _profiler_enable(self, params: dict[str, Any]) -> dict[str, Any]:
        self._profiler_enabled = True
        return {}

    def _profiler_set_sampling_interval(
        self, params: dict[str, Any]
    ) -> dict[str, Any]:
        interval = params.get("interval")
        if not isinstance(interval, int) or interval <= 0:
            raise SessionError(f"Invalid sampling interval {interval!r}")
        self._sampling_interval_us = interval
        return {}

    def _profiler_start(self, params: dict[str, Any]) -> dict[str, Any]:
        if not self._profiler_enabled:
            raise SessionError("Profiler is not enabled")
        if self._sampler is not None:
            raise SessionError("Profiler is already started")
        self._sampler = _StackSampler(self._sampling_interval_us)
        self._sampler.start()
        return {}

    def _profiler_stop(self, params: dict[str, Any]) -> dict[str, Any]:
        if self._sampler is None:
            raise SessionError("Profiler is not started")
        sampler, self._sampler = self._sampler, None
        return {"profile": sampler.finish()}

    def _heap_enable(self, params: dict[str, Any]) -> dict[str, Any]:
        self._heap_enabled = True
        return {}

    def _heap_start_sampling(self, params: dict[str, Any]) -> dict[str, Any]:
        if not self._heap_enabled:
            raise SessionError("Heap profiler is not enabled")
        if tracemalloc.is_tracing():
            raise SessionError("tracemalloc is already tracing")
        # tracemalloc records every allocation, there is nothing to tune.
        log.debug(
            "Starting heap sampling",
            sampling_interval=params.get("samplingInterval"),
        )
        tracemalloc.start(HEAP_TRACEBACK_LIMIT)
        self._heap_sampling = True
        return {}

    def _heap_stop_sampling(self, params: dict[str, Any]) -> dict[str, Any]:
        if not self._heap_sampling:
            raise SessionError("Heap sampling is not started")
        snapshot = tracemalloc.take_snapshot()
        tracemalloc.stop()
        self._heap_sampling = False
        return {"profile": _build_heap_profile(snapshot)}

    def _heap_disable(self, params: dict[str, Any]) -> dict[str, Any]:
        if self._heap_sampling:
            tracemalloc.stop()
            self._heap_sampling = False
        self._heap_enabled = False
        return {}
