"""
Continuous profiling loop.

A `Profiler` cuts profiling time into windows. Each window runs the sampler
for `push_interval` seconds; closing a window stops the sampler, folds the
snapshot, hands the result to the ingest client on a worker thread and
reopens the sampler right away, so consecutive windows leave no gap.

    profiler = Profiler(ProfilerOptions(server_url="http://localhost:4040"))
    profiler.start()
    with profiler.tagged({"route": "/checkout"}):
        handle_checkout()
    profiler.stop()

Pushes never block the loop and never stop profiling. A failed push is
retried by the ingest client and then dropped with a log entry.
"""

import contextlib
import enum
import os
import signal
import sys
import threading
import time
from collections.abc import Awaitable, Callable, Iterator
from concurrent import futures
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, TypeVar

import attrs

from contprof import interruptible_threading
from contprof.config import ProfilerOptions
from contprof.exceptions import ProfilerStartError
from contprof.folded import (
    calculate_sample_rate,
    cpu_to_folded,
    cpu_to_folded_wall,
    heap_to_folded,
)
from contprof.frames import parse_cpu_profile, parse_heap_profile
from contprof.ingest import IngestClient
from contprof.interruptible_threading import InterruptibleThread
from contprof.labels import build_default_labels
from contprof.logging import create_error_log_context, get_logger
from contprof.sampler import PROFILER_THREAD_PREFIX, SamplerSession
from contprof.stats import statsd_client

log = get_logger()

T = TypeVar("T")

# The in-process sampler also samples blocked threads, so this stream is
# per-thread wall time rather than on-CPU time.
CPU_STREAM = "cpu"
WALL_STREAM = "wall"
HEAP_STREAM = "alloc_space"
# Wall-time weights are microseconds.
WALL_SAMPLE_RATE = 1_000_000
HEAP_SAMPLE_RATE = 1

PUSH_WORKERS = 4
SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class ProfilerState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    TAGGED = "tagged"


@attrs.define
class Window:
    start: int
    labels: dict[str, str]


def _unix_now() -> int:
    return int(time.time())


class _WindowTimer(InterruptibleThread):
    """
    Calls `on_fire(self)` every `interval` seconds until killed.
    """

    def __init__(
        self, interval: float, on_fire: "Callable[[_WindowTimer], None]"
    ) -> None:
        super().__init__()
        self.name = PROFILER_THREAD_PREFIX + "window-timer"
        self.interval = interval
        self._on_fire = on_fire

    def _run(self) -> None:
        while True:
            interruptible_threading.sleep(self.interval)
            self._on_fire(self)


class Profiler:
    """
    Parameters
    ----------
    options: ProfilerOptions
        Resolved settings.
    session_factory: callable, optional
        Builds the sampler session, one per start().
    ingest_client: IngestClient, optional
        Delivery client, built from the options when omitted.

    """

    def __init__(
        self,
        options: ProfilerOptions,
        session_factory: Callable[[], Any] = SamplerSession,
        ingest_client: "IngestClient | None" = None,
    ) -> None:
        self.options = options
        self._session_factory = session_factory
        # Only a client we built is ours to close.
        self._owns_ingest = ingest_client is None
        self._ingest = ingest_client or IngestClient(
            options.server_url,
            options.app_name,
            auth_token=options.auth_token,
            basic_auth=options.basic_auth,
            max_retries=options.max_retries,
            timeout=options.request_timeout,
        )
        self._labels = {
            **build_default_labels(options.app_name),
            **options.labels,
        }

        # Serializes session calls, window transitions and label changes.
        self._lock = threading.RLock()
        self._state = ProfilerState.IDLE
        self._session: Any = None
        self._timer: "_WindowTimer | None" = None
        self._window: "Window | None" = None
        self._heap_active = False
        self._executor: "ThreadPoolExecutor | None" = None
        self._previous_signal_handlers: dict[int, Any] = {}

        self.log = log.bind(app_name=options.app_name)

    @property
    def state(self) -> ProfilerState:
        return self._state

    @property
    def labels(self) -> dict[str, str]:
        """
        Copy of the label set the current window is recorded under.
        """
        with self._lock:
            return dict(self._labels)

    def start(self) -> None:
        """
        Start continuous profiling. No-op if already running.

        Raises:
            ProfilerStartError: The sampler session could not be set up
        """
        with self._lock:
            if self._state is not ProfilerState.IDLE:
                self.log.warning("start() called but profiler is already running")
                return

            session = self._session_factory()
            session.connect()
            try:
                session.post("Profiler.enable")
                session.post(
                    "Profiler.setSamplingInterval",
                    {"interval": self.options.sample_interval_us},
                )
            except Exception as e:
                session.disconnect()
                raise ProfilerStartError(
                    f"Failed to initialize profiler session: {e}"
                ) from e

            self._heap_active = False
            if self.options.heap_enabled:
                heap_enabled = False
                try:
                    session.post("HeapProfiler.enable")
                    heap_enabled = True
                    session.post(
                        "HeapProfiler.startSampling",
                        {
                            "samplingInterval": self.options.heap_sampling_interval_bytes
                        },
                    )
                    self._heap_active = True
                except Exception:
                    self.log.warning(
                        "Heap profiling unavailable, continuing with CPU only",
                        **create_error_log_context(sys.exc_info()),
                    )
                    if heap_enabled:
                        self._disable_heap(session)

            self._session = session
            self._executor = ThreadPoolExecutor(
                max_workers=PUSH_WORKERS,
                thread_name_prefix=PROFILER_THREAD_PREFIX + "push",
            )
            self._state = ProfilerState.RUNNING
            self._begin_window()
            self._schedule_timer()

            if self.options.handle_signals:
                self._install_signal_handlers()

        self.log.info(
            "Profiler started",
            sample_interval_us=self.options.sample_interval_us,
            push_interval=self.options.push_interval,
            heap=self._heap_active,
            wall_time=self.options.wall_time_enabled,
        )

    def stop(self) -> None:
        """
        Stop profiling, flushing the current window first. Idempotent.
        """
        with self._lock:
            if self._state is ProfilerState.IDLE:
                return
            self._state = ProfilerState.IDLE
            self._cancel_timer()

            pending = self._end_window(restart_heap=False)

            if self._heap_active:
                self._disable_heap(self._session)
                self._heap_active = False

            try:
                self._session.disconnect()
            except Exception:
                self.log.warning(
                    "Session disconnect failed",
                    **create_error_log_context(sys.exc_info()),
                )
            self._session = None

            executor, self._executor = self._executor, None
            self._restore_signal_handlers()

        # Outcomes are logged by _log_push_outcome, we only wait for the
        # final flush to finish.
        if pending:
            futures.wait(pending)
        if executor is not None:
            executor.shutdown(wait=False)
        if self._owns_ingest:
            self._ingest.close()
        self.log.info("Profiler stopped")

    def tag(
        self,
        labels: dict[str, str],
        fn: Callable[..., T],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """
        Run `fn(*args, **kwargs)` with `labels` added to the label set.

        The current window is flushed before and after the call so samples
        taken during `fn` carry the extra labels. Outside of an active
        profiling session `fn` is just called. The result or exception of `fn`
        propagates unchanged.
        """
        with self.tagged(labels):
            return fn(*args, **kwargs)

    async def tag_async(
        self,
        labels: dict[str, str],
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """
        Coroutine version of `tag`: awaits `fn(*args, **kwargs)` in a
        tagged window.
        """
        with self.tagged(labels):
            return await fn(*args, **kwargs)

    @contextlib.contextmanager
    def tagged(self, labels: dict[str, str]) -> Iterator[None]:
        """
        Context manager form of `tag`.

        Tagged regions must not be entered concurrently on one profiler.
        """
        saved_labels = self._enter_tag(labels)
        if saved_labels is None:
            yield
            return

        try:
            yield
        finally:
            self._exit_tag(saved_labels)

    def _enter_tag(self, labels: dict[str, str]) -> "dict[str, str] | None":
        with self._lock:
            if self._state is not ProfilerState.RUNNING:
                return None

            self._cancel_timer()
            self._end_window()

            saved_labels = self._labels
            self._labels = {**saved_labels, **labels}
            self._state = ProfilerState.TAGGED
            # The tagged window lasts as long as the tagged code, no timer.
            self._begin_window()
            return saved_labels

    def _exit_tag(self, saved_labels: dict[str, str]) -> None:
        with self._lock:
            if self._state is ProfilerState.IDLE:
                # A stop() during the tagged code already flushed the window.
                self._labels = saved_labels
                return

            # Still TAGGED, or RUNNING again after a stop() and start() inside
            # the tagged code. Either way the open window carries the tag.
            self._cancel_timer()
            self._end_window()
            self._labels = saved_labels
            self._state = ProfilerState.RUNNING
            self._begin_window()
            self._schedule_timer()

    def _disable_heap(self, session: Any) -> None:
        try:
            session.post("HeapProfiler.disable")
        except Exception:
            self.log.warning(
                "HeapProfiler.disable failed",
                **create_error_log_context(sys.exc_info()),
            )

    def _schedule_timer(self) -> None:
        self._timer = _WindowTimer(self.options.push_interval, self._on_timer)
        self._timer.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            # Don't block: the timer may be waiting on self._lock right now.
            self._timer.kill(block=False)
            self._timer = None

    def _on_timer(self, timer: _WindowTimer) -> None:
        with self._lock:
            # Fired after being cancelled.
            if timer is not self._timer or self._state is not ProfilerState.RUNNING:
                return
            try:
                self._end_window()
            except Exception:
                self.log.error(
                    "Window flush failed",
                    **create_error_log_context(sys.exc_info()),
                )
            self._begin_window()

    def _begin_window(self) -> None:
        self._window = Window(start=_unix_now(), labels=dict(self._labels))
        try:
            self._session.post("Profiler.start")
        except Exception:
            # The next window retries, profiling carries on.
            self.log.error(
                "Profiler.start failed",
                **create_error_log_context(sys.exc_info()),
            )

    def _end_window(self, restart_heap: bool = True) -> "list[Future[Any]]":
        """
        Close the current window and dispatch its pushes.

        Returns the push futures, the caller decides whether to wait on them.
        """
        window, self._window = self._window, None
        if window is None:
            return []
        window_end = _unix_now()
        pending = []

        try:
            result = self._session.post("Profiler.stop")
            cpu_snapshot = parse_cpu_profile(result["profile"])
        except Exception:
            statsd_client.incr("contprof.window.dropped")
            self.log.error(
                "Profiler.stop failed, dropping window",
                window_start=window.start,
                window_end=window_end,
                **create_error_log_context(sys.exc_info()),
            )
        else:
            pending += self._dispatch(
                cpu_to_folded(cpu_snapshot),
                window,
                window_end,
                calculate_sample_rate(cpu_snapshot),
                CPU_STREAM,
            )
            if self.options.wall_time_enabled:
                pending += self._dispatch(
                    cpu_to_folded_wall(cpu_snapshot),
                    window,
                    window_end,
                    WALL_SAMPLE_RATE,
                    WALL_STREAM,
                )

        if self._heap_active:
            pending += self._end_heap_window(window, window_end, restart_heap)

        return pending

    def _end_heap_window(
        self, window: Window, window_end: int, restart_heap: bool
    ) -> "list[Future[Any]]":
        try:
            result = self._session.post("HeapProfiler.stopSampling")
            folded = heap_to_folded(parse_heap_profile(result["profile"]))
        except Exception:
            statsd_client.incr("contprof.window.dropped")
            self.log.error(
                "HeapProfiler.stopSampling failed, dropping heap window",
                window_start=window.start,
                window_end=window_end,
                **create_error_log_context(sys.exc_info()),
            )
            folded = ""

        if restart_heap:
            # Restart before pushing so allocation coverage has no gap.
            try:
                self._session.post(
                    "HeapProfiler.startSampling",
                    {"samplingInterval": self.options.heap_sampling_interval_bytes},
                )
            except Exception:
                self.log.error(
                    "HeapProfiler.startSampling failed",
                    **create_error_log_context(sys.exc_info()),
                )

        return self._dispatch(
            folded, window, window_end, HEAP_SAMPLE_RATE, HEAP_STREAM
        )

    def _dispatch(
        self,
        folded: str,
        window: Window,
        window_end: int,
        sample_rate: int,
        stream_type: str,
    ) -> "list[Future[Any]]":
        if not folded:
            self.log.debug(
                "Empty profile, skipping push",
                stream_type=stream_type,
                window_start=window.start,
                window_end=window_end,
            )
            return []

        assert self._executor is not None
        future = self._executor.submit(
            self._ingest.push,
            folded,
            window.start,
            window_end,
            sample_rate,
            stream_type,
            window.labels,
        )
        future.add_done_callback(
            lambda f: self._log_push_outcome(f, stream_type, window, window_end)
        )
        return [future]

    def _log_push_outcome(
        self,
        future: "Future[Any]",
        stream_type: str,
        window: Window,
        window_end: int,
    ) -> None:
        error = future.exception()
        if error is None:
            return
        self.log.error(
            "Push failed, dropping window",
            stream_type=stream_type,
            window_start=window.start,
            window_end=window_end,
            **create_error_log_context(
                (type(error), error, error.__traceback__)
            ),
        )

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            self.log.warning(
                "Not on the main thread, not installing signal handlers"
            )
            return

        for signum in SHUTDOWN_SIGNALS:
            self._previous_signal_handlers[signum] = signal.signal(
                signum, self._handle_shutdown_signal
            )

    def _restore_signal_handlers(self) -> None:
        if not self._previous_signal_handlers:
            return
        if threading.current_thread() is not threading.main_thread():
            self.log.warning(
                "Not on the main thread, leaving signal handlers installed"
            )
            return

        previous, self._previous_signal_handlers = (
            self._previous_signal_handlers,
            {},
        )
        for signum, handler in previous.items():
            signal.signal(
                signum, handler if handler is not None else signal.SIG_DFL
            )

    def _handle_shutdown_signal(self, signum: int, frame: Any) -> None:
        self.log.info(
            "Received shutdown signal, flushing final profile",
            signal=signal.Signals(signum).name,
        )
        self._restore_signal_handlers()
        try:
            self.stop()
        except Exception:
            self.log.error(
                "Final flush failed",
                **create_error_log_context(sys.exc_info()),
            )
        # Let the previous handlers deal with it.
        os.kill(os.getpid(), signum)
