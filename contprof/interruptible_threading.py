"""
Minimal interruptible version of stdlib threading.

The profiler runs two kinds of background loops: the window timer and the
stack sampler. Both spend nearly all of their time sleeping and both must
stop promptly when the profiler stops or a tagged region splits a window.
`InterruptibleThread.kill` wakes such a thread up; the thread collaborates by
sleeping through the interruptible `sleep` below (or calling
`check_interrupted`), which raises `InterruptibleThreadExit` once the thread
has been killed.

For simple examples see tests in tests/test_interruptible_threading.py.
"""

import dataclasses
import threading
import time
from collections.abc import Callable
from typing import Any, Concatenate, TypeVar

from typing_extensions import ParamSpec


class InterruptibleThreadExit(BaseException):
    """
    Exception raised when the thread is interrupted.

    It is caught in `InterruptibleThread.run` and ignored since it means a
    successful interruption of the thread. Subclass of `BaseException` so a
    generic `except Exception` block in the thread body won't swallow it.
    """


@dataclasses.dataclass
class _InterruptibleThreadTarget:
    target: Callable[..., Any]
    args: tuple[Any, ...]
    kwargs: dict[str, Any]

    def __call__(self) -> Any:
        return self.target(*self.args, **self.kwargs)


class InterruptibleThread(threading.Thread):
    def __init__(
        self,
        target: Callable[..., Any] | None = None,
        *args: Any,
        **kwargs: Any,
    ) -> None:
        """
        Initialize the thread.

        If target is provided, it will be called with args and kwargs when the
        thread is started. Otherwise, the subclass must implement the `_run`
        method.
        """
        self._should_be_interrupted = threading.Event()
        self.__should_be_killed = False
        self.__ready = False
        self.__run_target = (
            _InterruptibleThreadTarget(target, args, kwargs)
            if target
            else None
        )
        self.__exception: Exception | None = None

        super().__init__(daemon=True)

    def ready(self) -> bool:
        """
        Return True if the thread has finished.
        """
        return self.__ready

    def successful(self) -> bool:
        """
        Return True if the thread has finished without raising.
        """
        return self.__ready and self.__exception is None

    @property
    def exception(self) -> Exception | None:
        return self.__exception

    def run(self) -> None:
        try:
            self._run()
        except InterruptibleThreadExit:
            pass
        except Exception as e:
            self.__exception = e
        finally:
            self.__ready = True

    def _run(self) -> None:
        if self.__run_target:
            self.__run_target()
        else:
            raise NotImplementedError()

    def kill(self, block: bool = True) -> None:
        """
        Kill the thread.

        If block is True, wait until the thread is ready. Killing a thread
        from inside itself must not block.
        """
        self.__should_be_killed = True
        self._should_be_interrupted.set()
        if (
            block
            and self.is_alive()
            and threading.current_thread() is not self
        ):
            self.join()

    def _check_interrupted(self) -> None:
        if self.__should_be_killed:
            raise InterruptibleThreadExit()


P = ParamSpec("P")
T = TypeVar("T")


def _interruptible(
    blocking_function: Callable[P, T]
) -> Callable[
    [Callable[Concatenate[InterruptibleThread, P], T]], Callable[P, T]
]:
    """
    If the current thread is interruptible run interruptible version of
    the blocking function. Otherwise fall back to the plain blocking call.
    """

    def decorator(
        interruptible_function: Callable[
            Concatenate[InterruptibleThread, P], T
        ]
    ) -> Callable[P, T]:
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            current_thread = threading.current_thread()
            if not isinstance(current_thread, InterruptibleThread):
                return blocking_function(*args)  # type: ignore[call-arg]

            return interruptible_function(current_thread, *args, **kwargs)

        return wrapper

    return decorator


@_interruptible(time.sleep)
def sleep(current_thread: InterruptibleThread, /, seconds: float) -> None:
    """
    Interruptible version of time.sleep.
    """
    current_thread._should_be_interrupted.wait(seconds)

    current_thread._check_interrupted()

