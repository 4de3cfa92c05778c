import time

from contprof import interruptible_threading
from contprof.interruptible_threading import InterruptibleThread


class SuccessfulThread(InterruptibleThread):
    def _run(self):
        pass


def test_successful_states():
    thread = SuccessfulThread()

    assert thread.ready() is False
    assert thread.successful() is False
    assert thread.exception is None

    thread.start()
    thread.join()

    assert thread.ready() is True
    assert thread.successful() is True
    assert thread.exception is None


class FailingThread(InterruptibleThread):
    def _run(self):
        raise ValueError("This is a test exception")


def test_failing_states():
    thread = FailingThread()

    thread.start()
    thread.join()

    assert thread.ready() is True
    assert thread.successful() is False
    assert isinstance(thread.exception, ValueError)


def test_target_is_called_with_arguments():
    calls = []
    thread = InterruptibleThread(lambda a, b: calls.append((a, b)), 1, b=2)

    thread.start()
    thread.join()

    assert calls == [(1, 2)]
    assert thread.successful() is True


class SleepingThread(InterruptibleThread):
    def _run(self):
        while True:
            interruptible_threading.sleep(1)


def test_sleeping_can_be_interrupted():
    thread = SleepingThread()
    thread.start()

    start = time.monotonic()
    thread.kill()

    assert time.monotonic() - start < 1
    assert thread.ready() is True
    assert thread.successful() is True
    assert thread.exception is None


def test_kill_without_blocking():
    thread = SleepingThread()
    thread.start()

    thread.kill(block=False)
    thread.join(timeout=1)

    assert thread.ready() is True


class SelfKillingThread(InterruptibleThread):
    def _run(self):
        self.kill()
        interruptible_threading.sleep(1000)


def test_thread_can_kill_itself():
    thread = SelfKillingThread()
    thread.start()
    thread.join(timeout=1)

    assert thread.ready() is True
    assert thread.successful() is True


def test_sleep_outside_interruptible_thread():
    start = time.monotonic()
    interruptible_threading.sleep(0.01)
    assert time.monotonic() - start >= 0.01
