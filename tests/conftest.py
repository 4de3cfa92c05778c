"""Shared fixtures; test doubles live in util/base.py."""

import os

os.environ["CONTPROF_ENV"] = "test"

from pytest import fixture

from contprof.config import ProfilerOptions
from tests.util.base import FakeSessionRegistry, RecordingIngestClient


@fixture
def sessions():
    return FakeSessionRegistry()


@fixture
def ingest():
    return RecordingIngestClient()


@fixture
def make_options():
    def _make_options(**overrides):
        kwargs = {
            "server_url": "http://localhost:4040",
            "app_name": "test-app",
            # Long enough that the timer never fires during a test.
            "push_interval": 60,
            "max_retries": 0,
            "handle_signals": False,
        }
        kwargs.update(overrides)
        return ProfilerOptions(**kwargs)

    return _make_options


@fixture
def make_profiler(sessions, ingest, make_options):
    from contprof.profiler import Profiler

    profilers = []

    def _make_profiler(**overrides):
        profiler = Profiler(
            make_options(**overrides),
            session_factory=sessions,
            ingest_client=ingest,
        )
        profilers.append(profiler)
        return profiler

    yield _make_profiler

    for profiler in profilers:
        profiler.stop()
