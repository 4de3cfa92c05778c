#!/usr/bin/env python
"""
Smoke test against a live profiling backend.

    bin/contprof-smoke-test.py --server-url http://localhost:4040

Burns CPU for a while so the flamegraph has something to show, with part of
the work tagged, then flushes and exits.
"""

import time

import click

from contprof.config import ProfilerOptions
from contprof.logging import configure_logging, get_logger
from contprof.profiler import Profiler


def fib(n: int) -> int:
    if n <= 1:
        return n
    return fib(n - 1) + fib(n - 2)


def heavy_work(deadline: float) -> int:
    total = 0
    while time.monotonic() < deadline:
        total += fib(22)
    return total


def allocate_work(deadline: float) -> int:
    chunks = []
    while time.monotonic() < deadline:
        chunks.append(bytearray(64 * 1024))
        if len(chunks) > 256:
            chunks.clear()
    return len(chunks)


@click.command()
@click.option(
    "--server-url",
    default="http://localhost:4040",
    show_default=True,
    help="Base URL of the profiling backend.",
)
@click.option(
    "--app-name",
    default="contprof-smoke-test",
    show_default=True,
    help="Application name of the pushed streams.",
)
@click.option(
    "--push-interval",
    default=5.0,
    show_default=True,
    help="Seconds per profiling window.",
)
@click.option(
    "--duration",
    default=12.0,
    show_default=True,
    help="Seconds of work to profile.",
)
@click.option("--heap/--no-heap", default=False, help="Also push allocations.")
@click.option(
    "--wall-time/--no-wall-time", default=False, help="Also push wall time."
)
def main(server_url, app_name, push_interval, duration, heap, wall_time):
    configure_logging(log_level="debug")
    log = get_logger()

    options = ProfilerOptions(
        server_url=server_url,
        app_name=app_name,
        push_interval=push_interval,
        heap_enabled=heap,
        wall_time_enabled=wall_time,
    )
    profiler = Profiler(options)
    profiler.start()
    log.info("Generating load", duration=duration)

    deadline = time.monotonic() + duration
    half = time.monotonic() + duration / 2
    heavy_work(half)
    profiler.tag({"phase": "allocate"}, allocate_work, deadline)

    profiler.stop()
    log.info("Done, check the backend for the app", app_name=app_name)


if __name__ == "__main__":
    main()
