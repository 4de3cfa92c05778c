"""
Continuous profiling agent: samples the running process in fixed windows and
pushes folded stacks to a profiling backend.
"""

from typing import Any

VERSION = "0.3.0"


def start_profiling(**option_overrides: Any):  # type: ignore[no-untyped-def]  # noqa: ANN201
    """
    Create and start a profiler in one call.

    Options come from the loaded configuration, keyword arguments override
    them. Logging is set up at the configured LOGLEVEL. A start failure is
    logged rather than raised so profiling can never keep an application from
    booting. Returns the profiler so the caller can stop() it later.
    """
    import sys

    from contprof.config import ProfilerOptions, config
    from contprof.exceptions import ProfilerStartError
    from contprof.logging import (
        configure_logging,
        create_error_log_context,
        get_logger,
    )
    from contprof.profiler import Profiler

    configure_logging(config.get("LOGLEVEL"))
    profiler = Profiler(ProfilerOptions.from_config(**option_overrides))
    try:
        profiler.start()
    except ProfilerStartError:
        get_logger().error(
            "Failed to start profiling",
            **create_error_log_context(sys.exc_info()),
        )
    return profiler
