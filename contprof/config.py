import errno
import os
from typing import Any

import attrs
import yaml

from contprof.labels import resolve_app_name

__all__ = ["config", "ProfilerOptions"]


if "CONTPROF_ENV" in os.environ:
    assert os.environ["CONTPROF_ENV"] in (
        "dev",
        "test",
        "staging",
        "prod",
    ), "CONTPROF_ENV must be either 'dev', 'test', 'staging', or 'prod'"
    env = os.environ["CONTPROF_ENV"]
else:
    env = "prod"


def is_debug() -> bool:
    return bool(config.get("DEBUG")) or env == "dev"


class ConfigError(Exception):
    def __init__(  # type: ignore[no-untyped-def]
        self, error=None, help=None
    ) -> None:
        self.error = error or ""
        self.help = (
            help
            or "Set it in a file listed in CONTPROF_CFG_PATH or in the environment."
        )

    def __str__(self) -> str:
        return f"{self.error} {self.help}"


class Configuration(dict):  # type: ignore[type-arg]
    def __init__(  # type: ignore[no-untyped-def]
        self, *args, **kwargs
    ) -> None:
        dict.__init__(self, *args, **kwargs)

    def get_required(self, key):  # type: ignore[no-untyped-def]
        if key not in self:
            raise ConfigError(f"Missing config value for {key}.")

        return self[key]


def _update_config_from_env(config, env):  # type: ignore[no-untyped-def]
    """
    Update a config dictionary from configuration files specified in the
    environment.

    The environment variable `CONTPROF_CFG_PATH` contains a list of .json or
    .yml paths separated by colons. The files are read in reverse order, so
    that the settings specified in the leftmost configuration files take
    precedence.

    The following paths will always be appended:

    If `CONTPROF_ENV` is 'prod' or 'staging':
      /etc/contprof/config.yml

    Otherwise:
      {srcdir}/etc/config-{env}.yml

    Missing files in the path will be ignored.

    """
    srcdir = os.path.join(
        os.path.dirname(os.path.realpath(__file__)), ".."
    )

    if env in ["prod", "staging"]:
        base_cfg_path = ["/etc/contprof/config.yml"]
    else:
        base_cfg_path = [f"{srcdir}/etc/config-{env}.yml"]

    if "CONTPROF_CFG_PATH" in os.environ:
        cfg_path = os.environ.get("CONTPROF_CFG_PATH", "").split(
            os.path.pathsep
        )
        cfg_path = list(p.strip() for p in cfg_path if p.strip())
    else:
        cfg_path = []

    path = cfg_path + base_cfg_path

    for filename in reversed(path):
        try:
            with open(filename) as f:
                # this also parses json, which is a subset of yaml
                config.update(yaml.safe_load(f) or {})
        except OSError as e:
            if e.errno != errno.ENOENT:
                raise


# Environment variable -> (config key, parser)
_ENV_OVERRIDES = {
    "CONTPROF_SERVER_URL": ("SERVER_URL", str),
    "CONTPROF_APP_NAME": ("APP_NAME", str),
    "CONTPROF_AUTH_TOKEN": ("AUTH_TOKEN", str),
    "CONTPROF_BASIC_AUTH_USERNAME": ("BASIC_AUTH_USERNAME", str),
    "CONTPROF_BASIC_AUTH_PASSWORD": ("BASIC_AUTH_PASSWORD", str),
    "CONTPROF_PUSH_INTERVAL": ("PUSH_INTERVAL", float),
    "CONTPROF_SAMPLE_INTERVAL_US": ("SAMPLE_INTERVAL_US", int),
    "CONTPROF_MAX_RETRIES": ("MAX_RETRIES", int),
    "CONTPROF_HEAP": ("HEAP_ENABLED", lambda v: v.lower() in ("1", "true", "yes")),
    "CONTPROF_WALL_TIME": (
        "WALL_TIME_ENABLED",
        lambda v: v.lower() in ("1", "true", "yes"),
    ),
    "LOGLEVEL": ("LOGLEVEL", str),
}


def _update_config_from_env_variables(  # type: ignore[no-untyped-def]
    config,
) -> None:
    for variable, (key, parse) in _ENV_OVERRIDES.items():
        value = os.environ.get(variable, "")
        if value:
            config[key] = parse(value)


config = Configuration()
_update_config_from_env(config, env)
_update_config_from_env_variables(config)


def _strip_trailing_slash(url: str) -> str:
    return url.rstrip("/")


def _validate_basic_auth(instance, attribute, value) -> None:  # type: ignore[no-untyped-def]
    if value is not None and len(value) != 2:
        raise ValueError("basic_auth must be a (username, password) pair")


@attrs.frozen(kw_only=True)
class ProfilerOptions:
    """
    Fully resolved profiler settings with all defaults applied.
    """

    server_url: str = attrs.field(
        converter=_strip_trailing_slash,
        validator=attrs.validators.min_len(1),
    )
    app_name: str = attrs.field(default=None, converter=resolve_app_name)
    # Passed verbatim to Profiler.setSamplingInterval.
    sample_interval_us: int = attrs.field(
        default=10_000, validator=attrs.validators.gt(0)
    )
    # Seconds between window flushes.
    push_interval: float = attrs.field(
        default=15.0, validator=attrs.validators.gt(0)
    )
    labels: dict[str, str] = attrs.field(factory=dict)
    auth_token: "str | None" = None
    basic_auth: "tuple[str, str] | None" = attrs.field(
        default=None, validator=_validate_basic_auth
    )
    max_retries: int = attrs.field(default=2, validator=attrs.validators.ge(0))
    heap_enabled: bool = False
    heap_sampling_interval_bytes: int = attrs.field(
        default=32_768, validator=attrs.validators.gt(0)
    )
    wall_time_enabled: bool = False
    handle_signals: bool = True
    request_timeout: float = 10.0

    @classmethod
    def from_config(
        cls, loaded_config: "dict[str, Any] | None" = None, **overrides: Any
    ) -> "ProfilerOptions":
        if loaded_config is None:
            loaded_config = config

        kwargs: dict[str, Any] = {}
        for key, name in (
            ("SERVER_URL", "server_url"),
            ("APP_NAME", "app_name"),
            ("SAMPLE_INTERVAL_US", "sample_interval_us"),
            ("PUSH_INTERVAL", "push_interval"),
            ("LABELS", "labels"),
            ("AUTH_TOKEN", "auth_token"),
            ("MAX_RETRIES", "max_retries"),
            ("HEAP_ENABLED", "heap_enabled"),
            ("HEAP_SAMPLING_INTERVAL_BYTES", "heap_sampling_interval_bytes"),
            ("WALL_TIME_ENABLED", "wall_time_enabled"),
            ("HANDLE_SIGNALS", "handle_signals"),
            ("REQUEST_TIMEOUT", "request_timeout"),
        ):
            if loaded_config.get(key) is not None:
                kwargs[name] = loaded_config[key]

        username = loaded_config.get("BASIC_AUTH_USERNAME")
        if username:
            kwargs["basic_auth"] = (
                username,
                loaded_config.get("BASIC_AUTH_PASSWORD", ""),
            )

        kwargs.update(overrides)
        if "server_url" not in kwargs:
            raise ConfigError("Missing config value for SERVER_URL.")

        return cls(**kwargs)
