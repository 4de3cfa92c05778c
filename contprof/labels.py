"""
Label discovery and encoding of the profile stream name.

The backend identifies a stream by a single string of the form
``app.type{key=value,...}``; every label a window carries ends up there.
"""

import os
import platform
import re

DEFAULT_APP_NAME = "python-app"

# Characters that would break the ``{k=v,...}`` label syntax.
_UNSAFE_KEY_CHARS = re.compile(r"[{}=,\s]")
_UNSAFE_VALUE_CHARS = re.compile(r"[{}=,]")

# Environment variable -> label key, only emitted when the variable is set.
_PLATFORM_LABELS = [
    # Fly.io
    ("FLY_REGION", "fly_region"),
    ("FLY_APP_NAME", "fly_app_name"),
    # Railway
    ("RAILWAY_REGION", "railway_region"),
    ("RAILWAY_SERVICE_NAME", "railway_service"),
    # Kubernetes (injected via the downward API)
    ("POD_NAME", "pod_name"),
    ("K8S_NAMESPACE", "k8s_namespace"),
]


def resolve_app_name(app_name: "str | None" = None) -> str:
    """
    Pick the application name: explicit argument, then the SERVICE_NAME
    environment variable, then DEFAULT_APP_NAME.
    """
    if app_name:
        return app_name
    return os.environ.get("SERVICE_NAME") or DEFAULT_APP_NAME


def detect_platform_labels() -> dict[str, str]:
    labels = {}
    for variable, key in _PLATFORM_LABELS:
        value = os.environ.get(variable)
        if value:
            labels[key] = value

    aws_region = os.environ.get("AWS_REGION") or os.environ.get(
        "AWS_DEFAULT_REGION"
    )
    if aws_region:
        labels["aws_region"] = aws_region

    return labels


def build_default_labels(app_name: str) -> dict[str, str]:
    """
    Build the default label set for a process.

    Always includes hostname and service_name. environment, service_version
    and platform labels are added only when discoverable.
    """
    labels = {
        "hostname": platform.node(),
        "service_name": app_name,
    }

    environment = os.environ.get("ENVIRONMENT") or os.environ.get("APP_ENV")
    if environment:
        labels["environment"] = environment

    version = os.environ.get("SERVICE_VERSION")
    if version:
        labels["service_version"] = version

    labels.update(detect_platform_labels())
    return labels


def encode_name(
    app_name: str, labels: dict[str, str], stream_type: str = "cpu"
) -> str:
    """
    Encode the stream name query parameter.

    >>> encode_name("myapp", {})
    'myapp.cpu'
    >>> encode_name("myapp", {"host": "web-1", "env": "prod"})
    'myapp.cpu{env=prod,host=web-1}'
    """
    if not labels:
        return f"{app_name}.{stream_type}"

    label_str = ",".join(
        "{}={}".format(
            _UNSAFE_KEY_CHARS.sub("_", key),
            _UNSAFE_VALUE_CHARS.sub("_", str(value)),
        )
        for key, value in sorted(labels.items())
    )
    return f"{app_name}.{stream_type}{{{label_str}}}"
