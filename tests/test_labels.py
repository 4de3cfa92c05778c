import platform

import pytest

from contprof.labels import (
    build_default_labels,
    detect_platform_labels,
    encode_name,
    resolve_app_name,
)

ENV_KEYS = [
    "SERVICE_NAME",
    "SERVICE_VERSION",
    "ENVIRONMENT",
    "APP_ENV",
    "FLY_REGION",
    "FLY_APP_NAME",
    "AWS_REGION",
    "AWS_DEFAULT_REGION",
    "RAILWAY_REGION",
    "RAILWAY_SERVICE_NAME",
    "POD_NAME",
    "K8S_NAMESPACE",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_resolve_app_name_prefers_explicit(monkeypatch):
    monkeypatch.setenv("SERVICE_NAME", "from-env")
    assert resolve_app_name("explicit") == "explicit"


def test_resolve_app_name_falls_back_to_env(monkeypatch):
    monkeypatch.setenv("SERVICE_NAME", "from-env")
    assert resolve_app_name() == "from-env"


def test_resolve_app_name_default():
    assert resolve_app_name() == "python-app"
    assert resolve_app_name("") == "python-app"


def test_detect_platform_labels_only_set_variables(monkeypatch):
    assert detect_platform_labels() == {}

    monkeypatch.setenv("FLY_REGION", "ams")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "eu-west-1")
    monkeypatch.setenv("POD_NAME", "web-7f9c")

    assert detect_platform_labels() == {
        "fly_region": "ams",
        "aws_region": "eu-west-1",
        "pod_name": "web-7f9c",
    }


def test_aws_region_wins_over_default_region(monkeypatch):
    monkeypatch.setenv("AWS_REGION", "us-east-1")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "eu-west-1")
    assert detect_platform_labels() == {"aws_region": "us-east-1"}


def test_build_default_labels(monkeypatch):
    assert build_default_labels("svc") == {
        "hostname": platform.node(),
        "service_name": "svc",
    }

    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setenv("SERVICE_VERSION", "1.2.3")
    monkeypatch.setenv("K8S_NAMESPACE", "payments")

    labels = build_default_labels("svc")
    assert labels["environment"] == "production"
    assert labels["service_version"] == "1.2.3"
    assert labels["k8s_namespace"] == "payments"


def test_encode_name_without_labels():
    assert encode_name("myapp", {}) == "myapp.cpu"
    assert encode_name("myapp", {}, "alloc_space") == "myapp.alloc_space"


def test_encode_name_sorts_labels():
    assert (
        encode_name("myapp", {"host": "web-1", "env": "prod"})
        == "myapp.cpu{env=prod,host=web-1}"
    )


def test_encode_name_sanitizes_keys_and_values():
    assert (
        encode_name("myapp", {"bad key{}": "a=b,c{d} e"}, "wall")
        == "myapp.wall{bad_key__=a_b_c_d_ e}"
    )
