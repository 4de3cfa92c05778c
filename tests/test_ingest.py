import base64
import gzip
import urllib.parse

import pytest
import requests
import responses

from contprof.exceptions import IngestClientError, IngestError
from contprof.ingest import IngestClient, backoff_delay, build_ingest_url

SERVER_URL = "http://localhost:4040"
INGEST_URL = SERVER_URL + "/ingest"


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(sleeps):
    return IngestClient(SERVER_URL, "myapp", max_retries=2, sleep=sleeps.append)


def query_params(request):
    query = urllib.parse.urlsplit(request.url).query
    return dict(urllib.parse.parse_qsl(query))


@pytest.mark.parametrize(
    "attempt,delay", [(1, 1.0), (2, 2.0), (3, 4.0), (5, 16.0), (6, 30.0), (20, 30.0)]
)
def test_backoff_delay(attempt, delay):
    assert backoff_delay(attempt) == delay


def test_build_ingest_url_strips_trailing_slash():
    url = build_ingest_url(SERVER_URL + "/", "myapp.cpu", 1, 2, 100)
    assert url.startswith(INGEST_URL + "?")


@responses.activate
def test_push_request(client):
    responses.post(INGEST_URL)

    client.push(
        "main;work 3\nmain 1",
        1700000000,
        1700000015,
        97,
        labels={"service_name": "myapp", "env": "prod"},
    )

    assert len(responses.calls) == 1
    request = responses.calls[0].request
    assert query_params(request) == {
        "name": "myapp.cpu{env=prod,service_name=myapp}",
        "from": "1700000000",
        "until": "1700000015",
        "sampleRate": "97",
        "spyName": "pyspy",
        "format": "folded",
    }
    assert request.headers["Content-Type"] == "text/plain"
    assert request.headers["Content-Encoding"] == "gzip"
    assert request.headers["Content-Length"] == str(len(request.body))
    assert "Authorization" not in request.headers
    assert gzip.decompress(request.body) == b"main;work 3\nmain 1"


@responses.activate
def test_push_stream_type_in_name(client):
    responses.post(INGEST_URL)

    client.push("main 10", 1, 2, 1, stream_type="alloc_space")

    assert query_params(responses.calls[0].request)["name"] == "myapp.alloc_space"


@responses.activate
def test_bearer_token_takes_precedence():
    responses.post(INGEST_URL)
    client = IngestClient(
        SERVER_URL, "myapp", auth_token="secret", basic_auth=("user", "pass")
    )

    client.push("main 1", 1, 2, 100)

    assert responses.calls[0].request.headers["Authorization"] == "Bearer secret"


@responses.activate
def test_basic_auth():
    responses.post(INGEST_URL)
    client = IngestClient(SERVER_URL, "myapp", basic_auth=("user", "pass"))

    client.push("main 1", 1, 2, 100)

    expected = "Basic " + base64.b64encode(b"user:pass").decode("ascii")
    assert responses.calls[0].request.headers["Authorization"] == expected


@responses.activate
def test_server_error_is_retried(client, sleeps):
    responses.post(INGEST_URL, status=503)
    responses.post(INGEST_URL, status=200)

    response = client.push("main 1", 1, 2, 100)

    assert response.status_code == 200
    assert len(responses.calls) == 2
    assert sleeps == [1.0]


@responses.activate
def test_retries_exhausted(client, sleeps):
    responses.post(INGEST_URL, status=500, body="overloaded")

    with pytest.raises(IngestError) as excinfo:
        client.push("main 1", 1, 2, 100)

    assert not isinstance(excinfo.value, IngestClientError)
    assert excinfo.value.status_code == 500
    assert "overloaded" in str(excinfo.value)
    # One attempt plus max_retries.
    assert len(responses.calls) == 3
    assert sleeps == [1.0, 2.0]


@responses.activate
def test_client_error_is_not_retried(client, sleeps):
    responses.post(INGEST_URL, status=400, body="bad name")

    with pytest.raises(IngestClientError) as excinfo:
        client.push("main 1", 1, 2, 100)

    assert excinfo.value.status_code == 400
    assert len(responses.calls) == 1
    assert sleeps == []


@responses.activate
def test_transport_error_is_retried(client, sleeps):
    responses.post(INGEST_URL, body=requests.ConnectionError("connection refused"))
    responses.post(INGEST_URL, status=200)

    client.push("main 1", 1, 2, 100)

    assert len(responses.calls) == 2
    assert sleeps == [1.0]


@responses.activate
def test_transport_error_exhausts_retries(sleeps):
    responses.post(INGEST_URL, body=requests.ConnectionError("connection refused"))
    client = IngestClient(SERVER_URL, "myapp", max_retries=0, sleep=sleeps.append)

    with pytest.raises(IngestError) as excinfo:
        client.push("main 1", 1, 2, 100)

    assert excinfo.value.status_code is None
    assert isinstance(excinfo.value.__cause__, requests.ConnectionError)
    assert sleeps == []
