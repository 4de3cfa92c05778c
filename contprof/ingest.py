"""
Delivery of folded stacks to the profiling backend's ingest endpoint.

Every push is a single gzip-compressed POST:

    POST {server_url}/ingest?name=app.cpu{k=v}&from=..&until=..
         &sampleRate=..&spyName=pyspy&format=folded

5xx responses and transport errors are retried with exponential backoff,
4xx responses are not.
"""

import base64
import gzip
import time
import urllib.parse
from collections.abc import Callable

import requests

from contprof.exceptions import IngestClientError, IngestError
from contprof.labels import encode_name
from contprof.logging import get_logger
from contprof.stats import statsd_client

log = get_logger()

SPY_NAME = "pyspy"
FOLDED_FORMAT = "folded"

BASE_RETRY_DELAY_MS = 1000
MAX_RETRY_DELAY_MS = 30_000


def backoff_delay(attempt: int) -> float:
    """
    Seconds to wait before retry number `attempt` (starting at 1).

    Doubles from one second, capped at thirty.
    """
    delay_ms = min(BASE_RETRY_DELAY_MS * 2 ** (attempt - 1), MAX_RETRY_DELAY_MS)
    return delay_ms / 1000


def build_ingest_url(
    server_url: str,
    name: str,
    window_start: int,
    window_end: int,
    sample_rate: int,
) -> str:
    params = {
        "name": name,
        "from": str(window_start),
        "until": str(window_end),
        "sampleRate": str(sample_rate),
        "spyName": SPY_NAME,
        "format": FOLDED_FORMAT,
    }
    return f"{server_url.rstrip('/')}/ingest?{urllib.parse.urlencode(params)}"


class IngestClient:
    """
    Push folded profiles to the backend.

    Stateless per push apart from the pooled HTTP session, so pushes for
    different windows can run concurrently from several threads.
    """

    def __init__(
        self,
        server_url: str,
        app_name: str,
        *,
        auth_token: "str | None" = None,
        basic_auth: "tuple[str, str] | None" = None,
        max_retries: int = 2,
        timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Arguments:
            server_url: Base URL of the backend e.g. http://localhost:4040
            app_name: Application part of the stream name
            auth_token: Sent as a Bearer token, takes precedence over basic_auth
            basic_auth: (username, password) sent as HTTP basic auth
            max_retries: Retries after the first attempt before giving up
            timeout: HTTP request timeout in seconds
            sleep: Called with the backoff delay in seconds between attempts
        """
        self.server_url = server_url.rstrip("/")
        self.app_name = app_name
        self.auth_token = auth_token
        self.basic_auth = basic_auth
        self.max_retries = max_retries
        self.timeout = timeout
        self._sleep = sleep
        # Session lets us reuse the TCP connection between windows
        self._session = requests.Session()

    def authorization_header(self) -> "str | None":
        if self.auth_token:
            return f"Bearer {self.auth_token}"
        if self.basic_auth:
            username, password = self.basic_auth
            credentials = f"{username}:{password}".encode()
            return "Basic " + base64.b64encode(credentials).decode("ascii")
        return None

    def push(
        self,
        folded: str,
        window_start: int,
        window_end: int,
        sample_rate: int,
        stream_type: str = "cpu",
        labels: "dict[str, str] | None" = None,
    ) -> requests.Response:
        """
        Push one window worth of folded stacks.

        Arguments:
            folded: Folded-stack text
            window_start: Window start, unix seconds
            window_end: Window end, unix seconds
            sample_rate: Weight metric the backend uses to interpret weights
            stream_type: Stream suffix of the encoded name e.g. cpu, wall
            labels: Labels the window was recorded under

        Returns:
            The successful response.

        Raises:
            IngestClientError: The backend answered with a 4xx status
            IngestError: Retries were exhausted
        """
        name = encode_name(self.app_name, labels or {}, stream_type)
        url = build_ingest_url(
            self.server_url, name, window_start, window_end, sample_rate
        )
        body = gzip.compress(folded.encode("utf-8"))
        headers = {
            "Content-Type": "text/plain",
            "Content-Encoding": "gzip",
            "Content-Length": str(len(body)),
        }
        authorization = self.authorization_header()
        if authorization:
            headers["Authorization"] = authorization

        last_error: "IngestError | None" = None
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                delay = backoff_delay(attempt)
                log.debug(
                    "Retrying push",
                    attempt=attempt,
                    max_retries=self.max_retries,
                    delay=delay,
                )
                statsd_client.incr("contprof.ingest.retry")
                self._sleep(delay)

            try:
                response = self._session.post(
                    url, data=body, headers=headers, timeout=self.timeout
                )
            except requests.RequestException as e:
                last_error = IngestError(f"Push request failed: {e}")
                last_error.__cause__ = e
                log.warning(
                    "Push error",
                    attempt=attempt + 1,
                    stream_type=stream_type,
                    error=str(e),
                )
                continue

            if 200 <= response.status_code < 300:
                log.debug(
                    "Pushed profile",
                    stream_type=stream_type,
                    stacks=folded.count("\n") + 1,
                    window_start=window_start,
                    window_end=window_end,
                    status_code=response.status_code,
                )
                statsd_client.incr("contprof.ingest.success")
                return response

            message = f"HTTP {response.status_code}: {response.text[:512]}"
            if 400 <= response.status_code < 500:
                statsd_client.incr("contprof.ingest.failure")
                raise IngestClientError(message, response)

            last_error = IngestError(message, response)
            log.warning(
                "Push failed",
                attempt=attempt + 1,
                stream_type=stream_type,
                status_code=response.status_code,
            )

        statsd_client.incr("contprof.ingest.failure")
        assert last_error is not None
        raise last_error

    def close(self) -> None:
        self._session.close()
