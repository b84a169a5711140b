"""CosmosDB connector: query execution with automatic retries and metrics."""

from __future__ import annotations

import logging
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Iterable, Iterator, Optional, Protocol, Sequence, Union

from .metrics import Metrics
from .response import (
    Response,
    ResponseError,
    extract_first_error,
    extract_retry_conditions,
    parse_attribute_map,
)

DEFAULT_RETRY_TIMEOUT = 30.0
DEFAULT_METRICS_PREFIX = "cosmosgremlin"

_MILLISECOND = timedelta(milliseconds=1)
_END = object()

Logger = Union[logging.Logger, logging.LoggerAdapter]


class CredentialProvider(ABC):
    """Supplies the credentials used to authenticate against CosmosDB."""

    @abstractmethod
    def username(self) -> str:
        """Return the user name."""

    @abstractmethod
    def password(self) -> str:
        """Return the password, a cosmos key or a resource token."""


@dataclass(frozen=True)
class StaticCredentialProvider(CredentialProvider):
    """Credentials that never change, such as a primary or secondary key."""

    static_username: str
    static_password: str

    def username(self) -> str:
        return self.static_username

    def password(self) -> str:
        return self.static_password


class NoCredentials(CredentialProvider):
    """Credentials for an unauthenticated connection."""

    def username(self) -> str:
        return ""

    def password(self) -> str:
        return ""


@dataclass(frozen=True)
class AsyncResponse:
    """A response streamed from an asynchronous query, with its error text if any."""

    response: Response
    error_message: str = ""


class QueryExecutor(Protocol):
    """What the connector needs from its connection pool."""

    def execute(self, query: str) -> Sequence[Response]: ...

    def execute_with_bindings(
        self, query: str, bindings: Optional[dict], rebindings: Optional[dict]
    ) -> Sequence[Response]: ...

    def execute_async(self, query: str) -> Iterable[AsyncResponse]: ...

    def is_connected(self) -> bool: ...

    def close(self) -> None: ...

    def ping(self) -> None: ...


class Cosmos:
    """Executes queries against a CosmosDB Gremlin endpoint through a connection pool."""

    def __init__(
        self,
        host: str,
        pool: QueryExecutor,
        credential_provider: Optional[CredentialProvider] = None,
        logger: Optional[Logger] = None,
        metrics: Optional[Metrics] = None,
        max_retries: int = 0,
        retry_timeout: Optional[float] = DEFAULT_RETRY_TIMEOUT,
    ) -> None:
        self.host = host
        self.pool = pool
        self.credential_provider = credential_provider or NoCredentials()
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.metrics = metrics if metrics is not None else Metrics(DEFAULT_METRICS_PREFIX)
        self.max_retries = max(max_retries, 0)
        self.retry_timeout = (
            retry_timeout if retry_timeout is not None and retry_timeout > 0 else DEFAULT_RETRY_TIMEOUT
        )

    def execute_query(self, query: Any) -> list[Response]:
        """Execute a query built by a query builder (anything whose str() is the query)."""
        if query is None:
            raise ValueError("query is None")
        return self.execute(str(query))

    def execute(self, query: str) -> list[Response]:
        """Execute a raw query, retrying where CosmosDB suggests it."""
        return self._run(lambda: self.pool.execute(query))

    def execute_with_bindings(
        self, query: str, bindings: Optional[dict] = None, rebindings: Optional[dict] = None
    ) -> list[Response]:
        """Execute a raw query with bindings, retrying where CosmosDB suggests it."""
        return self._run(lambda: self.pool.execute_with_bindings(query, bindings, rebindings))

    def _run(self, request: Callable[[], Sequence[Response]]) -> list[Response]:
        responses = retry_loop(request, self.max_retries, self.retry_timeout, self.metrics, self.logger)
        error = extract_first_error(responses)
        if error is not None:
            error.responses = responses
            raise error
        return responses

    def execute_async(self, query: str) -> Iterator[AsyncResponse]:
        """Start a query and return an iterator over its responses.

        Raises if the first attempt cannot be started. The responses of the
        final attempt are delivered; nothing is delivered if it failed.
        """
        out: queue.Queue = queue.Queue()
        ready = threading.Event()
        collected: list[AsyncResponse] = []
        state = {"started": False, "error": None}

        def attempt() -> list[Response]:
            stream = self.pool.execute_async(query)
            state["started"] = True
            ready.set()
            collected.clear()
            responses: list[Response] = []
            messages: list[str] = []
            for item in stream:
                collected.append(item)
                responses.append(item.response)
                if item.error_message:
                    messages.append(item.error_message)
            if messages:
                raise ResponseError(": ".join(reversed(messages)))
            return responses

        def run() -> None:
            try:
                retry_loop(attempt, self.max_retries, self.retry_timeout, self.metrics, self.logger)
            except Exception as err:
                if not state["started"]:
                    state["error"] = err
                else:
                    self.logger.debug("asynchronous query failed: %s", err)
            else:
                for item in collected:
                    out.put(item)
            finally:
                ready.set()
                out.put(_END)

        threading.Thread(target=run, name="cosmos-execute-async", daemon=True).start()
        ready.wait()
        if state["error"] is not None:
            raise state["error"]
        return _drain(out)

    def is_connected(self) -> bool:
        """Whether the pool holds a live connection."""
        return self.pool.is_connected()

    def stop(self) -> None:
        """Close the pool and all of its connections."""
        self.logger.info("Teardown requested")
        self.pool.close()

    def is_healthy(self) -> bool:
        """Whether the connection to CosmosDB answers a ping."""
        try:
            self.pool.ping()
        except Exception as err:
            self.logger.warning("health check failed: %s", err)
            return False
        return True

    def __str__(self) -> str:
        try:
            username = self.credential_provider.username()
        except Exception as err:
            username = f"failed to obtain username: {err}"
        connected = "true" if self.is_connected() else "false"
        return f"CosmosDB (connected={connected}, target={self.host}, user={username})"


def _drain(out: queue.Queue) -> Iterator[AsyncResponse]:
    while True:
        item = out.get()
        if item is _END:
            return
        yield item


def retry_loop(
    execute_request: Callable[[], Sequence[Response]],
    max_retries: int,
    retry_timeout: float,
    metrics: Optional[Metrics],
    logger: Logger,
) -> list[Response]:
    """Run a request, repeating it while the responses ask for a retry.

    Stops after max_retries retries or once retry_timeout seconds have passed,
    returning the latest responses. Errors of the request are re-raised.
    """
    if metrics is None:
        raise ValueError("metrics must not be None")

    should_retry = max_retries > 0
    done = threading.Event()
    timed_out = handle_timeout(done, retry_timeout, logger)
    responses: list[Response] = []
    try:
        for try_count in range(max_retries + 1):
            is_a_retry = try_count > 0
            try:
                responses = list(execute_request() or ())
            except Exception:
                update_request_metrics([], metrics, is_a_retry)
                metrics.request_errors_total.inc()
                raise
            update_request_metrics(responses, metrics, is_a_retry)

            if not should_retry:
                return responses

            info = extract_retry_conditions(responses)
            if not (info.retry or info.retry_on_new_connection):
                return responses

            if info.retry_after > timedelta(0):
                logger.info(
                    "retry %d of query after %s because of header status code %d",
                    try_count + 1,
                    info.retry_after,
                    info.response_status_code,
                )
                if not wait_for_retry(info.retry_after.total_seconds(), timed_out):
                    logger.warning(
                        "Timed out while waiting to do a retry after %s (timeout=%ss)",
                        info.retry_after,
                        retry_timeout,
                    )
                    metrics.request_retry_timeouts_total.inc()
                    return responses

            if timed_out.is_set():
                metrics.request_retry_timeouts_total.inc()
                logger.warning("Timed out while doing a retry (timeout=%ss)", retry_timeout)
                return responses
        return responses
    finally:
        done.set()


def handle_timeout(done: threading.Event, retry_timeout: float, logger: Logger) -> threading.Event:
    """Return an event that is set once retry_timeout seconds pass before done is set."""
    timed_out = threading.Event()

    def watch() -> None:
        if not done.wait(retry_timeout):
            logger.debug(
                "Specified timeout (%ss) for retries exceeded. The current request won't be "
                "retried even if suggested. This does not mean the request itself failed.",
                retry_timeout,
            )
            timed_out.set()

    threading.Thread(target=watch, name="cosmos-retry-timeout", daemon=True).start()
    return timed_out


def wait_for_retry(wait: float, stop: threading.Event) -> bool:
    """Wait the given seconds; return False if stop was set first."""
    return not stop.wait(wait)


def update_request_metrics(responses: Sequence[Response], metrics: Metrics, is_a_retry: bool) -> None:
    """Record status codes, charges, server times and retry waits of a chunk of responses."""
    if is_a_retry:
        metrics.request_retries_total.inc()
    if not responses:
        return

    retry_after = timedelta(0)
    request_charge = 0.0
    server_time = timedelta(0)
    for response in responses:
        try:
            info = parse_attribute_map(response.status.attributes)
        except ValueError:
            metrics.increment_status_code(response.status.code)
            continue
        metrics.increment_status_code(info.status_code)
        # cosmos already accumulates these values, so only the largest counts
        retry_after = max(retry_after, info.retry_after)
        request_charge = max(request_charge, info.request_charge_total)
        server_time = max(server_time, info.server_time_total)

    count = len(responses)
    server_time_ms = float(server_time // _MILLISECOND)
    metrics.server_time_per_query_response_avg_ms.set(server_time_ms / count)
    metrics.server_time_per_query_ms.set(server_time_ms)
    metrics.request_charge_per_query_response_avg.set(request_charge / count)
    metrics.request_charge_per_query.set(request_charge)
    metrics.request_charge_total.add(request_charge)
    metrics.retry_after_ms.observe(float(retry_after // _MILLISECOND))