# cosmosgremlin

Building blocks for talking to the Gremlin API of Azure Cosmos DB: a websocket
connection, helpers that read the Cosmos DB specific response headers, a
connector that retries requests when Cosmos DB suggests it, and in-process
request metrics.

## Installation

```
pip install cosmosgremlin
```

## Modules

### `cosmosgremlin.connection`

`WebsocketDialer(host, timeout=5.0, writing_wait=15.0, reading_wait=15.0,
read_buffer_size=8192, write_buffer_size=8192, dialer_factory=default_dialer_factory)`
manages one websocket connection.

- The host must start with `ws://` or `wss://`, and both buffer sizes must be
  positive; otherwise the constructor raises `ValueError`. Passing
  `dialer_factory=None` raises `ValueError` as well.
- `connect()` opens the connection. If dialing fails it raises
  `ConnectivityError`, with a hint that `/gremlin` may be missing from the host
  and, when the server answered the handshake, details of that answer.
- `write(msg)` sends one binary message, `read()` returns one message as
  `(message_type, data)`, `ping()` sends a ping frame. All three raise
  `NoConnectionError` (a subclass of `ConnectivityError`) when not connected.
  A failed ping marks the dialer as disconnected and raises
  `ConnectivityError`.
- `close()` sends a normal-closure close frame and shuts the socket down; on a
  dialer that is not connected it does nothing.
- `is_connected()` tells whether the dialer holds an open connection.

Reads and writes may run on different threads; one reader and one writer use
the connection at a time.

`default_dialer_factory(write_buffer_size, read_buffer_size, handshake_timeout)`
returns the dial function used by default, built on the `websocket-client`
library. `extract_connection_error(response)` turns a failed handshake
response (an object with `status` and an optional `body`) into a message, or
returns `None` when there is no response.

### `cosmosgremlin.response`

- `Response(request_id, status, result)` and `Status(code, message, attributes)`
  hold a Gremlin response.
- `parse_attribute_map(attributes)` reads the Cosmos DB headers
  (`x-ms-status-code`, `x-ms-substatus-code`, `x-ms-request-charge`,
  `x-ms-total-request-charge`, `x-ms-server-time-ms`,
  `x-ms-total-server-time-ms`, `x-ms-activity-id`, `x-ms-retry-after-ms`,
  `x-ms-source`) into a `ResponseInformation`. It raises `ValueError` when the
  status code header is missing or cannot be parsed; other malformed headers
  are read as zero.
- `extract_first_error(responses)` returns a `ResponseError` for the first
  response that is not 200, 204 or 206, or `None`. For status 500 the message
  uses the Cosmos DB status and sub-status codes, e.g.
  `429 (3200) - Request was throttled and should be retried after value in x-ms-retry-after-ms`.
- `extract_retry_conditions(responses)` returns a `RetryInformation` telling
  whether a retry is suggested (Cosmos DB codes 409, 412, 429, 1007, 1008),
  whether it must use a new connection (1007, 1008), and the longest
  `retry_after` among the responses.
- `status_code_to_description(code)` gives the documented meaning of a Cosmos
  DB status code, or `Status code <code> is unknown`.

### `cosmosgremlin.metrics`

`Metrics(prefix)` keeps counters, gauges and a histogram in memory: connectivity
errors, connection usage by `ConnectionUsageKind` (`WRITE`, `READ`, `PING`) and
error flag, responses per status code (`increment_status_code(code)`), request
errors, retries, retry timeouts, server time and request charge per query, the
total request charge and the retry-after waits. `Metrics` and
`NopClientMetrics` both implement the `ClientMetrics` interface.

### `cosmosgremlin.cosmos`

`Cosmos(host, pool, credential_provider=None, logger=None, metrics=None,
max_retries=0, retry_timeout=30.0)` executes queries through a pool you supply.
The pool needs `execute(query)`, `execute_with_bindings(query, bindings,
rebindings)`, `execute_async(query)` (an iterable of `AsyncResponse`),
`is_connected()`, `close()` and `ping()`.

- `execute(query)`, `execute_with_bindings(query, bindings, rebindings)` and
  `execute_query(query)` (which uses `str(query)`) return the list of responses.
  If one of them carries an error status, a `ResponseError` is raised with the
  responses attached as `responses`.
- Requests are repeated while Cosmos DB suggests a retry, waiting the
  suggested `x-ms-retry-after-ms`, at most `max_retries` times and no longer
  than `retry_timeout` seconds; then the latest responses are returned.
- `execute_async(query)` returns an iterator over the `AsyncResponse` items of
  the final attempt; it raises if the first attempt cannot be started.
- `is_healthy()` pings the pool and returns `True` or `False`;
  `is_connected()` asks the pool; `stop()` closes it.
- `str(cosmos)` gives `CosmosDB (connected=..., target=..., user=...)`.

Credentials come from a `CredentialProvider`: `StaticCredentialProvider` for a
fixed user name and key, `NoCredentials` (the default) for none.

The module-level functions `retry_loop`, `handle_timeout`, `wait_for_retry` and
`update_request_metrics` are the pieces the connector is built from.

## Example

```python
from cosmosgremlin.cosmos import Cosmos, StaticCredentialProvider
from cosmosgremlin.metrics import Metrics
from cosmosgremlin.response import Response, Status


class OneShotPool:
    def execute(self, query):
        return [Response(request_id="1", status=Status(code=200))]

    def execute_with_bindings(self, query, bindings, rebindings):
        return self.execute(query)

    def execute_async(self, query):
        return []

    def is_connected(self):
        return True

    def close(self):
        pass

    def ping(self):
        pass


password = "password"
cosmos = Cosmos(
    "wss://localhost:8182/gremlin",
    pool=OneShotPool(),
    credential_provider=StaticCredentialProvider("user", password),
    metrics=Metrics("cosmosgremlin"),
    max_retries=3,
    retry_timeout=2.0,
)

responses = cosmos.execute("g.V().count()")
print(cosmos)  # CosmosDB (connected=true, target=wss://localhost:8182/gremlin, user=user)
cosmos.stop()
```

## What this package does not do

It has no connection pool and no Gremlin client that packs queries into
requests, sends them over a `WebsocketDialer` and collects the responses, and
it has no query builder. `Cosmos` only works with a pool you provide, and
`WebsocketDialer` only moves raw messages. There is no command-line tool.

## Running the tests

```
pip install -e .[test]
pytest
```