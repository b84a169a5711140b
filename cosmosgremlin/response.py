"""Gremlin responses and the CosmosDB specific status information they carry."""

from __future__ import annotations

import math
import re
import struct
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Iterable, Mapping, Optional

# Gremlin server status codes used when interpreting responses.
STATUS_SUCCESS = 200
STATUS_NO_CONTENT = 204
STATUS_PARTIAL_CONTENT = 206
STATUS_MALFORMED_REQUEST = 498
STATUS_SERVER_ERROR = 500
STATUS_SCRIPT_EVALUATION_ERROR = 597

_SUCCESS_CODES = frozenset({STATUS_SUCCESS, STATUS_NO_CONTENT, STATUS_PARTIAL_CONTENT})

# Response headers sent by CosmosDB as status attributes.
HEADER_REQUEST_CHARGE = "x-ms-request-charge"
HEADER_REQUEST_CHARGE_TOTAL = "x-ms-total-request-charge"
HEADER_SERVER_TIME_MS = "x-ms-server-time-ms"
HEADER_SERVER_TIME_MS_TOTAL = "x-ms-total-server-time-ms"
HEADER_STATUS_CODE = "x-ms-status-code"
HEADER_SUB_STATUS_CODE = "x-ms-substatus-code"
HEADER_RETRY_AFTER_MS = "x-ms-retry-after-ms"
HEADER_ACTIVITY_ID = "x-ms-activity-id"
HEADER_SOURCE = "x-ms-source"


@dataclass
class Status:
    """Status block of a Gremlin response."""

    code: int = 0
    message: str = ""
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class Response:
    """A single Gremlin response frame."""

    request_id: str = ""
    status: Status = field(default_factory=Status)
    result: Any = None


class ResponseError(Exception):
    """Error reported by the server inside a response."""

    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class StatusCodeDescription:
    """What a CosmosDB status code means and whether it is worth a retry."""

    response_status_code: int = 0
    retry: bool = False
    retry_on_new_connection: bool = False
    description: str = ""


NO_RETRY = StatusCodeDescription()


@dataclass(frozen=True)
class RetryInformation:
    """Retry advice gathered from a chunk of responses."""

    description: StatusCodeDescription = NO_RETRY
    retry_after: timedelta = timedelta(0)

    @property
    def retry(self) -> bool:
        return self.description.retry

    @property
    def retry_on_new_connection(self) -> bool:
        return self.description.retry_on_new_connection

    @property
    def response_status_code(self) -> int:
        return self.description.response_status_code


@dataclass
class ResponseInformation:
    """CosmosDB specific information parsed from a response's attributes."""

    status_code: int = 0
    sub_status_code: int = 0
    status_description: str = ""
    request_charge: float = 0.0
    request_charge_total: float = 0.0
    server_time: timedelta = timedelta(0)
    server_time_total: timedelta = timedelta(0)
    activity_id: str = ""
    retry_after: timedelta = timedelta(0)
    source: str = ""


STATUS_CODE_DESCRIPTIONS: dict[int, StatusCodeDescription] = {
    desc.response_status_code: desc
    for desc in (
        StatusCodeDescription(401, False, False, "Error message 'Unauthorized: Invalid credentials provided' is returned when authentication password doesn't match Cosmos DB account key. Navigate to your Cosmos DB Gremlin account in the Azure portal and confirm that the key is correct."),
        StatusCodeDescription(404, False, False, "Concurrent operations that attempt to delete and update the same edge or vertex simultaneously. Error message 'Owner resource does not exist' indicates that specified database or collection is incorrect in connection parameters in /dbs/<database name>/colls/<collection or graph name> format."),
        StatusCodeDescription(408, False, False, "'Server timeout' indicates that traversal took more than 30 seconds and was canceled by the server. Optimize your traversals to run quickly by filtering vertices or edges on every hop of traversal to narrow down search scope."),
        StatusCodeDescription(409, True, False, "'Conflicting request to resource has been attempted. Retry to avoid conflicts.' This usually happens when vertex or an edge with an identifier already exists in the graph."),
        StatusCodeDescription(412, True, False, "Status code is complemented with error message 'PreconditionFailedException': One of the specified pre-condition is not met. This error is indicative of an optimistic concurrency control violation between reading an edge or vertex and writing it back to the store after modification. Most common situations when this error occurs is property modification, for example g.V('identifier').property('name','value'). Gremlin engine would read the vertex, modify it, and write it back. If there is another traversal running in parallel trying to write the same vertex or an edge, one of them will receive this error. Application should submit traversal to the server again."),
        StatusCodeDescription(429, True, False, "Request was throttled and should be retried after value in x-ms-retry-after-ms"),
        StatusCodeDescription(500, False, False, "Error message that contains 'NotFoundException: Entity with the specified id does not exist in the system.' indicates that a database and/or collection was re-created with the same name. This error will disappear within 5 minutes as change propagates and invalidates caches in different Cosmos DB components. To avoid this issue, use unique database and collection names every time."),
        StatusCodeDescription(1000, False, False, "This status code is returned when server successfully parsed a message but wasn't able to execute. It usually indicates a problem with the query."),
        StatusCodeDescription(1001, False, False, "This code is returned when server completes traversal execution but fails to serialize response back to the client. This error can happen when traversal generates complex result, that is too large or does not conform to TinkerPop protocol specification. Application should simplify the traversal when it encounters this error."),
        StatusCodeDescription(1003, False, False, "'Query exceeded memory limit. Bytes Consumed: XXX, Max: YYY' is returned when traversal exceeds allowed memory limit. Memory limit is 2 GB per traversal."),
        StatusCodeDescription(1004, False, False, "This status code indicates malformed graph request. Request can be malformed when it fails deserialization, non-value type is being deserialized as value type or unsupported gremlin operation requested. Application should not retry the request because it will not be successful."),
        StatusCodeDescription(1007, True, True, "Usually this status code is returned with error message 'Could not process request. Underlying connection has been closed.'. This situation can happen if client driver attempts to use a connection that is being closed by the server. Application should retry the traversal on a different connection."),
        StatusCodeDescription(1008, True, True, "Cosmos DB Gremlin server can terminate connections to rebalance traffic in the cluster. Client drivers should handle this situation and use only live connections to send requests to the server. Occasionally client drivers may not detect that connection was closed. When application encounters an error, 'Connection is too busy. Please retry after sometime or open more connections.' it should retry traversal on a different connection."),
    )
}


def status_code_to_description(code: int) -> str:
    """Return the documented meaning of a CosmosDB status code."""
    desc = STATUS_CODE_DESCRIPTIONS.get(code)
    if desc is None:
        return f"Status code {code} is unknown"
    return desc.description


def extract_first_error(responses: Optional[Iterable[Response]]) -> Optional[ResponseError]:
    """Return an error for the first failed response, or None if all succeeded."""
    for response in responses or ():
        status = response.status
        if status.code in _SUCCESS_CODES:
            continue

        if status.code != STATUS_SERVER_ERROR:
            return ResponseError(f"{status.code} - {status.message}", status.code)

        try:
            info = parse_attribute_map(status.attributes)
        except ValueError as err:
            return ResponseError(
                f"Failed parsing attributes of response: '{err}'. "
                f"Unparsed error: {status.code} - {status.message}",
                status.code,
            )
        return ResponseError(
            f"{info.status_code} ({info.sub_status_code}) - {info.status_description}",
            info.status_code,
        )
    return None


def extract_retry_conditions(responses: Optional[Iterable[Response]]) -> RetryInformation:
    """Collect whether and after how long the given responses ask for a retry."""
    last_retry = NO_RETRY
    retry_after = timedelta(0)
    for response in responses or ():
        if response.status.code in _SUCCESS_CODES:
            continue
        try:
            info = parse_attribute_map(response.status.attributes)
        except ValueError:
            continue
        desc = STATUS_CODE_DESCRIPTIONS.get(info.status_code)
        if desc is None or not desc.retry:
            continue
        last_retry = desc
        retry_after = max(retry_after, info.retry_after)
    return RetryInformation(last_retry, retry_after)


def parse_attribute_map(attributes: Optional[Mapping[str, Any]]) -> ResponseInformation:
    """Parse CosmosDB headers from a status attribute map.

    Raises ValueError when the status code header is missing or unparsable.
    Other malformed headers are read as zero values.
    """
    attributes = attributes or {}
    if HEADER_STATUS_CODE not in attributes:
        raise ValueError(f"'{HEADER_STATUS_CODE}' is missing")

    try:
        status_code = _to_int16(attributes[HEADER_STATUS_CODE])
    except ValueError as err:
        raise ValueError(f"Failed parsing '{HEADER_STATUS_CODE}': {err}") from err

    info = ResponseInformation(
        status_code=status_code,
        status_description=status_code_to_description(status_code),
    )

    if HEADER_SUB_STATUS_CODE in attributes:
        try:
            info.sub_status_code = _to_int16(attributes[HEADER_SUB_STATUS_CODE])
        except ValueError:
            info.sub_status_code = 0
    if HEADER_REQUEST_CHARGE in attributes:
        info.request_charge = _to_float32(attributes[HEADER_REQUEST_CHARGE])
    if HEADER_REQUEST_CHARGE_TOTAL in attributes:
        info.request_charge_total = _to_float32(attributes[HEADER_REQUEST_CHARGE_TOTAL])
    if HEADER_SERVER_TIME_MS in attributes:
        info.server_time = _ms_to_duration(attributes[HEADER_SERVER_TIME_MS])
    if HEADER_SERVER_TIME_MS_TOTAL in attributes:
        info.server_time_total = _ms_to_duration(attributes[HEADER_SERVER_TIME_MS_TOTAL])
    if HEADER_ACTIVITY_ID in attributes:
        info.activity_id = _to_string(attributes[HEADER_ACTIVITY_ID])
    if HEADER_RETRY_AFTER_MS in attributes:
        info.retry_after = _parse_retry_after(_to_string(attributes[HEADER_RETRY_AFTER_MS]))
    if HEADER_SOURCE in attributes:
        info.source = _to_string(attributes[HEADER_SOURCE])
    return info


_OCTAL = re.compile(r"([+-]?)0([0-7]+)")
_ZERO_DECIMAL = re.compile(r"\.0*$")
_RETRY_AFTER = re.compile(r"(\d{1,2}):(\d{2}):(\d{2})(?:[.,](\d+))?")
_F32_MAX = 3.4028234663852886e38


def _parse_int(text: str) -> int:
    if text != text.strip() or "_" in text:
        raise ValueError(f"invalid integer {text!r}")
    text = _ZERO_DECIMAL.sub("", text) if "." in text else text
    octal = _OCTAL.fullmatch(text)
    if octal:
        return int(octal.group(1) + octal.group(2), 8)
    try:
        return int(text, 0)
    except ValueError:
        raise ValueError(f"invalid integer {text!r}") from None


def _to_int16(value: Any) -> int:
    if value is None:
        number = 0
    elif isinstance(value, (bool, int)):
        number = int(value)
    elif isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"unable to cast {value!r} to int16")
        number = int(value)
    elif isinstance(value, str):
        number = _parse_int(value)
    else:
        raise ValueError(f"unable to cast {value!r} of type {type(value).__name__} to int16")
    return (number + 0x8000) % 0x10000 - 0x8000


def _f32(value: float) -> float:
    if math.isfinite(value) and abs(value) > _F32_MAX:
        return math.copysign(math.inf, value)
    return struct.unpack("<f", struct.pack("<f", value))[0]


def _to_float32(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (bool, int, float)):
        return _f32(float(value))
    if isinstance(value, str):
        if value != value.strip() or "_" in value:
            return 0.0
        try:
            return _f32(float(value))
        except ValueError:
            return 0.0
    return 0.0


def _to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _ms_to_duration(value: Any) -> timedelta:
    micros = _f32(1000 * _to_float32(value))
    if not math.isfinite(micros):
        return timedelta(0)
    return timedelta(microseconds=int(micros))


def _parse_retry_after(text: str) -> timedelta:
    match = _RETRY_AFTER.fullmatch(text)
    if not match:
        return timedelta(0)
    hours, minutes, seconds = (int(match.group(i)) for i in (1, 2, 3))
    if hours > 23 or minutes > 59 or seconds > 59:
        return timedelta(0)
    fraction = match.group(4) or ""
    nanos = int(fraction[:9].ljust(9, "0")) if fraction else 0
    return timedelta(hours=hours, minutes=minutes, seconds=seconds, microseconds=nanos // 1000)