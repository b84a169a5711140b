from datetime import timedelta

import pytest

from cosmosgremlin.response import (
    NO_RETRY,
    STATUS_SCRIPT_EVALUATION_ERROR,
    STATUS_SERVER_ERROR,
    STATUS_SUCCESS,
    Response,
    ResponseError,
    Status,
    extract_first_error,
    extract_retry_conditions,
    parse_attribute_map,
    status_code_to_description,
)


def _ok():
    return Response(status=Status(code=STATUS_SUCCESS))


def _server_error(attributes, message=""):
    return Response(status=Status(code=STATUS_SERVER_ERROR, message=message, attributes=attributes))


def test_extract_first_error():
    too_many = _server_error({"x-ms-status-code": 429, "x-ms-substatus-code": 3200})
    err = extract_first_error([_ok(), too_many])
    assert isinstance(err, ResponseError)
    assert "429" in str(err)
    assert str(err) == (
        "429 (3200) - Request was throttled and should be retried after value in x-ms-retry-after-ms"
    )


def test_extract_first_error_no_error():
    assert extract_first_error([_ok()]) is None


def test_extract_first_error_no_server_error():
    resp = Response(status=Status(code=STATUS_SCRIPT_EVALUATION_ERROR, message="ABCD"))
    err = extract_first_error([resp])
    assert isinstance(err, ResponseError)
    assert "ABCD" in str(err)


def test_extract_first_error_no_attribute_map():
    err = extract_first_error([_server_error({}, message="ABCD")])
    assert isinstance(err, ResponseError)
    assert "ABCD" in str(err)


def test_extract_first_error_faulty_attribute_map():
    err = extract_first_error([_server_error({"x-ms-status-code": "invalid"}, message="ABCD")])
    assert isinstance(err, ResponseError)
    assert "ABCD" in str(err)


def test_parse_attribute_map():
    attributes = {
        "x-ms-status-code": 429,
        "x-ms-substatus-code": 3200,
        "x-ms-request-charge": 1234.56,
        "x-ms-total-request-charge": 78910.11,
        "x-ms-server-time-ms": 11.22,
        "x-ms-total-server-time-ms": 333.444,
        "x-ms-activity-id": "fdd08592-abcd-efgh-ijkl-97d35c2dda52",
        "x-ms-retry-after-ms": "00:00:02.345",
        "x-ms-source": "Microsoft.Azure.Documents.Client",
    }
    info = parse_attribute_map(attributes)
    assert info.status_code == 429
    assert info.status_description
    assert info.sub_status_code == 3200
    assert info.request_charge == pytest.approx(1234.56, rel=1e-6)
    assert info.request_charge_total == pytest.approx(78910.11, rel=1e-6)
    assert info.server_time == timedelta(microseconds=11220)
    assert info.server_time_total == timedelta(microseconds=333444)
    assert info.activity_id == "fdd08592-abcd-efgh-ijkl-97d35c2dda52"
    assert info.retry_after == timedelta(milliseconds=2345)
    assert info.source == "Microsoft.Azure.Documents.Client"


def test_parse_attribute_map_fail_on_invalid_status_code():
    with pytest.raises(ValueError):
        parse_attribute_map({"x-ms-status-code": "invalid"})


def test_parse_attribute_map_fail_on_missing_status_code():
    with pytest.raises(ValueError, match="x-ms-status-code"):
        parse_attribute_map({})


def test_parse_attribute_map_invalid_optional_values():
    attributes = {
        "x-ms-status-code": 429,
        "x-ms-substatus-code": "invalid",
        "x-ms-request-charge": "invalid",
        "x-ms-total-request-charge": "invalid",
        "x-ms-server-time-ms": "invalid",
        "x-ms-total-server-time-ms": "invalid",
        "x-ms-retry-after-ms": "invalid",
    }
    info = parse_attribute_map(attributes)
    assert info.status_code == 429
    assert info.status_description
    assert info.sub_status_code == 0
    assert info.request_charge == 0
    assert info.request_charge_total == 0
    assert info.server_time == timedelta(0)
    assert info.server_time_total == timedelta(0)
    assert info.retry_after == timedelta(0)


def test_parse_attribute_map_status_code_as_string():
    info = parse_attribute_map({"x-ms-status-code": "429", "x-ms-retry-after-ms": "00:10:00.00"})
    assert info.status_code == 429
    assert info.retry_after == timedelta(milliseconds=600000)


def test_status_code_to_description():
    desc = status_code_to_description(429)
    assert "throttled" in desc
    assert "unknown" not in desc
    assert "unknown" in status_code_to_description(12345)


def test_extract_retry_conditions():
    too_many = _server_error(
        {"x-ms-status-code": 429, "x-ms-substatus-code": 3200, "x-ms-retry-after-ms": "00:00:00.5000000"}
    )
    info = extract_retry_conditions([_ok(), too_many])
    assert info.retry
    assert not info.retry_on_new_connection
    assert info.description != NO_RETRY
    assert info.retry_after == timedelta(milliseconds=500)


def test_extract_retry_conditions_no_retry():
    not_found = _server_error(
        {"x-ms-status-code": 404, "x-ms-substatus-code": 3200, "x-ms-retry-after-ms": "00:00:00.5000000"}
    )
    info = extract_retry_conditions([_ok(), not_found])
    assert not info.retry
    assert not info.retry_on_new_connection
    assert info.description == NO_RETRY


def test_extract_retry_conditions_only_on_new_connection():
    closed = _server_error(
        {"x-ms-status-code": 1007, "x-ms-substatus-code": 3200, "x-ms-retry-after-ms": "00:00:00.5000000"}
    )
    info = extract_retry_conditions([_ok(), closed])
    assert info.retry
    assert info.retry_on_new_connection
    assert info.description != NO_RETRY
    assert info.retry_after == timedelta(milliseconds=500)


def test_extract_retry_conditions_ignore_error():
    will_error = _server_error({"x-ms-status-code": "invalid"}, message="ABCD")
    too_many = _server_error(
        {"x-ms-status-code": 429, "x-ms-substatus-code": 3200, "x-ms-retry-after-ms": "00:00:00.5000000"}
    )
    info = extract_retry_conditions([_ok(), will_error, too_many])
    assert info.retry
    assert not info.retry_on_new_connection
    assert info.description != NO_RETRY
    assert info.retry_after == timedelta(milliseconds=500)