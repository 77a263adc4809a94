import json
from datetime import datetime, timedelta, timezone

import pytest
import responses

from hpametrics.zmon import DataPoint, Sampling, ZMONClient, ZMONError, duration_to_sampling

ENDPOINT = "http://zmon.example.com"
QUERY_URL = ENDPOINT + "/api/v1/datapoints/query"

SINGLE_POINT = {"queries": [{"results": [{"values": [[1539710395000, 765952]]}]}]}
EXPECTED_POINTS = [
    DataPoint(time=datetime.fromtimestamp(1539710395, tz=timezone.utc), value=765952)
]


@pytest.fixture
def mocked():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


def _sent_metric(mocked):
    body = json.loads(mocked.calls[0].request.body)
    assert len(body["metrics"]) == 1
    return body, body["metrics"][0]


def test_single_data_point(mocked):
    mocked.add(responses.POST, QUERY_URL, json=SINGLE_POINT, status=200)
    client = ZMONClient(ENDPOINT)
    points = client.query(1, "", None, None, timedelta(hours=1))
    assert points == EXPECTED_POINTS

    body, metric = _sent_metric(mocked)
    assert "key" not in metric["tags"]
    assert metric["group_by"] == []
    assert metric["name"] == "zmon.check.1"
    assert metric["limit"] == 10000
    assert body["start_relative"] == {"value": 1, "unit": "hours"}


def test_single_data_point_with_key(mocked):
    mocked.add(responses.POST, QUERY_URL, json=SINGLE_POINT, status=200)
    client = ZMONClient(ENDPOINT)
    points = client.query(1, "my-key", None, None, timedelta(hours=1))
    assert points == EXPECTED_POINTS

    _, metric = _sent_metric(mocked)
    assert metric["tags"] == {"key": ["my-key"]}
    assert metric["group_by"] == [{"name": "tag", "tags": ["key"]}]


def test_single_data_point_with_aggregators(mocked):
    mocked.add(responses.POST, QUERY_URL, json=SINGLE_POINT, status=200)
    client = ZMONClient(ENDPOINT)
    points = client.query(1, "", None, ["max"], timedelta(hours=1))
    assert points == EXPECTED_POINTS

    _, metric = _sent_metric(mocked)
    assert metric["aggregators"] == [
        {"name": "max", "sampling": {"value": 1, "unit": "hours"}}
    ]


def test_invalid_aggregator(mocked):
    client = ZMONClient(ENDPOINT)
    with pytest.raises(ZMONError) as info:
        client.query(1, "", None, ["invalid"], timedelta(0))
    assert str(info.value) == "invalid aggregator 'invalid'"
    assert len(mocked.calls) == 0


def test_invalid_response_code(mocked):
    mocked.add(responses.POST, QUERY_URL, body='{"error": 500}', status=500)
    client = ZMONClient(ENDPOINT)
    with pytest.raises(ZMONError) as info:
        client.query(1, "", None, None, timedelta(0))
    assert str(info.value) == "[kariosdb query] unexpected response code: 500"


def test_invalid_values_response(mocked):
    body = {"queries": [{"results": [{"values": [[1539710395000, 765952, 1]]}]}]}
    mocked.add(responses.POST, QUERY_URL, json=body, status=200)
    client = ZMONClient(ENDPOINT)
    with pytest.raises(ZMONError) as info:
        client.query(1, "", None, None, timedelta(hours=1))
    assert str(info.value) == "[kariosdb query] unexpected response data"


def test_empty_queries_returns_no_points(mocked):
    mocked.add(responses.POST, QUERY_URL, json={"queries": []}, status=200)
    client = ZMONClient(ENDPOINT)
    assert client.query(1, "", None, None, timedelta(hours=1)) == []


def test_headers_and_tags(mocked):
    mocked.add(responses.POST, QUERY_URL, json=SINGLE_POINT, status=200)
    client = ZMONClient(ENDPOINT)
    points = client.query(7, "", {"application": "app"}, None, timedelta(minutes=5))
    assert points == EXPECTED_POINTS

    request = mocked.calls[0].request
    assert request.headers["X-Attribution"] == "kube-metrics-adapter/7"
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["Accept"] == "application/json"
    _, metric = _sent_metric(mocked)
    assert metric["tags"] == {"application": ["app"]}
    assert metric["name"] == "zmon.check.7"


@pytest.mark.parametrize(
    "duration, expected",
    [
        (timedelta(hours=1), Sampling(value=1, unit="hours")),
        (timedelta(days=2 * 365), Sampling(value=2, unit="years")),
        (timedelta(microseconds=1), Sampling(value=0, unit="milliseconds")),
        (timedelta(0), Sampling(value=0, unit="milliseconds")),
        (timedelta(weeks=1), Sampling(value=1, unit="weeks")),
    ],
)
def test_duration_to_sampling(duration, expected):
    assert duration_to_sampling(duration) == expected