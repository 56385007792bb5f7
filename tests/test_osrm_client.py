import httpx
import pytest

from src.fieldroute.services.routing import osrm_client
from src.fieldroute.services.routing.osrm_client import MAX_COORDINATES_PER_REQUEST, OSRMClient

COORDS = [(52.517037, 13.388860), (52.496891, 13.385983)]


def _client(handler, max_retries: int = 0) -> OSRMClient:
    return OSRMClient(
        base_url="http://osrm.test/",
        profile="driving",
        max_retries=max_retries,
        backoff_seconds=0,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def test_table_requests_lon_lat_and_returns_matrices():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"code": "Ok", "durations": [[0, 120]], "distances": [[0, 900]]})

    table = _client(handler).table(COORDS)

    assert table == {"durations": [[0, 120]], "distances": [[0, 900]]}
    assert seen[0].url.path == "/table/v1/driving/13.38886,52.517037;13.385983,52.496891"
    assert seen[0].url.params["annotations"] == "duration,distance"


def test_table_retries_server_errors():
    responses = iter(
        [
            httpx.Response(503),
            httpx.Response(200, json={"durations": [[0, 1]], "distances": [[0, 2]]}),
        ]
    )

    table = _client(lambda request: next(responses), max_retries=2).table(COORDS)

    assert table["distances"] == [[0, 2]]


def test_table_raises_connection_error_when_unreachable():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ConnectionError, match="osrm.test"):
        _client(handler, max_retries=1).table(COORDS)
    assert len(attempts) == 2


def test_table_rejects_error_codes():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"code": "InvalidQuery", "message": "Query string malformed"})

    with pytest.raises(ValueError, match="malformed"):
        _client(handler).table(COORDS)


def test_table_rejects_oversized_requests():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(ValueError, match="too large"):
        _client(handler).table([(0.0, 0.0)] * (MAX_COORDINATES_PER_REQUEST + 1))


def test_client_requires_base_url(monkeypatch):
    monkeypatch.setattr(osrm_client.settings, "osrm_base_url", None)

    with pytest.raises(ValueError):
        OSRMClient()
