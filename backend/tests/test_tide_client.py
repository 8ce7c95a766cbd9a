"""Tests for the NOAA CO-OPS tide client (HTTP mocked)."""
from datetime import datetime
from unittest.mock import MagicMock

import httpx
import pytest

from app.modules.tide_client import NoaaTideClient, parse_predictions, parse_water_levels
from app.utils.cache import TTLCache

T0 = datetime(2024, 6, 1, 12, 20)
URL = "https://api.tidesandcurrents.noaa.gov/api/prod/datagetter"


def _client_factory(payload):
    client = MagicMock()
    client.__enter__.return_value = client
    client.get.return_value = httpx.Response(200, json=payload, request=httpx.Request("GET", URL))
    return client, lambda: client


class TestParsers:
    def test_predictions_sorted_and_typed(self):
        payload = {"predictions": [
            {"t": "2024-06-01 13:00", "v": "1.40", "type": "H"},
            {"t": "2024-06-01 12:00", "v": "1.10"},
        ]}
        preds = parse_predictions("9414290", payload)
        assert [p.height for p in preds] == [1.1, 1.4]
        assert preds[1].kind == "H"

    def test_malformed_rows_skipped(self):
        payload = {"predictions": [{"t": "bad", "v": "1"}, {"t": "2024-06-01 12:00", "v": "x"}, {"v": "1"}]}
        assert parse_predictions("s", payload) == []

    def test_error_payload_is_empty(self):
        assert parse_predictions("s", {"error": {"message": "No Predictions data was found"}}) == []
        assert parse_water_levels("s", {"error": {"message": "No data was found"}}) == []

    def test_water_levels_quality_flag(self):
        payload = {"data": [
            {"t": "2024-06-01 12:00", "v": "1.20", "q": "v"},
            {"t": "2024-06-01 12:06", "v": "1.22", "q": "p"},
            {"t": "2024-06-01 12:12", "v": "", "q": "p"},
        ]}
        obs = parse_water_levels("9414290", payload)
        assert [o.verified for o in obs] == [True, False]


class TestNoaaTideClient:
    def test_nearest_station(self):
        station = NoaaTideClient().nearest_station(37.8199, -122.4783)
        assert station.station_id == "9414290"

    def test_no_stations(self):
        assert NoaaTideClient(stations=[]).nearest_station(0, 0) is None

    def test_request_params(self):
        client, factory = _client_factory({"predictions": []})
        NoaaTideClient(client_factory=factory).predictions("9414290", T0, T0)
        params = client.get.call_args.kwargs["params"]
        assert params["product"] == "predictions"
        assert params["station"] == "9414290"
        assert params["datum"] == "MLLW"
        assert params["units"] == "metric"
        assert params["time_zone"] == "gmt"
        assert params["begin_date"] == "20240601 12:00"
        assert params["end_date"] == "20240601 13:00"

    def test_responses_cached(self):
        client, factory = _client_factory({"data": [{"t": "2024-06-01 12:00", "v": "1.2", "q": "v"}]})
        tide = NoaaTideClient(client_factory=factory, cache=TTLCache(ttl_seconds=900))
        first = tide.water_levels("9414290", T0, T0)
        second = tide.water_levels("9414290", T0.replace(minute=40), T0.replace(minute=45))
        assert first == second
        assert client.get.call_count == 1

    def test_http_errors_propagate(self):
        client = MagicMock()
        client.__enter__.return_value = client
        client.get.return_value = httpx.Response(404, request=httpx.Request("GET", URL))
        with pytest.raises(httpx.HTTPStatusError):
            NoaaTideClient(client_factory=lambda: client).predictions("nope", T0, T0)
