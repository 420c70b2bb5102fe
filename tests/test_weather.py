from unittest.mock import MagicMock

import pytest
import requests

from ride_monitor.risk_detector import RiskType, Severity
from ride_monitor.weather import (
    NO_RISK,
    WeatherData,
    WeatherFeed,
    WeatherRisk,
    aqi_category,
    assess_weather_risk,
    heat_index,
    risk_event_for,
)

FORECAST = {"current": {
    "temperature_2m": 36.0,
    "relative_humidity_2m": 55,
    "wind_speed_10m": 12.0,
    "weather_code": 61,
    "uv_index": 9.0,
}}
AIR = {"current": {"us_aqi": 160, "pm2_5": 70.1, "pm10": 120.0}}


def response(payload):
    r = MagicMock()
    r.json.return_value = payload
    r.raise_for_status.return_value = None
    return r


class TestHeatIndex:

    def test_unchanged_at_threshold(self):
        assert heat_index(27.0, 90) == 27.0
        assert heat_index(20.0, 50) == 20.0

    def test_unknown_humidity(self):
        assert heat_index(38.0, None) == 38.0

    def test_humid_heat_feels_hotter(self):
        assert heat_index(40.0, 80) > 40.0
        assert heat_index(32.0, 70) == pytest.approx(40.7, abs=1.0)


class TestAssessment:

    @pytest.mark.parametrize("data,level,kind", [
        (WeatherData(aqi=320), "extreme", "aqi"),
        (WeatherData(feels_like=46.0), "extreme", "heat"),
        (WeatherData(aqi=250, feels_like=46.0), "extreme", "heat"),
        (WeatherData(aqi=210, feels_like=41.0), "danger", "aqi"),
        (WeatherData(feels_like=41.0), "danger", "heat"),
        (WeatherData(aqi=160), "warning", "aqi"),
        (WeatherData(feels_like=38.0), "warning", "heat"),
        (WeatherData(is_raining=True, wind_speed=50.0), "warning", "rain"),
        (WeatherData(wind_speed=40.0), "warning", "wind"),
        (WeatherData(aqi=120), "caution", "aqi"),
        (WeatherData(uv_index=8.0), "caution", "uv"),
        (WeatherData(feels_like=35.0), "caution", "heat"),
    ])
    def test_priority_order(self, data, level, kind):
        risk = assess_weather_risk(data)
        assert (risk.level, risk.kind) == (level, kind)
        assert risk.message

    def test_mild_conditions(self):
        assert assess_weather_risk(WeatherData(feels_like=30.0, aqi=40, wind_speed=10)) is NO_RISK
        assert assess_weather_risk(None) is NO_RISK

    @pytest.mark.parametrize("aqi,category", [
        (None, None), (50, "good"), (100, "moderate"), (150, "sensitive"),
        (200, "unhealthy"), (300, "very_unhealthy"), (301, "hazardous"),
    ])
    def test_aqi_category(self, aqi, category):
        assert aqi_category(aqi) == category


class TestRiskMapping:

    def test_extreme_is_critical(self):
        assert risk_event_for(WeatherRisk("extreme", "aqi")) == (RiskType.EXTREME_WEATHER, Severity.CRITICAL)

    @pytest.mark.parametrize("risk,expected", [
        (WeatherRisk("danger", "heat"), (RiskType.HEAT_WARNING, Severity.HIGH)),
        (WeatherRisk("warning", "rain"), (RiskType.RAIN_WARNING, Severity.MEDIUM)),
        (WeatherRisk("warning", "wind"), (RiskType.HIGH_WIND, Severity.MEDIUM)),
        (WeatherRisk("caution", "aqi"), (RiskType.POOR_AIR_QUALITY, Severity.LOW)),
    ])
    def test_levels_map_to_severity(self, risk, expected):
        assert risk_event_for(risk) == expected

    def test_uv_and_none_raise_nothing(self):
        assert risk_event_for(WeatherRisk("caution", "uv")) is None
        assert risk_event_for(NO_RISK) is None


class TestWeatherData:

    def test_from_open_meteo(self):
        data = WeatherData.from_open_meteo(FORECAST, AIR, 12.97, 77.59, now=100.0)
        assert data.is_raining is True
        assert data.feels_like == heat_index(36.0, 55)
        assert data.aqi == 160
        assert data.last_updated == 100.0

    def test_missing_fields_stay_none(self):
        data = WeatherData.from_open_meteo({"current": {}}, None, 0.0, 0.0, now=1.0)
        assert data.temperature is None
        assert data.feels_like is None
        assert data.aqi is None
        assert data.is_raining is False

    def test_from_dict_ignores_unknown_keys(self):
        data = WeatherData.from_dict({"temperature": 30.0, "source": "cache"})
        assert data.temperature == 30.0


class TestWeatherFeed:

    def test_fetch_then_cache(self, tmp_path, clock):
        session = MagicMock()
        session.get.side_effect = [response(FORECAST), response(AIR)]
        updates = []
        feed = WeatherFeed(tmp_path / "weather.json", clock, session=session, on_update=updates.append)

        first = feed.fetch(12.97, 77.59)
        clock.advance(600)
        second = feed.fetch(12.975, 77.59)

        assert second is first
        assert session.get.call_count == 2
        assert updates == [first]
        assert (tmp_path / "weather.json").exists()

    def test_refetch_after_interval_or_long_move(self, tmp_path, clock):
        session = MagicMock()
        session.get.side_effect = [response(FORECAST), response(AIR)] * 3
        feed = WeatherFeed(None, clock, session=session)

        feed.fetch(12.97, 77.59)
        feed.fetch(13.03, 77.59)         # ~6.7 km away
        clock.advance(900)
        feed.fetch(13.03, 77.59)

        assert session.get.call_count == 6

    def test_periodic_poll_just_short_of_interval_refetches(self, clock):
        session = MagicMock()
        session.get.side_effect = [response(FORECAST), response(AIR)] * 2
        feed = WeatherFeed(None, clock, session=session)

        # first fix a second into the ride, then the 15 min poll
        feed.fetch(12.97, 77.59)
        clock.advance(899)
        second = feed.fetch(12.97, 77.59)

        assert session.get.call_count == 4
        assert second.last_updated == clock.now()

    def test_air_quality_failure_is_not_fatal(self, clock):
        session = MagicMock()
        session.get.side_effect = [response(FORECAST), requests.ConnectionError("aq down")]
        data = WeatherFeed(None, clock, session=session).fetch(12.97, 77.59)
        assert data.temperature == 36.0
        assert data.aqi is None

    def test_network_failure_falls_back_to_stale_cache(self, tmp_path, clock):
        session = MagicMock()
        session.get.side_effect = [response(FORECAST), response(AIR)]
        WeatherFeed(tmp_path / "weather.json", clock, session=session).fetch(12.97, 77.59)

        clock.advance(2 * 3600)
        offline = MagicMock()
        offline.get.side_effect = requests.ConnectionError("offline")
        feed = WeatherFeed(tmp_path / "weather.json", clock, session=offline)

        data = feed.fetch(12.97, 77.59)
        assert data is not None
        assert data.aqi == 160
        assert feed.is_stale()

    def test_no_cache_and_no_network(self, clock):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("offline")
        feed = WeatherFeed(None, clock, session=session)
        assert feed.fetch(12.97, 77.59) is None
        assert feed.is_stale()
