"""
ride_monitor/weather.py

Weather and air-quality context from Open-Meteo (no API key).

WeatherFeed fetches at most every 15 minutes unless the rider has moved more
than 5 km since the last fetch, caches the latest snapshot to JSON and falls
back to that cache when the network fails. assess_weather_risk() picks the
single most pressing condition; risk_event_for() maps it onto a RiskType and
Severity for the detector.

Any field the API leaves out stays None and only its own rule is skipped.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable

import requests

from ride_monitor import config
from ride_monitor.risk_detector import RiskType, Severity
from ride_monitor.sampler import Position, haversine_m

logger = logging.getLogger(__name__)

FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
AIR_QUALITY_URL = "https://air-quality-api.open-meteo.com/v1/air-quality"

# WMO weather codes that mean drizzle, rain, showers or thunderstorm
RAIN_CODES = frozenset([51, 53, 55, 56, 57, 61, 63, 65, 66, 67, 80, 81, 82, 95, 96, 99])

HEAT_INDEX_THRESHOLD_C = 27.0


def heat_index(temp_c: float, humidity: float | None) -> float:
    """
    Feels-like temperature in Celsius.

    Returned unchanged at or below 27 °C or when humidity is unknown,
    otherwise the Rothfusz-style regression rounded to one decimal.
    """
    if temp_c <= HEAT_INDEX_THRESHOLD_C or humidity is None:
        return temp_c
    t, rh = temp_c, humidity
    hi = (-8.784695
          + 1.61139411 * t
          + 2.338549 * rh
          - 0.14611605 * t * rh
          - 0.012308094 * t * t
          - 0.016424828 * rh * rh
          + 0.002211732 * t * t * rh
          + 0.00072546 * t * rh * rh
          - 0.000003582 * t * t * rh * rh)
    return round(hi, 1)


@dataclass
class WeatherData:
    temperature: float | None = None
    humidity: float | None = None
    feels_like: float | None = None
    wind_speed: float | None = None          # km/h
    weather_code: int | None = None
    uv_index: float | None = None
    is_raining: bool = False
    aqi: int | None = None                   # US EPA AQI
    pm25: float | None = None
    pm10: float | None = None
    last_updated: float = 0.0
    lat: float | None = None
    lng: float | None = None

    @classmethod
    def from_open_meteo(cls, forecast: dict, air: dict | None, lat: float, lng: float,
                        now: float) -> "WeatherData":
        current = (forecast or {}).get("current") or {}
        air_current = (air or {}).get("current") or {}

        temp = current.get("temperature_2m")
        humidity = current.get("relative_humidity_2m")
        code = current.get("weather_code")

        return cls(
            temperature=temp,
            humidity=humidity,
            feels_like=heat_index(temp, humidity) if temp is not None else None,
            wind_speed=current.get("wind_speed_10m"),
            weather_code=code,
            uv_index=current.get("uv_index"),
            is_raining=code in RAIN_CODES,
            aqi=air_current.get("us_aqi"),
            pm25=air_current.get("pm2_5"),
            pm10=air_current.get("pm10"),
            last_updated=now,
            lat=lat,
            lng=lng,
        )

    def as_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "WeatherData":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class WeatherRisk:
    level: str      # none | caution | warning | danger | extreme
    kind: str       # heat | rain | wind | uv | aqi | none
    message: str = ""


NO_RISK = WeatherRisk("none", "none", "")


def assess_weather_risk(data: WeatherData | None) -> WeatherRisk:
    """Most pressing single condition, in fixed priority order."""
    if data is None:
        return NO_RISK

    aqi = data.aqi
    feels = data.feels_like

    if aqi is not None and aqi > 300:
        return WeatherRisk("extreme", "aqi", "Hazardous air. Stop immediately. Find shelter.")
    if feels is not None and feels >= 45:
        return WeatherRisk("extreme", "heat", "Extreme heat. Stop immediately. Find shade and water.")
    if aqi is not None and aqi > 200:
        return WeatherRisk("danger", "aqi", "Very unhealthy air. Limit outdoor exposure.")
    if feels is not None and feels >= 40:
        return WeatherRisk("danger", "heat", "Dangerous heat. Stop for rest and water.")
    if aqi is not None and aqi > 150:
        return WeatherRisk("warning", "aqi", "Unhealthy air quality. Take breaks indoors.")
    if feels is not None and feels >= 38:
        return WeatherRisk("warning", "heat", "High heat. Take breaks and hydrate.")
    if data.is_raining:
        return WeatherRisk("warning", "rain", "Rain detected. Roads are slippery. Slow down.")
    if data.wind_speed is not None and data.wind_speed >= 40:
        return WeatherRisk("warning", "wind", "Strong winds. Hold steady. Stay alert.")
    if aqi is not None and aqi > 100:
        return WeatherRisk("caution", "aqi", "Air quality concern. Sensitive groups should rest.")
    if data.uv_index is not None and data.uv_index >= 8:
        return WeatherRisk("caution", "uv", "High UV. Protect your skin.")
    if feels is not None and feels >= 35:
        return WeatherRisk("caution", "heat", "Warm conditions. Stay hydrated.")
    return NO_RISK


def aqi_category(aqi: int | None) -> str | None:
    if aqi is None:
        return None
    if aqi <= 50:
        return "good"
    if aqi <= 100:
        return "moderate"
    if aqi <= 150:
        return "sensitive"
    if aqi <= 200:
        return "unhealthy"
    if aqi <= 300:
        return "very_unhealthy"
    return "hazardous"


_LEVEL_SEVERITY = {
    "caution": Severity.LOW,
    "warning": Severity.MEDIUM,
    "danger": Severity.HIGH,
    "extreme": Severity.CRITICAL,
}

_KIND_TYPE = {
    "heat": RiskType.HEAT_WARNING,
    "rain": RiskType.RAIN_WARNING,
    "wind": RiskType.HIGH_WIND,
    "aqi": RiskType.POOR_AIR_QUALITY,
}


def risk_event_for(risk: WeatherRisk) -> tuple[RiskType, Severity] | None:
    """Map a weather risk onto the detector's vocabulary. UV is advice only."""
    if risk.level == "none" or risk.kind not in _KIND_TYPE:
        return None
    if risk.level == "extreme":
        return RiskType.EXTREME_WEATHER, Severity.CRITICAL
    return _KIND_TYPE[risk.kind], _LEVEL_SEVERITY[risk.level]


# ---------------------------------------------------------------------------
# Feed
# ---------------------------------------------------------------------------

class WeatherFeed:
    """
    Parameters
    ----------
    cache_path : str | Path | None
        JSON file holding the last good snapshot. None disables the disk cache.
    clock :
        Anything with now().
    on_update : Callable[[WeatherData], None] | None
        Called after every successful network fetch.
    """

    def __init__(self, cache_path: str | Path | None, clock,
                 session: requests.Session | None = None,
                 timeout: float = config.WEATHER_HTTP_TIMEOUT_SECONDS,
                 on_update: Callable[[WeatherData], None] | None = None):
        self.cache_path = Path(cache_path) if cache_path else None
        self._clock = clock
        self._session = session or requests.Session()
        self.timeout = timeout
        self.on_update = on_update
        self.cached: WeatherData | None = self._load_cache()
        self._last_fetch_position: Position | None = None

    def fetch(self, lat: float, lng: float) -> WeatherData | None:
        """Fresh snapshot, the cached one if still valid, or the stale cache on failure."""
        now = self._clock.now()
        max_age = config.WEATHER_FETCH_INTERVAL_SECONDS - config.WEATHER_CACHE_SLACK_SECONDS
        if (self.cached is not None
                and now - self.cached.last_updated < max_age
                and not self._moved_far(lat, lng)):
            return self.cached

        try:
            data = self._do_fetch(lat, lng, now)
        except (requests.RequestException, ValueError, KeyError) as exc:
            logger.warning("Weather fetch failed, using cache: %s", exc)
            return self.cached

        self.cached = data
        self._last_fetch_position = Position(lat, lng)
        self._save_cache(data)
        logger.info(
            "Weather updated | temp=%s | feels_like=%s | aqi=%s | raining=%s",
            data.temperature, data.feels_like, data.aqi, data.is_raining,
        )
        if self.on_update is not None:
            self.on_update(data)
        return data

    def is_stale(self) -> bool:
        if self.cached is None:
            return True
        return self._clock.now() - self.cached.last_updated > config.WEATHER_STALE_SECONDS

    def _moved_far(self, lat: float, lng: float) -> bool:
        if self._last_fetch_position is None:
            return True
        moved_km = haversine_m(self._last_fetch_position, Position(lat, lng)) / 1000.0
        return moved_km > config.WEATHER_REFRESH_DISTANCE_KM

    def _do_fetch(self, lat: float, lng: float, now: float) -> WeatherData:
        forecast_resp = self._session.get(
            FORECAST_URL,
            params={
                "latitude": lat,
                "longitude": lng,
                "current": "temperature_2m,relative_humidity_2m,wind_speed_10m,weather_code,uv_index",
            },
            timeout=self.timeout,
        )
        forecast_resp.raise_for_status()
        forecast = forecast_resp.json()

        # air quality is optional; a failure here only blanks the AQI fields
        air = None
        try:
            air_resp = self._session.get(
                AIR_QUALITY_URL,
                params={"latitude": lat, "longitude": lng, "current": "us_aqi,pm2_5,pm10"},
                timeout=self.timeout,
            )
            air_resp.raise_for_status()
            air = air_resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Air quality fetch failed: %s", exc)

        return WeatherData.from_open_meteo(forecast, air, lat, lng, now)

    def _load_cache(self) -> WeatherData | None:
        if self.cache_path is None or not self.cache_path.exists():
            return None
        try:
            with open(self.cache_path, "r", encoding="utf-8") as f:
                return WeatherData.from_dict(json.load(f))
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Ignoring unreadable weather cache: %s", exc)
            return None

    def _save_cache(self, data: WeatherData) -> None:
        if self.cache_path is None:
            return
        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.cache_path.with_suffix(self.cache_path.suffix + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data.as_dict(), f, indent=2)
            os.replace(tmp, self.cache_path)
        except OSError as exc:
            logger.error("Failed to write weather cache: %s", exc, exc_info=True)
