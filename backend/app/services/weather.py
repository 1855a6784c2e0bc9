import math
import logging
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from app.core.config import get_settings

logger = logging.getLogger(__name__)

HOURLY_LOOKAHEAD = 24
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class WeatherServiceError(RuntimeError):
    """Raised when a location cannot be resolved or the provider misbehaves."""
    pass


class GeoLocation(BaseModel):
    name: str
    lat: float
    lon: float
    country: str | None = None
    state: str | None = None


class WeatherCondition(BaseModel):
    id: int
    main: str
    description: str
    icon: str | None = None


class CurrentWeather(BaseModel):
    dt: int
    temp: float
    sunrise: int | None = None
    sunset: int | None = None
    weather: list[WeatherCondition] = []


class HourlyWeather(BaseModel):
    dt: int
    temp: float


class DailyTemperature(BaseModel):
    min: float
    max: float


class DailyWeather(BaseModel):
    dt: int
    sunrise: int
    sunset: int
    temp: DailyTemperature


class OneCallResponse(BaseModel):
    lat: float
    lon: float
    timezone: str
    current: CurrentWeather
    hourly: list[HourlyWeather] = []
    daily: list[DailyWeather] = []


def kelvin_to_celsius(kelvin: float) -> int:
    # Half-up rounding, round() would round half to even
    return int(math.floor(kelvin - 273.15 + 0.5))


def format_timestamp(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime(TIME_FORMAT)


def reshape_weather(data: OneCallResponse) -> dict[str, Any]:
    """Turn a One Call payload into the display structure the client renders."""
    hourly = data.hourly[:HOURLY_LOOKAHEAD]
    description = data.current.weather[0].description if data.current.weather else None
    return {
        "latitude": data.lat,
        "longitude": data.lon,
        "timezone": data.timezone,
        "current_units": {"time": "iso8601", "temperature": "°C"},
        "current": {
            "time": format_timestamp(data.current.dt),
            "temperature": kelvin_to_celsius(data.current.temp),
            "description": description,
        },
        "hourly_units": {"time": "iso8601", "temperature": "°C"},
        "hourly": {
            "time": [format_timestamp(h.dt) for h in hourly],
            "temperature": [kelvin_to_celsius(h.temp) for h in hourly],
        },
        "daily_units": {
            "date": "iso8601",
            "min": "°C",
            "max": "°C",
            "sunrise": "iso8601",
            "sunset": "iso8601",
        },
        "daily": [
            {
                "date": format_timestamp(d.dt),
                "min": kelvin_to_celsius(d.temp.min),
                "max": kelvin_to_celsius(d.temp.max),
                "sunrise": format_timestamp(d.sunrise),
                "sunset": format_timestamp(d.sunset),
            }
            for d in data.daily
        ],
    }


class WeatherService:
    """OpenWeather geocoding + One Call lookups."""

    def __init__(self, client: httpx.AsyncClient | None = None):
        settings = get_settings()
        self.api_key = settings.openweather_api_key
        self.geo_url = settings.openweather_geo_url
        self.onecall_url = settings.openweather_onecall_url
        self._client = client

    async def _get_json(self, url: str, params: dict[str, Any]) -> Any:
        params = {**params, "appid": self.api_key}
        try:
            if self._client is not None:
                resp = await self._client.get(url, params=params)
            else:
                async with httpx.AsyncClient(timeout=20) as client:
                    resp = await client.get(url, params=params)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            raise WeatherServiceError(f"Weather provider returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.warning("Weather request failed", exc_info=True)
            raise WeatherServiceError(f"Weather provider request failed: {e}") from e
        except ValueError as e:
            raise WeatherServiceError("Weather provider returned invalid JSON") from e

    async def geocode(self, location: str) -> GeoLocation:
        location = (location or "").strip()
        if not location:
            raise WeatherServiceError("Empty location.")
        if not self.api_key:
            raise WeatherServiceError("OpenWeather API key is not configured")

        data = await self._get_json(self.geo_url, {"q": location, "limit": 1})
        if not isinstance(data, list) or not data:
            raise WeatherServiceError(f"Could not find a location named '{location}'")
        try:
            return GeoLocation.model_validate(data[0])
        except ValidationError as e:
            raise WeatherServiceError(f"Malformed geocoding response: {e.error_count()} invalid fields") from e

    async def get_weather(self, location: str) -> dict[str, Any]:
        place = await self.geocode(location)
        data = await self._get_json(
            self.onecall_url,
            {"lat": place.lat, "lon": place.lon, "exclude": "minutely,alerts", "lang": "en"},
        )
        try:
            parsed = OneCallResponse.model_validate(data)
        except ValidationError as e:
            raise WeatherServiceError(f"Malformed weather response: {e.error_count()} invalid fields") from e

        result = reshape_weather(parsed)
        result["location"] = place.name
        return result
