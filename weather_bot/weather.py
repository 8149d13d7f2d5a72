from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

import httpx

from weather_bot.config import TrackedLocation, WeatherSettings
from weather_bot.models import Reading

LOGGER = logging.getLogger(__name__)


class WeatherSource(ABC):
    @abstractmethod
    async def fetch(self, location: TrackedLocation) -> Reading:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class OpenWeatherMapSource(WeatherSource):
    """Current conditions from OpenWeatherMap's ``/data/2.5/weather`` endpoint."""

    source = "openweathermap"

    def __init__(
        self,
        settings: WeatherSettings,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not settings.api_key:
            raise ValueError("OPENWEATHER_API_KEY is required for the OpenWeatherMap source")
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
        )

    async def fetch(self, location: TrackedLocation) -> Reading:
        response = await self._client.get(
            "/data/2.5/weather",
            params={
                "lat": location.latitude,
                "lon": location.longitude,
                "appid": self._settings.api_key,
                "units": self._settings.units,
            },
        )
        response.raise_for_status()
        return self._to_reading(location, response.json())

    def _to_reading(self, location: TrackedLocation, payload: Any) -> Reading:
        main = payload.get("main") if isinstance(payload, dict) else None
        if not isinstance(main, dict):
            raise ValueError(f"openweathermap payload for {location.name} has no 'main' block")

        current = float(main["temp"])
        daily_max = float(main.get("temp_max", current))
        observed_ts = payload.get("dt")
        observed_at = (
            datetime.fromtimestamp(float(observed_ts), tz=timezone.utc)
            if observed_ts is not None
            else datetime.now(timezone.utc)
        )
        return Reading(
            location=location.name,
            current_value=round(current, 1),
            daily_extreme=round(max(daily_max, current), 1),
            forecast_extreme=round(daily_max, 1),
            source=self.source,
            valid=True,
            observed_at=observed_at,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
