"""
Weather feed (OpenWeather current conditions).
Only fixtures hosted at an allow-listed open-air venue within the lookahead
window are fetched; each location is requested at most once per run.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Any, Sequence

from shared.errors import ConfigurationError, SchemaMismatch, UpstreamUnavailable
from shared.models.domain import FixtureView, WeatherReport
from shared.models.enums import FeedType
from shared.utils.logging import get_logger
from shared.utils.timeutil import utcnow

from ingest.feeds.base import BaseFeedAdapter, FeedResult

logger = get_logger(__name__)

# Sentinels for fields a report is missing; a fixture never fetched keeps NULLs.
CONDITIONS_UNKNOWN = "Unknown"
WIND_NOT_REPORTED = -1


class WeatherFeed(BaseFeedAdapter[WeatherReport]):
    feed_type = FeedType.WEATHER

    def normalize_report(self, location: str, raw: dict[str, Any]) -> WeatherReport:
        temp = (raw.get("main") or {}).get("temp")
        if temp is None:
            raise SchemaMismatch(self.feed_type.value, "main.temp", detail=location)
        weather = raw.get("weather") or []
        conditions = weather[0].get("main") if weather else None
        if not conditions:
            logger.warning("schema_mismatch", feed=self.feed_type.value, field="weather.main", location=location)
            conditions = CONDITIONS_UNKNOWN
        wind = (raw.get("wind") or {}).get("speed")
        if wind is None:
            logger.warning("schema_mismatch", feed=self.feed_type.value, field="wind.speed", location=location)
            wind_speed = WIND_NOT_REPORTED
        else:
            wind_speed = round(float(wind))
        return WeatherReport(
            location=location,
            temperature=round(float(temp)),
            conditions=conditions,
            wind_speed=wind_speed,
        )

    def normalize(self, raw: Any, result: FeedResult | None = None) -> list[WeatherReport]:
        """``raw`` maps location -> OpenWeather document."""
        result = result or self._new_result()
        reports = []
        for location, doc in (raw or {}).items():
            try:
                reports.append(self.normalize_report(location, doc or {}))
            except SchemaMismatch as exc:
                logger.warning("schema_mismatch", feed=self.feed_type.value, field=exc.field, location=location)
                result.record("failed")
        return reports

    async def apply(
        self,
        entities: Sequence[WeatherReport],
        result: FeedResult,
        fixtures: Sequence[FixtureView] = (),
    ) -> None:
        by_location = {report.location: report for report in entities}
        venues = self._settings.open_air_venues
        for fixture in fixtures:
            report = by_location.get(venues.get(fixture.home_team_name, ""))
            if report is None:
                continue
            if await self._gateway.apply_weather(fixture.id, report):
                result.record("mapped")
            else:
                result.record("skipped")

    def eligible_fixtures(self, fixtures: Sequence[FixtureView]) -> list[FixtureView]:
        venues = self._settings.open_air_venues
        return [f for f in fixtures if not f.is_final and f.home_team_name in venues]

    async def run(self, payload: dict[str, Any]) -> FeedResult:
        if not self._settings.weather_api_key:
            raise ConfigurationError("weather_api_key is not configured")
        result = self._new_result()
        now = utcnow()
        window = await self._gateway.fixtures_between(
            now, now + timedelta(days=self._settings.weather_lookahead_days)
        )
        fixtures = self.eligible_fixtures(window)
        result.record("skipped", len(window) - len(fixtures))

        raw: dict[str, Any] = {}
        failed_locations: list[str] = []
        base = self._settings.weather_base_url.rstrip("/")
        for location in dict.fromkeys(self._settings.open_air_venues[f.home_team_name] for f in fixtures):
            try:
                raw[location] = await self.fetcher.fetch(
                    self.feed_type,
                    location,
                    f"{base}/weather",
                    params={"q": location, "appid": self._settings.weather_api_key, "units": "imperial"},
                )
            except UpstreamUnavailable as exc:
                logger.warning("weather_fetch_failed", location=location, error=str(exc))
                failed_locations.append(location)

        await self.apply(self.normalize(raw, result), result, fixtures=fixtures)
        result.detail["locations"] = len(raw)
        self._log_result(result)
        if failed_locations:
            raise UpstreamUnavailable(
                self.feed_type.value, base, detail=f"failed locations: {', '.join(failed_locations)}"
            )
        return result
