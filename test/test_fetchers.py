"""Tests for the tide, weather and water-quality fetchers (mocked clients)."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from conftest import FakeNow, load_fixture, make_beach
from vanbeaches.cache import CacheManager
from vanbeaches.clients import IWLSClient, OpenMeteoClient, WaterQualityClient
from vanbeaches.errors import UpstreamError
from vanbeaches.fetchers import TideFetcher, WaterQualityFetcher, WeatherFetcher
from vanbeaches.models import TideType, WaterQualityLevel, WeatherCondition
from vanbeaches.rate_limiter import RateLimitConfig, RateLimiter

JULY = datetime(2025, 7, 1, 19, 0, tzinfo=timezone.utc)
JANUARY = datetime(2025, 1, 15, 19, 0, tzinfo=timezone.utc)


class TestTideFetcher:
    def _make_fetcher(self):
        cache = CacheManager()
        client = AsyncMock(spec=IWLSClient)
        client.fetch_hilo.return_value = load_fixture("iwls/hilo_7735.json")
        limiter = RateLimiter({"iwls": RateLimitConfig(max_requests=3, window=1.0)})
        fetcher = TideFetcher(cache, client, limiter, ttl=3600)
        now = FakeNow(JULY)
        fetcher._now = now
        return fetcher, client, limiter, cache, now

    @pytest.mark.asyncio
    async def test_fetches_and_maps(self, beach):
        fetcher, client, _, cache, _ = self._make_fetcher()
        data = await fetcher.get(beach)

        assert data.beach_id == "english-bay"
        assert data.station_id == "7735"
        assert data.station_name == "English Bay (Vancouver)"
        assert len(data.predictions) == 6
        assert data.predictions[0].type == TideType.high
        assert data.fetched_at == JULY
        assert "tides:7735" in cache

        station, start, end = client.fetch_hilo.await_args.args
        assert station == "7735"
        assert start == JULY
        assert end - start == timedelta(hours=48)

    @pytest.mark.asyncio
    async def test_cached_record_keeps_original_fetched_at(self, beach):
        fetcher, client, _, _, now = self._make_fetcher()
        first = await fetcher.get(beach)
        now.now = JULY + timedelta(minutes=20)
        second = await fetcher.get(beach)

        assert client.fetch_hilo.await_count == 1
        assert second.fetched_at == first.fetched_at == JULY

    @pytest.mark.asyncio
    async def test_beaches_sharing_a_station_share_the_fetch(self, beach):
        fetcher, client, _, _, _ = self._make_fetcher()
        jericho = make_beach("jericho-beach", "Jericho Beach")

        english_bay_data = await fetcher.get(beach)
        jericho_data = await fetcher.get(jericho)

        assert client.fetch_hilo.await_count == 1
        assert english_bay_data.beach_id == "english-bay"
        assert jericho_data.beach_id == "jericho-beach"
        assert jericho_data.station_name == "Jericho Beach (Vancouver)"
        assert jericho_data.predictions == english_bay_data.predictions

    @pytest.mark.asyncio
    async def test_concurrent_requests_coalesce(self, beach):
        fetcher, client, _, _, _ = self._make_fetcher()
        results = await asyncio.gather(*[fetcher.get(beach) for _ in range(5)])
        assert client.fetch_hilo.await_count == 1
        assert len({r.fetched_at for r in results}) == 1

    @pytest.mark.asyncio
    async def test_slot_released_after_upstream_error(self, beach):
        fetcher, client, limiter, cache, _ = self._make_fetcher()
        client.fetch_hilo.side_effect = UpstreamError("IWLS returned 500", status_code=500)

        with pytest.raises(UpstreamError):
            await fetcher.get(beach)

        assert limiter.available("iwls") == 3
        assert "tides:7735" not in cache

    @pytest.mark.asyncio
    async def test_error_is_not_cached(self, beach):
        fetcher, client, _, _, _ = self._make_fetcher()
        client.fetch_hilo.side_effect = [
            UpstreamError("IWLS returned 503", status_code=503),
            load_fixture("iwls/hilo_7735.json"),
        ]
        with pytest.raises(UpstreamError):
            await fetcher.get(beach)
        data = await fetcher.get(beach)
        assert len(data.predictions) == 6
        assert client.fetch_hilo.await_count == 2

    @pytest.mark.asyncio
    async def test_beach_without_station(self, lake):
        fetcher, client, _, _, _ = self._make_fetcher()
        with pytest.raises(ValueError):
            await fetcher.get(lake)
        client.fetch_hilo.assert_not_awaited()
        assert fetcher.last_known(lake) is None

    def test_not_applicable_record(self, lake):
        fetcher, *_ = self._make_fetcher()
        data = fetcher.not_applicable(lake)
        assert data.predictions == []
        assert data.station_name == "N/A"
        assert "not applicable" in data.message

    @pytest.mark.asyncio
    async def test_last_known_relabels_for_beach(self, beach):
        fetcher, *_ = self._make_fetcher()
        await fetcher.get(beach)
        jericho = make_beach("jericho-beach", "Jericho Beach")
        assert fetcher.last_known(jericho).beach_id == "jericho-beach"


class TestWeatherFetcher:
    def _make_fetcher(self):
        cache = CacheManager()
        client = AsyncMock(spec=OpenMeteoClient)
        client.fetch_forecast.return_value = load_fixture(
            "open_meteo/forecast_english_bay.json"
        )
        fetcher = WeatherFetcher(cache, client, ttl=1800)
        fetcher._now = FakeNow(JULY)
        return fetcher, client, cache

    @pytest.mark.asyncio
    async def test_maps_current_conditions(self, beach):
        fetcher, client, cache = self._make_fetcher()
        forecast = await fetcher.get(beach)

        assert forecast.beach_id == "english-bay"
        assert forecast.current.temperature == 22.5
        assert forecast.current.condition == WeatherCondition.partly_cloudy
        assert forecast.current.humidity == 61
        assert forecast.current.wind_speed == 12
        assert forecast.current.wind_direction == "W"
        assert forecast.current.uv_index == 6.35
        assert forecast.fetched_at == JULY
        assert "weather:english-bay" in cache

        lat, lon, tz, hours = client.fetch_forecast.await_args.args
        assert (lat, lon) == (49.2867, -123.1432)
        assert tz == "America/Vancouver"
        assert hours == 24

    @pytest.mark.asyncio
    async def test_maps_hourly_forecast(self, beach):
        fetcher, _, _ = self._make_fetcher()
        forecast = await fetcher.get(beach)

        assert len(forecast.hourly) == 3
        first = forecast.hourly[0]
        assert first.temperature == 22.5
        assert first.time == datetime(2025, 7, 1, 21, 0, tzinfo=timezone.utc)
        assert forecast.hourly[1].condition == WeatherCondition.sunny
        assert forecast.hourly[1].precipitation_probability == 0
        assert forecast.hourly[2].condition == WeatherCondition.rainy

    @pytest.mark.asyncio
    async def test_second_call_is_cached(self, beach):
        fetcher, client, cache = self._make_fetcher()
        await fetcher.get(beach)
        await fetcher.get(beach)
        assert client.fetch_forecast.await_count == 1
        assert cache.get_stats().hits == 1

    @pytest.mark.asyncio
    async def test_invalidate_forces_refetch(self, beach):
        fetcher, client, _ = self._make_fetcher()
        await fetcher.get(beach)
        fetcher.invalidate(beach)
        await fetcher.get(beach)
        assert client.fetch_forecast.await_count == 2


class TestWaterQualityFetcher:
    def _make_fetcher(self, when=JULY, with_client=True):
        cache = CacheManager()
        client = AsyncMock(spec=WaterQualityClient) if with_client else None
        if client is not None:
            client.fetch_latest_sample.return_value = load_fixture(
                "water_quality/sample_advisory.json"
            )
        fetcher = WaterQualityFetcher(cache, client, ttl=21600)
        fetcher._now = FakeNow(when)
        return fetcher, client, cache

    @pytest.mark.asyncio
    async def test_off_season_skips_network(self, beach):
        fetcher, client, cache = self._make_fetcher(when=JANUARY)
        status = await fetcher.get(beach)

        assert status.level == WaterQualityLevel.off_season
        assert status.ecoli_count is None
        assert status.sample_date is None
        assert status.fetched_at == JANUARY
        client.fetch_latest_sample.assert_not_awaited()
        assert "waterquality:english-bay" in cache

    @pytest.mark.asyncio
    async def test_season_uses_local_month(self, beach):
        # 2025-05-01 03:00 UTC is still April 30 in Vancouver.
        fetcher, client, _ = self._make_fetcher(
            when=datetime(2025, 5, 1, 3, 0, tzinfo=timezone.utc)
        )
        status = await fetcher.get(beach)
        assert status.level == WaterQualityLevel.off_season
        client.fetch_latest_sample.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_in_season_sample(self, beach):
        fetcher, client, _ = self._make_fetcher()
        status = await fetcher.get(beach)

        assert status.level == WaterQualityLevel.advisory
        assert status.ecoli_count == 340
        assert status.sample_date.year == 2025
        client.fetch_latest_sample.assert_awaited_once_with("english-bay")

    @pytest.mark.asyncio
    async def test_no_sample_is_unknown(self, beach):
        fetcher, client, _ = self._make_fetcher()
        client.fetch_latest_sample.return_value = None
        status = await fetcher.get(beach)
        assert status.level == WaterQualityLevel.unknown

    @pytest.mark.asyncio
    async def test_without_feed_is_unknown(self, beach):
        fetcher, _, _ = self._make_fetcher(with_client=False)
        status = await fetcher.get(beach)
        assert status.level == WaterQualityLevel.unknown


class TestMalformedPayloads:
    @pytest.mark.asyncio
    async def test_null_temperature_is_upstream_error(self, beach):
        client = AsyncMock(spec=OpenMeteoClient)
        client.fetch_forecast.return_value = {"current": {"temperature_2m": None}}
        cache = CacheManager()
        fetcher = WeatherFetcher(cache, client)

        with pytest.raises(UpstreamError, match="unexpected payload"):
            await fetcher.get(beach)
        assert "weather:english-bay" not in cache

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event",
        [
            {"eventDate": "not-a-date", "value": 4.2, "eventType": "HIGH"},
            {"eventDate": "2025-07-01T03:12:00Z", "value": "n/a", "eventType": "LOW"},
            "HIGH 4.2",
        ],
    )
    async def test_bad_tide_event_is_upstream_error(self, beach, event):
        client = AsyncMock(spec=IWLSClient)
        client.fetch_hilo.return_value = [event]
        limiter = RateLimiter({"iwls": RateLimitConfig(max_requests=3, window=1.0)})
        fetcher = TideFetcher(CacheManager(), client, limiter)

        with pytest.raises(UpstreamError, match="unexpected payload"):
            await fetcher.get(beach)
        assert limiter.available("iwls") == 3

    @pytest.mark.asyncio
    async def test_bad_sample_date_is_upstream_error(self, beach):
        client = AsyncMock(spec=WaterQualityClient)
        client.fetch_latest_sample.return_value = {
            "ecoliCount": 20,
            "sampleDate": "last tuesday",
        }
        fetcher = WaterQualityFetcher(CacheManager(), client)
        fetcher._now = FakeNow(JULY)

        with pytest.raises(UpstreamError, match="unexpected payload"):
            await fetcher.get(beach)

    @pytest.mark.asyncio
    async def test_stale_copy_survives_malformed_refresh(self, beach, clock):
        cache = CacheManager()
        cache._clock = clock
        client = AsyncMock(spec=OpenMeteoClient)
        client.fetch_forecast.return_value = load_fixture(
            "open_meteo/forecast_english_bay.json"
        )
        fetcher = WeatherFetcher(cache, client, ttl=1800)
        await fetcher.get(beach)

        clock.advance(1800)
        client.fetch_forecast.return_value = {"current": {}}
        with pytest.raises(UpstreamError):
            await fetcher.get(beach)
        assert fetcher.last_known(beach).current.temperature == 22.5


class TestSeasonBoundaryTTL:
    @pytest.mark.asyncio
    async def test_off_season_result_expires_at_season_start(self, beach, clock):
        cache = CacheManager()
        cache._clock = clock
        client = AsyncMock(spec=WaterQualityClient)
        client.fetch_latest_sample.return_value = load_fixture(
            "water_quality/sample_advisory.json"
        )
        fetcher = WaterQualityFetcher(cache, client, ttl=21600)
        # 23:00 on 30 April in Vancouver, one hour before sampling starts.
        fetcher._now = FakeNow(datetime(2025, 5, 1, 6, 0, tzinfo=timezone.utc))

        first = await fetcher.get(beach)
        assert first.level == WaterQualityLevel.off_season

        clock.advance(3600)
        fetcher._now = FakeNow(datetime(2025, 5, 1, 7, 0, tzinfo=timezone.utc))
        second = await fetcher.get(beach)

        assert second.level == WaterQualityLevel.advisory
        client.fetch_latest_sample.assert_awaited_once_with("english-bay")

    @pytest.mark.asyncio
    async def test_ttl_unchanged_away_from_boundary(self, beach, clock):
        cache = CacheManager()
        cache._clock = clock
        fetcher = WaterQualityFetcher(cache, None, ttl=21600)
        fetcher._now = FakeNow(JULY)

        await fetcher.get(beach)
        clock.advance(21599)
        assert "waterquality:english-bay" in cache
        clock.advance(1)
        assert "waterquality:english-bay" not in cache
