"""Shared pytest fixtures for GTFS-RT Transcoder tests."""

from collections.abc import Iterator

import pytest
from google.transit import gtfs_realtime_pb2

from gtfs_rt_transcoder.config import Settings, load_settings
from gtfs_rt_transcoder.decoder import MessageDecoder
from gtfs_rt_transcoder.runtime import Runtime, build_runtime, reset_runtime
from gtfs_rt_transcoder.schema import SchemaRegistry, default_schema_path, load_schema

FEED_URL = "https://api.example.com/gtfs-rt/vehiclePositions"
API_KEY = "test-api-key"


@pytest.fixture(scope="session")
def registry() -> SchemaRegistry:
    """Registry loaded from the bundled GTFS-Realtime schema."""
    return load_schema(default_schema_path())


@pytest.fixture
def decoder(registry: SchemaRegistry) -> MessageDecoder:
    """Decoder with default (last-write-wins) oneof handling."""
    return MessageDecoder(registry)


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch, tmp_path: object) -> Settings:
    """Settings for a fake upstream, isolated from any local .env file."""
    monkeypatch.chdir(tmp_path)  # type: ignore[arg-type]
    return load_settings(API_URL=FEED_URL, API_KEY=API_KEY, FETCH_TIMEOUT_SECONDS=2)


@pytest.fixture
def runtime(settings: Settings) -> Runtime:
    """Runtime built from the test settings (not published globally)."""
    return build_runtime(settings, API_KEY)


@pytest.fixture
def clean_runtime() -> Iterator[None]:
    """Ensure the process-wide runtime slot is empty around a test."""
    reset_runtime()
    yield
    reset_runtime()


@pytest.fixture
def vehicle_position_pb() -> gtfs_realtime_pb2.VehiclePosition:
    """A vehicle position with known values, built with the reference encoder."""
    vp = gtfs_realtime_pb2.VehiclePosition()
    vp.trip.trip_id = "trip-4411"
    vp.trip.route_id = "747"
    vp.trip.start_date = "20231114"
    vp.vehicle.id = "veh-31007"
    vp.vehicle.label = "31007"
    vp.vehicle.license_plate = "STM-1007"
    vp.position.latitude = 45.5
    vp.position.longitude = -73.6
    vp.position.bearing = 180.0
    vp.current_stop_sequence = 3
    vp.current_status = gtfs_realtime_pb2.VehiclePosition.STOPPED_AT
    vp.timestamp = 1700000000
    vp.congestion_level = gtfs_realtime_pb2.VehiclePosition.RUNNING_SMOOTHLY
    vp.occupancy_status = gtfs_realtime_pb2.VehiclePosition.MANY_SEATS_AVAILABLE
    return vp


@pytest.fixture
def feed_message_pb(
    vehicle_position_pb: gtfs_realtime_pb2.VehiclePosition,
) -> gtfs_realtime_pb2.FeedMessage:
    """A feed with two vehicle entities and one alert."""
    feed = gtfs_realtime_pb2.FeedMessage()
    feed.header.gtfs_realtime_version = "2.0"
    feed.header.incrementality = gtfs_realtime_pb2.FeedHeader.FULL_DATASET
    feed.header.timestamp = 1700000005

    first = feed.entity.add()
    first.id = "1"
    first.vehicle.CopyFrom(vehicle_position_pb)

    second = feed.entity.add()
    second.id = "2"
    second.vehicle.CopyFrom(vehicle_position_pb)
    second.vehicle.vehicle.id = "veh-31008"

    alert = feed.entity.add()
    alert.id = "alert-1"
    alert.alert.cause = gtfs_realtime_pb2.Alert.CONSTRUCTION
    alert.alert.effect = gtfs_realtime_pb2.Alert.DETOUR
    translation = alert.alert.header_text.translation.add()
    translation.text = "Detour on route 747"
    translation.language = "en"
    return feed


@pytest.fixture
def feed_bytes(feed_message_pb: gtfs_realtime_pb2.FeedMessage) -> bytes:
    """Serialized feed_message_pb."""
    return feed_message_pb.SerializeToString()
