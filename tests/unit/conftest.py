"""
Shared fixtures for the home control unit tests.

Two rooms with a mix of linked and unlinked appliances, backed by the
in-memory inventory and canonical device store.
"""
import sys
sys.path.insert(0, 'src')

import pytest

from shared.config import HomeConfig
from shared.device_store import InMemoryDeviceStore
from shared.inventory import InMemoryInventory
from shared.models import CanonicalDevice, Room, parse_appliance
from shared.notifications import NotificationChannel
from home_control.command_catalog import DEFAULT_COMMANDS


def make_rooms():
    """Living room and kitchen; names avoid overlapping with catalog phrases."""
    living = Room(
        id="living",
        name="Living Room",
        owner="owner-1",
        order=0,
        appliances=[
            parse_appliance({
                "id": "living-light", "name": "Ceiling Lamp", "type": "smart_lighting",
                "status": False, "intensity": 40, "color_tint": "warm",
                "canonical_device_id": "dev-light-1",
            }),
            parse_appliance({
                "id": "living-socket", "name": "TV Socket", "type": "smart_socket",
                "status": True, "power_usage": 12.5,
            }),
            parse_appliance({
                "id": "living-blind", "name": "Bay Blind", "type": "smart_shading",
                "status": False, "intensity": 0,
            }),
        ],
    )
    kitchen = Room(
        id="kitchen",
        name="Kitchen",
        owner="owner-1",
        order=1,
        appliances=[
            parse_appliance({
                "id": "kitchen-light", "name": "Pendant", "type": "smart_lighting",
                "status": True,
            }),
            parse_appliance({
                "id": "kitchen-socket", "name": "Kettle Plug", "type": "smart_socket",
                "status": True, "canonical_device_id": "dev-socket-1",
            }),
            parse_appliance({
                "id": "kitchen-ac", "name": "Split Unit", "type": "smart_hvac",
                "status": False,
            }),
        ],
    )
    return [living, kitchen]


def make_devices():
    return [
        CanonicalDevice(
            id="dev-light-1", parent_id="gw-1", device_type_id="lighting",
            device_name="Ceiling Lamp", state={"status": False, "intensity": 40, "color_tint": "warm"},
        ),
        CanonicalDevice(
            id="dev-socket-1", parent_id="gw-1", device_type_id="socket",
            device_name="Kettle Plug", state={"status": True},
        ),
    ]


@pytest.fixture
def rooms():
    return make_rooms()


@pytest.fixture
def inventory():
    return InMemoryInventory(rooms=make_rooms(), commands=list(DEFAULT_COMMANDS))


@pytest.fixture
def devices():
    return InMemoryDeviceStore(make_devices())


@pytest.fixture
def channel():
    return NotificationChannel()


@pytest.fixture
def test_config():
    """In-memory configuration with short timers."""
    return HomeConfig(
        backend="memory",
        default_owner="owner-1",
        auto_lock_delay_seconds=0.01,
        sync_cooldown_seconds=5,
        sync_max_runs=3,
        sync_reset_interval_seconds=60,
        speech_fallback_repeats=2,
        voice_response_enabled=False,
    )


class Recorder:
    """Collects published notifications per topic."""

    def __init__(self, channel, *topics):
        self.received = []
        for topic in topics:
            channel.subscribe(topic, self)

    def __call__(self, notification):
        self.received.append(notification)

    def topics(self):
        return [n.topic for n in self.received]

    def payloads(self, topic):
        return [n.payload for n in self.received if n.topic == topic]


@pytest.fixture
def recorder_factory(channel):
    def factory(*topics):
        return Recorder(channel, *topics)
    return factory
