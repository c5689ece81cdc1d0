"""
Unit tests for SyncAdmissionGate and SyncReconciler.
"""
import asyncio

import pytest
from unittest.mock import AsyncMock

import sys
sys.path.insert(0, 'src')

from shared.errors import NotFoundError, TransientIOError
from shared.models import CanonicalDevice
from shared.notifications import Topic, publish_canonical_changed
from home_control.device_state import DeviceStateStore, SyncStatus
from home_control.sync_reconciler import SyncAdmissionGate, SyncReconciler


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def store(inventory, devices):
    return DeviceStateStore(inventory, devices)


@pytest.fixture
def reconciler(store, devices, channel):
    return SyncReconciler(store, devices, channel, owner="owner-1")


def _admit(gate, room_id="living"):
    admitted = gate.try_acquire(room_id)
    if admitted:
        gate.release(room_id)
    return admitted


class TestSyncAdmissionGate:
    """Tests for per-room admission control."""

    def test_single_flight(self):
        gate = SyncAdmissionGate(clock=FakeClock())
        assert gate.try_acquire("living") is True
        assert gate.denial_reason("living") == "already_active"
        assert gate.try_acquire("living") is False
        assert gate.is_active("living") is True

        gate.release("living")
        assert gate.is_active("living") is False

    def test_rooms_independent(self):
        gate = SyncAdmissionGate(clock=FakeClock())
        assert gate.try_acquire("living") is True
        assert gate.try_acquire("kitchen") is True

    def test_cooldown(self):
        clock = FakeClock()
        gate = SyncAdmissionGate(cooldown_seconds=5, clock=clock)

        assert _admit(gate) is True
        clock.now = 4.9
        assert gate.denial_reason("living") == "cooldown"
        clock.now = 5.0
        assert _admit(gate) is True

    def test_max_runs_and_window_reset(self):
        clock = FakeClock()
        gate = SyncAdmissionGate(cooldown_seconds=5, max_runs=3, reset_interval_seconds=60, clock=clock)

        for now in (0, 6, 12):
            clock.now = now
            assert _admit(gate) is True

        clock.now = 18
        assert gate.denial_reason("living") == "max_runs_reached"

        clock.now = 61
        assert _admit(gate) is True
        assert gate.get_status("living")["run_count"] == 1

    def test_reset(self):
        gate = SyncAdmissionGate(clock=FakeClock())
        gate.try_acquire("living")
        gate.reset("living")
        assert gate.denial_reason("living") is None

        gate.try_acquire("kitchen")
        gate.reset()
        assert gate.get_status("kitchen")["is_active"] is False


class TestSyncReconciler:
    """Tests for read-back reconciliation."""

    @pytest.mark.asyncio
    async def test_copies_differing_canonical_fields(self, reconciler, inventory, devices, recorder_factory):
        recorder = recorder_factory(Topic.DEVICE_UPDATED)
        devices.put(CanonicalDevice(
            id="dev-light-1", parent_id="gw-1",
            state={"status": True, "intensity": 75, "color_tint": "warm"},
        ))

        result = await reconciler.reconcile("living")

        assert result.admitted is True
        assert result.updated_ids == ["living-light"]
        room = await inventory.get_room("living")
        light = room.find_appliance("living-light")
        assert light.status is True
        assert light.intensity == 75
        assert recorder.payloads(Topic.DEVICE_UPDATED) == [
            {"room_id": "living", "appliance_ids": ["living-light"], "source": "reconcile"}
        ]

    @pytest.mark.asyncio
    async def test_in_sync_room_is_noop(self, reconciler, inventory, recorder_factory):
        recorder = recorder_factory(Topic.DEVICE_UPDATED)

        result = await reconciler.reconcile("living")

        assert result.updated_count == 0
        assert inventory.write_count == 0
        assert recorder.received == []

    @pytest.mark.asyncio
    async def test_none_keeps_local_value(self, reconciler, inventory, devices):
        devices.put(CanonicalDevice(
            id="dev-light-1", parent_id="gw-1",
            state={"status": None, "intensity": 90},
        ))

        await reconciler.reconcile("living")

        light = (await inventory.get_room("living")).find_appliance("living-light")
        assert light.status is False
        assert light.intensity == 90

    @pytest.mark.asyncio
    async def test_never_writes_canonical(self, reconciler, devices):
        devices.put(CanonicalDevice(id="dev-socket-1", parent_id="gw-1", state={"status": False}))

        await reconciler.reconcile("kitchen")

        assert devices.write_count == 0

    @pytest.mark.asyncio
    async def test_unreadable_device_reported(self, reconciler, devices):
        await devices.delete("dev-socket-1")

        result = await reconciler.reconcile("kitchen")

        assert result.admitted is True
        assert len(result.errors) == 1
        assert "dev-socket-1" in result.errors[0]

    @pytest.mark.asyncio
    async def test_missing_room_releases_gate(self, reconciler):
        with pytest.raises(NotFoundError):
            await reconciler.reconcile("attic")
        assert reconciler.gate.is_active("attic") is False

    @pytest.mark.asyncio
    async def test_concurrent_run_denied(self, store, devices, channel):
        """A second run while one is in flight is denied, not queued."""
        reconciler = SyncReconciler(store, devices, channel, gate=SyncAdmissionGate(clock=FakeClock()))
        release = asyncio.Event()
        original_get = devices.get

        async def slow_get(device_id):
            await release.wait()
            return await original_get(device_id)

        devices.get = slow_get

        first = asyncio.create_task(reconciler.reconcile("living"))
        while not reconciler.gate.is_active("living"):
            await asyncio.sleep(0)

        second = await reconciler.reconcile("living")
        release.set()
        first_result = await first

        assert second.admitted is False
        assert second.reason == "already_active"
        assert first_result.admitted is True

    @pytest.mark.asyncio
    async def test_denied_run_reads_nothing(self, store, devices, channel):
        clock = FakeClock()
        reconciler = SyncReconciler(store, devices, channel, gate=SyncAdmissionGate(clock=clock))
        await reconciler.reconcile("living")

        devices.get = AsyncMock()
        result = await reconciler.reconcile("living")

        assert result.reason == "cooldown"
        devices.get.assert_not_awaited()


class TestCanonicalChangeSubscription:
    """Tests for reconciling on canonical-changed notifications."""

    @pytest.mark.asyncio
    async def test_change_triggers_reconcile(self, reconciler, inventory, devices, channel):
        reconciler.attach()
        devices.put(CanonicalDevice(id="dev-socket-1", parent_id="gw-1", state={"status": False}))

        await publish_canonical_changed(channel, "dev-socket-1")
        await channel.drain()

        socket = (await inventory.get_room("kitchen")).find_appliance("kitchen-socket")
        assert socket.status is False

    @pytest.mark.asyncio
    async def test_unlinked_device_ignored(self, reconciler, inventory, channel):
        reconciler.attach()

        await publish_canonical_changed(channel, "dev-unknown")
        await channel.drain()

        assert inventory.write_count == 0

    @pytest.mark.asyncio
    async def test_detach(self, reconciler, channel):
        reconciler.attach()
        reconciler.detach()
        assert channel.get_subscriber_count(Topic.CANONICAL_CHANGED) == 0

    @pytest.mark.asyncio
    async def test_find_room_for_device(self, reconciler):
        assert await reconciler.find_room_for_device("dev-light-1") == "living"
        assert await reconciler.find_room_for_device("nope") is None


class TestTransientCanonicalFailure:
    """A failed canonical write stays pending until the canonical value catches up."""

    @pytest.mark.asyncio
    async def test_recovered_canonical_matches_aggregate(self, store, reconciler, inventory, devices):
        original_update = devices.update_state
        devices.update_state = AsyncMock(side_effect=TransientIOError("device-store", "timeout"))

        result = await store.update_state("kitchen", "kitchen-socket", {"status": False})
        assert result.status == SyncStatus.AGGREGATE_ONLY

        # Gateway later applies the same state
        devices.update_state = original_update
        await devices.update_state("dev-socket-1", {"status": False})
        writes = inventory.write_count

        reconciled = await reconciler.reconcile("kitchen")

        assert reconciled.updated_count == 0
        assert inventory.write_count == writes
        assert store.pending_devices() == {}
        socket = (await inventory.get_room("kitchen")).find_appliance("kitchen-socket")
        assert socket.status is False

    @pytest.mark.asyncio
    async def test_pending_change_survives_stale_read_back(self, store, reconciler, inventory, devices):
        """The user's change stays in the aggregate while its canonical write is pending."""
        original_update = devices.update_state
        devices.update_state = AsyncMock(side_effect=TransientIOError("device-store", "timeout"))
        result = await store.update_state("living", "living-light", {"status": True})
        assert result.status == SyncStatus.AGGREGATE_ONLY

        # Store is reachable again but still holds the old value
        devices.update_state = original_update
        writes = inventory.write_count

        reconciled = await reconciler.reconcile("living")

        assert reconciled.updated_ids == []
        assert reconciled.pending_ids == ["living-light"]
        assert inventory.write_count == writes
        light = (await inventory.get_room("living")).find_appliance("living-light")
        assert light.status is True
        assert store.pending_fields("dev-light-1") == {"status": True}

    @pytest.mark.asyncio
    async def test_settled_field_follows_canonical_again(self, store, devices, inventory, channel):
        """Once the canonical value catches up, later backend changes apply as usual."""
        clock = FakeClock()
        reconciler = SyncReconciler(store, devices, channel, gate=SyncAdmissionGate(clock=clock))
        original_update = devices.update_state
        devices.update_state = AsyncMock(side_effect=TransientIOError("device-store", "timeout"))
        await store.update_state("kitchen", "kitchen-socket", {"status": False})
        devices.update_state = original_update

        await devices.update_state("dev-socket-1", {"status": False})
        first = await reconciler.reconcile("kitchen")
        assert first.pending_ids == []
        assert store.pending_devices() == {}

        await devices.update_state("dev-socket-1", {"status": True})
        clock.now += 10
        second = await reconciler.reconcile("kitchen")

        assert second.updated_ids == ["kitchen-socket"]
        socket = (await inventory.get_room("kitchen")).find_appliance("kitchen-socket")
        assert socket.status is True
