"""
Unit tests for DeviceStateStore.

Covers the aggregate-first dual write, sync status reporting and the
local-only write path used by reconciliation.
"""
import pytest
from unittest.mock import AsyncMock

import sys
sys.path.insert(0, 'src')

from shared.errors import BadRequestError, NotFoundError, TransientIOError
from home_control.device_state import DeviceStateStore, SyncStatus


@pytest.fixture
def store(inventory, devices):
    return DeviceStateStore(inventory, devices)


class TestUpdateState:
    """Tests for single appliance updates."""

    @pytest.mark.asyncio
    async def test_merge_preserves_other_fields(self, store, inventory):
        result = await store.update_state("living", "living-light", {"intensity": 80})

        room = await inventory.get_room("living")
        light = room.find_appliance("living-light")
        assert light.intensity == 80
        assert light.status is False
        assert light.color_tint == "warm"
        assert result.changed is True

    @pytest.mark.asyncio
    async def test_other_appliances_untouched(self, store, inventory):
        await store.update_state("living", "living-light", {"status": True})

        room = await inventory.get_room("living")
        assert room.find_appliance("living-socket").status is True
        assert room.find_appliance("living-socket").power_usage == 12.5

    @pytest.mark.asyncio
    async def test_linked_appliance_synced(self, store, devices):
        result = await store.update_state("living", "living-light", {"status": True})

        assert result.status == SyncStatus.SYNCED
        canonical = await devices.get("dev-light-1")
        assert canonical.state["status"] is True
        assert canonical.state["intensity"] == 40
        assert "last_updated" in canonical.state

    @pytest.mark.asyncio
    async def test_unlinked_appliance_local_only(self, store, devices):
        result = await store.update_state("living", "living-socket", {"status": False})

        assert result.status == SyncStatus.LOCAL_ONLY
        assert devices.write_count == 0

    @pytest.mark.asyncio
    async def test_canonical_failure_keeps_aggregate(self, store, inventory, devices):
        """A failing canonical write reports aggregate_only but the aggregate stands."""
        devices.update_state = AsyncMock(side_effect=TransientIOError("device-store", "timeout"))

        result = await store.update_state("kitchen", "kitchen-socket", {"status": False})

        assert result.status == SyncStatus.AGGREGATE_ONLY
        assert result.canonical_error
        room = await inventory.get_room("kitchen")
        assert room.find_appliance("kitchen-socket").status is False

    @pytest.mark.asyncio
    async def test_missing_canonical_record_is_aggregate_only(self, store, devices):
        await devices.delete("dev-socket-1")

        result = await store.update_state("kitchen", "kitchen-socket", {"status": False})

        assert result.status == SyncStatus.AGGREGATE_ONLY

    @pytest.mark.asyncio
    async def test_failed_canonical_write_stays_pending(self, store, devices):
        devices.update_state = AsyncMock(side_effect=TransientIOError("device-store", "timeout"))

        await store.update_state("kitchen", "kitchen-socket", {"status": False})

        assert store.pending_fields("dev-socket-1") == {"status": False}
        assert store.pending_devices() == {"dev-socket-1": {"status": False}}

    @pytest.mark.asyncio
    async def test_successful_write_clears_pending(self, store, devices):
        original_update = devices.update_state
        devices.update_state = AsyncMock(side_effect=TransientIOError("device-store", "timeout"))
        await store.update_state("kitchen", "kitchen-socket", {"status": False})

        devices.update_state = original_update
        result = await store.update_state("kitchen", "kitchen-socket", {"status": False})

        assert result.status == SyncStatus.SYNCED
        assert store.pending_fields("dev-socket-1") == {}

    @pytest.mark.asyncio
    async def test_settle_pending(self, store, devices):
        devices.update_state = AsyncMock(side_effect=TransientIOError("device-store", "timeout"))
        await store.update_state("living", "living-light", {"status": True, "intensity": 80})

        remaining = store.settle_pending("dev-light-1", {"status": True, "intensity": 40})

        assert remaining == {"intensity": 80}
        assert store.settle_pending("dev-light-1", {"intensity": 80}) == {}
        assert store.pending_devices() == {}

    @pytest.mark.asyncio
    async def test_write_local_skips_pending_fields(self, store, inventory, devices):
        devices.update_state = AsyncMock(side_effect=TransientIOError("device-store", "timeout"))
        await store.update_state("living", "living-light", {"status": True})

        changed = await store.write_local("living", {"living-light": {"status": False, "intensity": 55}})

        assert changed == ["living-light"]
        light = (await inventory.get_room("living")).find_appliance("living-light")
        assert light.status is True
        assert light.intensity == 55

    @pytest.mark.asyncio
    async def test_aggregate_failure_propagates(self, store, inventory, devices):
        inventory.save_appliances = AsyncMock(side_effect=TransientIOError("inventory"))

        with pytest.raises(TransientIOError):
            await store.update_state("living", "living-light", {"status": True})
        assert devices.write_count == 0

    @pytest.mark.asyncio
    async def test_idempotent(self, store, inventory):
        await store.update_state("living", "living-light", {"status": True})
        first = (await inventory.get_room("living")).model_dump()

        result = await store.update_state("living", "living-light", {"status": True})
        second = (await inventory.get_room("living")).model_dump()

        assert first == second
        assert result.changed is False

    @pytest.mark.asyncio
    async def test_missing_room(self, store):
        with pytest.raises(NotFoundError):
            await store.update_state("attic", "x", {"status": True})

    @pytest.mark.asyncio
    async def test_missing_appliance(self, store):
        with pytest.raises(NotFoundError):
            await store.update_state("living", "nope", {"status": True})

    @pytest.mark.asyncio
    async def test_unsupported_field(self, store):
        """Sockets carry no intensity."""
        with pytest.raises(BadRequestError):
            await store.update_state("living", "living-socket", {"intensity": 10})

    @pytest.mark.asyncio
    async def test_out_of_range_value(self, store):
        with pytest.raises(BadRequestError):
            await store.update_state("living", "living-light", {"intensity": 101})

    @pytest.mark.asyncio
    async def test_empty_fields(self, store):
        with pytest.raises(BadRequestError):
            await store.update_state("living", "living-light", {})


class TestUpdateMany:
    """Tests for bulk updates."""

    @pytest.mark.asyncio
    async def test_one_write_per_room(self, store, inventory):
        bulk = await store.update_many([
            ("living", [("living-light", {"status": True}), ("living-blind", {"status": True})]),
            ("kitchen", [("kitchen-ac", {"status": True})]),
        ])

        assert inventory.write_count == 2
        assert bulk.rooms_written == ["living", "kitchen"]
        assert bulk.updated_count == 3
        assert bulk.success is True
        assert bulk.appliance_ids("living") == ["living-light", "living-blind"]

    @pytest.mark.asyncio
    async def test_only_listed_ids_touched(self, store, inventory):
        before = await inventory.get_room("living")

        await store.update_many([("living", [("living-light", {"status": True})])])

        after = await inventory.get_room("living")
        assert after.find_appliance("living-socket") == before.find_appliance("living-socket")
        assert after.find_appliance("living-blind") == before.find_appliance("living-blind")

    @pytest.mark.asyncio
    async def test_errors_collected(self, store, inventory):
        bulk = await store.update_many([
            ("living", [("living-light", {"status": True}), ("ghost", {"status": True})]),
            ("attic", [("x", {"status": True})]),
        ])

        assert bulk.updated_count == 1
        assert len(bulk.errors) == 2
        assert bulk.success is False
        room = await inventory.get_room("living")
        assert room.find_appliance("living-light").status is True

    @pytest.mark.asyncio
    async def test_empty_changes_skipped(self, store, inventory):
        bulk = await store.update_many([("living", [])])
        assert inventory.write_count == 0
        assert bulk.updated_count == 0


class TestWriteLocal:
    """Tests for aggregate-only writes."""

    @pytest.mark.asyncio
    async def test_applies_differing_fields_only(self, store, inventory, devices):
        changed = await store.write_local("living", {
            "living-light": {"status": True, "intensity": 40},
        })

        assert changed == ["living-light"]
        assert inventory.write_count == 1
        assert devices.write_count == 0
        room = await inventory.get_room("living")
        assert room.find_appliance("living-light").status is True

    @pytest.mark.asyncio
    async def test_no_difference_no_write(self, store, inventory):
        changed = await store.write_local("living", {"living-light": {"status": False}})

        assert changed == []
        assert inventory.write_count == 0

    @pytest.mark.asyncio
    async def test_invalid_values_skipped(self, store, inventory):
        changed = await store.write_local("living", {
            "living-light": {"color_tint": "ultraviolet"},
            "living-blind": {"status": True},
        })

        assert changed == ["living-blind"]
        room = await inventory.get_room("living")
        assert room.find_appliance("living-light").color_tint == "warm"

    @pytest.mark.asyncio
    async def test_unknown_fields_ignored(self, store, inventory):
        changed = await store.write_local("living", {"living-socket": {"firmware": "1.2"}})
        assert changed == []
