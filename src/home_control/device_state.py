"""
Dual-write device state store.

Appliance state lives in two places: the room's aggregate document (what the
dashboard renders) and, for linked appliances, the gateway-owned canonical
device record. Writes go to the aggregate first and are authoritative; the
canonical write is best-effort and its outcome is reported through
``SyncStatus`` so callers can tell "fully synced" from "canonical pending".

Fields sent to a canonical device stay in a pending ledger until the write
succeeds or a read-back shows the canonical value has caught up. Local
writes from reconciliation never overwrite a pending field, so a stale
canonical value cannot undo a change the user just made.

Writes to one room document are serialized through a per-room asyncio.Lock,
so all appliance changes for a room within one call land in a single write.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pydantic import ValidationError

from shared.device_store import CanonicalDeviceStore
from shared.errors import BadRequestError, HomeException, NotFoundError
from shared.inventory import HomeInventory
from shared.models import ApplianceBase, Room, merge_appliance

logger = structlog.get_logger(__name__)

FieldChanges = Dict[str, Any]
ApplianceChanges = List[Tuple[str, FieldChanges]]


class SyncStatus(str, Enum):
    """How far a mutation propagated."""
    SYNCED = "synced"
    AGGREGATE_ONLY = "aggregate_only"
    LOCAL_ONLY = "local_only"


@dataclass
class UpdateResult:
    """Outcome of one appliance mutation. The aggregate write always succeeded."""
    room_id: str
    appliance_id: str
    appliance: ApplianceBase
    status: SyncStatus
    changed: bool = True
    canonical_error: Optional[str] = None

    @property
    def success(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'room_id': self.room_id,
            'appliance_id': self.appliance_id,
            'appliance': self.appliance.model_dump(mode="json"),
            'sync_status': self.status.value,
            'changed': self.changed,
            'canonical_error': self.canonical_error,
        }


@dataclass
class BulkUpdateResult:
    """Outcome of a multi-room mutation; failures are collected, not raised."""
    results: List[UpdateResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    rooms_written: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.results) and not self.errors

    @property
    def updated_count(self) -> int:
        return len(self.results)

    def appliance_ids(self, room_id: str) -> List[str]:
        return [r.appliance_id for r in self.results if r.room_id == room_id]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class DeviceStateStore:
    """Write-through store over the inventory and the canonical device store."""

    def __init__(self, inventory: HomeInventory, devices: CanonicalDeviceStore):
        self.inventory = inventory
        self.devices = devices
        self._locks: Dict[str, asyncio.Lock] = {}
        # canonical_device_id -> fields whose canonical write is outstanding
        self._pending: Dict[str, FieldChanges] = {}

    def _room_lock(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[room_id] = lock
        return lock

    async def get_room(self, room_id: str) -> Room:
        room = await self.inventory.get_room(room_id)
        if room is None:
            raise NotFoundError("Room not found", detail=room_id)
        return room

    async def update_state(self, room_id: str, appliance_id: str, fields: FieldChanges) -> UpdateResult:
        """
        Merge ``fields`` into one appliance and propagate to its canonical device.

        Raises NotFoundError for a missing room or appliance and
        BadRequestError for fields the appliance type does not carry or values
        out of range. Aggregate store failures propagate unchanged.
        """
        if not fields:
            raise BadRequestError("No fields to update", detail=appliance_id)

        async with self._room_lock(room_id):
            room = await self.get_room(room_id)
            merged, original = self._merge_one(room, appliance_id, fields)
            appliances = [merged if a.id == appliance_id else a for a in room.appliances]
            await self.inventory.save_appliances(room_id, appliances)

        changed = merged.state() != original.state()
        logger.info(
            "appliance_state_updated",
            room_id=room_id,
            appliance_id=appliance_id,
            fields=list(fields),
            changed=changed
        )
        return await self._propagate(room_id, merged, fields, changed)

    async def update_many(self, batch: List[Tuple[str, ApplianceChanges]]) -> BulkUpdateResult:
        """
        Apply per-appliance merges across rooms, one aggregate write per room.

        Only the listed appliance ids are touched. Missing rooms, missing
        appliances and rejected fields end up in ``errors``; the rest of the
        batch still applies.
        """
        bulk = BulkUpdateResult()

        for room_id, changes in batch:
            if not changes:
                continue

            merged_items: List[Tuple[ApplianceBase, FieldChanges, bool]] = []
            try:
                async with self._room_lock(room_id):
                    room = await self.get_room(room_id)
                    replacements: Dict[str, ApplianceBase] = {}
                    for appliance_id, fields in changes:
                        try:
                            merged, original = self._merge_one(room, appliance_id, fields)
                        except HomeException as e:
                            bulk.errors.append(f"{room_id}/{appliance_id}: {e.message}")
                            continue
                        replacements[appliance_id] = merged
                        merged_items.append((merged, fields, merged.state() != original.state()))

                    if not replacements:
                        continue

                    appliances = [replacements.get(a.id, a) for a in room.appliances]
                    await self.inventory.save_appliances(room_id, appliances)
                    bulk.rooms_written.append(room_id)
            except HomeException as e:
                logger.warning("bulk_room_update_failed", room_id=room_id, error=e.message, detail=e.detail)
                bulk.errors.append(f"{room_id}: {e.message}")
                continue

            for merged, fields, changed in merged_items:
                bulk.results.append(await self._propagate(room_id, merged, fields, changed))

        logger.info(
            "bulk_state_updated",
            rooms=len(bulk.rooms_written),
            appliances=bulk.updated_count,
            errors=len(bulk.errors)
        )
        return bulk

    async def write_local(self, room_id: str, changes: Dict[str, FieldChanges]) -> List[str]:
        """
        Merge changes into the aggregate document only, never the canonical store.

        The room is re-read under its lock and only fields that actually
        differ are applied; nothing is written when nothing differs. Fields
        still pending a canonical write are left alone. Returns the ids of
        appliances that changed.
        """
        async with self._room_lock(room_id):
            room = await self.get_room(room_id)
            changed_ids: List[str] = []
            appliances: List[ApplianceBase] = []

            for appliance in room.appliances:
                fields = changes.get(appliance.id)
                if not fields:
                    appliances.append(appliance)
                    continue

                current = appliance.state()
                pending = self.pending_fields(appliance.canonical_device_id)
                diff = {
                    k: v for k, v in fields.items()
                    if k in current and k not in pending and current[k] != v
                }
                if not diff:
                    appliances.append(appliance)
                    continue

                try:
                    merged = merge_appliance(appliance, diff)
                except ValidationError as e:
                    logger.warning(
                        "local_merge_rejected",
                        room_id=room_id,
                        appliance_id=appliance.id,
                        error=str(e)
                    )
                    appliances.append(appliance)
                    continue

                if merged.state() != current:
                    changed_ids.append(appliance.id)
                appliances.append(merged)

            if changed_ids:
                await self.inventory.save_appliances(room_id, appliances)
                logger.info("room_written_locally", room_id=room_id, appliance_ids=changed_ids)

        return changed_ids

    # =========================================================================
    # Pending canonical writes
    # =========================================================================

    def pending_fields(self, device_id: Optional[str]) -> FieldChanges:
        """Fields of ``device_id`` whose canonical write has not landed yet."""
        if not device_id:
            return {}
        return dict(self._pending.get(device_id, {}))

    def pending_devices(self) -> Dict[str, FieldChanges]:
        return {device_id: dict(fields) for device_id, fields in self._pending.items()}

    def settle_pending(self, device_id: str, canonical_state: Dict[str, Any]) -> FieldChanges:
        """
        Drop pending fields the canonical device now agrees with.

        Returns the fields that are still pending.
        """
        pending = self._pending.get(device_id)
        if not pending:
            return {}
        settled = [name for name, value in pending.items() if canonical_state.get(name) == value]
        for name in settled:
            del pending[name]
        if settled:
            logger.info("canonical_pending_settled", canonical_device_id=device_id, fields=settled)
        if not pending:
            del self._pending[device_id]
        return dict(pending)

    def _mark_pending(self, device_id: str, fields: FieldChanges):
        self._pending.setdefault(device_id, {}).update(fields)

    def _clear_pending(self, device_id: str, fields: FieldChanges):
        pending = self._pending.get(device_id)
        if pending is None:
            return
        for name, value in fields.items():
            # A newer write of the same field stays pending
            if name in pending and pending[name] == value:
                del pending[name]
        if not pending:
            del self._pending[device_id]

    def _merge_one(
        self,
        room: Room,
        appliance_id: str,
        fields: FieldChanges
    ) -> Tuple[ApplianceBase, ApplianceBase]:
        appliance = room.find_appliance(appliance_id)
        if appliance is None:
            raise NotFoundError("Appliance not found", detail=f"{room.id}/{appliance_id}")

        allowed = type(appliance).state_fields()
        unknown = [name for name in fields if name not in allowed]
        if unknown:
            raise BadRequestError(
                f"Unsupported fields for {appliance.type}: {', '.join(sorted(unknown))}",
                detail=appliance_id
            )

        try:
            return merge_appliance(appliance, fields), appliance
        except ValidationError as e:
            raise BadRequestError("Invalid appliance state", detail=str(e))

    async def _propagate(
        self,
        room_id: str,
        appliance: ApplianceBase,
        fields: FieldChanges,
        changed: bool
    ) -> UpdateResult:
        result = UpdateResult(
            room_id=room_id,
            appliance_id=appliance.id,
            appliance=appliance,
            status=SyncStatus.LOCAL_ONLY,
            changed=changed,
        )
        if not appliance.canonical_device_id:
            return result

        device_id = appliance.canonical_device_id
        current = appliance.model_dump(mode="json")
        written = {name: current[name] for name in fields}
        self._mark_pending(device_id, written)

        try:
            await self.devices.update_state(device_id, {**written, "last_updated": _utc_now()})
        except HomeException as e:
            # Aggregate stays authoritative; the fields stay pending
            result.status = SyncStatus.AGGREGATE_ONLY
            result.canonical_error = e.message
            logger.warning(
                "canonical_write_failed",
                room_id=room_id,
                appliance_id=appliance.id,
                canonical_device_id=device_id,
                error=e.message,
                pending=sorted(self._pending.get(device_id, {}))
            )
            return result

        self._clear_pending(device_id, written)
        result.status = SyncStatus.SYNCED
        return result
