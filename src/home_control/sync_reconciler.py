"""
Read-back reconciliation from canonical devices into room documents.

A reconcile run copies canonical device state into the linked appliances of
one room. It only ever writes the aggregate document, so a mutation can never
bounce back and forth between the two stores.

Runs are admitted per room by SyncAdmissionGate:
- at most one run in flight per room
- a cooldown between consecutive runs
- a cap on runs within a reset window

A denied run is a logged no-op, not an error.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import structlog

from shared.device_store import CanonicalDeviceStore
from shared.errors import HomeException
from shared.notifications import (
    Notification,
    NotificationChannel,
    Topic,
    publish_device_updated,
)

from home_control.device_state import DeviceStateStore

logger = structlog.get_logger(__name__)


@dataclass
class RoomSyncState:
    is_active: bool = False
    last_run: Optional[float] = None
    run_count: int = 0
    window_started: float = 0.0


class SyncAdmissionGate:
    """
    Per-room admission control for reconcile runs.

    Plain dict state with no lock: try_acquire never awaits, so on a single
    event loop check-and-set cannot interleave with another caller.
    """

    def __init__(
        self,
        cooldown_seconds: float = 5.0,
        max_runs: int = 3,
        reset_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.cooldown_seconds = cooldown_seconds
        self.max_runs = max_runs
        self.reset_interval_seconds = reset_interval_seconds
        self._clock = clock
        self._rooms: Dict[str, RoomSyncState] = {}

    def _state(self, room_id: str, now: float) -> RoomSyncState:
        state = self._rooms.get(room_id)
        if state is None:
            state = RoomSyncState(window_started=now)
            self._rooms[room_id] = state
        elif now - state.window_started >= self.reset_interval_seconds:
            state.run_count = 0
            state.window_started = now
        return state

    def denial_reason(self, room_id: str) -> Optional[str]:
        """Why a run for ``room_id`` would be denied right now, or None."""
        now = self._clock()
        state = self._state(room_id, now)

        if state.is_active:
            return "already_active"
        if state.last_run is not None and now - state.last_run < self.cooldown_seconds:
            return "cooldown"
        if state.run_count >= self.max_runs:
            return "max_runs_reached"
        return None

    def try_acquire(self, room_id: str) -> bool:
        """Admit a run and mark it active, or deny it."""
        reason = self.denial_reason(room_id)
        if reason is not None:
            logger.info("sync_denied", room_id=room_id, reason=reason)
            return False

        state = self._rooms[room_id]
        state.is_active = True
        state.last_run = self._clock()
        state.run_count += 1
        logger.debug("sync_admitted", room_id=room_id, run_count=state.run_count)
        return True

    def release(self, room_id: str):
        state = self._rooms.get(room_id)
        if state is not None:
            state.is_active = False

    def is_active(self, room_id: str) -> bool:
        state = self._rooms.get(room_id)
        return state.is_active if state else False

    def reset(self, room_id: Optional[str] = None):
        """Forget admission history for one room, or for every room."""
        if room_id is None:
            self._rooms.clear()
        else:
            self._rooms.pop(room_id, None)

    def get_status(self, room_id: str) -> Dict[str, Any]:
        state = self._rooms.get(room_id) or RoomSyncState()
        return {
            "room_id": room_id,
            "is_active": state.is_active,
            "run_count": state.run_count,
            "max_runs": self.max_runs,
            "cooldown_seconds": self.cooldown_seconds,
        }


@dataclass
class ReconcileResult:
    room_id: str
    admitted: bool
    updated_count: int = 0
    updated_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    pending_ids: List[str] = field(default_factory=list)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'room_id': self.room_id,
            'admitted': self.admitted,
            'updated_count': self.updated_count,
            'updated_ids': self.updated_ids,
            'errors': self.errors,
            'pending_ids': self.pending_ids,
            'reason': self.reason,
        }


class SyncReconciler:
    """Pulls canonical device state back into room documents."""

    def __init__(
        self,
        store: DeviceStateStore,
        devices: CanonicalDeviceStore,
        channel: NotificationChannel,
        gate: Optional[SyncAdmissionGate] = None,
        owner: str = ""
    ):
        self.store = store
        self.devices = devices
        self.channel = channel
        self.gate = gate or SyncAdmissionGate()
        self.owner = owner

    async def reconcile(self, room_id: str) -> ReconcileResult:
        """
        Copy differing canonical fields into the room's linked appliances.

        A canonical value of None leaves the local value alone, and so does a
        field still waiting for its own canonical write. Devices that
        cannot be read are reported in ``errors`` and skipped. A missing room
        raises NotFoundError.
        """
        reason = self.gate.denial_reason(room_id)
        if reason is not None:
            logger.info("reconcile_skipped", room_id=room_id, reason=reason)
            return ReconcileResult(room_id=room_id, admitted=False, reason=reason)
        self.gate.try_acquire(room_id)

        result = ReconcileResult(room_id=room_id, admitted=True)
        try:
            room = await self.store.get_room(room_id)
            changes: Dict[str, Dict[str, Any]] = {}

            for appliance in room.appliances:
                if not appliance.canonical_device_id:
                    continue
                try:
                    device = await self.devices.get(appliance.canonical_device_id)
                except HomeException as e:
                    result.errors.append(f"{appliance.canonical_device_id}: {e.message}")
                    continue

                local = appliance.state()
                pending = self.store.settle_pending(appliance.canonical_device_id, device.state)
                if pending:
                    result.pending_ids.append(appliance.id)
                diff = {
                    name: device.state[name]
                    for name in local
                    if name not in pending
                    and device.state.get(name) is not None
                    and device.state[name] != local[name]
                }
                if diff:
                    changes[appliance.id] = diff

            if changes:
                result.updated_ids = await self.store.write_local(room_id, changes)
                result.updated_count = len(result.updated_ids)

            if result.updated_ids:
                await publish_device_updated(self.channel, room_id, result.updated_ids, source="reconcile")
        finally:
            self.gate.release(room_id)

        logger.info(
            "room_reconciled",
            room_id=room_id,
            updated_count=result.updated_count,
            errors=len(result.errors),
            pending=len(result.pending_ids)
        )
        return result

    def attach(self, channel: Optional[NotificationChannel] = None):
        """Reconcile the affected room whenever a canonical device changes."""
        (channel or self.channel).subscribe(Topic.CANONICAL_CHANGED, self._on_canonical_changed)

    def detach(self, channel: Optional[NotificationChannel] = None):
        (channel or self.channel).unsubscribe(Topic.CANONICAL_CHANGED, self._on_canonical_changed)

    async def _on_canonical_changed(self, notification: Notification):
        room_id = notification.payload.get("room_id")
        device_id = notification.payload.get("device_id")
        if not room_id and device_id:
            room_id = await self.find_room_for_device(device_id)
        if not room_id:
            logger.debug("canonical_change_unlinked", device_id=device_id)
            return
        await self.reconcile(room_id)

    async def find_room_for_device(self, device_id: str) -> Optional[str]:
        """Room holding the appliance linked to ``device_id``, if any."""
        rooms = await self.store.inventory.list_rooms(self.owner)
        for room in rooms:
            for appliance in room.appliances:
                if appliance.canonical_device_id == device_id:
                    return room.id
        return None
