"""
Action dispatch for matched voice commands.

Turns a CommandMatch into device mutations or a security transition and the
sentence spoken back to the user. Action types follow a naming convention:

- ``*_on`` / ``*_open`` switch the target on, anything else switches it off
- ``_all_`` (or a leading ``all_``) targets every room
- ``_room_`` or a ``{room}`` phrase narrows to the extracted room
- the prefix selects the appliance types, e.g. ``lights_`` only touches
  lighting; other appliances in the same room are never touched
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from shared.errors import HomeException, NotFoundError, PreconditionError
from shared.models import ROOM_PLACEHOLDER, DEVICE_PLACEHOLDER, ApplianceType, Room
from shared.notifications import NotificationChannel, Topic, publish_device_updated

from home_control.command_interpreter import CommandMatch, normalize
from home_control.device_state import BulkUpdateResult, DeviceStateStore
from home_control.security import SecurityStateMachine

logger = structlog.get_logger(__name__)

NOT_UNDERSTOOD_RESPONSE = "I didn't understand that command. Please try again."
GENERIC_ERROR_RESPONSE = "Something went wrong. Please try again."
NO_TARGET_RESPONSE = "I couldn't tell which room you meant. Please say the room name."
NOT_FOUND_RESPONSE = "I couldn't find that device. Please check the name and try again."
NO_DEVICES_RESPONSE = "I couldn't find any matching devices."

ALL_TYPES: Tuple[ApplianceType, ...] = tuple(ApplianceType)

# Longest prefixes first
TYPE_PREFIXES: List[Tuple[str, Tuple[ApplianceType, ...]]] = [
    ("system_all_", ALL_TYPES),
    ("all_devices_", ALL_TYPES),
    ("curtains_", (ApplianceType.SHADING,)),
    ("curtain_", (ApplianceType.SHADING,)),
    ("windows_", (ApplianceType.SHADING,)),
    ("window_", (ApplianceType.SHADING,)),
    ("sockets_", (ApplianceType.SOCKET,)),
    ("lights_", (ApplianceType.LIGHTING,)),
    ("fans_", (ApplianceType.FAN,)),
    ("ac_", (ApplianceType.HVAC,)),
]

SECURITY_ACTIONS = {"lock_door", "unlock_door", "home_mode", "away_mode"}
INFO_ACTIONS = {"wake_up", "energy_report", "introduction", "help", "status_report"}
SYSTEM_CHECK_ACTIONS = {"system_check", "all_systems_check"}
SOCKET_SPECIFIC_ACTIONS = {"socket_specific_on", "socket_specific_off"}
DEVICE_CONTROL_ACTION = "device_control"


@dataclass
class SideEffect:
    """One observable effect of a dispatch."""
    kind: str
    room_id: Optional[str] = None
    appliance_ids: List[str] = field(default_factory=list)
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'room_id': self.room_id,
            'appliance_ids': self.appliance_ids,
            'detail': self.detail,
        }


@dataclass
class DispatchResult:
    success: bool
    response_text: str
    reason: Optional[str] = None
    side_effects: List[SideEffect] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'response_text': self.response_text,
            'reason': self.reason,
            'side_effects': [effect.to_dict() for effect in self.side_effects],
        }


def target_status(action_type: str) -> bool:
    """``_on``/``_open`` suffixes switch on; every other suffix switches off."""
    return action_type.endswith("_on") or action_type.endswith("_open")


def resolve_types(action_type: str) -> Optional[Tuple[ApplianceType, ...]]:
    """Appliance types an action affects, or None for a non-device action."""
    for prefix, types in TYPE_PREFIXES:
        if action_type.startswith(prefix):
            return types
    return None


def is_all_scope(action_type: str) -> bool:
    return "_all_" in action_type or action_type.startswith("all_")


def is_room_scoped(match: CommandMatch) -> bool:
    return ROOM_PLACEHOLDER in match.phrase or "_room_" in match.command.action_type


def coerce_value(raw: Optional[str]) -> Any:
    """Convert a stored target value string to the field's natural type."""
    if raw is None:
        return None
    text = str(raw).strip()
    lowered = text.lower()
    if lowered in ("true", "on", "open"):
        return True
    if lowered in ("false", "off", "close", "closed"):
        return False
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


class ActionDispatcher:
    """Executes matched commands against the device store and security machine."""

    def __init__(
        self,
        store: DeviceStateStore,
        security: SecurityStateMachine,
        channel: NotificationChannel
    ):
        self.store = store
        self.security = security
        self.channel = channel

    async def dispatch(self, match: CommandMatch, rooms: Sequence[Room]) -> DispatchResult:
        """
        Execute a match against the given room snapshot.

        Never raises for domain errors: not-found and precondition failures
        come back as unsuccessful results with a user-facing response.
        """
        action = match.command.action_type
        try:
            if action in SECURITY_ACTIONS:
                result = await self._dispatch_security(match)
            elif action in INFO_ACTIONS:
                result = DispatchResult(True, self.render(match), reason="informational")
            elif action in SYSTEM_CHECK_ACTIONS:
                result = await self._dispatch_system_check(match)
            elif action == DEVICE_CONTROL_ACTION:
                result = await self._dispatch_device_control(match)
            elif action in SOCKET_SPECIFIC_ACTIONS:
                result = await self._dispatch_socket_specific(match, rooms)
            else:
                types = resolve_types(action)
                if types is None:
                    logger.warning("action_unhandled", action_type=action)
                    result = DispatchResult(
                        True,
                        self.render(match) or "Okay.",
                        reason="acknowledged_not_implemented"
                    )
                else:
                    result = await self._dispatch_bulk(match, rooms, types)
        except NotFoundError as e:
            logger.info("dispatch_target_not_found", action_type=action, detail=e.detail)
            result = DispatchResult(False, NOT_FOUND_RESPONSE, reason="not_found")
        except PreconditionError as e:
            logger.info("dispatch_precondition_failed", action_type=action, message=e.message)
            result = DispatchResult(False, e.message, reason="precondition_failed")
        except HomeException as e:
            logger.error("dispatch_failed", action_type=action, code=e.code.value, message=e.message)
            result = DispatchResult(False, GENERIC_ERROR_RESPONSE, reason=e.code.value)

        logger.info(
            "command_dispatched",
            action_type=action,
            success=result.success,
            reason=result.reason,
            rooms_mutated=[effect.room_id for effect in result.side_effects if effect.kind == "device_update"]
        )
        return result

    def render(self, match: CommandMatch, room_name: Optional[str] = None) -> str:
        """Fill the response template's placeholders."""
        text = match.command.response_template or ""
        text = text.replace(ROOM_PLACEHOLDER, room_name or match.room_qualifier or "")
        text = text.replace(DEVICE_PLACEHOLDER, match.device_qualifier or "")
        return " ".join(text.split())

    # =========================================================================
    # Appliance actions
    # =========================================================================

    async def _dispatch_bulk(
        self,
        match: CommandMatch,
        rooms: Sequence[Room],
        types: Tuple[ApplianceType, ...]
    ) -> DispatchResult:
        action = match.command.action_type
        status = target_status(action)
        room_name = None

        if is_all_scope(action):
            candidates = [(room, room.appliances) for room in rooms]
        elif match.room_qualifier and is_room_scoped(match):
            room = self._find_room(rooms, match.room_qualifier)
            room_name = room.name
            candidates = [(room, room.appliances)]
        elif match.device_qualifier:
            candidates = [
                (room, [a for a in room.appliances if match.device_qualifier in normalize(a.name)])
                for room in rooms
            ]
        else:
            return DispatchResult(False, NO_TARGET_RESPONSE, reason="no_target")

        batch = []
        matched = 0
        for room, appliances in candidates:
            targets = [a for a in appliances if a.type in types]
            matched += len(targets)
            changes = [(a.id, {"status": status}) for a in targets if a.status != status]
            if changes:
                batch.append((room.id, changes))

        if matched == 0:
            return DispatchResult(False, NO_DEVICES_RESPONSE, reason="no_matching_devices")

        bulk = await self.store.update_many(batch)
        return await self._finish(match, bulk, room_name)

    async def _dispatch_socket_specific(self, match: CommandMatch, rooms: Sequence[Room]) -> DispatchResult:
        qualifier = match.device_qualifier
        if not qualifier:
            raise NotFoundError("No socket named in the command")

        status = target_status(match.command.action_type)
        batch = []
        found = False
        # Identically named sockets in different rooms are all switched
        for room in rooms:
            for appliance in room.appliances:
                if appliance.type == ApplianceType.SOCKET and qualifier in normalize(appliance.name):
                    found = True
                    if appliance.status != status:
                        batch.append((room.id, [(appliance.id, {"status": status})]))
                    break

        if not found:
            raise NotFoundError("Socket not found", detail=qualifier)

        bulk = await self.store.update_many(batch)
        return await self._finish(match, bulk)

    async def _dispatch_device_control(self, match: CommandMatch) -> DispatchResult:
        command = match.command
        if not (command.target_room_id and command.target_appliance_id and command.target_state_key):
            return DispatchResult(False, GENERIC_ERROR_RESPONSE, reason="incomplete_device_control")

        value = coerce_value(command.target_state_value)
        result = await self.store.update_state(
            command.target_room_id,
            command.target_appliance_id,
            {command.target_state_key: value}
        )

        side_effects = []
        if result.changed:
            await publish_device_updated(self.channel, result.room_id, [result.appliance_id])
            side_effects.append(SideEffect(
                kind="device_update",
                room_id=result.room_id,
                appliance_ids=[result.appliance_id],
                detail={'sync_status': result.status.value},
            ))
        return DispatchResult(True, self.render(match), reason="device_control", side_effects=side_effects)

    async def _finish(
        self,
        match: CommandMatch,
        bulk: BulkUpdateResult,
        room_name: Optional[str] = None
    ) -> DispatchResult:
        side_effects = []
        for room_id in bulk.rooms_written:
            changed_ids = [r.appliance_id for r in bulk.results if r.room_id == room_id and r.changed]
            if not changed_ids:
                continue
            await publish_device_updated(self.channel, room_id, changed_ids)
            side_effects.append(SideEffect(
                kind="device_update",
                room_id=room_id,
                appliance_ids=changed_ids,
                detail={
                    'sync_status': {
                        r.appliance_id: r.status.value for r in bulk.results if r.room_id == room_id
                    }
                },
            ))

        if bulk.errors and not bulk.results:
            logger.warning("bulk_dispatch_failed", errors=bulk.errors)
            return DispatchResult(False, GENERIC_ERROR_RESPONSE, reason="update_failed", side_effects=side_effects)

        reason = "partial" if bulk.errors else "updated"
        return DispatchResult(True, self.render(match, room_name), reason=reason, side_effects=side_effects)

    @staticmethod
    def _find_room(rooms: Sequence[Room], qualifier: str) -> Room:
        for room in rooms:
            if normalize(room.name) == qualifier:
                return room
        raise NotFoundError("Room not found", detail=qualifier)

    # =========================================================================
    # Security and diagnostics
    # =========================================================================

    async def _dispatch_security(self, match: CommandMatch) -> DispatchResult:
        action = match.command.action_type
        if action == "lock_door":
            changed = await self.security.lock_door()
        elif action == "unlock_door":
            changed = await self.security.unlock_door()
        elif action == "away_mode":
            changed = await self.security.set_away()
        else:
            changed = await self.security.set_home()

        side_effects = [SideEffect(
            kind="security",
            detail={'action': action, 'changed': changed, 'phase': self.security.phase.value},
        )]
        return DispatchResult(True, self.render(match), reason="security", side_effects=side_effects)

    async def _dispatch_system_check(self, match: CommandMatch) -> DispatchResult:
        await self.channel.publish(Topic.SYSTEMS_CHECK_REQUESTED, {'command': match.command.name})
        return DispatchResult(
            True,
            self.render(match),
            reason="systems_check",
            side_effects=[SideEffect(kind="notification", detail={'topic': Topic.SYSTEMS_CHECK_REQUESTED.value})],
        )
