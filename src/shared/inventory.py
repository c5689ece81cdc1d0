"""
Home inventory access.

The inventory service owns rooms, their ordered appliance lists, the command
catalog and per-owner security records. The home control core reads rooms and
writes back appliance state through this interface; it never creates or
removes rooms or appliances.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import structlog

from shared.errors import NotFoundError
from shared.http_client import ServiceClient
from shared.models import Command, Room, SecuritySettings, SecurityState

logger = structlog.get_logger(__name__)


class HomeInventory(ABC):
    """Source of rooms, commands and security records for one deployment."""

    @abstractmethod
    async def list_rooms(self, owner: str) -> List[Room]:
        """Rooms owned by ``owner`` in display order."""

    @abstractmethod
    async def get_room(self, room_id: str) -> Optional[Room]:
        """A single room, or None if it does not exist."""

    @abstractmethod
    async def save_appliances(self, room_id: str, appliances: List) -> None:
        """Replace the stored appliance list of a room in one write."""

    @abstractmethod
    async def list_commands(self) -> List[Command]:
        """Every command in the catalog, active or not."""

    @abstractmethod
    async def get_security_settings(self, owner: str) -> SecuritySettings:
        ...

    @abstractmethod
    async def get_security_state(self, owner: str) -> Optional[SecurityState]:
        ...

    @abstractmethod
    async def save_security_state(self, owner: str, state: SecurityState) -> None:
        ...

    async def close(self):
        pass


class HomeInventoryClient(ServiceClient, HomeInventory):
    """REST client for the inventory service."""

    service_name = "inventory"

    async def list_rooms(self, owner: str) -> List[Room]:
        data = await self._request("GET", "/rooms", params={"owner": owner})
        rooms = [self._validate(Room, item) for item in data or []]
        return sorted(rooms, key=lambda room: room.order)

    async def get_room(self, room_id: str) -> Optional[Room]:
        try:
            data = await self._request("GET", f"/rooms/{room_id}")
        except NotFoundError:
            return None
        return self._validate(Room, data)

    async def save_appliances(self, room_id: str, appliances: List) -> None:
        payload = {"appliances": [a.model_dump(mode="json") for a in appliances]}
        await self._request("PUT", f"/rooms/{room_id}/appliances", json=payload)
        logger.debug("room_appliances_saved", room_id=room_id, count=len(appliances))

    async def list_commands(self) -> List[Command]:
        data = await self._request("GET", "/commands")
        return [self._validate(Command, item) for item in data or []]

    async def get_security_settings(self, owner: str) -> SecuritySettings:
        data = await self._request("GET", f"/owners/{owner}/security-settings")
        return self._validate(SecuritySettings, data or {})

    async def get_security_state(self, owner: str) -> Optional[SecurityState]:
        try:
            data = await self._request("GET", f"/owners/{owner}/security-state")
        except NotFoundError:
            return None
        return self._validate(SecurityState, data) if data else None

    async def save_security_state(self, owner: str, state: SecurityState) -> None:
        await self._request(
            "PUT",
            f"/owners/{owner}/security-state",
            json=state.model_dump(mode="json")
        )


class InMemoryInventory(HomeInventory):
    """Process-local inventory for development and tests.

    Stored documents are copied on the way in and out so callers can never
    mutate the store without going through save_appliances.
    """

    def __init__(
        self,
        rooms: Optional[List[Room]] = None,
        commands: Optional[List[Command]] = None,
        settings: Optional[Dict[str, SecuritySettings]] = None
    ):
        self._rooms: Dict[str, Room] = {room.id: room.model_copy(deep=True) for room in rooms or []}
        self._commands: List[Command] = list(commands or [])
        self._settings: Dict[str, SecuritySettings] = dict(settings or {})
        self._security: Dict[str, SecurityState] = {}
        self.write_count = 0

    async def list_rooms(self, owner: str) -> List[Room]:
        rooms = [
            room.model_copy(deep=True)
            for room in self._rooms.values()
            if not owner or not room.owner or room.owner == owner
        ]
        return sorted(rooms, key=lambda room: room.order)

    async def get_room(self, room_id: str) -> Optional[Room]:
        room = self._rooms.get(room_id)
        return room.model_copy(deep=True) if room else None

    async def save_appliances(self, room_id: str, appliances: List) -> None:
        room = self._rooms.get(room_id)
        if room is None:
            raise NotFoundError("Room not found", detail=room_id)
        self._rooms[room_id] = room.model_copy(
            update={"appliances": [a.model_copy(deep=True) for a in appliances]}
        )
        self.write_count += 1

    async def list_commands(self) -> List[Command]:
        return list(self._commands)

    async def get_security_settings(self, owner: str) -> SecuritySettings:
        return self._settings.get(owner, SecuritySettings()).model_copy(deep=True)

    async def get_security_state(self, owner: str) -> Optional[SecurityState]:
        state = self._security.get(owner)
        return state.model_copy() if state else None

    async def save_security_state(self, owner: str, state: SecurityState) -> None:
        self._security[owner] = state.model_copy()

    def set_security_settings(self, owner: str, settings: SecuritySettings):
        self._settings[owner] = settings
