"""
Canonical device store access.

Canonical devices are the gateway-owned, authoritative state records for
physical devices. Appliances only point at them by id. Updates are merged into
the stored state and stamped with ``last_updated`` by the store.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import structlog

from shared.errors import NotFoundError
from shared.http_client import ServiceClient
from shared.models import CanonicalDevice

logger = structlog.get_logger(__name__)


class CanonicalDeviceStore(ABC):
    """Keyed store of canonical device records."""

    @abstractmethod
    async def get(self, device_id: str) -> CanonicalDevice:
        """Fetch one device; raises NotFoundError if it does not exist."""

    @abstractmethod
    async def list_by_parent(self, parent_id: str) -> List[CanonicalDevice]:
        """Devices claimed under one gateway."""

    @abstractmethod
    async def update_state(self, device_id: str, fields: Dict[str, Any]) -> CanonicalDevice:
        """Merge ``fields`` into the device state and return the new record."""

    @abstractmethod
    async def delete(self, device_id: str) -> None:
        ...

    async def close(self):
        pass


class DeviceStoreClient(ServiceClient, CanonicalDeviceStore):
    """REST client for the gateway device store."""

    service_name = "device_store"

    async def get(self, device_id: str) -> CanonicalDevice:
        data = await self._request("GET", f"/devices/{device_id}")
        return self._validate(CanonicalDevice, data)

    async def list_by_parent(self, parent_id: str) -> List[CanonicalDevice]:
        data = await self._request("GET", "/devices", params={"parent_id": parent_id})
        return [self._validate(CanonicalDevice, item) for item in data or []]

    async def update_state(self, device_id: str, fields: Dict[str, Any]) -> CanonicalDevice:
        data = await self._request("PATCH", f"/devices/{device_id}/state", json=fields)
        logger.debug("canonical_state_updated", device_id=device_id, fields=list(fields))
        return self._validate(CanonicalDevice, data)

    async def delete(self, device_id: str) -> None:
        await self._request("DELETE", f"/devices/{device_id}")


class InMemoryDeviceStore(CanonicalDeviceStore):
    """Process-local canonical store for development and tests."""

    def __init__(self, devices: Optional[List[CanonicalDevice]] = None):
        self._devices: Dict[str, CanonicalDevice] = {
            device.id: device.model_copy(deep=True) for device in devices or []
        }
        self.write_count = 0

    async def get(self, device_id: str) -> CanonicalDevice:
        device = self._devices.get(device_id)
        if device is None:
            raise NotFoundError("Canonical device not found", detail=device_id)
        return device.model_copy(deep=True)

    async def list_by_parent(self, parent_id: str) -> List[CanonicalDevice]:
        return [
            device.model_copy(deep=True)
            for device in self._devices.values()
            if device.parent_id == parent_id
        ]

    async def update_state(self, device_id: str, fields: Dict[str, Any]) -> CanonicalDevice:
        device = self._devices.get(device_id)
        if device is None:
            raise NotFoundError("Canonical device not found", detail=device_id)
        state = {**device.state, **fields, "last_updated": time.time()}
        self._devices[device_id] = device.model_copy(update={"state": state})
        self.write_count += 1
        return self._devices[device_id].model_copy(deep=True)

    async def delete(self, device_id: str) -> None:
        if self._devices.pop(device_id, None) is None:
            raise NotFoundError("Canonical device not found", detail=device_id)

    def put(self, device: CanonicalDevice):
        """Insert or replace a record as the gateway would, bypassing merge."""
        self._devices[device.id] = device.model_copy(deep=True)
