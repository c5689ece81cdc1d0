"""
Home control composition root.

Builds the notification channel, catalog, interpreter, dispatcher, device
store, reconciler and security state machine once, wires them together and
hands the result to the outer surfaces (HTTP API, voice assistant).
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from shared.config import HomeConfig, get_config
from shared.device_store import CanonicalDeviceStore, DeviceStoreClient, InMemoryDeviceStore
from shared.errors import HomeException
from shared.inventory import HomeInventory, HomeInventoryClient, InMemoryInventory
from shared.notifications import NotificationChannel, publish_canonical_changed, publish_device_updated

from home_control.action_dispatcher import (
    GENERIC_ERROR_RESPONSE,
    NOT_UNDERSTOOD_RESPONSE,
    ActionDispatcher,
    DispatchResult,
)
from home_control.command_catalog import CommandCatalog
from home_control.command_interpreter import CommandInterpreter, CommandMatch
from home_control.device_state import DeviceStateStore, UpdateResult
from home_control.security import SecurityStateMachine
from home_control.sync_reconciler import ReconcileResult, SyncAdmissionGate, SyncReconciler

logger = structlog.get_logger(__name__)


@dataclass
class CommandOutcome:
    """A handled utterance: what was heard, what matched, what happened."""
    utterance: str
    match: Optional[CommandMatch]
    result: DispatchResult

    @property
    def response_text(self) -> str:
        return self.result.response_text

    def to_dict(self) -> Dict[str, Any]:
        return {
            'utterance': self.utterance,
            'match': self.match.to_dict() if self.match else None,
            **self.result.to_dict(),
        }


class HomeControlService:
    """The single place a process wires the home control core together."""

    def __init__(
        self,
        inventory: HomeInventory,
        devices: CanonicalDeviceStore,
        config: Optional[HomeConfig] = None,
        channel: Optional[NotificationChannel] = None,
        owner: Optional[str] = None
    ):
        self.config = config or get_config()
        self.owner = self.config.default_owner if owner is None else owner
        self.inventory = inventory
        self.devices = devices
        self.channel = channel or NotificationChannel()

        self.catalog = CommandCatalog(inventory, cache_seconds=self.config.command_cache_seconds)
        self.interpreter = CommandInterpreter(threshold=self.config.match_threshold)
        self.store = DeviceStateStore(inventory, devices)
        self.gate = SyncAdmissionGate(
            cooldown_seconds=self.config.sync_cooldown_seconds,
            max_runs=self.config.sync_max_runs,
            reset_interval_seconds=self.config.sync_reset_interval_seconds,
        )
        self.reconciler = SyncReconciler(self.store, devices, self.channel, self.gate, owner=self.owner)
        self.security = SecurityStateMachine(
            self.channel,
            inventory=inventory,
            owner=self.owner,
            power_down=self.power_down,
            auto_lock_delay_seconds=self.config.auto_lock_delay_seconds,
        )
        self.dispatcher = ActionDispatcher(self.store, self.security, self.channel)

    @classmethod
    def from_config(cls, config: Optional[HomeConfig] = None) -> "HomeControlService":
        """Build the service with HTTP or in-memory backends per configuration."""
        config = config or get_config()
        if config.backend == "memory":
            inventory: HomeInventory = InMemoryInventory()
            devices: CanonicalDeviceStore = InMemoryDeviceStore()
        else:
            inventory = HomeInventoryClient(config.inventory_url, config.api_token, config.http_timeout_seconds)
            devices = DeviceStoreClient(config.device_store_url, config.api_token, config.http_timeout_seconds)
        logger.info("home_control_service_created", backend=config.backend, owner=config.default_owner)
        return cls(inventory, devices, config=config)

    async def start(self):
        await self.security.load()
        self.reconciler.attach()
        logger.info("home_control_service_started", owner=self.owner, phase=self.security.phase.value)

    async def close(self):
        self.reconciler.detach()
        await self.security.close()
        await self.channel.close()
        await self.inventory.close()
        await self.devices.close()
        logger.info("home_control_service_stopped")

    # =========================================================================
    # Operations
    # =========================================================================

    async def handle_command(self, text: str, owner: Optional[str] = None) -> CommandOutcome:
        """Interpret and execute one utterance for ``owner``."""
        owner = self.owner if owner is None else owner
        try:
            rooms = await self.inventory.list_rooms(owner)
            commands = await self.catalog.get_commands()
        except HomeException as e:
            logger.error("command_context_load_failed", owner=owner, error=e.message)
            return CommandOutcome(text, None, DispatchResult(False, GENERIC_ERROR_RESPONSE, reason=e.code.value))

        match = self.interpreter.interpret(text, rooms, commands)
        if match is None:
            return CommandOutcome(text, None, DispatchResult(False, NOT_UNDERSTOOD_RESPONSE, reason="no_match"))

        result = await self.dispatcher.dispatch(match, rooms)
        return CommandOutcome(text, match, result)

    async def update_appliance(self, room_id: str, appliance_id: str, fields: Dict[str, Any]) -> UpdateResult:
        """Direct state update from the dashboard."""
        result = await self.store.update_state(room_id, appliance_id, fields)
        if result.changed:
            await publish_device_updated(self.channel, room_id, [appliance_id], source="api")
        return result

    async def reconcile(self, room_id: str) -> ReconcileResult:
        return await self.reconciler.reconcile(room_id)

    async def notify_canonical_changed(self, device_id: str, room_id: Optional[str] = None):
        """Entry point for backend-origin canonical device changes."""
        await publish_canonical_changed(self.channel, device_id, room_id)

    async def power_down(self, exceptions: List[str]) -> int:
        """
        Switch off every appliance that is on, except those listed.

        An exception may name either the appliance id or its canonical device
        id. Returns the number of appliances switched off.
        """
        excluded = set(exceptions)
        rooms = await self.inventory.list_rooms(self.owner)

        batch = []
        for room in rooms:
            changes = [
                (a.id, {"status": False})
                for a in room.appliances
                if a.status and a.id not in excluded and a.canonical_device_id not in excluded
            ]
            if changes:
                batch.append((room.id, changes))

        bulk = await self.store.update_many(batch)
        for room_id in bulk.rooms_written:
            await publish_device_updated(self.channel, room_id, bulk.appliance_ids(room_id), source="auto_lock")

        if bulk.errors:
            logger.warning("power_down_partial", errors=bulk.errors)
        logger.info("power_down_completed", devices_off=bulk.updated_count, exceptions=len(excluded))
        return bulk.updated_count
