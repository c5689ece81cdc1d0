"""
Command catalog.

Loads the voice command catalog from the inventory service with a TTL cache
and falls back to a built-in default catalog when the service has none or is
unreachable. Room and device specific phrases use the ``{room}`` and
``{device}`` placeholders instead of one generated command per room.
"""

import time
from typing import Callable, List, Optional

import structlog

from shared.errors import HomeException
from shared.inventory import HomeInventory
from shared.models import Command

logger = structlog.get_logger(__name__)


def _command(category, name, phrases, response, action_type=None) -> Command:
    return Command(
        id=name,
        category=category,
        name=name,
        phrases=phrases,
        response_template=response,
        action_type=action_type or name,
    )


DEFAULT_COMMANDS: List[Command] = [
    # System control
    _command("system_control", "wake_up",
             ["hey hearth", "hello hearth", "wake up"],
             "Hello! I'm here to help with your smart home."),
    _command("system_control", "all_devices_on",
             ["turn on everything", "turn on all devices", "power on all"],
             "Turning on all devices."),
    _command("system_control", "all_devices_off",
             ["turn off everything", "turn off all devices", "power off all"],
             "Turning off all devices."),
    _command("system_control", "system_check",
             ["run a system check", "check all systems", "system check"],
             "Running a check on all systems.",
             "all_systems_check"),

    # Lighting
    _command("lighting_control", "lights_all_on",
             ["turn on all lights", "all lights on", "lights on"],
             "Turning on all lights."),
    _command("lighting_control", "lights_all_off",
             ["turn off all lights", "all lights off", "lights off"],
             "Turning off all lights."),
    _command("lighting_control", "lights_room_on",
             ["turn on {room} lights", "{room} lights on"],
             "Turning on {room} lights."),
    _command("lighting_control", "lights_room_off",
             ["turn off {room} lights", "{room} lights off"],
             "Turning off {room} lights."),

    # Shading
    _command("shading_control", "windows_all_open",
             ["open all windows", "windows open", "open windows"],
             "Opening all windows."),
    _command("shading_control", "windows_all_close",
             ["close all windows", "windows close", "close windows"],
             "Closing all windows."),
    _command("shading_control", "curtains_all_open",
             ["open all curtains", "curtains open", "open curtains"],
             "Opening all curtains."),
    _command("shading_control", "curtains_all_close",
             ["close all curtains", "curtains close", "close curtains"],
             "Closing all curtains."),
    _command("shading_control", "windows_room_open",
             ["open {room} windows", "{room} windows open"],
             "Opening {room} windows."),
    _command("shading_control", "windows_room_close",
             ["close {room} windows", "{room} windows close"],
             "Closing {room} windows."),

    # HVAC
    _command("hvac_control", "ac_all_on",
             ["turn on all ac", "turn on air conditioning", "ac on"],
             "Turning on all air conditioning units."),
    _command("hvac_control", "ac_all_off",
             ["turn off all ac", "turn off air conditioning", "ac off"],
             "Turning off all air conditioning units."),
    _command("hvac_control", "ac_room_on",
             ["turn on {room} ac", "{room} ac on"],
             "Turning on {room} air conditioning."),
    _command("hvac_control", "ac_room_off",
             ["turn off {room} ac", "{room} ac off"],
             "Turning off {room} air conditioning."),

    # Sockets
    _command("socket_control", "sockets_all_on",
             ["turn on all sockets", "all sockets on", "sockets on"],
             "Turning on all sockets."),
    _command("socket_control", "sockets_all_off",
             ["turn off all sockets", "all sockets off", "sockets off"],
             "Turning off all sockets."),
    _command("socket_control", "sockets_room_on",
             ["turn on {room} sockets", "{room} sockets on"],
             "Turning on {room} sockets."),
    _command("socket_control", "sockets_room_off",
             ["turn off {room} sockets", "{room} sockets off"],
             "Turning off {room} sockets."),
    _command("socket_control", "socket_specific_on",
             ["turn on {device}", "switch on {device}"],
             "Turning on {device}."),
    _command("socket_control", "socket_specific_off",
             ["turn off {device}", "switch off {device}"],
             "Turning off {device}."),

    # Safety and security
    _command("safety_and_security", "away_mode",
             ["activate away mode", "set away mode", "away mode"],
             "Activating away mode. Securing the house and turning off non-essential devices."),
    _command("safety_and_security", "home_mode",
             ["activate home mode", "set home mode", "home mode"],
             "Activating home mode. Welcome back!"),
    _command("safety_and_security", "lock_front_door",
             ["lock front door", "lock the door", "secure front door"],
             "Locking the front door.",
             "lock_door"),
    _command("safety_and_security", "unlock_front_door",
             ["unlock front door", "unlock the door", "open front door lock"],
             "Unlocking the front door.",
             "unlock_door"),

    # Information
    _command("information_interaction", "energy_report",
             ["energy report", "how much energy", "power usage"],
             "Here is your energy overview."),
    _command("information_interaction", "introduction",
             ["who are you", "introduce yourself"],
             "I'm Hearth, your home assistant. I help you control your smart home and keep it secure."),
    _command("information_interaction", "help",
             ["what can you do", "help"],
             "I can control lights, sockets, curtains, air conditioning and security. "
             "Try saying 'turn on all lights' or 'lock the door'."),
]


class CommandCatalog:
    """
    Active commands, cached for ``cache_seconds``.

    Only successful loads are cached, so an outage of the inventory service
    is retried on the next lookup while the default catalog is served.
    """

    def __init__(
        self,
        inventory: Optional[HomeInventory] = None,
        cache_seconds: float = 300,
        defaults: Optional[List[Command]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.inventory = inventory
        self._cache_ttl = cache_seconds
        self._defaults = list(DEFAULT_COMMANDS if defaults is None else defaults)
        self._clock = clock
        self._cache: Optional[List[Command]] = None
        self._cache_time = 0.0

    async def get_commands(self, force_refresh: bool = False) -> List[Command]:
        """Active commands in catalog order."""
        if (
            not force_refresh
            and self._cache is not None
            and self._clock() - self._cache_time < self._cache_ttl
        ):
            return self._cache

        commands: List[Command] = []
        if self.inventory is not None:
            try:
                commands = await self.inventory.list_commands()
            except HomeException as e:
                logger.warning("command_catalog_load_failed", error=e.message, detail=e.detail)
                return self._active(self._defaults)

            if commands:
                self._cache = self._active(commands)
                self._cache_time = self._clock()
                logger.info("command_catalog_loaded", total=len(commands), active=len(self._cache))
                return self._cache

        logger.debug("command_catalog_using_defaults", total=len(self._defaults))
        return self._active(self._defaults)

    def invalidate(self):
        """Drop the cached catalog so the next lookup reloads it."""
        self._cache = None
        self._cache_time = 0.0

    @staticmethod
    def _active(commands: List[Command]) -> List[Command]:
        return [command for command in commands if command.is_active]
