"""
Security arming state machine with a one-shot auto power-down.

Phases:
    HOME_UNLOCKED --lock_door--> HOME_LOCKED --set_away--> AWAY_LOCKED
    AWAY_LOCKED --set_home--> HOME_LOCKED
    any --unlock_door--> HOME_UNLOCKED

Away implies locked; set_away and set_home on an unlocked door raise
PreconditionError with a user-facing message. Calls that would not change the
phase are no-ops.

Every transition derives a session id from the resulting (locked, away) pair
and the transition time. Entering AWAY_LOCKED with auto shutdown enabled arms
an AutoLockCountdown for that session; on expiry the injected power-down
action turns off everything outside the exception list, exactly once per
session. Leaving AWAY_LOCKED or cancel_auto_lock() cancels the countdown
without marking the session complete.
"""

import asyncio
import hashlib
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog

from shared.errors import HomeException, PreconditionError
from shared.inventory import HomeInventory
from shared.models import SecuritySettings, SecurityState
from shared.notifications import NotificationChannel, Topic

logger = structlog.get_logger(__name__)

DEFAULT_AUTO_LOCK_DELAY = 90.0

AWAY_REQUIRES_LOCK = "Please lock the door before activating away mode."
HOME_REQUIRES_LOCK = "The door is unlocked. Please lock the door before changing security mode."

PowerDown = Callable[[List[str]], Awaitable[int]]


class SecurityPhase(str, Enum):
    HOME_UNLOCKED = "home_unlocked"
    HOME_LOCKED = "home_locked"
    AWAY_LOCKED = "away_locked"


def phase_of(state: SecurityState) -> SecurityPhase:
    if not state.is_door_locked:
        return SecurityPhase.HOME_UNLOCKED
    if state.is_security_mode:
        return SecurityPhase.AWAY_LOCKED
    return SecurityPhase.HOME_LOCKED


def derive_session_id(locked: bool, away: bool, timestamp: float) -> str:
    """Deterministic session id for a transition into (locked, away) at ``timestamp``."""
    raw = f"{int(locked)}:{int(away)}:{timestamp:.6f}"
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


class AutoLockCountdown:
    """
    A cancelable one-shot timer bound to one session id.

    Once the delay has elapsed and the expiry action has started, cancel()
    no longer interrupts it.
    """

    def __init__(
        self,
        session_id: str,
        delay_seconds: float,
        on_expire: Callable[[str], Awaitable[None]],
        clock: Callable[[], float] = time.monotonic
    ):
        self.session_id = session_id
        self.delay_seconds = delay_seconds
        self._on_expire = on_expire
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._started_at: Optional[float] = None
        self.fired = False
        self.cancelled = False

    def start(self):
        if self._task is None:
            self._started_at = self._clock()
            self._task = asyncio.create_task(self._run())
            logger.info("auto_lock_countdown_started", session_id=self.session_id, delay_seconds=self.delay_seconds)

    async def _run(self):
        try:
            await asyncio.sleep(self.delay_seconds)
        except asyncio.CancelledError:
            logger.info("auto_lock_countdown_cancelled", session_id=self.session_id)
            raise
        self.fired = True
        await self._on_expire(self.session_id)

    def cancel(self) -> bool:
        """Cancel a pending countdown. Returns False if it already fired or ended."""
        if self._task is None or self.fired or self._task.done():
            return False
        self.cancelled = True
        self._task.cancel()
        return True

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and not self.cancelled

    def remaining_seconds(self) -> float:
        if not self.running or self._started_at is None:
            return 0.0
        return max(0.0, self.delay_seconds - (self._clock() - self._started_at))

    async def wait(self):
        """Wait for the countdown to finish, swallowing its cancellation."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class SecurityStateMachine:
    """
    Door lock and away/home mode for one owner.

    Constructed once per process and handed to every consumer.
    """

    def __init__(
        self,
        channel: NotificationChannel,
        inventory: Optional[HomeInventory] = None,
        owner: str = "",
        power_down: Optional[PowerDown] = None,
        auto_lock_delay_seconds: float = DEFAULT_AUTO_LOCK_DELAY,
        settings: Optional[SecuritySettings] = None,
        clock: Callable[[], float] = time.time
    ):
        self.channel = channel
        self.inventory = inventory
        self.owner = owner
        self.power_down = power_down
        self.auto_lock_delay_seconds = auto_lock_delay_seconds
        self.settings = settings
        self._clock = clock

        self.state = SecurityState(is_door_locked=False, is_security_mode=False, updated_at=clock())
        self.session_id = derive_session_id(False, False, self.state.updated_at)
        self._last_transition_at = self.state.updated_at
        self._countdown: Optional[AutoLockCountdown] = None
        self._completed_sessions: Set[str] = set()
        self._lock = asyncio.Lock()

    @property
    def phase(self) -> SecurityPhase:
        return phase_of(self.state)

    @property
    def is_door_locked(self) -> bool:
        return self.state.is_door_locked

    async def load(self):
        """Initialize from the last persisted state, if any."""
        if self.inventory is None:
            return
        try:
            persisted = await self.inventory.get_security_state(self.owner)
        except HomeException as e:
            logger.warning("security_state_load_failed", owner=self.owner, error=e.message)
            return
        if persisted is None:
            return

        # Away implies locked
        locked = persisted.is_door_locked
        away = persisted.is_security_mode and locked
        self.state = SecurityState(is_door_locked=locked, is_security_mode=away, updated_at=persisted.updated_at)
        self.session_id = derive_session_id(locked, away, persisted.updated_at)
        self._last_transition_at = persisted.updated_at
        logger.info("security_state_loaded", owner=self.owner, phase=self.phase.value)

    # =========================================================================
    # Transitions
    # =========================================================================

    async def lock_door(self) -> bool:
        async with self._lock:
            if self.state.is_door_locked:
                return False
            await self._transition(locked=True, away=False)
            await self.channel.publish(Topic.DOOR_LOCKED, self._payload())
            return True

    async def unlock_door(self) -> bool:
        async with self._lock:
            if self.phase == SecurityPhase.HOME_UNLOCKED:
                return False
            was_away = self.state.is_security_mode
            await self._cancel_countdown(reason="door_unlocked")
            self._completed_sessions.clear()
            await self._transition(locked=False, away=False)
            await self.channel.publish(Topic.DOOR_UNLOCKED, self._payload())
            if was_away:
                await self.channel.publish(Topic.SECURITY_MODE_CHANGED, self._payload())
            return True

    async def set_away(self) -> bool:
        async with self._lock:
            if not self.state.is_door_locked:
                raise PreconditionError(AWAY_REQUIRES_LOCK, detail=self.phase.value)
            if self.phase == SecurityPhase.AWAY_LOCKED:
                return False
            await self._transition(locked=True, away=True)
            await self.channel.publish(Topic.SECURITY_MODE_CHANGED, self._payload())
            await self._arm_if_enabled()
            return True

    async def set_home(self) -> bool:
        async with self._lock:
            if not self.state.is_door_locked:
                raise PreconditionError(HOME_REQUIRES_LOCK, detail=self.phase.value)
            if self.phase == SecurityPhase.HOME_LOCKED:
                return False
            await self._cancel_countdown(reason="home_mode")
            await self._transition(locked=True, away=False)
            await self.channel.publish(Topic.SECURITY_MODE_CHANGED, self._payload())
            return True

    async def cancel_auto_lock(self) -> bool:
        """Explicit user cancellation; the session stays re-armable."""
        async with self._lock:
            return await self._cancel_countdown(reason="user_cancelled")

    async def arm_auto_lock(self) -> bool:
        """Arm the countdown for the current away session if it may run."""
        async with self._lock:
            return await self._arm_if_enabled()

    # =========================================================================
    # Internals
    # =========================================================================

    async def _transition(self, locked: bool, away: bool):
        previous = self.phase
        now = max(self._clock(), self._last_transition_at + 1e-6)
        self._last_transition_at = now
        self.state = SecurityState(is_door_locked=locked, is_security_mode=away, updated_at=now)
        self.session_id = derive_session_id(locked, away, now)

        logger.info(
            "security_transition",
            owner=self.owner,
            from_phase=previous.value,
            to_phase=self.phase.value,
            session_id=self.session_id
        )

        if self.inventory is not None:
            try:
                await self.inventory.save_security_state(self.owner, self.state)
            except HomeException as e:
                logger.warning("security_state_save_failed", owner=self.owner, error=e.message)

    async def _get_settings(self) -> SecuritySettings:
        if self.settings is not None:
            return self.settings
        if self.inventory is None:
            return SecuritySettings()
        try:
            return await self.inventory.get_security_settings(self.owner)
        except HomeException as e:
            logger.warning("security_settings_load_failed", owner=self.owner, error=e.message)
            return SecuritySettings()

    async def _arm_if_enabled(self) -> bool:
        if self.phase != SecurityPhase.AWAY_LOCKED:
            return False

        session_id = self.session_id
        if session_id in self._completed_sessions:
            logger.debug("auto_lock_already_completed", session_id=session_id)
            return False
        if self._countdown is not None and self._countdown.session_id == session_id and self._countdown.running:
            logger.debug("auto_lock_already_running", session_id=session_id)
            return False

        settings = await self._get_settings()
        if not settings.auto_shutdown_enabled:
            return False

        self._countdown = AutoLockCountdown(session_id, self.auto_lock_delay_seconds, self._on_expire)
        self._countdown.start()
        await self.channel.publish(Topic.AUTO_LOCK_ARMED, {
            **self._payload(),
            'delay_seconds': self.auto_lock_delay_seconds,
        })
        return True

    async def _cancel_countdown(self, reason: str) -> bool:
        countdown = self._countdown
        if countdown is None or not countdown.cancel():
            return False
        self._countdown = None
        await self.channel.publish(Topic.AUTO_LOCK_CANCELLED, {
            'session_id': countdown.session_id,
            'reason': reason,
        })
        return True

    async def _on_expire(self, session_id: str):
        # Marked first so no path can fire this session twice
        self._completed_sessions.add(session_id)

        settings = await self._get_settings()
        exceptions = list(settings.shutdown_exceptions)
        devices_off = 0
        error = None

        if self.power_down is not None:
            try:
                devices_off = await self.power_down(exceptions)
            except Exception as e:
                error = str(e)
                logger.error("auto_lock_power_down_failed", session_id=session_id, error=error, exc_info=True)

        logger.info(
            "auto_lock_completed",
            session_id=session_id,
            devices_off=devices_off,
            exceptions=len(exceptions)
        )
        await self.channel.publish(Topic.AUTO_LOCK_COMPLETED, {
            'session_id': session_id,
            'devices_off': devices_off,
            'exceptions': exceptions,
            'error': error,
        })

    def _payload(self) -> Dict[str, Any]:
        return {
            'is_door_locked': self.state.is_door_locked,
            'is_security_mode': self.state.is_security_mode,
            'mode': self.state.mode.value,
            'session_id': self.session_id,
        }

    # =========================================================================
    # Queries
    # =========================================================================

    def is_session_completed(self, session_id: str) -> bool:
        return session_id in self._completed_sessions

    @property
    def countdown(self) -> Optional[AutoLockCountdown]:
        return self._countdown

    def auto_lock_status(self) -> Dict[str, Any]:
        countdown = self._countdown
        running = countdown is not None and countdown.running and not countdown.fired
        return {
            'running': running,
            'session_id': countdown.session_id if running else None,
            'remaining_seconds': round(countdown.remaining_seconds(), 1) if running else 0.0,
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            **self._payload(),
            'phase': self.phase.value,
            'updated_at': self.state.updated_at,
            'auto_lock': self.auto_lock_status(),
        }

    async def close(self):
        """Cancel any pending countdown on shutdown."""
        countdown = self._countdown
        if countdown is not None and countdown.cancel():
            await countdown.wait()
