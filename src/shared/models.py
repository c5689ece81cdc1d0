"""
Home Data Model

Rooms hold an ordered list of appliances. Each appliance is one variant of a
tagged union keyed by its semantic type, carrying only the state fields that
make sense for that type. An appliance may point at a canonical device record
owned by the gateway through ``canonical_device_id``; that is a lookup
relation only, the appliance does not depend on the canonical device existing.
"""

import time
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

ROOM_PLACEHOLDER = "{room}"
DEVICE_PLACEHOLDER = "{device}"

# Every state field an appliance variant may carry; anything else is
# descriptive (name, series, links) and is never touched by the core.
STATE_FIELDS = ("status", "intensity", "color_tint", "auto_mode", "power_usage")


class ApplianceType(str, Enum):
    """Semantic appliance types."""
    LIGHTING = "smart_lighting"
    HVAC = "smart_hvac"
    SHADING = "smart_shading"
    SOCKET = "smart_socket"
    CAMERA = "smart_camera"
    MOTION_SENSOR = "motion_sensor"
    AIR_QUALITY_SENSOR = "air_quality_sensor"
    FAN = "smart_fan"
    LOCK = "smart_lock"


class ColorTint(str, Enum):
    WHITE = "white"
    WARM = "warm"
    COOL = "cool"


class ApplianceBase(BaseModel):
    """Fields shared by every appliance variant."""
    id: str
    name: str = ""
    series: Optional[str] = None
    status: bool = False
    canonical_device_id: Optional[str] = Field(
        None, description="Weak reference to the gateway-owned canonical device"
    )

    @classmethod
    def state_fields(cls) -> List[str]:
        """State fields this variant carries, in canonical order."""
        return [name for name in STATE_FIELDS if name in cls.model_fields]

    def state(self) -> Dict[str, Any]:
        """Current values of this appliance's state fields."""
        return {name: getattr(self, name) for name in self.state_fields()}

    @property
    def display_name(self) -> str:
        return self.name or self.id


class LightingAppliance(ApplianceBase):
    type: Literal["smart_lighting"] = "smart_lighting"
    intensity: Optional[int] = Field(None, ge=0, le=100)
    color_tint: Optional[ColorTint] = None
    auto_mode: Optional[bool] = None


class HvacAppliance(ApplianceBase):
    type: Literal["smart_hvac"] = "smart_hvac"
    intensity: Optional[int] = Field(None, ge=0, le=100)
    auto_mode: Optional[bool] = None


class ShadingAppliance(ApplianceBase):
    type: Literal["smart_shading"] = "smart_shading"
    intensity: Optional[int] = Field(None, ge=0, le=100, description="Opening percentage")
    auto_mode: Optional[bool] = None


class FanAppliance(ApplianceBase):
    type: Literal["smart_fan"] = "smart_fan"
    intensity: Optional[int] = Field(None, ge=0, le=100)
    auto_mode: Optional[bool] = None


class SocketAppliance(ApplianceBase):
    type: Literal["smart_socket"] = "smart_socket"
    power_usage: Optional[float] = Field(None, ge=0)


class CameraAppliance(ApplianceBase):
    type: Literal["smart_camera"] = "smart_camera"


class MotionSensorAppliance(ApplianceBase):
    type: Literal["motion_sensor"] = "motion_sensor"
    auto_mode: Optional[bool] = None


class AirQualitySensorAppliance(ApplianceBase):
    type: Literal["air_quality_sensor"] = "air_quality_sensor"
    auto_mode: Optional[bool] = None


class LockAppliance(ApplianceBase):
    type: Literal["smart_lock"] = "smart_lock"


Appliance = Annotated[
    Union[
        LightingAppliance,
        HvacAppliance,
        ShadingAppliance,
        FanAppliance,
        SocketAppliance,
        CameraAppliance,
        MotionSensorAppliance,
        AirQualitySensorAppliance,
        LockAppliance,
    ],
    Field(discriminator="type"),
]

_appliance_adapter = TypeAdapter(Appliance)


def parse_appliance(data: Dict[str, Any]) -> ApplianceBase:
    """Build the right appliance variant from a raw payload."""
    return _appliance_adapter.validate_python(data)


def merge_appliance(appliance: ApplianceBase, fields: Dict[str, Any]) -> ApplianceBase:
    """
    Merge state fields into an appliance, preserving everything unspecified.

    The merged payload is re-validated so range and enum constraints hold.
    """
    payload = appliance.model_dump()
    payload.update(fields)
    return type(appliance).model_validate(payload)


class Room(BaseModel):
    """Aggregate room document; appliance order is user-meaningful."""
    id: str
    name: str
    owner: str = ""
    order: int = 0
    appliances: List[Appliance] = Field(default_factory=list)

    def find_appliance(self, appliance_id: str) -> Optional[ApplianceBase]:
        for appliance in self.appliances:
            if appliance.id == appliance_id:
                return appliance
        return None


class CanonicalDevice(BaseModel):
    """Gateway-owned authoritative state record for a physical device."""
    id: str
    parent_id: Optional[str] = None
    device_type_id: Optional[str] = None
    device_name: Optional[str] = None
    state: Dict[str, Any] = Field(default_factory=dict)


class Command(BaseModel):
    """A catalog entry the interpreter can match spoken phrases against."""
    id: Optional[str] = None
    category: str
    name: str
    phrases: List[str] = Field(default_factory=list)
    response_template: str = ""
    action_type: str
    is_active: bool = True

    # Linked direct-control commands address one appliance field
    target_room_id: Optional[str] = None
    target_appliance_id: Optional[str] = None
    target_state_key: Optional[str] = None
    target_state_value: Optional[str] = None


class SecurityMode(str, Enum):
    HOME = "home"
    AWAY = "away"


class SecurityState(BaseModel):
    """Door lock and away/home mode. Away implies locked."""
    is_door_locked: bool = False
    is_security_mode: bool = False
    updated_at: float = Field(default_factory=time.time)

    @property
    def mode(self) -> SecurityMode:
        return SecurityMode.AWAY if self.is_security_mode else SecurityMode.HOME


class SecuritySettings(BaseModel):
    """Per-owner security preferences."""
    auto_shutdown_enabled: bool = False
    shutdown_exceptions: List[str] = Field(
        default_factory=list,
        description="Appliance or canonical device ids left on by the auto power-down"
    )
    door_security_id: Optional[str] = None
