"""Data model shared by the mirror components."""

import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, Optional, Any


class DeviceCategory(str, Enum):
    TV = "tv"
    TABLET = "tablet"
    MOBILE = "mobile"
    PC = "pc"
    UNKNOWN = "unknown"


class RequestStage(str, Enum):
    """Stages a mirror request moves through; the first failure is terminal."""
    RESOLVING = "resolving"
    CLASSIFYING = "classifying"
    ADMITTING = "admitting"
    FETCHING = "fetching"
    RESPONDING = "responding"


@dataclass
class PlaylistEndpoint:
    identifier: str
    name: str
    origin_url: str
    max_devices: int
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlaylistEndpoint":
        return cls(
            identifier=str(data["identifier"]),
            name=str(data["name"]),
            origin_url=str(data["origin_url"]),
            max_devices=int(data["max_devices"]),
            created_at=float(data.get("created_at") or time.time()),
            updated_at=float(data.get("updated_at") or time.time()),
        )


@dataclass(frozen=True)
class ClientIdentity:
    # Network address, or "anon-<hash>" when no usable address was found
    address: str
    user_agent: str = ""


@dataclass
class DeviceSession:
    playlist_id: str
    client_key: str
    first_seen: float
    last_heartbeat: float
    active: bool = True
    user_agent: str = ""
    category: DeviceCategory = DeviceCategory.UNKNOWN

    def is_within(self, ttl: float, now: float) -> bool:
        return (now - self.last_heartbeat) <= ttl


@dataclass(frozen=True)
class AccessEvent:
    playlist_id: str
    client_key: str
    user_agent: str
    category: DeviceCategory
    admitted: bool
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccessEvent":
        return cls(
            playlist_id=str(data["playlist_id"]),
            client_key=str(data["client_key"]),
            user_agent=str(data.get("user_agent") or ""),
            category=DeviceCategory(data.get("category", "unknown")),
            admitted=bool(data.get("admitted", True)),
            timestamp=float(data["timestamp"]),
        )


@dataclass(frozen=True)
class TouchResult:
    is_new: bool


@dataclass(frozen=True)
class AdmissionDecision:
    admitted: bool
    max_devices: int
    active_devices: int
    # Set when the device was already counted inside the window
    returning: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class RelayResult:
    content: str
    content_type: str
    origin_status: int = 200
