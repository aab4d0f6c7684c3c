from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum


class ContentType(str, Enum):
    TEXT = "text"
    IMAGE = "image"


class ThreatLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @property
    def is_safe(self) -> bool:
        return self in (ThreatLevel.NONE, ThreatLevel.LOW)


_SEVERITY = {
    ThreatLevel.NONE: 0,
    ThreatLevel.LOW: 1,
    ThreatLevel.MEDIUM: 2,
    ThreatLevel.HIGH: 3,
}


@dataclass(frozen=True)
class Threat:
    type: str
    confidence: float
    reason: str


@dataclass
class ClipboardItemMeta:
    """Everything about a stored item except the image payload."""

    id: int
    content: str
    content_type: ContentType
    created_at: datetime
    last_seen_at: datetime
    threat_level: ThreatLevel = ThreatLevel.NONE
    safe_entry: bool = True
    is_pinned: bool = False
    pin_order: int = 0


@dataclass
class ClipboardItem:
    id: int
    content: str
    content_type: ContentType
    created_at: datetime
    last_seen_at: datetime
    threat_level: ThreatLevel = ThreatLevel.NONE
    safe_entry: bool = True
    is_pinned: bool = False
    pin_order: int = 0
    image_data: bytes | None = None

    def to_meta(self) -> ClipboardItemMeta:
        return ClipboardItemMeta(
            id=self.id,
            content=self.content,
            content_type=self.content_type,
            created_at=self.created_at,
            last_seen_at=self.last_seen_at,
            threat_level=self.threat_level,
            safe_entry=self.safe_entry,
            is_pinned=self.is_pinned,
            pin_order=self.pin_order,
        )

    @classmethod
    def from_meta(cls, meta: ClipboardItemMeta, image_data: bytes | None = None) -> "ClipboardItem":
        return cls(
            id=meta.id,
            content=meta.content,
            content_type=meta.content_type,
            created_at=meta.created_at,
            last_seen_at=meta.last_seen_at,
            threat_level=meta.threat_level,
            safe_entry=meta.safe_entry,
            is_pinned=meta.is_pinned,
            pin_order=meta.pin_order,
            image_data=image_data,
        )


@dataclass
class SecurityHash:
    """A dismissed threat, keyed by the digest of the offending content."""

    hash: str
    threat_type: str
    confidence: float
    reason: str
    first_seen: datetime
    last_seen: datetime
    occurrence_count: int = 1


class CaptureKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    THREAT = "threat"


@dataclass(frozen=True)
class CaptureEvent:
    kind: CaptureKind
    content: str
    image_data: bytes | None = None
    threats: tuple[Threat, ...] = ()


@dataclass
class RescanStats:
    total_items: int = 0
    items_scanned: int = 0
    threats_before: int = 0
    threats_after: int = 0
    before: dict[ThreatLevel, int] = field(default_factory=lambda: {level: 0 for level in ThreatLevel})
    after: dict[ThreatLevel, int] = field(default_factory=lambda: {level: 0 for level in ThreatLevel})
    upgraded: int = 0
    downgraded: int = 0
    unchanged: int = 0


@dataclass(frozen=True)
class ThreatMemoryStats:
    total_hashes: int
    threat_types: dict[str, int]
    high_confidence_count: int


@dataclass(frozen=True)
class CacheStats:
    total_items: int
    cached_images: int
    max_image_cache: int
    utilization: float
    last_refresh: datetime | None


def copy_meta(items: list[ClipboardItemMeta]) -> list[ClipboardItemMeta]:
    return [replace(item) for item in items]
