from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Literal, Optional

INLINE_IMAGE_PREFIX = "data:image"

MigrationStatusName = Literal["success", "skipped", "error"]


def is_inline_image(value: object) -> bool:
    """Return True when *value* embeds the image bytes as a data URI."""

    return isinstance(value, str) and value.startswith(INLINE_IMAGE_PREFIX)


def inline_payload_size(value: str) -> int:
    """Approximate decoded byte size of an inline base64 payload."""

    if "," not in value:
        return 0
    data = value.split(",", 1)[1]
    return round(len(data) * 3 / 4)


def format_file_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / 1024 / 1024:.1f} MB"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class SpecPair:
    label: str
    value: str


@dataclass(slots=True)
class KeySpec:
    key: str
    value: str


def _spec_pairs(raw: Any) -> List[SpecPair]:
    pairs: List[SpecPair] = []
    for item in raw or []:
        if isinstance(item, dict):
            pairs.append(SpecPair(label=str(item.get("label") or ""), value=str(item.get("value") or "")))
    return pairs


def _key_specs(raw: Any) -> List[KeySpec]:
    pairs: List[KeySpec] = []
    for item in raw or []:
        if not isinstance(item, dict):
            continue
        # older rows stored key specs with a "label" field
        key = item.get("key") or item.get("label") or ""
        pairs.append(KeySpec(key=str(key), value=str(item.get("value") or "")))
    return pairs


@dataclass(slots=True)
class CatalogEntry:
    """A sellable item as held by the catalog cache."""

    id: Optional[int]
    name: str
    cat: str = "food"
    subcategory: Optional[str] = None
    images: List[str] = field(default_factory=list)
    video: Optional[str] = None
    thumbnail: Optional[str] = None
    description: str = ""
    specs: List[SpecPair] = field(default_factory=list)
    key_specs: List[KeySpec] = field(default_factory=list)
    moq: str = ""
    price_range: str = ""
    hsn: str = ""
    certifications: List[str] = field(default_factory=list)
    is_trending: bool = False
    tab_description: Optional[str] = None
    tab_specifications: Optional[str] = None
    tab_advantage: Optional[str] = None
    tab_benefit: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __post_init__(self) -> None:
        if self.images is None:
            self.images = []

    @property
    def display_thumbnail(self) -> Optional[str]:
        return self.thumbnail or (self.images[0] if self.images else None)

    @classmethod
    def from_record(cls, row: dict) -> "CatalogEntry":
        """Build an entry from a snake_case database row."""

        images = list(row.get("images") or [])
        return cls(
            id=row.get("id"),
            name=row.get("name") or "",
            cat=row.get("cat") or "food",
            subcategory=row.get("subcategory") or None,
            images=images,
            video=row.get("video") or None,
            thumbnail=row.get("thumbnail") or (images[0] if images else None),
            description=row.get("description") or "",
            specs=_spec_pairs(row.get("specs")),
            key_specs=_key_specs(row.get("key_specs")),
            moq=row.get("moq") or "",
            price_range=row.get("price_range") or "",
            hsn=row.get("hsn") or "",
            certifications=list(row.get("certifications") or []),
            is_trending=bool(row.get("is_trending")),
            tab_description=row.get("tab_description") or None,
            tab_specifications=row.get("tab_specifications") or None,
            tab_advantage=row.get("tab_advantage") or None,
            tab_benefit=row.get("tab_benefit") or None,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_record(self, *, include_timestamp: bool = True) -> dict:
        """Build the write payload; identifiers and created_at stay server-side."""

        record = {
            "name": self.name.strip(),
            "cat": self.cat or "",
            "subcategory": self.subcategory or None,
            "images": list(self.images),
            "thumbnail": self.display_thumbnail or None,
            "video": self.video or None,
            "description": self.description or "",
            "specs": [{"label": s.label, "value": s.value} for s in self.specs],
            "key_specs": [{"key": s.key, "value": s.value} for s in self.key_specs],
            "moq": self.moq or "",
            "price_range": self.price_range or "",
            "hsn": self.hsn or "",
            "certifications": list(self.certifications),
            "is_trending": bool(self.is_trending),
            "tab_description": self.tab_description or None,
            "tab_specifications": self.tab_specifications or None,
            "tab_advantage": self.tab_advantage or None,
            "tab_benefit": self.tab_benefit or None,
        }
        if include_timestamp:
            record["updated_at"] = utc_now_iso()
        return record

    def to_cache_dict(self) -> dict:
        """Persisted mirror form; inline payloads are dropped to keep it small."""

        record = self.to_record(include_timestamp=False)
        record["id"] = self.id
        record["images"] = [img for img in self.images if not is_inline_image(img)]
        thumbnail = self.display_thumbnail
        record["thumbnail"] = thumbnail if thumbnail and not is_inline_image(thumbnail) else None
        record["created_at"] = self.created_at
        record["updated_at"] = self.updated_at
        return record

    @classmethod
    def from_cache_dict(cls, data: dict) -> "CatalogEntry":
        return cls.from_record(data)


@dataclass(slots=True)
class CompressedImage:
    """Output of the codec: encoded bytes plus the dimensions they carry."""

    data: bytes
    format: str
    width: int
    height: int
    source_size: int = 0

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def content_type(self) -> str:
        return f"image/{self.format}"

    @property
    def extension(self) -> str:
        return self.format


@dataclass(frozen=True, slots=True)
class MigrationOutcome:
    entry_id: Any
    entry_name: str
    status: MigrationStatusName
    message: str
    original_size: Optional[int] = None
    new_size: Optional[int] = None
    savings: Optional[str] = None


@dataclass(slots=True)
class MigrationSummary:
    total: int = 0
    migrated: int = 0
    skipped: int = 0
    errors: int = 0
    total_saved: int = 0
    results: List[MigrationOutcome] = field(default_factory=list)

    def record(self, outcome: MigrationOutcome) -> None:
        self.results.append(outcome)
        if outcome.status == "success":
            self.migrated += 1
            self.total_saved += max((outcome.original_size or 0) - (outcome.new_size or 0), 0)
        elif outcome.status == "skipped":
            self.skipped += 1
        else:
            self.errors += 1


@dataclass(frozen=True, slots=True)
class MigrationStatus:
    total: int
    with_base64: int
    migrated: int
    estimated_savings: int


@dataclass(frozen=True, slots=True)
class SaveResult:
    """Structured outcome of a catalog save, surfaced to forms."""

    success: bool
    entry: Optional[CatalogEntry] = None
    error: Optional[str] = None
