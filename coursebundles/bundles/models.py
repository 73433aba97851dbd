from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from coursebundles.errors import Conflict, ValidationError

DEFAULT_ENTRYPOINT = "index.html"


class ContentUnitKind(str, Enum):
    LESSON = "lesson"
    SECTION = "section"


@dataclass(frozen=True)
class ContentUnitRef:
    """Identifier of the lesson or section that owns a family of bundles."""

    id: str
    kind: ContentUnitKind

    @classmethod
    def of(cls, unit_id: str, kind: ContentUnitKind | str) -> "ContentUnitRef":
        cleaned = (unit_id or "").strip()
        if not cleaned:
            raise ValidationError("content unit id must not be empty")
        try:
            kind_enum = kind if isinstance(kind, ContentUnitKind) else ContentUnitKind(kind)
        except ValueError:
            raise ValidationError(f"unknown content unit kind: {kind!r}") from None
        return cls(id=cleaned, kind=kind_enum)

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.id}"


class ManifestStep(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    title: str = ""
    type: str = ""


class BundleManifest(BaseModel):
    """Optional descriptor shipped inside a bundle (``section.json``/``lesson.json``)."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    section_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("section_id", "sectionId"),
        serialization_alias="sectionId",
    )
    lesson_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("lesson_id", "lessonId"),
        serialization_alias="lessonId",
    )
    version: str | None = None
    entrypoint: str | None = None
    steps: List[ManifestStep] = Field(default_factory=list)
    activities: List[str] = Field(default_factory=list)
    capabilities: List[str] = Field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class Bundle:
    """A versioned, stored package of static assets for one content unit.

    Only local invariants live here (positive version, non-empty storage
    path, no deleting while active). Keeping a single active bundle per
    content unit is the lifecycle service's job.
    """

    id: str
    content_unit: ContentUnitRef
    version: int
    entrypoint: str
    storage_path: str
    manifest: Optional[BundleManifest] = None
    is_active: bool = False
    created_at: datetime = field(default_factory=_now)
    size_bytes: int = 0

    @classmethod
    def create(
        cls,
        content_unit: ContentUnitRef,
        version: int,
        storage_path: str,
        manifest: BundleManifest | None = None,
        entrypoint: str | None = None,
        *,
        size_bytes: int = 0,
    ) -> "Bundle":
        if version < 1:
            raise ValidationError(f"bundle version must be >= 1, got {version}")
        if not storage_path or not storage_path.strip():
            raise ValidationError("bundle storage path must not be empty")
        return cls(
            id=str(uuid.uuid4()),
            content_unit=content_unit,
            version=version,
            entrypoint=resolve_entrypoint(entrypoint, manifest),
            storage_path=storage_path.strip(),
            manifest=manifest,
            is_active=False,
            created_at=_now(),
            size_bytes=size_bytes,
        )

    def activate(self) -> None:
        self.is_active = True

    def deactivate(self) -> None:
        self.is_active = False

    def ensure_deletable(self) -> None:
        if self.is_active:
            raise Conflict(
                f"bundle {self.id} is active; activate another version before deleting it"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content_unit_id": self.content_unit.id,
            "kind": self.content_unit.kind.value,
            "version": self.version,
            "entrypoint": self.entrypoint,
            "storage_path": self.storage_path,
            "manifest": self.manifest.to_json() if self.manifest else None,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat().replace("+00:00", "Z"),
            "size_bytes": self.size_bytes,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Bundle":
        manifest = None
        raw_manifest = data.get("manifest")
        if isinstance(raw_manifest, dict):
            try:
                manifest = BundleManifest.model_validate(raw_manifest)
            except PydanticValidationError:
                manifest = None
        return Bundle(
            id=str(data["id"]),
            content_unit=ContentUnitRef(
                id=str(data["content_unit_id"]),
                kind=ContentUnitKind(data.get("kind", ContentUnitKind.LESSON.value)),
            ),
            version=int(data["version"]),
            entrypoint=data.get("entrypoint") or DEFAULT_ENTRYPOINT,
            storage_path=str(data["storage_path"]),
            manifest=manifest,
            is_active=bool(data.get("is_active", False)),
            created_at=_parse_dt(data.get("created_at") or _now()),
            size_bytes=int(data.get("size_bytes") or 0),
        )


def resolve_entrypoint(
    explicit: str | None, manifest: BundleManifest | None
) -> str:
    for candidate in (explicit, manifest.entrypoint if manifest else None):
        if candidate and candidate.strip():
            return candidate.strip()
    return DEFAULT_ENTRYPOINT


__all__ = [
    "Bundle",
    "BundleManifest",
    "ContentUnitKind",
    "ContentUnitRef",
    "DEFAULT_ENTRYPOINT",
    "ManifestStep",
    "resolve_entrypoint",
]
