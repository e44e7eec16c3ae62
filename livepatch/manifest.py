# FILE: livepatch/manifest.py
from __future__ import annotations

import json
from typing import Any, List, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class ManifestError(ValueError):
    """Raised when a manifest document cannot be parsed or validated."""


class PatchEntry(BaseModel):
    """
    One replacement in a manifest.

    `path` is relative to the manifest origin: `<endpoint>/<version>/<path>`
    over HTTP, `<root>/<path>` on the filesystem.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    class_name: str = Field(
        ...,
        alias="className",
        min_length=1,
        description="Dotted name of the live unit (module or class) to replace",
    )
    path: str = Field(
        ...,
        min_length=1,
        description="Manifest-relative locator of the replacement body",
    )

    @field_validator("path")
    @classmethod
    def _relative_only(cls, v: str) -> str:
        parts = v.replace("\\", "/").split("/")
        if v.startswith(("/", "\\")) or ".." in parts:
            raise ValueError("path must stay inside the manifest origin")
        return v


class InvalidPatchEntry(PatchEntry):
    """
    Stand-in for a manifest entry that failed validation.

    Kept in manifest order so the applicator can report it and move on to
    the next entry; it is never fetched or applied.
    """

    reason: str = ""

    @classmethod
    def from_raw(cls, raw: Any, error: ValidationError) -> "InvalidPatchEntry":
        doc = raw if isinstance(raw, dict) else {}
        first = error.errors()[0]
        loc = ".".join(str(p) for p in first["loc"])
        return cls.model_construct(
            class_name=str(doc.get("className", doc.get("class_name", ""))),
            path=str(doc.get("path", "")),
            reason=f"{loc}: {first['msg']}" if loc else first["msg"],
        )


class PatchManifest(BaseModel):
    """
    Versioned, timestamped batch of replacements.

    Produced by the release pipeline; immutable once fetched.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    version: str = Field(..., min_length=1)
    # Milliseconds since epoch.
    timestamp: int = Field(...)
    patches: List[PatchEntry] = Field(default_factory=list)

    @field_validator("patches", mode="before")
    @classmethod
    def _validate_entries(cls, v: Any) -> Any:
        # A null list is an empty batch; a bad entry must not sink its siblings.
        if v is None:
            return []
        if not isinstance(v, list):
            return v
        entries: List[PatchEntry] = []
        for item in v:
            try:
                entries.append(PatchEntry.model_validate(item))
            except ValidationError as e:
                entries.append(InvalidPatchEntry.from_raw(item, e))
        return entries

    @classmethod
    def from_json(cls, raw: Union[bytes, str]) -> "PatchManifest":
        try:
            doc = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ManifestError(f"manifest is not valid JSON: {e}") from e
        if not isinstance(doc, dict):
            raise ManifestError("manifest must be a JSON object")
        try:
            return cls.model_validate(doc)
        except ValidationError as e:
            raise ManifestError(f"invalid manifest: {e.error_count()} error(s)") from e

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True)
