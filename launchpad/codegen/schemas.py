"""Typed request/response structures for the code generation service.

The service speaks camelCase JSON; models accept both camelCase and
snake_case and always dump camelCase.
"""

from __future__ import annotations

from collections import defaultdict
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_FRAMEWORK = "react"
REACT_FRAMEWORKS = {"react", "react + vite", "vite"}


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NamedItem(CamelModel):
    """A page or shared component named by the requirements analysis."""

    name: str
    path: str | None = None
    description: str | None = None


def _coerce_named(items: Any) -> list[Any]:
    if not items:
        return []
    coerced = []
    for item in items:
        if isinstance(item, str):
            coerced.append({"name": item})
        elif isinstance(item, dict) and not item.get("name") and item.get("path"):
            coerced.append({**item, "name": item["path"]})
        else:
            coerced.append(item)
    return coerced


class Requirements(CamelModel):
    """Structured requirements. ``framework`` defaults to React.

    File planning branches on ``framework``, ``pages``, ``components``,
    ``features`` and whether any of ``data_model``/``api``/``endpoints`` is set.
    Unknown keys from the service are kept.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    app_name: str | None = None
    description: str | None = None
    framework: str = DEFAULT_FRAMEWORK
    pages: list[NamedItem] = Field(default_factory=list)
    components: list[NamedItem] = Field(default_factory=list)
    features: list[str] = Field(default_factory=list)
    data_model: Any | None = None
    api: Any | None = None
    endpoints: Any | None = None
    env_vars_needed: list[str] = Field(default_factory=list)

    @field_validator("framework", mode="before")
    @classmethod
    def default_framework(cls, v: Any) -> str:
        return str(v).strip() if v else DEFAULT_FRAMEWORK

    @field_validator("pages", "components", mode="before")
    @classmethod
    def coerce_named(cls, v: Any) -> list[Any]:
        return _coerce_named(v)

    @field_validator("features", mode="before")
    @classmethod
    def coerce_features(cls, v: Any) -> list[str]:
        return [f for f in (v or []) if isinstance(f, str)]

    @property
    def is_react(self) -> bool:
        return self.framework.lower() in REACT_FRAMEWORKS

    @property
    def has_data_layer(self) -> bool:
        return bool(self.data_model or self.api or self.endpoints)

    @property
    def needs_auth(self) -> bool:
        return any("auth" in f.lower() for f in self.features)


class FileSpec(CamelModel):
    """One planned file."""

    path: str
    description: str = ""
    language: str | None = None


class GeneratedFile(CamelModel):
    path: str
    content: str
    language: str | None = None


class FileAction(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


class FileChange(GeneratedFile):
    content: str = ""
    action: FileAction = FileAction.MODIFY


class IterationResult(CamelModel):
    changed_files: list[FileChange] = Field(default_factory=list, alias="files")
    summary: str = ""
    env_vars_needed: list[str] = Field(default_factory=list)


class ValidationIssue(CamelModel):
    """One static-check error in a generated file."""

    file: str
    line: int | None = None
    message: str
    type: str


class FixResult(CamelModel):
    files: list[GeneratedFile] = Field(default_factory=list)
    summary: str = ""
    remaining_issues: list[Any] = Field(default_factory=list)


def group_by_file(errors: list[ValidationIssue]) -> dict[str, list[ValidationIssue]]:
    grouped: dict[str, list[ValidationIssue]] = defaultdict(list)
    for error in errors:
        grouped[error.file].append(error)
    return dict(grouped)
