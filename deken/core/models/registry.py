"""
Registry wire models — the JSON shapes served by the deken registry.

Bulk search::

    {"result": {"libraries": [[[{"archs": [...], "name": ..., ...}]]]}}

The libraries array nests package → version → architecture variant.
The outer levels are validated strictly; individual variants are
validated one at a time by the registry client so a single bad entry
can be skipped without failing the whole catalog.

Object info::

    {"result": {"libraries": {"<key>": [{"objects": [{"name": ...}]}]}}}
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class RawLibraryEntry(BaseModel):
    """One architecture variant of one package version."""

    name: str
    url: str
    archs: list[str | None] = Field(default_factory=list)
    author: str = ""
    timestamp: str = ""
    description: str = ""
    version: str = ""

    @field_validator("archs", mode="before")
    @classmethod
    def _none_archs(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("author", "timestamp", "description", "version", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def platform_tags(self) -> list[str]:
        """Non-empty platform tags declared for this artifact."""
        return [a for a in self.archs if a]


class _SearchResult(BaseModel):
    libraries: list[list[list[Any]]]


class SearchResponse(BaseModel):
    """Top-level shape of the bulk search endpoint."""

    result: _SearchResult


class ObjectInfo(BaseModel):
    name: str


class _InfoEntry(BaseModel):
    objects: list[ObjectInfo] = Field(default_factory=list)


class _InfoResult(BaseModel):
    libraries: dict[str, list[_InfoEntry]]


class InfoResponse(BaseModel):
    """Top-level shape of the per-artifact info endpoint."""

    result: _InfoResult

    def object_names(self) -> list[str]:
        """Object names of the first library's first entry."""
        for entries in self.result.libraries.values():
            if not entries:
                return []
            return [obj.name for obj in entries[0].objects]
        return []
