"""
Read-side value objects returned by the query engine.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from ..metadata.tags import TagAssociation


@dataclass(frozen=True)
class FileRecord:
    path: str
    parent: Optional[str]
    name: str
    is_dir: bool
    size: int
    mtime: int
    ext: str
    kind: str
    generation: int = 0
    unreadable: bool = False
    tag_fault: bool = False
    tags: tuple[TagAssociation, ...] = field(default_factory=tuple)

    @classmethod
    def from_row(cls, row: dict[str, Any], tags: tuple[TagAssociation, ...] = ()) -> "FileRecord":
        return cls(
            path=str(row["path"]),
            parent=row.get("parent"),
            name=str(row["name"]),
            is_dir=bool(row.get("is_dir")),
            size=int(row.get("size") or 0),
            mtime=int(row.get("mtime") or 0),
            ext=str(row.get("ext") or ""),
            kind=str(row.get("kind") or "other"),
            generation=int(row.get("generation") or 0),
            unreadable=bool(row.get("unreadable")),
            tag_fault=bool(row.get("tag_fault")),
            tags=tuple(tags),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "parent": self.parent,
            "name": self.name,
            "is_dir": self.is_dir,
            "size": self.size,
            "mtime": self.mtime,
            "ext": self.ext,
            "kind": self.kind,
            "unreadable": self.unreadable,
            "tag_fault": self.tag_fault,
            "tags": [tag.to_dict() for tag in self.tags],
        }


@dataclass(frozen=True)
class Listing:
    """Children of one directory."""

    directory: str
    entries: list[FileRecord]
    partial: bool = False
    unreadable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "directory": self.directory,
            "entries": [entry.to_dict() for entry in self.entries],
            "partial": self.partial,
            "unreadable": self.unreadable,
        }


@dataclass(frozen=True)
class TagSummary:
    name: str
    color: Optional[str]
    count: int

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "color": self.color, "count": self.count}


@dataclass(frozen=True)
class SearchResults:
    query: str
    entries: list[FileRecord]
    truncated: bool = False
    partial: bool = False
    degraded: bool = False

    @classmethod
    def empty(cls, query: str = "", *, partial: bool = False, degraded: bool = False) -> "SearchResults":
        return cls(query=query, entries=[], partial=partial, degraded=degraded)

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "entries": [entry.to_dict() for entry in self.entries],
            "total": len(self.entries),
            "truncated": self.truncated,
            "partial": self.partial,
            "degraded": self.degraded,
        }
