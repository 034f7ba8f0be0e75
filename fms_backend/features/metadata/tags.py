"""
Finder tag decoding.

macOS stores user tags in the `com.apple.metadata:_kMDItemUserTags` extended attribute as a
property list holding an array of strings. Each string is the tag name, optionally followed by a
newline and the Finder color index ("Important\\n6").
"""
from __future__ import annotations

import plistlib
from dataclasses import dataclass
from typing import Optional

from fms_shared import TagDecodeError

TAG_XATTR_NAME = "com.apple.metadata:_kMDItemUserTags"
MAX_TAG_LENGTH = 255

# Finder label indexes
TAG_COLORS: dict[int, Optional[str]] = {
    0: None,
    1: "gray",
    2: "green",
    3: "purple",
    4: "blue",
    5: "yellow",
    6: "red",
    7: "orange",
}


@dataclass(frozen=True)
class TagAssociation:
    """One decoded tag of a file, in annotation order."""

    name: str
    color: Optional[str]
    ordinal: int

    def to_dict(self) -> dict:
        return {"name": self.name, "color": self.color, "ordinal": self.ordinal}


def _split_entry(entry: str) -> tuple[str, Optional[str]]:
    name, sep, color_part = entry.partition("\n")
    color: Optional[str] = None
    if sep:
        try:
            color = TAG_COLORS.get(int(color_part.strip()))
        except ValueError:
            color = None
    return name.strip()[:MAX_TAG_LENGTH], color


def decode_tags(raw: bytes | None) -> list[TagAssociation]:
    """
    Decode raw tag-annotation bytes into ordered (name, color) associations.

    Empty input means no tags. Blank names and repeated names are dropped (first wins),
    so (file, tag) stays unique.

    Raises:
        TagDecodeError: the bytes are not a property list holding an array.
    """
    if not raw:
        return []
    try:
        payload = plistlib.loads(bytes(raw))
    except Exception as exc:
        # Bad input surfaces as many types, e.g. LookupError for an unknown XML encoding.
        raise TagDecodeError(f"Malformed tag annotation: {exc}") from exc
    if not isinstance(payload, list):
        raise TagDecodeError(f"Tag annotation is a {type(payload).__name__}, expected an array")

    tags: list[TagAssociation] = []
    seen: set[str] = set()
    for entry in payload:
        if not isinstance(entry, str):
            continue
        name, color = _split_entry(entry)
        if not name or name in seen:
            continue
        seen.add(name)
        tags.append(TagAssociation(name=name, color=color, ordinal=len(tags)))
    return tags


def encode_tags(tags: list[tuple[str, Optional[str]]]) -> bytes:
    """Inverse of `decode_tags` (binary plist); used to build fixtures and fake readers."""
    color_index = {color: idx for idx, color in TAG_COLORS.items() if color}
    entries = []
    for name, color in tags:
        idx = color_index.get(color) if color else None
        entries.append(f"{name}\n{idx}" if idx is not None else name)
    return plistlib.dumps(entries, fmt=plistlib.FMT_BINARY)
