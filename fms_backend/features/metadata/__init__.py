"""
Metadata feature - per-entry stat extraction and Finder tag decoding.
"""
from .extractor import ExtractedEntry, extract, list_directory, read_tag_bytes
from .tags import TAG_COLORS, TAG_XATTR_NAME, TagAssociation, decode_tags, encode_tags

__all__ = [
    "ExtractedEntry",
    "extract",
    "list_directory",
    "read_tag_bytes",
    "TagAssociation",
    "decode_tags",
    "encode_tags",
    "TAG_COLORS",
    "TAG_XATTR_NAME",
]
