"""Shared utilities for FMS."""
from .errors import FmsError, StoreError, TagDecodeError, sanitize_error_message
from .log import get_logger, log_structured, log_success, request_id_var
from .result import Result
from .time import format_timestamp, now, timer
from .types import EXTENSIONS, ErrorCode, FileKind, classify_file, file_extension

__all__ = [
    "Result",
    "get_logger",
    "log_success",
    "log_structured",
    "request_id_var",
    "now",
    "format_timestamp",
    "timer",
    "FileKind",
    "ErrorCode",
    "EXTENSIONS",
    "classify_file",
    "file_extension",
    "FmsError",
    "StoreError",
    "TagDecodeError",
    "sanitize_error_message",
]
