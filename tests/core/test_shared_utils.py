import os

import pytest

from fms_backend.utils import is_hidden_name, is_within, normalize_path, parent_of, parse_bool, subtree_prefix
from fms_shared import ErrorCode, Result, classify_file, file_extension, sanitize_error_message


def test_result_ok_err_and_helpers():
    ok = Result.Ok(3, source="test")
    assert ok.ok and ok.code == "OK" and ok.meta == {"source": "test"}
    assert ok.unwrap_or(0) == 3
    assert Result.Ok(None).unwrap_or(5) == 5

    err = Result.Err(ErrorCode.NOT_INDEXED_YET, "later", path="/x")
    assert not err.ok
    assert err.code == "NOT_INDEXED_YET"
    assert err.meta["path"] == "/x"
    assert err.has_code(ErrorCode.NOT_INDEXED_YET)
    assert err.has_code("NOT_INDEXED_YET")
    assert not err.has_code(ErrorCode.NOT_FOUND)
    assert err.unwrap_or(7) == 7


def test_normalize_path_and_parent(tmp_path):
    nested = tmp_path / "a" / ".." / "b" / ""
    assert normalize_path(str(nested)) == str(tmp_path / "b")
    assert parent_of(str(tmp_path / "b")) == str(tmp_path)
    assert parent_of(os.sep) is None


@pytest.mark.skipif(os.sep != "/", reason="POSIX path semantics")
def test_normalize_path_collapses_leading_double_slash():
    assert normalize_path("//x") == "/x"
    assert normalize_path("//x//y/") == "/x/y"
    assert normalize_path("//") == "/"
    assert parent_of(normalize_path("//x")) == "/"


def test_subtree_prefix_and_is_within():
    root = os.path.join(os.sep, "docs")
    assert subtree_prefix(root) == root + os.sep
    assert subtree_prefix(os.sep) == os.sep
    assert is_within(root, root)
    assert is_within(os.path.join(root, "a", "b"), root)
    assert not is_within(os.path.join(os.sep, "docs2"), root)


def test_hidden_names():
    assert is_hidden_name(".DS_Store")
    assert not is_hidden_name("notes.txt")
    assert not is_hidden_name("")


@pytest.mark.parametrize(
    "value,expected",
    [("yes", True), ("off", False), ("1", True), ("0", False), (True, True), ("junk", False)],
)
def test_parse_bool(value, expected):
    assert parse_bool(value) is expected


def test_classify_file_and_extension():
    assert classify_file("report.PDF") == "document"
    assert classify_file("photo.heic") == "image"
    assert classify_file("docs", is_dir=True) == "folder"
    assert classify_file("README") == "other"
    assert file_extension("archive.TAR.GZ") == "gz"
    assert file_extension("Makefile") == ""


def test_sanitize_error_message_masks_paths():
    msg = sanitize_error_message(OSError("cannot open /Users/me/secret/file.txt"), "Failed to open file")
    assert msg.startswith("Failed to open file")
    assert "/Users/me" not in msg
    assert "[path]" in msg
    assert sanitize_error_message(None, "fallback") == "fallback"
