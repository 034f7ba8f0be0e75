import os

import pytest

from fms_backend.features.metadata import extractor as ex
from fms_backend.features.metadata.tags import encode_tags


def _no_tags(_path):
    return None


def test_extract_file_fields(tmp_path):
    target = tmp_path / "Report.PDF"
    target.write_bytes(b"12345")
    res = ex.extract(str(target), tag_reader=_no_tags)
    assert res.ok, res.error
    entry = res.data
    assert entry.path == str(target)
    assert entry.parent == str(tmp_path)
    assert entry.name == "Report.PDF"
    assert entry.is_dir is False
    assert entry.size == 5
    assert entry.ext == "pdf"
    assert entry.kind == "document"
    assert entry.mtime == int(os.stat(target).st_mtime)
    assert entry.tags == ()


def test_extract_directory_has_no_size(tmp_path):
    folder = tmp_path / "sub"
    folder.mkdir()
    entry = ex.extract(str(folder), tag_reader=_no_tags).data
    assert entry.is_dir is True
    assert entry.size == 0
    assert entry.kind == "folder"
    assert entry.real_path == os.path.realpath(folder)


def test_extract_reads_tags(tmp_path):
    target = tmp_path / "a.txt"
    target.write_text("x")
    raw = encode_tags([("Important", "red"), ("Work", None)])
    entry = ex.extract(str(target), tag_reader=lambda _p: raw).data
    assert [(t.name, t.color) for t in entry.tags] == [("Important", "red"), ("Work", None)]
    assert entry.tags_text == "Important\nWork"
    assert entry.tag_fault is False


def test_malformed_tags_do_not_fail_the_entry(tmp_path):
    target = tmp_path / "a.txt"
    target.write_text("x")
    res = ex.extract(str(target), tag_reader=lambda _p: b"garbage")
    assert res.ok
    assert res.data.tags == ()
    assert res.data.tag_fault is True


def test_tag_reader_os_error_is_no_tags(tmp_path):
    target = tmp_path / "a.txt"
    target.write_text("x")

    def _boom(_path):
        raise PermissionError("denied")

    res = ex.extract(str(target), tag_reader=_boom)
    assert res.ok
    assert res.data.tags == ()


def test_missing_entry_is_not_found(tmp_path):
    res = ex.extract(str(tmp_path / "gone.txt"), tag_reader=_no_tags)
    assert not res.ok
    assert res.code == "NOT_FOUND"


def test_permission_error_is_access_denied(tmp_path, monkeypatch):
    target = tmp_path / "locked.txt"
    target.write_text("x")

    def _deny(_path, _follow):
        raise PermissionError(13, "Permission denied")

    monkeypatch.setattr(ex, "_stat_entry", _deny)
    res = ex.extract(str(target), tag_reader=_no_tags)
    assert res.code == "ACCESS_DENIED"


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
def test_dangling_symlink_is_recorded(tmp_path):
    link = tmp_path / "dangling"
    os.symlink(str(tmp_path / "nowhere"), str(link))
    res = ex.extract(str(link), tag_reader=_no_tags)
    assert res.ok
    assert res.data.is_dir is False


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
def test_directory_cycle_is_skipped(tmp_path):
    loop = tmp_path / "loop"
    os.symlink(str(tmp_path), str(loop))
    res = ex.extract(str(loop), ancestors=frozenset({os.path.realpath(tmp_path)}), tag_reader=_no_tags)
    assert not res.ok
    assert res.code == "SKIPPED_CYCLE"


def test_list_directory(tmp_path):
    (tmp_path / "a").write_text("1")
    (tmp_path / "b").mkdir()
    res = ex.list_directory(str(tmp_path))
    assert res.ok
    assert sorted(res.data) == [str(tmp_path / "a"), str(tmp_path / "b")]

    not_dir = ex.list_directory(str(tmp_path / "a"))
    assert not not_dir.ok and not_dir.code == "INVALID_INPUT"
    missing = ex.list_directory(str(tmp_path / "missing"))
    assert missing.code == "NOT_FOUND"


def test_read_tag_bytes_missing_attribute_is_none(tmp_path):
    target = tmp_path / "plain.txt"
    target.write_text("x")
    assert ex.read_tag_bytes(str(target)) is None
