import asyncio
import os

import pytest
import pytest_asyncio

from fms_backend.adapters.db.schema import init_schema
from fms_backend.adapters.db.sqlite import Sqlite
from fms_backend.features.index.store import IndexStore, subtree_bounds
from fms_backend.features.metadata.extractor import ExtractedEntry
from fms_backend.features.metadata.tags import TagAssociation
from fms_shared import Result


def _entry(path, *, is_dir=False, tags=(), parent="<auto>"):
    name = os.path.basename(path)
    return ExtractedEntry(
        path=path,
        parent=os.path.dirname(path) if parent == "<auto>" else parent,
        name=name,
        is_dir=is_dir,
        size=0 if is_dir else 10,
        mtime=1_700_000_000,
        ext="" if is_dir else os.path.splitext(name)[1].lstrip(".").lower(),
        kind="folder" if is_dir else "other",
        real_path=path,
        tags=tuple(TagAssociation(n, c, i) for i, (n, c) in enumerate(tags)),
    )


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Sqlite(str(tmp_path / "store.db"))
    assert (await asyncio.to_thread(init_schema, database)).ok
    yield database
    await database.aclose()


@pytest.fixture
def store(db):
    return IndexStore(db)


async def _row(db, path):
    res = await db.aquery("SELECT * FROM files WHERE path = ?", (path,))
    return (res.data or [None])[0]


async def _tags(db, path):
    res = await db.aquery("SELECT tag, color FROM file_tags WHERE path = ? ORDER BY ordinal", (path,))
    return [(r["tag"], r["color"]) for r in res.data or []]


@pytest.mark.asyncio
async def test_upsert_batch_writes_rows_tags_and_listed_dirs(db, store):
    res = await store.upsert_batch(
        [_entry("/docs", is_dir=True, parent=None), _entry("/docs/a.pdf", tags=[("Important", "red")])],
        generation=1,
        completed_dirs=["/docs"],
    )
    assert res.ok and res.data == 2
    docs = await _row(db, "/docs")
    assert docs["listed_generation"] == 1
    assert docs["parent"] is None
    pdf = await _row(db, "/docs/a.pdf")
    assert pdf["generation"] == 1
    assert pdf["tags_text"] == "Important"
    assert await _tags(db, "/docs/a.pdf") == [("Important", "red")]


@pytest.mark.asyncio
async def test_upsert_replaces_tags_and_clears_tombstone(db, store):
    await store.upsert_batch([_entry("/d/a.txt", tags=[("Old", None), ("Keep", "blue")])], generation=1)
    await store.mark_deleted(["/d/a.txt"])
    assert (await _row(db, "/d/a.txt"))["deleted"] == 1

    await store.upsert_batch([_entry("/d/a.txt", tags=[("Keep", "blue")])], generation=2)
    row = await _row(db, "/d/a.txt")
    assert row["deleted"] == 0
    assert row["generation"] == 2
    assert await _tags(db, "/d/a.txt") == [("Keep", "blue")]



@pytest.mark.asyncio
async def test_entries_read_before_a_tombstone_stay_deleted(db, store):
    await store.upsert_batch([_entry("/d/sub", is_dir=True), _entry("/d/a.txt")], generation=1)
    stale_file = _entry("/d/a.txt", tags=[("T", None)])
    stale_child = _entry("/d/sub/new.txt")
    unseen = _entry("/d/b.txt")

    await store.mark_deleted(["/d/a.txt", "/d/sub", "/d/b.txt"])
    res = await store.upsert_batch([stale_file, stale_child, unseen], generation=1)
    assert res.ok and res.data == 0
    assert (await _row(db, "/d/a.txt"))["deleted"] == 1
    assert await _tags(db, "/d/a.txt") == []
    assert await _row(db, "/d/sub/new.txt") is None
    assert await _row(db, "/d/b.txt") is None

    recreated = _entry("/d/a.txt")
    assert (await store.upsert_batch([recreated], generation=2)).data == 1
    assert (await _row(db, "/d/a.txt"))["deleted"] == 0

    store.forget_removals()
    assert (await store.upsert_batch([stale_child], generation=2)).data == 1


@pytest.mark.asyncio
async def test_failed_batch_leaves_nothing_behind(db, store, monkeypatch):
    calls = {"n": 0}
    original = db.aexecutemany

    async def _fail_on_tags(sql, rows):
        calls["n"] += 1
        if sql.startswith("INSERT INTO file_tags"):
            return Result.Err("DB_ERROR", "disk full")
        return await original(sql, rows)

    monkeypatch.setattr(db, "aexecutemany", _fail_on_tags)
    res = await store.upsert_batch([_entry("/d/x.txt", tags=[("T", None)])], generation=1)
    assert not res.ok
    assert res.code == "STORE_ERROR"
    assert calls["n"] >= 3
    monkeypatch.undo()
    assert await _row(db, "/d/x.txt") is None


@pytest.mark.asyncio
async def test_unreadable_dirs_are_flagged_and_listed(db, store):
    await store.upsert_batch(
        [_entry("/d/locked", is_dir=True)],
        generation=3,
        unreadable_dirs=["/d/locked"],
    )
    row = await _row(db, "/d/locked")
    assert row["unreadable"] == 1
    assert row["listed_generation"] == 3


@pytest.mark.asyncio
async def test_mark_deleted_covers_subtree_only(db, store):
    await store.upsert_batch(
        [
            _entry("/d/sub", is_dir=True),
            _entry("/d/sub/a.txt", tags=[("T", None)]),
            _entry("/d/sub/deep", is_dir=True),
            _entry("/d/sub/deep/b.txt"),
            _entry("/d/sub2.txt"),
        ],
        generation=1,
    )
    res = await store.mark_deleted(["/d/sub"])
    assert res.ok and res.data == 4
    assert (await _row(db, "/d/sub2.txt"))["deleted"] == 0
    assert await _tags(db, "/d/sub/a.txt") == []


def test_subtree_bounds_range():
    path, prefix, upper = subtree_bounds("/d/sub")
    assert (path, prefix) == ("/d/sub", "/d/sub/")
    assert prefix <= "/d/sub/zzz" < upper
    assert not (prefix <= "/d/sub2.txt" < upper)


@pytest.mark.asyncio
async def test_sweep_tombstones_only_absent_unvisited_records(db, store, tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    kept = root / "kept.txt"
    kept.write_text("x")
    await store.upsert_batch(
        [
            _entry(str(root), is_dir=True),
            _entry(str(kept)),
            _entry(str(root / "gone.txt")),
            _entry(str(root / "seen.txt")),
        ],
        generation=1,
    )
    await store.upsert_batch([_entry(str(root), is_dir=True), _entry(str(root / "seen.txt"))], generation=2)

    res = await store.sweep(str(root), 2)
    assert res.ok and res.data == 1
    assert (await _row(db, str(root / "gone.txt")))["deleted"] == 1
    assert (await _row(db, str(kept)))["deleted"] == 0
    assert (await _row(db, str(root / "seen.txt")))["deleted"] == 0


@pytest.mark.asyncio
async def test_generation_counter(store):
    assert await store.current_generation() == 0
    assert (await store.next_generation()).data == 1
    assert (await store.next_generation()).data == 2
    assert await store.current_generation() == 2


@pytest.mark.asyncio
async def test_has_directory(store):
    await store.upsert_batch([_entry("/d", is_dir=True, parent=None), _entry("/d/f.txt")], generation=1)
    assert await store.has_directory("/d")
    assert not await store.has_directory("/d/f.txt")
    await store.mark_deleted(["/d"])
    assert not await store.has_directory("/d")
