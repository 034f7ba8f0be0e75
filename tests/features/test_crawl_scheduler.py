import asyncio
import os

import pytest
import pytest_asyncio

from fms_backend.adapters.db.schema import init_schema
from fms_backend.adapters.db.sqlite import Sqlite
from fms_backend.features.index.fs_walker import FileSystemWalker
from fms_backend.features.index.scheduler import CrawlScheduler
from fms_backend.features.index.searcher import IndexSearcher
from fms_backend.features.index.store import IndexStore
from fms_shared import ErrorCode, Result


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Sqlite(str(tmp_path / "store" / "index.db"))
    assert (await asyncio.to_thread(init_schema, database)).ok
    yield database
    await database.aclose()


def _make(db, walker, store=None, **options):
    options.setdefault("commit_interval_ms", 20)
    options.setdefault("retry_base_seconds", 0.0)
    scheduler = CrawlScheduler(store or IndexStore(db), walker=walker, **options)
    return scheduler, IndexSearcher(db, scheduler.snapshot)


def _names(listing):
    return [entry.name for entry in listing.entries]


async def _snapshot_rows(db):
    files = await db.aquery(
        "SELECT path, parent, name, is_dir, size, mtime, ext, kind, unreadable, tag_fault, deleted, tags_text "
        "FROM files ORDER BY path"
    )
    tags = await db.aquery("SELECT path, tag, color, ordinal FROM file_tags ORDER BY path, ordinal")
    return files.data, tags.data


@pytest.mark.asyncio
async def test_docs_scenario(db, walker, docs_tree):
    scheduler, searcher = _make(db, walker)
    result = await scheduler.crawl(str(docs_tree))
    assert result.ok, result.error
    state = result.data
    assert state.completed and not state.running and not state.cancelled
    assert state.visited == 3
    assert state.errors == 0

    listing = (await searcher.list_children(str(docs_tree))).data
    assert _names(listing) == ["notes.txt", "report.pdf"]
    assert listing.partial is False

    tags = (await searcher.list_tags()).data
    assert [(t.name, t.color, t.count) for t in tags] == [("Important", "red", 1)]

    found = (await searcher.search("report")).data
    assert found.entries[0].name == "report.pdf"
    assert (await searcher.search("")).data.entries == []

    tagged = (await searcher.files_for_tag("Important")).data
    assert [r.name for r in tagged] == ["report.pdf"]
    assert len(tagged) == tags[0].count
    await scheduler.close()


@pytest.mark.asyncio
async def test_children_are_directories_first_case_insensitive(db, walker, tmp_path):
    root = tmp_path / "mixed"
    root.mkdir()
    for name in ("b_dir", "a_dir"):
        (root / name).mkdir()
    for name in ("c.txt", "A.txt", "B.txt"):
        (root / name).write_text(name)
    (root / "a_dir" / "inner.txt").write_text("x")

    scheduler, searcher = _make(db, walker)
    assert (await scheduler.crawl(str(root))).ok
    listing = (await searcher.list_children(str(root))).data
    assert _names(listing) == ["a_dir", "b_dir", "A.txt", "B.txt", "c.txt"]
    assert all(entry.parent == str(root) for entry in listing.entries)
    assert _names((await searcher.list_children(str(root / "a_dir"))).data) == ["inner.txt"]
    await scheduler.close()


@pytest.mark.asyncio
async def test_recrawl_of_unchanged_tree_only_moves_generations(db, walker, docs_tree):
    (docs_tree / "sub").mkdir()
    (docs_tree / "sub" / "deep.md").write_text("# deep")
    scheduler, _ = _make(db, walker)

    first = (await scheduler.crawl(str(docs_tree))).data
    before = await _snapshot_rows(db)
    second = (await scheduler.crawl(str(docs_tree))).data
    after = await _snapshot_rows(db)

    assert second.generation == first.generation + 1
    assert before == after
    generations = await db.aquery("SELECT DISTINCT generation FROM files")
    assert [row["generation"] for row in generations.data] == [second.generation]
    await scheduler.close()


@pytest.mark.asyncio
async def test_small_batches_commit_everything(db, walker, tmp_path):
    root = tmp_path / "many"
    root.mkdir()
    for i in range(25):
        (root / f"file{i:02d}.txt").write_text(str(i))
    scheduler, searcher = _make(db, walker, batch_size=3)
    state = (await scheduler.crawl(str(root))).data
    assert state.visited == 26
    assert len((await searcher.list_children(str(root))).data.entries) == 25
    await scheduler.close()


@pytest.mark.asyncio
async def test_cancel_leaves_unvisited_subtree_not_indexed(db, tmp_path):
    root = tmp_path / "tree"
    (root / "first" / "deeper").mkdir(parents=True)
    (root / "first" / "deeper" / "x.txt").write_text("x")
    (root / "other.txt").write_text("o")

    holder = {}

    def _cancel_on_first(path):
        if path.endswith(os.sep + "first"):
            holder["scheduler"].cancel()
        return None

    walker = FileSystemWalker(max_workers=2, tag_reader=_cancel_on_first)
    scheduler, searcher = _make(db, walker)
    holder["scheduler"] = scheduler

    state = (await scheduler.crawl(str(root))).data
    assert state.cancelled is True
    assert state.completed is False

    first = await searcher.list_children(str(root / "first"))
    assert not first.ok and first.code == ErrorCode.NOT_INDEXED_YET.value
    deeper = await searcher.list_children(str(root / "first" / "deeper"))
    assert deeper.code == ErrorCode.NOT_INDEXED_YET.value

    # Committed records stay consistent: every live row's parent is an indexed directory.
    orphans = await db.aquery(
        "SELECT f.path FROM files f LEFT JOIN files p ON p.path = f.parent "
        "WHERE f.deleted = 0 AND f.parent IS NOT NULL AND (p.path IS NULL OR p.is_dir = 0)"
    )
    assert orphans.data == []
    await scheduler.close()


@pytest.mark.asyncio
async def test_store_failures_retry_then_flag_degraded(db, walker, docs_tree):
    class _FailingStore(IndexStore):
        calls = 0

        async def upsert_batch(self, entries, **kwargs):
            type(self).calls += 1
            return Result.Err(ErrorCode.STORE_ERROR, "disk I/O error")

    scheduler, searcher = _make(db, walker, store=_FailingStore(db), retry_attempts=2)
    state = (await scheduler.crawl(str(docs_tree))).data
    assert state.degraded is True
    assert "disk I/O error" in state.last_store_error
    assert _FailingStore.calls % 3 == 0 and _FailingStore.calls >= 3

    results = (await searcher.search("report")).data
    assert results.degraded is True
    await scheduler.close()


@pytest.mark.asyncio
@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
async def test_symlink_cycle_is_skipped(db, walker, tmp_path):
    root = tmp_path / "cyclic"
    (root / "sub").mkdir(parents=True)
    (root / "sub" / "file.txt").write_text("x")
    os.symlink(str(root), str(root / "sub" / "back"))

    scheduler, searcher = _make(db, walker)
    state = (await scheduler.crawl(str(root))).data
    assert state.completed
    assert state.skipped_cycles == 1
    assert _names((await searcher.list_children(str(root / "sub"))).data) == ["file.txt"]
    await scheduler.close()


@pytest.mark.asyncio
async def test_unreadable_directory_is_flagged(db, tag_reader, tmp_path):
    root = tmp_path / "perm"
    (root / "locked").mkdir(parents=True)
    (root / "open.txt").write_text("x")

    class _DenyingWalker(FileSystemWalker):
        def submit_list(self, path):
            if path.endswith(os.sep + "locked"):
                fut = asyncio.get_running_loop().create_future()
                fut.set_result(Result.Err(ErrorCode.ACCESS_DENIED, f"Permission denied: {path}"))
                return fut
            return super().submit_list(path)

    walker = _DenyingWalker(max_workers=2, tag_reader=tag_reader)
    scheduler, searcher = _make(db, walker)
    state = (await scheduler.crawl(str(root))).data
    assert state.completed
    assert state.errors == 1

    locked = await searcher.list_children(str(root / "locked"))
    assert locked.ok
    assert locked.data.unreadable is True
    assert locked.data.entries == []
    await scheduler.close()
    walker.shutdown(wait=True)


@pytest.mark.asyncio
async def test_recrawl_tombstones_removed_files(db, walker, docs_tree):
    scheduler, searcher = _make(db, walker)
    await scheduler.crawl(str(docs_tree))
    os.remove(docs_tree / "notes.txt")
    state = (await scheduler.crawl(str(docs_tree))).data
    assert state.tombstoned == 1
    assert _names((await searcher.list_children(str(docs_tree))).data) == ["report.pdf"]
    assert (await searcher.search("notes")).data.entries == []
    await scheduler.close()


@pytest.mark.asyncio
async def test_max_depth_limits_listing(db, walker, tmp_path):
    root = tmp_path / "depth"
    (root / "a" / "b").mkdir(parents=True)
    (root / "a" / "b" / "c.txt").write_text("c")

    scheduler, searcher = _make(db, walker)
    state = (await scheduler.crawl(str(root), max_depth=0)).data
    assert state.completed
    assert _names((await searcher.list_children(str(root))).data) == ["a"]
    assert (await searcher.list_children(str(root / "a"))).code == ErrorCode.NOT_INDEXED_YET.value

    shallow = await scheduler.index_directory_shallow(str(root / "a"))
    assert shallow.ok
    assert _names((await searcher.list_children(str(root / "a"))).data) == ["b"]
    await scheduler.close()


@pytest.mark.asyncio
async def test_refresh_and_remove_paths(db, walker, docs_tree, tag_bytes):
    from fms_backend.features.metadata.tags import encode_tags

    scheduler, searcher = _make(db, walker)
    await scheduler.crawl(str(docs_tree))

    new_file = docs_tree / "plan.key"
    new_file.write_text("slides")
    tag_bytes[str(new_file)] = encode_tags([("Important", "red")])
    refreshed = await scheduler.refresh_paths([str(new_file)])
    assert refreshed.ok and refreshed.data == 1
    assert _names((await searcher.list_children(str(docs_tree))).data) == ["notes.txt", "plan.key", "report.pdf"]
    assert (await searcher.list_tags()).data[0].count == 2

    removed = await scheduler.remove_paths([str(docs_tree / "report.pdf")])
    assert removed.ok and removed.data == 1
    assert (await searcher.list_tags()).data[0].count == 1

    os.remove(new_file)
    await scheduler.refresh_paths([str(new_file)])
    assert _names((await searcher.list_children(str(docs_tree))).data) == ["notes.txt"]
    await scheduler.close()


@pytest.mark.asyncio
async def test_refresh_skips_paths_outside_indexed_directories(db, walker, docs_tree, tmp_path):
    scheduler, searcher = _make(db, walker)
    await scheduler.crawl(str(docs_tree))
    stray = tmp_path / "elsewhere"
    stray.mkdir()
    (stray / "x.txt").write_text("x")
    res = await scheduler.refresh_paths([str(stray / "x.txt")])
    assert res.ok and res.data == 0
    assert (await searcher.get_record(str(stray / "x.txt"))).data is None
    await scheduler.close()


@pytest.mark.asyncio
async def test_new_start_supersedes_running_crawl(db, walker, docs_tree, tmp_path):
    other = tmp_path / "other"
    other.mkdir()
    (other / "z.txt").write_text("z")

    scheduler, searcher = _make(db, walker)
    first = scheduler.start(str(docs_tree))
    second = scheduler.start(str(other))
    await asyncio.gather(first, second)

    state = scheduler.snapshot()
    assert state.root == str(other)
    assert state.completed
    assert _names((await searcher.list_children(str(other))).data) == ["z.txt"]
    await scheduler.close()


@pytest.mark.asyncio
async def test_subscribers_see_versioned_snapshots(db, walker, docs_tree):
    scheduler, _ = _make(db, walker)
    seen = []
    unsubscribe = scheduler.subscribe(seen.append)
    await scheduler.crawl(str(docs_tree))
    unsubscribe()

    versions = [s.version for s in seen]
    assert versions == sorted(versions)
    assert seen[0].running is True
    assert seen[-1].completed is True

    count = len(seen)
    await scheduler.crawl(str(docs_tree))
    assert len(seen) == count
    await scheduler.close()


@pytest.mark.asyncio
async def test_cancel_without_crawl_is_noop(db, walker):
    scheduler, _ = _make(db, walker)
    assert scheduler.cancel() is False
    assert scheduler.snapshot().idle
    await scheduler.close()


@pytest.mark.asyncio
async def test_crawl_of_a_file_is_invalid(db, walker, docs_tree):
    scheduler, _ = _make(db, walker)
    res = await scheduler.crawl(str(docs_tree / "notes.txt"))
    assert not res.ok
    assert res.code == ErrorCode.INVALID_INPUT.value
    await scheduler.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw",
    [
        b'<?xml version="1.0" encoding="UTFs8"?><plist><array/></plist>',
        b'<?xml version="1.0"?><plist><array><date>soon</date></array></plist>',
    ],
)
async def test_undecodable_tags_only_flag_the_file(db, walker, docs_tree, tag_bytes, raw):
    tag_bytes[str(docs_tree / "notes.txt")] = raw
    scheduler, searcher = _make(db, walker)
    result = await scheduler.crawl(str(docs_tree))
    assert result.ok, result.error
    assert result.data.completed and result.data.errors == 0

    assert _names((await searcher.list_children(str(docs_tree))).data) == ["notes.txt", "report.pdf"]
    notes = (await searcher.get_record(str(docs_tree / "notes.txt"))).data
    assert notes.tag_fault is True and notes.tags == ()
    await scheduler.close()


@pytest.mark.asyncio
async def test_worker_exception_counts_as_entry_error(db, docs_tree, tag_reader):
    def _reader(path):
        if path.endswith("notes.txt"):
            raise RuntimeError("reader crashed")
        return tag_reader(path)

    walker = FileSystemWalker(max_workers=2, tag_reader=_reader)
    scheduler, searcher = _make(db, walker)
    state = (await scheduler.crawl(str(docs_tree))).data
    assert state.completed and not state.running
    assert state.errors == 1

    listing = (await searcher.list_children(str(docs_tree))).data
    assert _names(listing) == ["report.pdf"]
    assert listing.partial is False
    await scheduler.close()


@pytest.mark.asyncio
async def test_delete_during_crawl_wins_over_pending_batch(db, walker, docs_tree):
    notes = docs_tree / "notes.txt"
    holder = {}

    class _DeleteBeforeCommit(IndexStore):
        async def upsert_batch(self, entries, **kwargs):
            if any(entry.path == str(notes) for entry in entries) and notes.exists():
                # The watcher reports the delete after the entry was read but before it commits.
                os.remove(notes)
                removed = await holder["scheduler"].remove_paths([str(notes)])
                assert removed.ok
            return await super().upsert_batch(entries, **kwargs)

    scheduler, searcher = _make(db, walker, store=_DeleteBeforeCommit(db))
    holder["scheduler"] = scheduler
    state = (await scheduler.crawl(str(docs_tree))).data
    assert state.completed

    assert _names((await searcher.list_children(str(docs_tree))).data) == ["report.pdf"]
    assert (await searcher.search("notes")).data.entries == []

    # A later re-creation is an observation after the delete and is indexed again.
    notes.write_text("back")
    assert (await scheduler.refresh_paths([str(notes)])).data == 1
    assert _names((await searcher.list_children(str(docs_tree))).data) == ["notes.txt", "report.pdf"]
    await scheduler.close()


@pytest.mark.asyncio
async def test_tag_counts_match_files_for_tag(db, walker, tmp_path, tag_bytes):
    from fms_backend.features.metadata.tags import encode_tags

    root = tmp_path / "tagged"
    (root / "sub").mkdir(parents=True)
    layout = {
        "a.txt": [("Work", "blue"), ("Urgent", "red")],
        "b.txt": [("Work", "blue")],
        "sub/c.txt": [("Urgent", "red"), ("Home", None), ("Work", "blue")],
        "sub/d.txt": [],
        "sub/e.txt": [("Home", None)],
    }
    for rel, tags in layout.items():
        path = root / rel
        path.write_text(rel)
        if tags:
            tag_bytes[str(path)] = encode_tags(tags)

    scheduler, searcher = _make(db, walker)
    await scheduler.crawl(str(root))
    await scheduler.remove_paths([str(root / "sub" / "e.txt")])

    summaries = (await searcher.list_tags()).data
    assert {t.name: t.count for t in summaries} == {"Work": 3, "Urgent": 2, "Home": 1}
    for summary in summaries:
        files = (await searcher.files_for_tag(summary.name)).data
        assert len(files) == summary.count
        assert all(summary.name in [tag.name for tag in record.tags] for record in files)
    await scheduler.close()
