import sys
from pathlib import Path

import pytest
import pytest_asyncio

REPO_ROOT = Path(__file__).resolve().parents[1]

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture
def tag_bytes():
    """path -> raw tag attribute bytes served by the fake tag reader."""
    return {}


@pytest.fixture
def tag_reader(tag_bytes):
    from fms_backend.utils import normalize_path

    def _read(path):
        return tag_bytes.get(normalize_path(path))

    return _read


@pytest.fixture
def walker(tag_reader):
    from fms_backend.features.index.fs_walker import FileSystemWalker

    w = FileSystemWalker(max_workers=2, tag_reader=tag_reader)
    yield w
    w.shutdown(wait=True)


@pytest.fixture
def docs_tree(tmp_path, tag_bytes):
    """<tmp>/docs with report.pdf tagged {Important, red} and an untagged notes.txt."""
    from fms_backend.features.metadata.tags import encode_tags

    docs = tmp_path / "docs"
    docs.mkdir()
    (docs / "report.pdf").write_bytes(b"%PDF-1.4")
    (docs / "notes.txt").write_text("hello", encoding="utf-8")
    tag_bytes[str(docs / "report.pdf")] = encode_tags([("Important", "red")])
    return docs


@pytest_asyncio.fixture
async def services(tmp_path, walker):
    from fms_backend.deps import build_services, dispose_services

    db_path = str(tmp_path / "store" / "index.db")
    svc_res = await build_services(db_path, walker=walker, commit_interval_ms=20, retry_base_seconds=0.0)
    assert svc_res.ok, svc_res.error
    svc = svc_res.data
    try:
        yield svc
    finally:
        await dispose_services(svc)
