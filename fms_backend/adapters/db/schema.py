"""
Database schema for the per-process index store.

The store is created empty on every start, so there is one schema version and no
migration path; the DDL digest in `metadata` identifies which schema built it.
"""
import hashlib

from fms_shared import Result, get_logger, log_success

logger = get_logger(__name__)

CURRENT_SCHEMA_VERSION = 1

SCHEMA_V1 = """
-- Metadata table for schema versioning and the crawl generation counter
CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- One row per filesystem entry (file or directory)
CREATE TABLE IF NOT EXISTS files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL UNIQUE,
    parent TEXT,  -- NULL for a crawl root whose parent is not indexed
    name TEXT NOT NULL,
    is_dir INTEGER NOT NULL DEFAULT 0,
    size INTEGER NOT NULL DEFAULT 0,  -- bytes
    mtime INTEGER NOT NULL DEFAULT 0,  -- unix timestamp (seconds)
    ext TEXT NOT NULL DEFAULT '',
    kind TEXT NOT NULL DEFAULT 'other',
    generation INTEGER NOT NULL DEFAULT 0,  -- crawl pass that last touched this row
    listed_generation INTEGER NOT NULL DEFAULT 0,  -- directories: pass that committed every child
    unreadable INTEGER NOT NULL DEFAULT 0,  -- directory could not be listed
    tag_fault INTEGER NOT NULL DEFAULT 0,  -- tag bytes present but undecodable
    deleted INTEGER NOT NULL DEFAULT 0,  -- tombstone
    tags_text TEXT NOT NULL DEFAULT ''  -- newline-joined tag names, feeds files_fts
);

-- Ordered tag annotations per file
CREATE TABLE IF NOT EXISTS file_tags (
    path TEXT NOT NULL,
    tag TEXT NOT NULL,
    color TEXT,
    ordinal INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (path, tag),
    FOREIGN KEY (path) REFERENCES files(path) ON DELETE CASCADE
);
"""

INDEXES_AND_TRIGGERS = """
-- Full-text search (FTS5, trigram tokenizer: case-insensitive substring matching)
CREATE VIRTUAL TABLE IF NOT EXISTS files_fts USING fts5(
    name,
    path,
    tags_text,
    content='files',
    content_rowid='id',
    tokenize='trigram'
);

CREATE INDEX IF NOT EXISTS idx_files_parent ON files(parent, deleted);
CREATE INDEX IF NOT EXISTS idx_files_name ON files(name);
CREATE INDEX IF NOT EXISTS idx_files_generation ON files(generation);
CREATE INDEX IF NOT EXISTS idx_file_tags_tag ON file_tags(tag);

CREATE TRIGGER IF NOT EXISTS files_fts_insert AFTER INSERT ON files BEGIN
    INSERT INTO files_fts(rowid, name, path, tags_text)
    VALUES (new.id, new.name, new.path, new.tags_text);
END;

CREATE TRIGGER IF NOT EXISTS files_fts_delete AFTER DELETE ON files BEGIN
    INSERT INTO files_fts(files_fts, rowid, name, path, tags_text)
    VALUES ('delete', old.id, old.name, old.path, old.tags_text);
END;

CREATE TRIGGER IF NOT EXISTS files_fts_update AFTER UPDATE OF name, path, tags_text ON files BEGIN
    INSERT INTO files_fts(files_fts, rowid, name, path, tags_text)
    VALUES ('delete', old.id, old.name, old.path, old.tags_text);
    INSERT INTO files_fts(rowid, name, path, tags_text)
    VALUES (new.id, new.name, new.path, new.tags_text);
END;
"""


def _ddl_digest() -> str:
    text = SCHEMA_V1 + INDEXES_AND_TRIGGERS
    compact = "\n".join(filter(None, (line.strip() for line in text.splitlines())))
    return hashlib.sha256(compact.encode("utf-8")).hexdigest()


def init_schema(db) -> Result[bool]:
    """
    Create tables, indexes and FTS triggers on a fresh store and record its version.

    A failure on the index script usually means SQLite lacks FTS5 trigram support.
    """
    steps = (
        ("tables", lambda: db.executescript(SCHEMA_V1)),
        ("indexes", lambda: db.executescript(INDEXES_AND_TRIGGERS)),
        ("version", lambda: db.set_schema_version(CURRENT_SCHEMA_VERSION)),
    )
    for label, step in steps:
        outcome = step()
        if not outcome.ok:
            logger.error("Schema step '%s' failed: %s", label, outcome.error)
            return outcome

    digest = db.execute(
        "INSERT OR REPLACE INTO metadata (key, value) VALUES ('schema_ddl_hash', ?)",
        (_ddl_digest(),),
    )
    if not digest.ok:
        logger.warning("Could not record schema digest: %s", digest.error)

    log_success(logger, f"Schema ready (version {CURRENT_SCHEMA_VERSION})")
    return Result.Ok(True)
