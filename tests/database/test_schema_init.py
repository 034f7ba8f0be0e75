from fms_backend.adapters.db import schema
from fms_backend.adapters.db.sqlite import Sqlite


def _db(tmp_path):
    db = Sqlite(str(tmp_path / "schema.db"))
    assert schema.init_schema(db).ok
    return db


def test_init_schema_creates_tables_and_version(tmp_path):
    db = _db(tmp_path)
    try:
        for table in ("metadata", "files", "file_tags", "files_fts"):
            assert db.has_table(table), table
        assert db.get_schema_version() == schema.CURRENT_SCHEMA_VERSION
        columns = {row["name"] for row in db.query("PRAGMA table_info('files')").data}
        assert {"listed_generation", "tag_fault", "unreadable", "deleted", "tags_text"} <= columns
        digest = db.query("SELECT value FROM metadata WHERE key = 'schema_ddl_hash'").data
        assert len(digest[0]["value"]) == 64
    finally:
        db.close()


def test_init_schema_is_idempotent(tmp_path):
    db = _db(tmp_path)
    try:
        assert schema.init_schema(db).ok
        assert db.get_schema_version() == schema.CURRENT_SCHEMA_VERSION
    finally:
        db.close()


def test_fts_triggers_track_updates_and_deletes(tmp_path):
    db = _db(tmp_path)
    try:
        assert db.execute(
            "INSERT INTO files(path, parent, name, tags_text) VALUES ('/d/Quarterly.pdf', '/d', 'Quarterly.pdf', 'Finance')"
        ).ok
        hits = db.query("SELECT rowid FROM files_fts WHERE files_fts MATCH '\"arter\"'")
        assert hits.ok and len(hits.data) == 1

        assert db.execute("UPDATE files SET tags_text = 'Archive' WHERE path = '/d/Quarterly.pdf'").ok
        assert db.query("SELECT rowid FROM files_fts WHERE files_fts MATCH '\"finance\"'").data == []
        assert len(db.query("SELECT rowid FROM files_fts WHERE files_fts MATCH '\"ARCHIVE\"'").data) == 1

        assert db.execute("DELETE FROM files WHERE path = '/d/Quarterly.pdf'").ok
        assert db.query("SELECT rowid FROM files_fts WHERE files_fts MATCH '\"arter\"'").data == []
    finally:
        db.close()
