"""Add columns missing from queue tables created by older releases."""
from sqlalchemy import inspect, text


# column name -> DDL type
LEGACY_COLUMNS = {
    "message": "TEXT",
    "title": "VARCHAR",
    "thumbnail_url": "TEXT",
    "local_path": "TEXT",
    "filemoon_url": "VARCHAR",
    "files_vc_url": "TEXT",
    "encoding_progress": "INTEGER",
}


def upgrade(connection):
    inspector = inspect(connection)
    if not inspector.has_table("queue"):
        return
    existing = {col["name"] for col in inspector.get_columns("queue")}
    for name, ddl_type in LEGACY_COLUMNS.items():
        if name not in existing:
            connection.execute(text(f"ALTER TABLE queue ADD COLUMN {name} {ddl_type}"))
