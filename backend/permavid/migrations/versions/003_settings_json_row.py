"""Fold per-key settings rows into the single `user_settings` JSON row."""
import json

from sqlalchemy import text

LEGACY_KEYS = (
    "filemoon_api_key",
    "files_vc_api_key",
    "download_directory",
    "delete_after_upload",
    "auto_upload",
    "upload_target",
)


def upgrade(connection):
    rows = connection.execute(text("SELECT key, value FROM settings")).fetchall()
    values = {key: value for key, value in rows}
    legacy = {k: values[k] for k in LEGACY_KEYS if values.get(k) is not None}
    if not legacy:
        return

    merged = dict(legacy)
    blob = values.get("user_settings")
    if blob:
        try:
            current = json.loads(blob)
        except ValueError:
            current = {}
        if isinstance(current, dict):
            # The JSON row was written later than the per-key rows, so it wins
            merged.update({k: v for k, v in current.items() if v is not None})

    for key in LEGACY_KEYS:
        connection.execute(text("DELETE FROM settings WHERE key = :k"), {"k": key})
    connection.execute(text("DELETE FROM settings WHERE key = 'user_settings'"))
    connection.execute(
        text("INSERT INTO settings (key, value) VALUES ('user_settings', :v)"),
        {"v": json.dumps(merged)},
    )
