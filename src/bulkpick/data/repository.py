from __future__ import annotations

import logging
from dataclasses import dataclass

from bulkpick.data.db import Db

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    id: int
    timestamp: str
    category: str
    message: str
    details: str | None


class Repository:
    def __init__(self, db: Db):
        self.db = db

    def log_audit(self, category: str, message: str, details: str | None = None) -> None:
        """Record a picking event in the audit log."""
        try:
            with self.db.connect() as con:
                con.execute(
                    "INSERT INTO audit_log (category, message, details) VALUES (?, ?, ?)",
                    (category, message, details),
                )
        except Exception:
            # An audit failure must not block the operator.
            logger.exception("Failed to write audit log")

    def get_recent_audit_entries(self, limit: int = 100, *, category: str | None = None) -> list[AuditEntry]:
        with self.db.connect() as con:
            if category is None:
                rows = con.execute("SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            else:
                rows = con.execute(
                    "SELECT * FROM audit_log WHERE category = ? ORDER BY id DESC LIMIT ?",
                    (category, limit),
                ).fetchall()
        return [
            AuditEntry(
                id=row["id"],
                timestamp=row["timestamp"],
                category=row["category"],
                message=row["message"],
                details=row["details"],
            )
            for row in rows
        ]

    def get_config(self, *, key: str, default: str | None = None) -> str | None:
        key = str(key).strip()
        if not key:
            raise ValueError("config key is empty")
        with self.db.connect() as con:
            row = con.execute("SELECT config_value FROM app_config WHERE config_key = ?", (key,)).fetchone()
        if row is None:
            return default
        return str(row[0])

    def set_config(self, *, key: str, value: str) -> None:
        key = str(key).strip()
        if not key:
            raise ValueError("config key is empty")

        old_val = self.get_config(key=key, default="(none)")
        with self.db.connect() as con:
            con.execute(
                """
                INSERT INTO app_config (config_key, config_value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(config_key) DO UPDATE SET
                    config_value = excluded.config_value,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, str(value)),
            )
        self.log_audit("CONFIG", f"Updated '{key}'", f"From '{old_val}' to '{value}'")
