from __future__ import annotations

from bulkpick.data.backend import HttpPickingBackend, PickingBackend
from bulkpick.data.db import Db
from bulkpick.data.repository import AuditEntry, Repository

__all__ = [
    "AuditEntry",
    "Db",
    "HttpPickingBackend",
    "PickingBackend",
    "Repository",
]
