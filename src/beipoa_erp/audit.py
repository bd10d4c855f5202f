"""Audit trail collaborator.

Auditing is fire-and-forget: an audit sink that fails must never fail the
business operation that triggered it, so failures are logged and dropped.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Optional, Protocol

from . import log
from .constants import SheetName
from .data_manager import WorkbookStore


class AuditTrail(Protocol):
    def record(
        self,
        user: str,
        module: str,
        action: str,
        details: Any,
        before: Any = None,
        after: Any = None,
    ) -> None:
        ...


def _to_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, default=lambda obj: str(obj) if isinstance(obj, Decimal) else repr(obj), sort_keys=True)


class WorkbookAuditTrail:
    """Append audit records to the ``AuditLog`` sheet and save immediately."""

    def __init__(self, store: WorkbookStore) -> None:
        self.store = store

    def record(
        self,
        user: str,
        module: str,
        action: str,
        details: Any,
        before: Any = None,
        after: Any = None,
    ) -> None:
        try:
            self.store.append_rows(SheetName.AUDIT_LOG, [{
                "Timestamp": datetime.now(UTC).isoformat(),
                "User": user,
                "Module": module,
                "Action": action,
                "Details": _to_json(details),
                "Before": _to_json(before),
                "After": _to_json(after),
            }])
            self.store.flush()
        except Exception:
            log.exception("Audit record for %s/%s by '%s' could not be written", module, action, user)


class NullAuditTrail:
    """Discards audit records."""

    def record(
        self,
        user: str,
        module: str,
        action: str,
        details: Any,
        before: Any = None,
        after: Any = None,
    ) -> None:
        return None
