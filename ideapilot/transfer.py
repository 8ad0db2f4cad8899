"""Export/Import of a whole session: state blob plus its auxiliary tables.

Export shape::

    {"metadata": {"exportedAt", "sessionId", "state"},
     "tables": {name: {"schema": [...], "rows": [...], "description": str,
                       "error"?: str}}}

Only the tables in :data:`TABLES` are known.  Rows are written back one at a
time through the ORM with an explicit column list per table, always under
the importing session's id; anything else in a snapshot is skipped with a
warning.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError

from ideapilot.db import session_scope
from ideapilot.models import Base, MessageRow, ScheduledTask, SessionStateRow, UserInfo
from ideapilot.schemas import Credential, ImportOptions, ImportResult
from ideapilot.state import SessionStore, ensure_state_schema
from ideapilot.utils import json_parse

log = logging.getLogger(__name__)


class ImportValidationError(ValueError):
    """Snapshot is malformed; nothing was written."""


@dataclass(frozen=True)
class TableSpec:
    model: type[Base]
    columns: tuple[str, ...]
    description: str
    session_column: str | None  # column rebound to the importing session


TABLES: dict[str, TableSpec] = {
    "session_state": TableSpec(
        SessionStateRow,
        ("id", "state", "created_at", "updated_at"),
        "Session state blob (mode, settings, ideas, progress)",
        "id",
    ),
    "messages": TableSpec(
        MessageRow,
        ("id", "session_id", "message", "created_at"),
        "Conversation history, one JSON-encoded message per row",
        "session_id",
    ),
    "scheduled_tasks": TableSpec(
        ScheduledTask,
        ("id", "session_id", "description", "cron", "callback", "data", "next_run_time", "created_at"),
        "Tasks scheduled by the assistant",
        "session_id",
    ),
    "user_info": TableSpec(
        UserInfo,
        ("user_id", "api_key", "email", "credits", "payment_method", "created_at", "updated_at"),
        "Cached credential and profile of the session owner",
        None,
    ),
}

_OPTION_SKIPS = {
    "messages": ("include_messages", "Skipped importing message history (includeMessages=false)"),
    "scheduled_tasks": (
        "include_scheduled_tasks",
        "Skipped importing scheduled tasks (includeScheduledTasks=false)",
    ),
}


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def table_schema(spec: TableSpec) -> list[dict[str, Any]]:
    out = []
    for cid, name in enumerate(spec.columns):
        col = spec.model.__table__.columns[name]
        default = col.default.arg if col.default is not None and not callable(col.default.arg) else None
        out.append({
            "cid": cid,
            "name": name,
            "type": str(col.type),
            "notnull": not col.nullable,
            "pk": bool(col.primary_key),
            "dflt_value": None if default is None else str(default),
        })
    return out


def _export_rows(store: SessionStore, name: str, spec: TableSpec, owner_id: str | None) -> list[dict[str, Any]]:
    stmt = select(spec.model)
    if spec.session_column is not None:
        stmt = stmt.where(getattr(spec.model, spec.session_column) == store.session_id)
    elif owner_id is None:
        return []
    else:
        stmt = stmt.where(UserInfo.user_id == owner_id)
    if name == "messages":
        stmt = stmt.order_by(text("rowid"))
    elif name == "scheduled_tasks":
        stmt = stmt.order_by(ScheduledTask.created_at)
    with session_scope(store.factory) as session:
        rows = session.execute(stmt).scalars().all()
        return [{c: getattr(row, c) for c in spec.columns} for row in rows]


def export_session(store: SessionStore) -> dict[str, Any]:
    """Snapshot the session; a failing table records ``error`` instead of aborting."""
    state = store.load()
    owner_id = state.credential.profile.id if state.credential else None
    result: dict[str, Any] = {
        "metadata": {
            "exportedAt": store.clock(),
            "sessionId": store.session_id,
            "state": state.model_dump(mode="json"),
        },
        "tables": {},
    }
    for name, spec in TABLES.items():
        entry: dict[str, Any] = {"description": spec.description}
        try:
            entry["schema"] = table_schema(spec)
            entry["rows"] = _export_rows(store, name, spec, owner_id)
        except Exception as exc:
            log.warning("Export of table %s failed: %s", name, exc)
            entry["error"] = str(exc)
            entry.setdefault("rows", [])
        result["tables"][name] = entry
    log.info("Exported session %s (%d tables)", store.session_id, len(result["tables"]))
    return result


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


def _sql_value(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return json.dumps(value)


def validate_snapshot(data: Any) -> tuple[dict[str, Any], dict[str, Any]]:
    if not isinstance(data, dict):
        raise ImportValidationError("Invalid backup: expected a JSON object")
    metadata, tables = data.get("metadata"), data.get("tables")
    if not isinstance(metadata, dict) or not isinstance(tables, dict):
        raise ImportValidationError("Invalid backup file structure. Missing metadata or tables.")
    return metadata, tables


def _own_state_blob(store: SessionStore, raw: Any, credential: Credential | None) -> str:
    """Normalize a ``session_state.state`` value and pin it to the current owner."""
    try:
        state = ensure_state_schema(json_parse(raw) if isinstance(raw, str) else raw, store.clock)
    except ValidationError as exc:
        raise ImportValidationError(f"invalid session state: {exc.error_count()} error(s)") from exc
    return state.model_copy(update={"credential": credential}).model_dump_json()


def _import_row(
    store: SessionStore,
    spec: TableSpec,
    row: dict[str, Any],
    credential: Credential | None,
) -> None:
    values = {c: _sql_value(row[c]) for c in spec.columns if c in row}
    if spec.session_column is not None:
        values[spec.session_column] = store.session_id
    elif values.get("user_id") != (credential.profile.id if credential else None):
        raise ImportValidationError("credential row does not belong to the session owner")
    if spec.model is SessionStateRow:
        values["state"] = _own_state_blob(store, values.get("state"), credential)
    pk = [c.name for c in spec.model.__table__.primary_key.columns]
    missing = [c for c in pk if values.get(c) in (None, "")]
    if missing:
        raise ImportValidationError(f"row is missing primary key column(s) {missing}")
    with session_scope(store.factory) as session:
        session.merge(spec.model(**values))
        session.commit()


def import_session(store: SessionStore, data: Any, options: ImportOptions | None = None) -> ImportResult:
    """Restore a snapshot into *store*'s session.

    Shape and state are validated before anything is written.  Every row is
    written under *store*'s session id, and the session keeps its current
    credential: the snapshot's credential and other users' cached credentials
    are never imported.  Per-table and per-row problems become warnings;
    per-row upserts commit individually.
    """
    options = options or ImportOptions()
    metadata, tables = validate_snapshot(data)

    state = None
    if metadata.get("state") is not None:
        try:
            state = ensure_state_schema(metadata["state"], store.clock)
        except ValidationError as exc:
            raise ImportValidationError(f"Invalid session state in backup: {exc}") from exc

    credential = store.load().credential
    source_id = metadata.get("sessionId") if isinstance(metadata.get("sessionId"), str) else None
    result = ImportResult(session_id=store.session_id, source_session_id=source_id)
    if state is not None:
        state = state.model_copy(update={"credential": credential})
        if options.preserve_session_id:
            state = state.model_copy(update={"imported_from": source_id})
        store.commit(state)
        result.updated_state = True

    for name, table in tables.items():
        if name in _OPTION_SKIPS:
            flag, warning = _OPTION_SKIPS[name]
            if not getattr(options, flag):
                result.warnings.append(warning)
                continue
        spec = TABLES.get(name)
        if spec is None:
            result.warnings.append(f"Unknown table {name}: skipped")
            continue
        if not isinstance(table, dict):
            result.warnings.append(f"Skipped importing {name}: No valid rows data")
            continue
        if table.get("error"):
            result.warnings.append(f"Skipped importing {name}: Table had export errors")
            continue
        rows = table.get("rows")
        if not isinstance(rows, list):
            result.warnings.append(f"Skipped importing {name}: No valid rows data")
            continue

        count = 0
        for i, row in enumerate(rows):
            if not isinstance(row, dict):
                result.warnings.append(f"Skipped row {i} of {name}: not an object")
                continue
            try:
                _import_row(store, spec, row, credential)
            except ImportValidationError as exc:
                result.warnings.append(f"Skipped row {i} of {name}: {exc}")
                continue
            except SQLAlchemyError as exc:
                result.warnings.append(f"Skipped row {i} of {name}: {getattr(exc, 'orig', None) or exc}")
                continue
            count += 1
        result.tables_imported.append(name)
        result.rows_per_table[name] = count
        result.records_imported += count

    # The state row may have been overwritten by the session_state table; the
    # normalized metadata state stays authoritative.
    final = state if state is not None else store.load()
    store.commit(final.model_copy(update={"credential": credential}))
    for warning in result.warnings:
        log.warning("Import into %s: %s", store.session_id, warning)
    log.info(
        "Imported %d records into %s (%s)",
        result.records_imported, store.session_id, ", ".join(result.tables_imported) or "no tables",
    )
    return result
