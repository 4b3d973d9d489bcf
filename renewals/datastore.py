"""Schema-aware Airtable datastore with deterministic in-memory fallback."""

from __future__ import annotations

import itertools
import os
import re
import time
import traceback
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests
from pyairtable import Api

from renewals import config
from renewals.runtime import get_logger, iso_now, retry
from renewals.schema import (
    LISTINGS_TABLE,
    RENEWAL_CONVERSATIONS_TABLE,
    RUNS_TABLE,
    SMS_MESSAGES_TABLE,
)

logger = get_logger(__name__)
DEBUG = os.getenv("DEBUG", "").lower() in {"1", "true", "yes"}

_FIELD_NORMALISER = re.compile(r"[^a-z0-9]+")
_EQ_PATTERN = re.compile(r"\{([^}]+)\}\s*=\s*'((?:[^'\\]|\\.)*)'")
_field_map_cache: Dict[str, Dict[str, str]] = {}


def _normalise(name: str | None) -> str:
    return _FIELD_NORMALISER.sub("", (name or "").lower())


def _escape(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace("'", "\\'")


def eq_formula(conditions: Dict[str, Any]) -> str:
    """Build an Airtable formula matching every ``{field}='value'`` pair."""
    parts = [f"{{{name}}}='{_escape(value)}'" for name, value in conditions.items()]
    if not parts:
        return ""
    if len(parts) == 1:
        return parts[0]
    return "AND(" + ", ".join(parts) + ")"


def _formula_match(record: Dict[str, Any], formula: Any) -> bool:
    matches = _EQ_PATTERN.findall(str(formula))
    if not matches:
        return False
    fields = record.get("fields", {})
    for field_name, expected in matches:
        expected = expected.replace("\\'", "'").replace("\\\\", "\\")
        value = fields.get(field_name)
        if value is None or str(value) != expected:
            return False
    return True


class InMemoryTable:
    """Minimal Airtable drop-in replacement used for local runs and tests."""

    def __init__(self, name: str):
        self.name = name
        self._records: Dict[str, Dict[str, Any]] = {}
        self._sequence = itertools.count(1)

    def create(self, fields: Dict[str, Any]):
        record_id = f"rec_{self.name.replace(' ', '').lower()}_{next(self._sequence)}"
        record = {"id": record_id, "createdTime": iso_now(), "fields": dict(fields)}
        self._records[record_id] = record
        return {"id": record_id, "createdTime": record["createdTime"], "fields": dict(record["fields"])}

    def update(self, record_id: str, fields: Dict[str, Any]):
        if record_id not in self._records:
            raise KeyError(f"Unknown record id {record_id} in {self.name}")
        self._records[record_id]["fields"].update(fields)
        record = self._records[record_id]
        return {"id": record_id, "createdTime": record["createdTime"], "fields": dict(record["fields"])}

    def get(self, record_id: str):
        record = self._records.get(record_id)
        if record is None:
            return None
        return {"id": record_id, "createdTime": record["createdTime"], "fields": dict(record["fields"])}

    def all(self, **kwargs):
        records = [self.get(rid) for rid in self._records]
        formula = kwargs.get("formula")
        max_records = kwargs.get("max_records")
        if formula:
            records = [rec for rec in records if _formula_match(rec, formula)]
        if max_records is not None:
            records = records[: int(max_records)]
        return records


@dataclass
class TableHandle:
    table: Any
    in_memory: bool
    base_id: Optional[str]
    table_name: str


def _first_non_empty(*names: str) -> Optional[str]:
    for name in names:
        v = os.getenv(name)
        if v:
            return v
    return None


# ============================================================
# CONNECTOR
# ============================================================


class DataConnector:
    """Lazy pyairtable connector with in-memory fallback."""

    def __init__(self) -> None:
        self._tables: Dict[Tuple[str, str], TableHandle] = {}
        self._api: Optional[Api] = None

    def _get_api(self, api_key: str) -> Api:
        if self._api is None or self._api.api_key != api_key:
            self._api = Api(api_key)
        return self._api

    def _table(self, base: Optional[str], table_name: str) -> TableHandle:
        key = (base or "memory", table_name)
        if key in self._tables:
            return self._tables[key]

        if os.getenv("SMS_FORCE_IN_MEMORY", "").lower() in {"1", "true", "yes"}:
            handle = TableHandle(InMemoryTable(table_name), True, base, table_name)
            self._tables[key] = handle
            return handle

        api_key = os.getenv("AIRTABLE_API_KEY")
        if base and api_key:
            try:
                table = self._get_api(api_key).table(base, table_name)
                handle = TableHandle(table, False, base, table_name)
                self._tables[key] = handle
                return handle
            except Exception:
                logger.warning("Falling back to in-memory table for %s", table_name, exc_info=True)

        handle = TableHandle(InMemoryTable(table_name), True, base, table_name)
        self._tables[key] = handle
        return handle

    def _base(self) -> Optional[str]:
        return _first_non_empty("LISTINGS_BASE", "AIRTABLE_LISTINGS_BASE_ID")

    def listings(self) -> TableHandle:
        return self._table(self._base(), LISTINGS_TABLE.name())

    def renewal_conversations(self) -> TableHandle:
        return self._table(self._base(), RENEWAL_CONVERSATIONS_TABLE.name())

    def sms_messages(self) -> TableHandle:
        return self._table(self._base(), SMS_MESSAGES_TABLE.name())

    def runs(self) -> TableHandle:
        return self._table(self._base(), RUNS_TABLE.name())


CONNECTOR = DataConnector()


# ============================================================
# LOW LEVEL HELPERS
# ============================================================


def _compact(payload: Dict[str, Any], *, keep_none: bool = False) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in (payload or {}).items():
        if v is None:
            if keep_none:
                out[k] = None
            continue
        if isinstance(v, (str, list, dict, tuple)) and len(v) == 0:
            continue
        out[k] = v
    return out


def _auto_field_map(handle: TableHandle) -> Dict[str, str]:
    cache_key = f"{handle.base_id or 'mem'}::{handle.table_name}"
    if cache_key in _field_map_cache:
        return _field_map_cache[cache_key]

    try:
        sample = handle.table.all(max_records=1)
    except Exception:
        sample = []
    record = sample[0] if sample else {}
    fields = record.get("fields", {}) if isinstance(record, dict) else {}
    mapping = {_normalise(name): name for name in fields.keys()}
    if mapping:
        _field_map_cache[cache_key] = mapping
    return mapping


def _remap_existing_only(handle: TableHandle, payload: Dict[str, Any]) -> Dict[str, Any]:
    mapping = _auto_field_map(handle)
    if not mapping:
        return dict(payload)
    return {mapping.get(_normalise(k), k): v for k, v in payload.items()}


def _log_airtable_exception(handle: TableHandle, exc: Exception, action: str) -> None:
    response = getattr(exc, "response", None)
    if response is not None:
        status = getattr(response, "status_code", "unknown")
        body = getattr(response, "text", None) or repr(response)
        logger.error("Airtable %s failed [%s] status=%s body=%s", action, handle.table_name, status, body)
    else:
        logger.error("Airtable %s failed [%s]: %s", action, handle.table_name, exc)
    if DEBUG:
        traceback.print_exc()


def _throttle(handle: TableHandle) -> None:
    if handle.in_memory:
        return
    delay = config.settings().AIRTABLE_THROTTLE_SEC
    if delay > 0:
        time.sleep(delay)


# ============================================================
# SAFE WRAPPERS
# ============================================================


def _safe_all(handle: TableHandle, **kwargs) -> List[Dict[str, Any]]:
    kwargs = {k: v for k, v in kwargs.items() if v not in (None, "")}
    if not handle.in_memory and "page_size" not in kwargs:
        kwargs["page_size"] = 100
    for attempt in range(3):
        try:
            return list(handle.table.all(**kwargs))
        except (requests.exceptions.ConnectionError, ConnectionResetError) as exc:
            logger.warning("Airtable connection reset [%s] retry %s: %s", handle.table_name, attempt + 1, exc)
            time.sleep((2**attempt) * 0.5)
            continue
        except Exception as exc:
            _log_airtable_exception(handle, exc, "all")
            if "429" in str(exc) and attempt < 2:
                time.sleep((2**attempt) * 0.5)
                continue
            break
        finally:
            _throttle(handle)
    return []


def _safe_get(handle: TableHandle, record_id: str):
    if not record_id:
        return None
    try:
        return handle.table.get(record_id)
    except Exception as exc:
        _log_airtable_exception(handle, exc, "get")
        return None


def _safe_create(handle: TableHandle, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    body = _compact(fields)
    if not body:
        return None
    payload = _remap_existing_only(handle, body)
    try:
        if handle.in_memory:
            return handle.table.create(payload)
        return retry(lambda: handle.table.create(payload), retries=3, base_delay=0.6, logger=logger)
    except Exception as exc:
        _log_airtable_exception(handle, exc, "create")
        return None


def _safe_update(handle: TableHandle, record_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Update a record; ``None`` values clear the column."""
    if not record_id:
        return None
    body = _compact(fields, keep_none=True)
    if not body:
        return None
    payload = _remap_existing_only(handle, body)
    try:
        if handle.in_memory:
            return handle.table.update(record_id, payload)
        return retry(lambda: handle.table.update(record_id, payload), retries=3, base_delay=0.6, logger=logger)
    except Exception as exc:
        _log_airtable_exception(handle, exc, "update")
        return None


# ============================================================
# PUBLIC HELPERS
# ============================================================


def reset_state():
    CONNECTOR._tables.clear()
    CONNECTOR._api = None
    _field_map_cache.clear()
    logger.info("🧹 Datastore state and caches cleared.")


def create_record(handle: TableHandle, fields: Dict[str, Any]):
    return _safe_create(handle, fields)


def update_record(handle: TableHandle, record_id: str, fields: Dict[str, Any]):
    return _safe_update(handle, record_id, fields)


def get_record(handle: TableHandle, record_id: str):
    return _safe_get(handle, record_id)


def list_records(handle: TableHandle, **kwargs):
    return _safe_all(handle, **kwargs)
