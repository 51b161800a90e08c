"""
Persistence for the two collections the app keeps: analysis history and
access codes.

Exactly one backend is used per process. ``build_gateway`` picks Supabase when
it is configured and the on-disk JSON store otherwise; the rest of the app
only talks to the ``PersistenceGateway`` interface.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, List, Optional

from supabase import Client, create_client

from models import (
    HISTORY_LIMIT,
    AccessCode,
    AnalysisResult,
    PersistenceError,
    prepend_capped,
)

logger = logging.getLogger(__name__)

HISTORY_KEY = "vertex_history"
CODES_KEY = "vertex_access_codes"

HISTORY_TABLE = "history"
CODES_TABLE = "access_codes"
# PostgREST refuses an unfiltered delete, so "delete all" filters on an id no row has.
NIL_UUID = "00000000-0000-0000-0000-000000000000"

SCHEMA_SQL = "\n".join(
    [
        "create table if not exists public.history (",
        "  id uuid primary key default gen_random_uuid(),",
        "  data jsonb not null,",
        "  timestamp timestamptz not null default now()",
        ");",
        "",
        "create table if not exists public.access_codes (",
        "  code text not null,",
        "  duration double precision not null,",
        "  created_at bigint not null,",
        "  expiry bigint not null",
        ");",
        "",
        "create index if not exists history_timestamp_idx on public.history (timestamp desc);",
        "create index if not exists access_codes_created_at_idx on public.access_codes (created_at desc);",
    ]
)


# ── Local fallback store ──────────────────────────────────────────────────────

class LocalStore:
    """String key/value store backed by one file per key in a data directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        safe_key = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return self.root / f"{safe_key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(value, encoding="utf-8")
        tmp.replace(path)

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def read_list(self, key: str) -> List[Any]:
        raw = self.get(key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("Stored value under %r is not valid JSON; ignoring it", key)
            return []
        if not isinstance(data, list):
            logger.error("Stored value under %r is not a list; ignoring it", key)
            return []
        return data

    def write_list(self, key: str, items: List[Any]) -> None:
        self.set(key, json.dumps(items))


# ── Gateway interface ─────────────────────────────────────────────────────────

class PersistenceGateway(ABC):
    name = "base"

    @abstractmethod
    def load_history(self) -> List[AnalysisResult]:
        ...

    @abstractmethod
    def insert_history(self, entry: AnalysisResult) -> None:
        ...

    @abstractmethod
    def clear_history(self) -> None:
        ...

    @abstractmethod
    def load_codes(self) -> List[AccessCode]:
        ...

    @abstractmethod
    def insert_code(self, code: AccessCode) -> None:
        ...

    @abstractmethod
    def delete_code(self, code_value: str) -> None:
        ...


class LocalGateway(PersistenceGateway):
    name = "local"

    def __init__(self, store: LocalStore):
        self.store = store

    def _read_history(self) -> List[AnalysisResult]:
        items = []
        for raw in self.store.read_list(HISTORY_KEY):
            if isinstance(raw, dict):
                items.append(AnalysisResult.from_dict(raw))
        return items

    def _read_codes(self) -> List[AccessCode]:
        codes = []
        for raw in self.store.read_list(CODES_KEY):
            if isinstance(raw, dict) and raw.get("code"):
                codes.append(AccessCode.from_dict(raw))
        return codes

    def _write_codes(self, codes: List[AccessCode]) -> None:
        self.store.write_list(CODES_KEY, [c.to_dict() for c in codes])

    def load_history(self) -> List[AnalysisResult]:
        try:
            return self._read_history()[:HISTORY_LIMIT]
        except OSError as e:
            logger.exception("Could not read history from %s", self.store.root)
            raise PersistenceError(str(e)) from e

    def insert_history(self, entry: AnalysisResult) -> None:
        try:
            updated = prepend_capped(self._read_history(), entry, HISTORY_LIMIT)
            self.store.write_list(HISTORY_KEY, [h.to_dict() for h in updated])
        except OSError as e:
            logger.exception("Could not write history to %s", self.store.root)
            raise PersistenceError(str(e)) from e

    def clear_history(self) -> None:
        try:
            self.store.remove(HISTORY_KEY)
        except OSError as e:
            logger.exception("Could not remove history from %s", self.store.root)
            raise PersistenceError(str(e)) from e

    def load_codes(self) -> List[AccessCode]:
        try:
            return self._read_codes()
        except OSError as e:
            logger.exception("Could not read access codes from %s", self.store.root)
            raise PersistenceError(str(e)) from e

    def insert_code(self, code: AccessCode) -> None:
        try:
            self._write_codes([code, *self._read_codes()])
        except OSError as e:
            logger.exception("Could not write access codes to %s", self.store.root)
            raise PersistenceError(str(e)) from e

    def delete_code(self, code_value: str) -> None:
        try:
            self._write_codes([c for c in self._read_codes() if c.code != code_value])
        except OSError as e:
            logger.exception("Could not write access codes to %s", self.store.root)
            raise PersistenceError(str(e)) from e


# ── Supabase ──────────────────────────────────────────────────────────────────

class RemoteGateway(PersistenceGateway):
    name = "supabase"

    def __init__(self, client):
        self.client = client

    def _run(self, action: str, query):
        try:
            return query.execute()
        except Exception as e:
            logger.exception("Supabase %s failed", action)
            raise PersistenceError(f"{type(e).__name__}: {e}") from e

    def load_history(self) -> List[AnalysisResult]:
        res = self._run(
            "history select",
            self.client.table(HISTORY_TABLE)
            .select("*")
            .order("timestamp", desc=True)
            .limit(HISTORY_LIMIT),
        )
        items = []
        for row in res.data or []:
            data = row.get("data")
            if isinstance(data, str):
                try:
                    data = json.loads(data)
                except json.JSONDecodeError:
                    logger.error("Skipping history row %s with unreadable data", row.get("id"))
                    continue
            if isinstance(data, dict):
                items.append(AnalysisResult.from_dict(data))
        return items

    def insert_history(self, entry: AnalysisResult) -> None:
        self._run(
            "history insert",
            self.client.table(HISTORY_TABLE).insert([{"data": entry.to_dict(), "timestamp": entry.timestamp}]),
        )

    def clear_history(self) -> None:
        self._run("history delete", self.client.table(HISTORY_TABLE).delete().neq("id", NIL_UUID))

    def load_codes(self) -> List[AccessCode]:
        res = self._run(
            "access_codes select",
            self.client.table(CODES_TABLE).select("*").order("created_at", desc=True),
        )
        return [AccessCode.from_row(r) for r in (res.data or []) if r.get("code")]

    def insert_code(self, code: AccessCode) -> None:
        self._run("access_codes insert", self.client.table(CODES_TABLE).insert([code.to_row()]))

    def delete_code(self, code_value: str) -> None:
        self._run("access_codes delete", self.client.table(CODES_TABLE).delete().eq("code", code_value))


def create_supabase_client(url: str, key: str) -> Client:
    return create_client(url, key)


def build_gateway(settings, client_factory=create_supabase_client) -> PersistenceGateway:
    if settings.remote_configured:
        logger.info("Using Supabase persistence at %s", settings.supabase_url)
        return RemoteGateway(client_factory(settings.supabase_url, settings.supabase_key))
    logger.info("Supabase not configured; using local store in %s", settings.data_dir)
    return LocalGateway(LocalStore(settings.data_dir))
