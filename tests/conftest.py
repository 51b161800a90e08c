import uuid

import pytest

from access import AccessControl, AuthStatus, SessionMarker
from models import AnalysisResult, PersistenceError, TechnicalAnalysis, TradingSignal
from storage import LocalGateway, LocalStore, RemoteGateway


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.op = None
        self.payload = []
        self.filters = []
        self.order_by = None
        self.limit_n = None

    def select(self, columns="*"):
        self.op = "select"
        return self

    def insert(self, rows):
        self.op = "insert"
        self.payload = rows if isinstance(rows, list) else [rows]
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda r: r.get(column) == value)
        return self

    def neq(self, column, value):
        self.filters.append(lambda r: r.get(column) != value)
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def limit(self, n):
        self.limit_n = n
        return self

    def _matches(self, row):
        return all(f(row) for f in self.filters)

    def execute(self):
        self.db.calls.append((self.table, self.op))
        if self.db.fail_on and (self.table, self.op) in self.db.fail_on:
            raise RuntimeError(f"{self.table} {self.op} unavailable")
        rows = self.db.tables.setdefault(self.table, [])
        if self.op == "insert":
            inserted = []
            for row in self.payload:
                row = dict(row)
                if self.table == "history":
                    row.setdefault("id", str(uuid.uuid4()))
                rows.append(row)
                inserted.append(row)
            return FakeResponse(inserted)
        if self.op == "delete":
            removed = [r for r in rows if self._matches(r)]
            self.db.tables[self.table] = [r for r in rows if not self._matches(r)]
            return FakeResponse(removed)
        result = [dict(r) for r in rows if self._matches(r)]
        if self.order_by:
            column, desc = self.order_by
            result.sort(key=lambda r: r.get(column), reverse=desc)
        if self.limit_n is not None:
            result = result[: self.limit_n]
        return FakeResponse(result)


class FakeSupabase:
    """Just enough of the supabase-py query builder for the gateway."""

    def __init__(self):
        self.tables = {"history": [], "access_codes": []}
        self.calls = []
        self.fail_on = set()

    def table(self, name):
        return FakeQuery(self, name)


def make_result(pair="EURUSD", action="BUY", confidence=72, timestamp="2026-01-01T00:00:00Z"):
    return AnalysisResult(
        signal=TradingSignal(
            pair=pair,
            action=action,
            entry="1.0850",
            tp="1.0920",
            sl="1.0810",
            confidence=confidence,
            reasoning="Liquidity sweep below Asia low followed by MSS.",
        ),
        technical=TechnicalAnalysis(snr="1.0800 support", ict="Bullish OB", std="Low volatility", alchemist="Fresh MSNR"),
        fundamental="**CPI** due Wednesday.",
        timestamp=timestamp,
    )


class FlakyGateway(LocalGateway):
    """Local gateway whose writes can be switched off."""

    def __init__(self, store):
        super().__init__(store)
        self.fail_writes = False

    def _check(self):
        if self.fail_writes:
            raise PersistenceError("write refused")

    def insert_history(self, entry):
        self._check()
        super().insert_history(entry)

    def clear_history(self):
        self._check()
        super().clear_history()

    def insert_code(self, code):
        self._check()
        super().insert_code(code)

    def delete_code(self, code_value):
        self._check()
        super().delete_code(code_value)


@pytest.fixture
def local_store(tmp_path):
    return LocalStore(tmp_path / "data")


@pytest.fixture
def local_gateway(local_store):
    return LocalGateway(local_store)


@pytest.fixture
def flaky_gateway(local_store):
    return FlakyGateway(local_store)


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def remote_gateway(fake_supabase):
    return RemoteGateway(fake_supabase)


@pytest.fixture
def marker_storage():
    return {}


@pytest.fixture
def clock():
    class Clock:
        now = 1_760_000_000_000

        def __call__(self):
            return self.now

    return Clock()


@pytest.fixture
def admin(flaky_gateway, marker_storage, clock):
    control = AccessControl(flaky_gateway, SessionMarker(marker_storage), "MASTER-key", clock=clock)
    control.admin_login("MASTER-key")
    assert control.status == AuthStatus.ADMIN
    return control
