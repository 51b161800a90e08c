import pytest

import access
from access import (
    INVALID_ACCESS_CODE,
    INVALID_MASTER_CODE,
    AccessControl,
    AuthStatus,
    SessionMarker,
)
from models import AccessCode, AccessDenied, PersistenceError, ValidationError


def make_control(gateway, storage, clock, codes=()):
    control = AccessControl(gateway, SessionMarker(storage), "MASTER-key", clock=clock)
    control.restore(list(codes))
    return control


# ── Session marker ────────────────────────────────────────────────────────────

def test_marker_round_trip():
    storage = {}
    marker = SessionMarker(storage)
    assert marker.read() == AuthStatus.UNAUTHORIZED
    marker.write(AuthStatus.ADMIN)
    assert storage == {"vertex_session": "admin"}
    assert marker.read() == AuthStatus.ADMIN
    marker.clear()
    assert storage == {}


def test_marker_ignores_unknown_values():
    assert SessionMarker({"vertex_session": "root"}).read() == AuthStatus.UNAUTHORIZED


def test_restore_reads_marker(local_gateway, clock):
    control = make_control(local_gateway, {"vertex_session": "user"}, clock)
    assert control.status == AuthStatus.USER
    assert control.active_code is None


# ── Login ─────────────────────────────────────────────────────────────────────

def test_user_login_with_valid_code(local_gateway, marker_storage, clock):
    code = AccessCode.issue("ABCD1234", 1, clock.now)
    control = make_control(local_gateway, marker_storage, clock, [code])
    assert control.login("abcd1234 ") == AuthStatus.USER
    assert marker_storage["vertex_session"] == "user"
    assert control.active_code == "ABCD1234"


def test_user_login_rejects_unknown_code(local_gateway, marker_storage, clock):
    control = make_control(local_gateway, marker_storage, clock, [AccessCode.issue("ABCD1234", 1, clock.now)])
    with pytest.raises(ValidationError) as exc:
        control.login("ZZZZ9999")
    assert exc.value.message == INVALID_ACCESS_CODE
    assert control.status == AuthStatus.UNAUTHORIZED
    assert marker_storage == {}


def test_user_login_rejects_empty_input(local_gateway, marker_storage, clock):
    control = make_control(local_gateway, marker_storage, clock, [])
    with pytest.raises(ValidationError):
        control.login("")


def test_one_hour_code_scenario(admin, clock):
    t0 = clock.now
    issued = admin.generate_code(1 / 24)
    assert issued.duration == 1 / 24
    assert issued.expiry == t0 + 3_600_000
    admin.logout()

    assert admin.login(issued.code, at_ms=t0 + 1_000_000) == AuthStatus.USER
    admin.logout()
    with pytest.raises(ValidationError) as exc:
        admin.login(issued.code, at_ms=t0 + 3_700_000)
    assert exc.value.message == "Invalid or Expired Access Code"
    assert admin.status == AuthStatus.UNAUTHORIZED


def test_admin_login_requires_exact_master_code(local_gateway, marker_storage, clock):
    control = make_control(local_gateway, marker_storage, clock)
    for attempt in ["master-key", "MASTER-key ", "", "MASTER"]:
        with pytest.raises(ValidationError) as exc:
            control.admin_login(attempt)
        assert exc.value.message == INVALID_MASTER_CODE
    assert control.admin_login("MASTER-key") == AuthStatus.ADMIN
    assert marker_storage["vertex_session"] == "admin"


# ── Logout ────────────────────────────────────────────────────────────────────

def test_logout_clears_marker_and_inputs(admin, marker_storage):
    admin.login_input = "ABC"
    admin.admin_input = "MASTER-key"
    admin.logout()
    assert admin.status == AuthStatus.UNAUTHORIZED
    assert marker_storage == {}
    assert admin.login_input == ""
    assert admin.admin_input == ""


def test_logout_when_unauthorized_is_noop(local_gateway, clock):
    storage = {"unrelated": "x"}
    control = make_control(local_gateway, storage, clock)
    control.login_input = "TYPING"
    control.logout()
    assert storage == {"unrelated": "x"}
    assert control.login_input == "TYPING"


# ── Code management ───────────────────────────────────────────────────────────

def test_generate_code_requires_admin(local_gateway, marker_storage, clock):
    control = make_control(local_gateway, marker_storage, clock)
    with pytest.raises(AccessDenied):
        control.generate_code(7)
    with pytest.raises(AccessDenied):
        control.delete_code("ANY")


def test_generate_code_persists_then_prepends(admin, flaky_gateway, clock):
    first = admin.generate_code(3)
    second = admin.generate_code(7)
    assert admin.codes == [second, first]
    assert second.expiry - second.created_at == 7 * 86_400_000
    assert flaky_gateway.load_codes() == [second, first]


def test_generate_code_failure_leaves_codes_unchanged(admin, flaky_gateway):
    admin.generate_code(1)
    before = list(admin.codes)
    flaky_gateway.fail_writes = True
    with pytest.raises(PersistenceError):
        admin.generate_code(30)
    assert admin.codes == before


def test_generate_code_rejects_non_positive_duration(admin):
    with pytest.raises(ValidationError):
        admin.generate_code(0)


def test_generate_code_retries_on_collision(admin, monkeypatch):
    admin.codes = [AccessCode.issue("TAKEN001", 1, 0)]
    values = iter(["TAKEN001", "TAKEN001", "FRESH002"])
    monkeypatch.setattr(access, "generate_code_value", lambda: next(values))
    assert admin.generate_code(1).code == "FRESH002"


def test_generate_code_gives_up_after_repeated_collisions(admin, monkeypatch):
    admin.codes = [AccessCode.issue("TAKEN001", 1, 0)]
    monkeypatch.setattr(access, "generate_code_value", lambda: "TAKEN001")
    with pytest.raises(ValidationError):
        admin.generate_code(1)
    assert len(admin.codes) == 1


def test_delete_code(admin, flaky_gateway):
    keep = admin.generate_code(1)
    drop = admin.generate_code(3)
    assert admin.delete_code(drop.code) is True
    assert admin.codes == [keep]
    assert flaky_gateway.load_codes() == [keep]


def test_delete_missing_code_is_graceful(admin):
    existing = admin.generate_code(1)
    assert admin.delete_code("NOTHERE0") is False
    assert admin.codes == [existing]


def test_delete_failure_keeps_code(admin, flaky_gateway):
    code = admin.generate_code(1)
    flaky_gateway.fail_writes = True
    with pytest.raises(PersistenceError):
        admin.delete_code(code.code)
    assert admin.codes == [code]


def test_expired_codes_are_kept_listed(admin, clock):
    code = admin.generate_code(1 / 24)
    clock.now += 10 * 3_600_000
    assert not code.is_valid(clock.now)
    assert admin.codes == [code]


# ── Revalidation ──────────────────────────────────────────────────────────────

def test_revalidate_logs_out_revoked_user(admin, clock):
    code = admin.generate_code(7)
    admin.logout()
    admin.login(code.code)
    assert admin.revalidate() is True

    admin.codes = []
    assert admin.revalidate() is False
    assert admin.status == AuthStatus.UNAUTHORIZED


def test_revalidate_logs_out_expired_user(admin, clock):
    code = admin.generate_code(1 / 24)
    admin.logout()
    admin.login(code.code)
    clock.now = code.expiry
    assert admin.revalidate() is False
    assert admin.status == AuthStatus.UNAUTHORIZED


def test_revalidate_leaves_restored_and_admin_sessions(local_gateway, clock):
    restored = make_control(local_gateway, {"vertex_session": "user"}, clock)
    assert restored.revalidate() is True
    assert restored.status == AuthStatus.USER

    admin_control = make_control(local_gateway, {"vertex_session": "admin"}, clock)
    assert admin_control.revalidate() is True
