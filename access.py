import enum
import logging
from typing import List, MutableMapping, Optional

from models import (
    AccessCode,
    AccessDenied,
    ValidationError,
    find_code,
    generate_code_value,
    now_ms,
)
from storage import PersistenceGateway

logger = logging.getLogger(__name__)

SESSION_KEY = "vertex_session"
CODE_GENERATION_ATTEMPTS = 5

INVALID_ACCESS_CODE = "Invalid or Expired Access Code"
INVALID_MASTER_CODE = "Invalid Master Code"
ADMIN_REQUIRED = "Admin access required."
SESSION_REVOKED = "Access code expired or revoked."
CODE_NOT_UNIQUE = "Could not generate a unique code."


class AuthStatus(str, enum.Enum):
    UNAUTHORIZED = "unauthorized"
    USER = "user"
    ADMIN = "admin"


class SessionMarker:
    """Per-tab marker of the current auth status ("user", "admin" or absent)."""

    def __init__(self, storage: MutableMapping, key: str = SESSION_KEY):
        self.storage = storage
        self.key = key

    def read(self) -> AuthStatus:
        value = self.storage.get(self.key)
        if value == AuthStatus.ADMIN.value:
            return AuthStatus.ADMIN
        if value == AuthStatus.USER.value:
            return AuthStatus.USER
        return AuthStatus.UNAUTHORIZED

    def write(self, status: AuthStatus) -> None:
        if status == AuthStatus.UNAUTHORIZED:
            self.clear()
            return
        self.storage[self.key] = status.value

    def clear(self) -> None:
        if self.key in self.storage:
            del self.storage[self.key]


class AccessControl:
    def __init__(self, gateway: PersistenceGateway, marker: SessionMarker, master_code: str, clock=now_ms):
        self.gateway = gateway
        self.marker = marker
        self.master_code = master_code
        self.clock = clock
        self.status = AuthStatus.UNAUTHORIZED
        self.codes: List[AccessCode] = []
        # Code that granted the current user session, when known in this process.
        self.active_code: Optional[str] = None
        self.login_input = ""
        self.admin_input = ""

    @property
    def is_admin(self) -> bool:
        return self.status == AuthStatus.ADMIN

    @property
    def is_authenticated(self) -> bool:
        return self.status != AuthStatus.UNAUTHORIZED

    def restore(self, codes: List[AccessCode]) -> None:
        self.codes = list(codes)
        self.status = self.marker.read()
        self.active_code = None

    def _grant(self, status: AuthStatus) -> None:
        self.status = status
        self.marker.write(status)
        logger.info("Session granted: %s", status.value)

    def login(self, submitted: str, at_ms: Optional[int] = None) -> AuthStatus:
        at_ms = self.clock() if at_ms is None else at_ms
        value = (submitted or "").strip().upper()
        match = find_code(self.codes, value) if value else None
        if match is None or not match.is_valid(at_ms):
            logger.info("Rejected access code login")
            raise ValidationError(INVALID_ACCESS_CODE)
        self.active_code = match.code
        self._grant(AuthStatus.USER)
        return self.status

    def admin_login(self, submitted: str) -> AuthStatus:
        if submitted != self.master_code:
            logger.warning("Rejected master code login")
            raise ValidationError(INVALID_MASTER_CODE)
        self.active_code = None
        self._grant(AuthStatus.ADMIN)
        return self.status

    def logout(self) -> None:
        if self.status == AuthStatus.UNAUTHORIZED:
            return
        logger.info("Session ended: %s", self.status.value)
        self.status = AuthStatus.UNAUTHORIZED
        self.active_code = None
        self.marker.clear()
        self.login_input = ""
        self.admin_input = ""

    def revalidate(self, at_ms: Optional[int] = None) -> bool:
        """Re-check the code behind a user session; log out if it was revoked or expired.

        Admin sessions and sessions restored from the marker alone (no known
        code) are left as they are.
        """
        if self.status != AuthStatus.USER or self.active_code is None:
            return self.is_authenticated
        at_ms = self.clock() if at_ms is None else at_ms
        match = find_code(self.codes, self.active_code)
        if match is not None and match.is_valid(at_ms):
            return True
        logger.info("Access code %s no longer valid; ending session", self.active_code)
        self.logout()
        return False

    def _require_admin(self) -> None:
        if not self.is_admin:
            raise AccessDenied(ADMIN_REQUIRED)

    def _unique_code_value(self) -> str:
        taken = {c.code for c in self.codes}
        for _ in range(CODE_GENERATION_ATTEMPTS):
            value = generate_code_value()
            if value not in taken:
                return value
        raise ValidationError(CODE_NOT_UNIQUE)

    def generate_code(self, days: float, at_ms: Optional[int] = None) -> AccessCode:
        self._require_admin()
        if days <= 0:
            raise ValidationError("Duration must be positive.")
        issued_at = self.clock() if at_ms is None else at_ms
        code = AccessCode.issue(self._unique_code_value(), days, issued_at)
        self.gateway.insert_code(code)
        self.codes = [code, *self.codes]
        logger.info("Issued access code %s for %s", code.code, code.duration_label)
        return code

    def delete_code(self, code_value: str) -> bool:
        self._require_admin()
        if find_code(self.codes, code_value) is None:
            logger.info("Delete requested for unknown code %s; nothing to do", code_value)
            return False
        self.gateway.delete_code(code_value)
        self.codes = [c for c in self.codes if c.code != code_value]
        logger.info("Deleted access code %s", code_value)
        return True
