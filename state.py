"""
Application state owned by one controller per browser session.

``AppState`` bundles the access-control state machine, the analysis
orchestrator and the persistence gateway, and turns every failure into a
user-facing message in ``error`` instead of letting it escape to the page.
"""

import logging
from functools import partial
from typing import MutableMapping, Optional

from access import SESSION_REVOKED, AccessControl, AuthStatus, SessionMarker
from analysis import AnalysisOrchestrator
from config import Settings
from gemini_service import analyze_chart
from models import (
    AccessCode,
    AnalysisResult,
    PersistenceError,
    VertexError,
)
from storage import PersistenceGateway, build_gateway

logger = logging.getLogger(__name__)

LOAD_FAILED = "Failed to load saved data."
CODE_SAVE_FAILED = "Failed to save code to database."
CODE_DELETE_FAILED = "Failed to delete code from database."
LOGIN_REQUIRED = "Please log in first."


class AppState:
    def __init__(self, settings: Settings, gateway: PersistenceGateway, marker: SessionMarker, analyzer=None):
        self.settings = settings
        self.gateway = gateway
        if analyzer is None:
            analyzer = partial(_gemini_analyzer, settings)
        self.access = AccessControl(gateway, marker, settings.master_code)
        self.analysis = AnalysisOrchestrator(gateway, analyzer)
        self.error: Optional[str] = None
        self.notice: Optional[str] = None
        self.loaded = False

    @property
    def status(self) -> AuthStatus:
        return self.access.status

    @property
    def history(self):
        return self.analysis.history

    @property
    def codes(self):
        return self.access.codes

    def bootstrap(self) -> None:
        """Load both collections and restore the session; runs once per session."""
        if self.loaded:
            return
        codes, history = [], []
        try:
            codes = self.gateway.load_codes()
        except PersistenceError:
            self.error = LOAD_FAILED
        try:
            history = self.gateway.load_history()
        except PersistenceError:
            self.error = LOAD_FAILED
        self.access.restore(codes)
        self.analysis.restore(history)
        self.loaded = True
        logger.info(
            "Bootstrapped via %s: %d codes, %d history entries, session=%s",
            self.gateway.name,
            len(codes),
            len(history),
            self.access.status.value,
        )

    def clear_messages(self) -> None:
        self.error = None
        self.notice = None

    # ── Auth ──────────────────────────────────────────────────────────────────

    def login(self, code: str) -> bool:
        self.access.login_input = code
        try:
            self.access.login(code)
        except VertexError as e:
            self.error = e.message
            return False
        self.error = None
        return True

    def admin_login(self, key: str) -> bool:
        self.access.admin_input = key
        try:
            self.access.admin_login(key)
        except VertexError as e:
            self.error = e.message
            return False
        self.error = None
        return True

    def logout(self) -> None:
        self.access.logout()
        self.analysis.reset()
        self.clear_messages()

    # ── Admin ─────────────────────────────────────────────────────────────────

    def generate_code(self, days: float) -> Optional[AccessCode]:
        self.notice = None
        try:
            code = self.access.generate_code(days)
        except PersistenceError:
            self.error = CODE_SAVE_FAILED
            return None
        except VertexError as e:
            self.error = e.message
            return None
        self.error = None
        self.notice = f"Generated {code.code} ({code.duration_label})"
        return code

    def delete_code(self, code_value: str) -> bool:
        self.notice = None
        try:
            removed = self.access.delete_code(code_value)
        except PersistenceError:
            self.error = CODE_DELETE_FAILED
            return False
        except VertexError as e:
            self.error = e.message
            return False
        self.error = None
        return removed

    # ── Analysis ──────────────────────────────────────────────────────────────

    def submit_image(self, raw: bytes) -> bool:
        try:
            self.analysis.submit_image(raw)
        except VertexError as e:
            self.error = e.message
            return False
        self.error = None
        return True

    def run_analysis(self) -> Optional[AnalysisResult]:
        if not self.access.is_authenticated:
            self.error = LOGIN_REQUIRED
            return None
        if not self.access.revalidate():
            self.error = SESSION_REVOKED
            return None
        result = self.analysis.run_analysis()
        self.error = self.analysis.error or self.analysis.persistence_error
        return result

    def show_result(self, result: AnalysisResult) -> None:
        self.analysis.show(result)

    def reset_analysis(self) -> None:
        self.analysis.reset()
        self.error = None

    def clear_history(self) -> bool:
        try:
            self.analysis.clear_history()
        except VertexError as e:
            self.error = e.message
            return False
        self.error = None
        return True


def _gemini_analyzer(settings: Settings, image) -> AnalysisResult:
    return analyze_chart(image, settings.gemini_api_key, settings.gemini_model)


def create_app_state(settings: Settings, marker_storage: MutableMapping, gateway: Optional[PersistenceGateway] = None, analyzer=None) -> AppState:
    if gateway is None:
        gateway = build_gateway(settings)
    state = AppState(settings, gateway, SessionMarker(marker_storage), analyzer=analyzer)
    state.bootstrap()
    return state
