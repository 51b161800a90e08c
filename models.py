import base64
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

MS_PER_DAY = 24 * 60 * 60 * 1000
HISTORY_LIMIT = 20
CODE_LENGTH = 8
CODE_ALPHABET = string.ascii_uppercase + string.digits
SIGNAL_ACTIONS = ("BUY", "SELL", "NEUTRAL")

# (label, days) as offered in the admin panel
DURATION_PRESETS = [
    ("1 HOUR", 1 / 24),
    ("5 HOURS", 5 / 24),
    ("3 DAYS", 3),
    ("7 DAYS", 7),
    ("30 DAYS", 30),
]


# ── Errors ────────────────────────────────────────────────────────────────────

class VertexError(Exception):
    """Base class for every error that ends up in front of the user."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ConfigurationError(VertexError):
    pass


class ValidationError(VertexError):
    pass


class PersistenceError(VertexError):
    pass


class AnalysisError(VertexError):
    pass


class AccessDenied(VertexError):
    pass


def now_ms() -> int:
    return int(time.time() * 1000)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def safe_str(value) -> str:
    if value is None:
        return ""
    return str(value)


def to_float(value) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, str) and value.strip() == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ── Access codes ──────────────────────────────────────────────────────────────

def generate_code_value(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


@dataclass(frozen=True)
class AccessCode:
    code: str
    duration: float
    created_at: int
    expiry: int

    @classmethod
    def issue(cls, code: str, days: float, issued_at: int) -> "AccessCode":
        # One captured instant feeds both fields so expiry - created_at is exact.
        return cls(
            code=code,
            duration=days,
            created_at=issued_at,
            expiry=issued_at + int(round(days * MS_PER_DAY)),
        )

    def is_valid(self, at_ms: int) -> bool:
        return at_ms < self.expiry

    @property
    def duration_label(self) -> str:
        if self.duration < 1:
            return f"{round(self.duration * 24)} Hours"
        days = int(self.duration) if float(self.duration).is_integer() else self.duration
        return f"{days} Days"

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.expiry / 1000, tz=timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "expiry": self.expiry,
            "duration": self.duration,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AccessCode":
        return cls(
            code=safe_str(raw.get("code")).strip().upper(),
            duration=to_float(raw.get("duration")) or 0.0,
            created_at=int(to_float(raw.get("createdAt")) or 0),
            expiry=int(to_float(raw.get("expiry")) or 0),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "duration": self.duration,
            "created_at": self.created_at,
            "expiry": self.expiry,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AccessCode":
        return cls(
            code=safe_str(row.get("code")).strip().upper(),
            duration=to_float(row.get("duration")) or 0.0,
            created_at=int(to_float(row.get("created_at")) or 0),
            expiry=int(to_float(row.get("expiry")) or 0),
        )


def find_code(codes: Iterable[AccessCode], value: str) -> Optional[AccessCode]:
    for c in codes:
        if c.code == value:
            return c
    return None


# ── Analysis results ──────────────────────────────────────────────────────────

def normalize_action(value) -> str:
    v = safe_str(value).strip().upper()
    return v if v in SIGNAL_ACTIONS else "NEUTRAL"


def clamp_confidence(value) -> float:
    v = to_float(value)
    if v is None:
        return 0.0
    return max(0.0, min(100.0, v))


@dataclass(frozen=True)
class TradingSignal:
    pair: str = ""
    action: str = "NEUTRAL"
    entry: str = ""
    tp: str = ""
    sl: str = ""
    confidence: float = 0.0
    reasoning: str = ""

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "TradingSignal":
        raw = raw or {}
        return cls(
            pair=safe_str(raw.get("pair")),
            action=normalize_action(raw.get("action")),
            entry=safe_str(raw.get("entry")),
            tp=safe_str(raw.get("tp")),
            sl=safe_str(raw.get("sl")),
            confidence=clamp_confidence(raw.get("confidence")),
            reasoning=safe_str(raw.get("reasoning")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pair": self.pair,
            "action": self.action,
            "entry": self.entry,
            "tp": self.tp,
            "sl": self.sl,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }


@dataclass(frozen=True)
class TechnicalAnalysis:
    snr: str = ""
    ict: str = ""
    std: str = ""
    alchemist: str = ""

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "TechnicalAnalysis":
        raw = raw or {}
        return cls(
            snr=safe_str(raw.get("snr")),
            ict=safe_str(raw.get("ict")),
            std=safe_str(raw.get("std")),
            alchemist=safe_str(raw.get("alchemist")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"snr": self.snr, "ict": self.ict, "std": self.std, "alchemist": self.alchemist}


@dataclass(frozen=True)
class AnalysisResult:
    signal: TradingSignal = field(default_factory=TradingSignal)
    technical: TechnicalAnalysis = field(default_factory=TechnicalAnalysis)
    fundamental: str = ""
    timestamp: str = ""

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], timestamp: Optional[str] = None) -> "AnalysisResult":
        return cls(
            signal=TradingSignal.from_dict(raw.get("signal")),
            technical=TechnicalAnalysis.from_dict(raw.get("technical")),
            fundamental=safe_str(raw.get("fundamental")),
            timestamp=timestamp or safe_str(raw.get("timestamp")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signal": self.signal.to_dict(),
            "technical": self.technical.to_dict(),
            "fundamental": self.fundamental,
            "timestamp": self.timestamp,
        }

    @property
    def created(self) -> Optional[datetime]:
        try:
            return datetime.fromisoformat(self.timestamp.replace("Z", "+00:00"))
        except ValueError:
            return None


def prepend_capped(items: list, item, limit: int = HISTORY_LIMIT) -> list:
    return [item, *items][:limit]


# ── Images ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StagedImage:
    data: bytes
    mime_type: str = "image/jpeg"
    width: int = 0
    height: int = 0

    @property
    def b64(self) -> str:
        return base64.b64encode(self.data).decode("utf-8")

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.b64}"
