import base64
import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import streamlit as st

logger = logging.getLogger(__name__)

DEFAULT_MASTER_CODE = "rFOt4cPdfyeFCNrB"
DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_DATA_DIR = "data"


def get_secret(key: str, default=None):
    try:
        return st.secrets[key]
    except Exception:
        pass
    value = os.environ.get(key)
    if value is None:
        return default
    return value


def get_secret_required(name: str, fallback_names: Optional[list] = None) -> str:
    names = [name] + (fallback_names or [])
    for n in names:
        v = get_secret(n)
        if v is None:
            continue
        s = str(v).strip()
        if s:
            return s
    raise KeyError(f"Missing required secret: {name}")


def get_secret_optional(name: str, fallback_names: Optional[list] = None) -> str:
    try:
        return get_secret_required(name, fallback_names)
    except KeyError:
        return ""


def truthy(value) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "yes", "y", "on")


def extract_supabase_ref_from_url(url: str) -> str:
    # https://<ref>.supabase.co
    s = ("" if url is None else str(url)).strip()
    m = re.search(r"https?://([a-z0-9-]+)\.supabase\.co", s, flags=re.I)
    return (m.group(1) if m else "").strip()


def extract_ref_from_jwt(jwt_token: str) -> str:
    tok = ("" if jwt_token is None else str(jwt_token)).strip()
    parts = tok.split(".")
    if len(parts) < 2:
        return ""
    payload_b64 = parts[1]
    # Base64url padding
    payload_b64 += "=" * (-len(payload_b64) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(payload_b64.encode("utf-8")).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return ""
    if not isinstance(payload, dict):
        return ""
    return ("" if payload.get("ref") is None else str(payload.get("ref"))).strip()


@dataclass(frozen=True)
class Settings:
    supabase_url: str = ""
    supabase_key: str = ""
    gemini_api_key: str = ""
    gemini_model: str = DEFAULT_GEMINI_MODEL
    master_code: str = DEFAULT_MASTER_CODE
    data_dir: Path = Path(DEFAULT_DATA_DIR)
    force_local: bool = False

    @property
    def remote_configured(self) -> bool:
        if self.force_local:
            return False
        return bool(self.supabase_url and self.supabase_key)

    @property
    def gemini_configured(self) -> bool:
        return bool(self.gemini_api_key)


def load_settings() -> Settings:
    url = get_secret_optional("SUPABASE_URL", ["SUPABASE_PROJECT_URL"])
    # Legacy key names are still common in older deployment guides.
    key = get_secret_optional("SUPABASE_KEY", ["SUPABASE_ANON_KEY", "SUPABASE_PUBLIC_ANON_KEY"])

    url_ref = extract_supabase_ref_from_url(url)
    key_ref = extract_ref_from_jwt(key)
    if url_ref and key_ref and url_ref != key_ref:
        logger.warning("Supabase URL project ref %r does not match key project ref %r", url_ref, key_ref)

    settings = Settings(
        supabase_url=url,
        supabase_key=key,
        gemini_api_key=get_secret_optional("GEMINI_API_KEY", ["GOOGLE_API_KEY"]),
        gemini_model=get_secret_optional("GEMINI_MODEL") or DEFAULT_GEMINI_MODEL,
        master_code=get_secret_optional("VERTEX_MASTER_CODE") or DEFAULT_MASTER_CODE,
        data_dir=Path(get_secret_optional("VERTEX_DATA_DIR") or DEFAULT_DATA_DIR),
        force_local=truthy(get_secret("VERTEX_FORCE_LOCAL", "false")),
    )
    logger.info(
        "Settings loaded: remote=%s gemini=%s model=%s",
        settings.remote_configured,
        settings.gemini_configured,
        settings.gemini_model,
    )
    return settings
