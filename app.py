import html as html_lib
import logging
from datetime import datetime

import altair as alt
import pandas as pd
import streamlit as st

from access import AuthStatus
from analysis import AnalysisStatus
from config import load_settings
from models import DURATION_PRESETS, now_ms
from state import AppState, create_app_state
from storage import SCHEMA_SQL, build_gateway, create_supabase_client

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("vertex")

BRAND_NAME = "VertexChart"
BRAND_TAGLINE = "Alchemist Chart Intelligence"

st.set_page_config(
    page_title=BRAND_NAME,
    layout="wide",
    initial_sidebar_state="expanded",
)
st.markdown("""
<style>
section[data-testid="stSidebar"] > div {
  background: radial-gradient(1200px 420px at 20% 0%, rgba(212,175,55,0.18) 0%, rgba(14,17,23,0.0) 55%),
              #0B0F14;
  border-right: 1px solid rgba(255,255,255,0.06);
}
section[data-testid="stSidebar"] .stButton > button {
  border-radius: 12px !important;
}
 .brand-row {display:flex;align-items:center;gap:12px;margin:6px 0 12px;}
 .brand-row.center {justify-content:center;text-align:center;flex-direction:column;}
 .brand-name {font-size:40px;font-weight:700;color:var(--text-color);margin:0;line-height:1.1;font-family:serif;}
 .brand-name .gold {color:#D4AF37;font-style:italic;}
 .brand-tagline {font-size:13px;color:rgba(148, 163, 184, 0.9);letter-spacing:.08em;text-transform:uppercase;}
 .brand-row.center .brand-name {font-size:56px;}

.metric-grid {display:grid;grid-template-columns:repeat(auto-fit,minmax(150px,1fr));gap:12px;margin:8px 0 16px;}
.metric-card {
  background: rgba(255,255,255,0.06);
  padding: 12px 14px;
  border-radius: 12px;
  border: 1px solid rgba(255,255,255,0.10);
}
.metric-label {font-size:11px;text-transform:uppercase;letter-spacing:.12em;color:rgba(148,163,184,0.95);}
.metric-value {font-size:22px;font-weight:700;margin-top:4px;}
.metric-sub {font-size:12px;color:rgba(148,163,184,0.9);margin-top:2px;}
.signal-BUY .metric-value {color:#22c55e;}
.signal-SELL .metric-value {color:#ef4444;}
.signal-NEUTRAL .metric-value {color:#D4AF37;}

div[data-testid="stExpander"] > div {
  background: rgba(255,255,255,0.04);
  border-radius: 12px;
  border: 1px solid rgba(255,255,255,0.08);
}
</style>
""", unsafe_allow_html=True)

LOADING_MESSAGES = [
    "Transmuting market data...",
    "Decoding ICT liquidity pools...",
    "Calculating Alchemist SNR levels...",
    "Scanning macro fundamental landscape...",
    "Synthesizing trade signal...",
    "Filtering market noise...",
]

METHODS = [
    (
        "SNR (Support & Resistance)",
        "Identifying key psychological and historical price levels. Fresh zones that haven't been mitigated "
        "hold the highest probability of reaction.",
    ),
    (
        "ICT (Institutional Concepts)",
        "Decoding the footprints of smart money: Order Blocks, Fair Value Gaps (FVG) and Liquidity Sweeps "
        "show where big players are entering the market.",
    ),
    (
        "STD (Standard Deviation)",
        "Measuring volatility through statistical variance. Standard Deviation bands flag overextended moves "
        "that are ripe for mean reversion.",
    ),
    (
        "Alchemist X MSNR",
        "Manipulation SNR: reading the Accumulation-Manipulation-Distribution (AMD) cycle to enter after "
        "retail traders have been stopped out.",
    ),
]
MACRO_TAGS = ["Interest Rates", "Inflation Data", "Geopolitical Risk", "Yield Curves"]


# ── State ─────────────────────────────────────────────────────────────────────

@st.cache_resource
def get_supabase(url: str, key: str):
    return create_supabase_client(url, key)


def get_state() -> AppState:
    state = st.session_state.get("app_state")
    if state is None:
        settings = load_settings()
        gateway = build_gateway(settings, client_factory=get_supabase)
        logger.info("Starting new browser session")
        state = create_app_state(settings, st.query_params, gateway=gateway)
        st.session_state["app_state"] = state
    return state


# ── Rendering helpers ─────────────────────────────────────────────────────────

def render_brand_header(center: bool = False) -> None:
    row_class = "brand-row center" if center else "brand-row"
    name = html_lib.escape(BRAND_NAME).replace("Chart", "<span class='gold'>Chart</span>")
    st.markdown(
        f"""
        <div class="{row_class}">
            <div>
                <div class="brand-name">{name}</div>
                <div class="brand-tagline">{BRAND_TAGLINE}</div>
            </div>
        </div>
        """,
        unsafe_allow_html=True,
    )


def render_metric_cards(cards: list, extra_class: str = "") -> None:
    blocks = []
    for label, value, sub in cards:
        label_html = html_lib.escape(str(label))
        value_html = html_lib.escape(str(value))
        sub_html = html_lib.escape(str(sub)) if sub else ""
        sub_block = f"<div class='metric-sub'>{sub_html}</div>" if sub_html else ""
        blocks.append(
            f"<div class='metric-card {extra_class}'>"
            f"<div class='metric-label'>{label_html}</div>"
            f"<div class='metric-value'>{value_html}</div>"
            f"{sub_block}"
            "</div>"
        )
    st.markdown(f"<div class='metric-grid'>{''.join(blocks)}</div>", unsafe_allow_html=True)


def style_altair_chart(chart):
    return (
        chart.configure_view(strokeOpacity=0)
        .configure_axis(gridColor="rgba(148, 163, 184, 0.15)", labelColor="rgba(148, 163, 184, 0.9)",
                        titleColor="rgba(148, 163, 184, 0.9)")
    )


def render_messages(state: AppState) -> None:
    if state.error:
        st.error(state.error)
    if state.notice:
        st.success(state.notice)


def format_local(dt) -> str:
    if dt is None:
        return ""
    return dt.astimezone().strftime("%Y-%m-%d %H:%M:%S")


# ── Login ─────────────────────────────────────────────────────────────────────

def render_login(state: AppState) -> None:
    render_brand_header(center=True)
    _, mid, _ = st.columns([1, 2, 1])
    with mid:
        st.caption("Enter your access code to unlock the analysis suite.")
        with st.form("login_form", clear_on_submit=False):
            code = st.text_input("Access code", value=state.access.login_input, placeholder="XXXXXXXX")
            submitted = st.form_submit_button("Unlock", type="primary", use_container_width=True)
        if submitted:
            if state.login(code):
                st.rerun()

        show_admin = st.toggle("Admin access", key="show_admin_input")
        if show_admin:
            with st.form("admin_login_form", clear_on_submit=True):
                key = st.text_input("Master code", type="password", value=state.access.admin_input)
                admin_submitted = st.form_submit_button("Enter admin panel", use_container_width=True)
            if admin_submitted:
                if state.admin_login(key):
                    st.rerun()

        render_messages(state)


# ── Admin ─────────────────────────────────────────────────────────────────────

def render_admin(state: AppState) -> None:
    head = st.columns([4, 1])
    with head[0]:
        st.title("Admin Panel")
        st.caption("Access Management Suite")
    with head[1]:
        st.markdown(" ")
        if st.button("Logout", key="admin_logout", use_container_width=True):
            state.logout()
            st.rerun()

    if state.gateway.name == "local":
        st.caption(f"Supabase is not configured; codes and history are stored in `{state.settings.data_dir}`.")
    with st.expander("Database setup (paste in Supabase SQL Editor)", expanded=False):
        st.caption("Create the history and access_codes tables (run once).")
        st.code(SCHEMA_SQL, language="sql")

    render_messages(state)
    left, right = st.columns([1, 2])

    with left:
        st.subheader("Generate Code")
        for label, days in DURATION_PRESETS:
            if st.button(f"{label} ACCESS", key=f"gen_{label}", use_container_width=True):
                state.generate_code(days)
                st.rerun()

    with right:
        sub = st.columns([3, 1])
        sub[0].subheader("Active Codes")
        sub[1].caption(f"{len(state.codes)} CODES TOTAL")
        if not state.codes:
            st.info("No codes generated yet.")
            return

        now = now_ms()
        header = st.columns([2, 2, 3, 2, 1])
        for col, title in zip(header, ["Code", "Duration", "Expires", "Status", ""]):
            col.caption(title)
        for item in state.codes:
            row = st.columns([2, 2, 3, 2, 1])
            row[0].markdown(f"**`{item.code}`**")
            row[1].write(item.duration_label)
            row[2].write(format_local(item.expires_at))
            row[3].write("Active" if item.is_valid(now) else "Expired")
            if row[4].button("🗑", key=f"del_{item.code}_{item.created_at}"):
                state.delete_code(item.code)
                st.rerun()


# ── Dashboard ─────────────────────────────────────────────────────────────────

def render_result(state: AppState) -> None:
    result = state.analysis.result
    if result is None:
        return
    sig = result.signal
    render_metric_cards(
        [
            ("Signal", sig.action, sig.pair),
            ("Confidence", f"{sig.confidence:.0f}%", ""),
            ("Entry", sig.entry or "—", ""),
            ("Take Profit", sig.tp or "—", ""),
            ("Stop Loss", sig.sl or "—", ""),
        ],
        extra_class=f"signal-{sig.action}",
    )
    st.caption(f"Generated {format_local(result.created)}")
    if sig.reasoning:
        st.markdown(f"**Reasoning.** {sig.reasoning}")

    st.markdown("**Technical breakdown**")
    tech_cols = st.columns(2)
    for idx, (title, body) in enumerate(
        [
            ("SNR", result.technical.snr),
            ("ICT", result.technical.ict),
            ("STD", result.technical.std),
            ("Alchemist X MSNR", result.technical.alchemist),
        ]
    ):
        with tech_cols[idx % 2].expander(title, expanded=True):
            st.write(body or "No commentary.")

    st.markdown("**Fundamental landscape**")
    st.markdown(result.fundamental or "No fundamental commentary.")

    if st.button("New analysis", key="reset_analysis"):
        state.reset_analysis()
        st.session_state.pop("_last_upload_id", None)
        st.session_state["_upload_nonce"] = st.session_state.get("_upload_nonce", 0) + 1
        st.rerun()


def render_dashboard(state: AppState) -> None:
    st.subheader("Analytical Intelligence")
    if not state.settings.gemini_configured:
        st.warning("GEMINI_API_KEY is not configured. Add it to Streamlit secrets or the environment to run analyses.")

    if state.analysis.status == AnalysisStatus.DONE and state.analysis.result is not None:
        render_result(state)
        return

    upload = st.file_uploader("Upload a chart", type=["png", "jpg", "jpeg", "webp"], key=f"chart_upload_{st.session_state.get('_upload_nonce', 0)}")
    if upload is not None:
        upload_id = f"{upload.name}:{upload.size}"
        if st.session_state.get("_last_upload_id") != upload_id:
            st.session_state["_last_upload_id"] = upload_id
            state.submit_image(upload.getvalue())

    staged = state.analysis.image
    if staged is not None:
        st.image(staged.data, caption=f"{staged.width}×{staged.height}", use_container_width=True)

    clicked = st.button(
        "Analyze chart",
        type="primary",
        disabled=state.analysis.is_analyzing,
        use_container_width=True,
        key="run_analysis",
    )
    if clicked:
        idx = st.session_state.get("_loading_idx", 0)
        st.session_state["_loading_idx"] = (idx + 1) % len(LOADING_MESSAGES)
        with st.spinner(LOADING_MESSAGES[idx]):
            state.run_analysis()
        st.rerun()

    render_messages(state)


# ── History ───────────────────────────────────────────────────────────────────

def history_frame(state: AppState) -> pd.DataFrame:
    rows = []
    for item in state.history:
        rows.append(
            {
                "timestamp": item.created,
                "pair": item.signal.pair,
                "action": item.signal.action,
                "confidence": item.signal.confidence,
            }
        )
    df = pd.DataFrame(rows, columns=["timestamp", "pair", "action", "confidence"])
    if not df.empty:
        df["timestamp"] = pd.to_datetime(df["timestamp"], errors="coerce", utc=True)
    return df


def render_confidence_chart(df: pd.DataFrame) -> None:
    df = df.dropna(subset=["timestamp"])
    if df.empty:
        return
    chart = (
        alt.Chart(df)
        .mark_circle(size=90)
        .encode(
            x=alt.X("timestamp:T", title="Analyzed"),
            y=alt.Y("confidence:Q", title="Confidence %", scale=alt.Scale(domain=[0, 100])),
            color=alt.Color(
                "action:N",
                scale=alt.Scale(domain=["BUY", "SELL", "NEUTRAL"], range=["#22c55e", "#ef4444", "#D4AF37"]),
                title="Signal",
            ),
            tooltip=["pair", "action", "confidence", "timestamp:T"],
        )
        .properties(height=220)
    )
    st.altair_chart(style_altair_chart(chart), use_container_width=True)


def render_history(state: AppState) -> None:
    head = st.columns([4, 1])
    head[0].subheader("Historical Archive")
    if state.history and head[1].button("Clear all", key="clear_history", use_container_width=True):
        state.clear_history()
        st.rerun()

    render_messages(state)
    if not state.history:
        st.info("No past analyses recorded.")
        return

    render_confidence_chart(history_frame(state))

    cols = st.columns(2)
    for idx, item in enumerate(state.history):
        with cols[idx % 2].container(border=True):
            st.markdown(f"**{item.signal.pair or 'Unknown pair'}** · {item.signal.action} · {item.signal.confidence:.0f}%")
            st.caption(format_local(item.created))
            if item.signal.reasoning:
                st.write(item.signal.reasoning[:180] + ("…" if len(item.signal.reasoning) > 180 else ""))
            if st.button("Open", key=f"open_history_{idx}"):
                state.show_result(item)
                st.session_state["_nav_target"] = "Dashboard"
                st.rerun()


# ── Methodology ───────────────────────────────────────────────────────────────

def render_methodology() -> None:
    st.subheader("The Alchemist Methodology")
    st.write(
        "VertexChart combines institutional concepts with algorithmic analysis to produce "
        "high-probability market directives, built on four core pillars."
    )
    cols = st.columns(2)
    for idx, (title, description) in enumerate(METHODS):
        with cols[idx % 2].container(border=True):
            st.markdown(f"**{title}**")
            st.write(description)
    st.markdown("**Macro Grounding**")
    st.write(
        "Technical analysis alone is incomplete. Every analysis also weighs the latest high-impact "
        "economic events (NFP, CPI, FOMC) and central bank sentiment for the pair."
    )
    st.caption(" · ".join(MACRO_TAGS))


# ── App entry point ───────────────────────────────────────────────────────────

state = get_state()

if state.status == AuthStatus.UNAUTHORIZED:
    render_login(state)
elif state.status == AuthStatus.ADMIN:
    render_admin(state)
else:
    render_brand_header(center=False)
    section_options = ["Dashboard", "History", "Methodology"]
    target = st.session_state.pop("_nav_target", None)
    if target in section_options:
        st.session_state["nav_section"] = target
    if st.session_state.get("nav_section") not in section_options:
        st.session_state["nav_section"] = section_options[0]

    with st.sidebar:
        st.markdown("### Navigation")
        section = st.radio("Go to", section_options, key="nav_section", label_visibility="collapsed")
        st.markdown("---")
        st.caption(f"Storage: {state.gateway.name}")
        st.caption(datetime.now().strftime("%Y-%m-%d %H:%M"))
        if st.button("Log out", key="sidebar_logout"):
            state.logout()
            st.rerun()

    if section == "History":
        render_history(state)
    elif section == "Methodology":
        render_methodology()
    else:
        render_dashboard(state)
