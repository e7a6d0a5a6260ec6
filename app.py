import json
import os
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from typing import Any, Dict, List, Optional

import pandas as pd
import plotly.graph_objects as go
import requests
import streamlit as st

from earnsight.chart import PERIODS, match_markers_to_series

st.set_page_config(
    page_title="EarnSight",
    page_icon="📈",
    layout="wide",
    initial_sidebar_state="expanded",
)

st.markdown("""
<style>
    .main > div {
        padding-top: 2rem;
    }

    .hero-container {
        background: linear-gradient(135deg, #667eea 0%, #764ba2 100%);
        padding: 1.6rem;
        border-radius: 15px;
        margin-bottom: 1.6rem;
        color: white;
        text-align: center;
    }

    .earnings-card {
        background: #ffffff;
        padding: 1rem 1.2rem;
        border-radius: 12px;
        border: 1px solid #e1e5e9;
        margin-bottom: 0.8rem;
        color: #333333;
    }

    .badge-past {
        background: #eceff1;
        color: #455a64;
        padding: 0.2rem 0.6rem;
        border-radius: 10px;
        font-size: 0.8rem;
    }

    .badge-future {
        background: #e3f2fd;
        color: #1976d2;
        padding: 0.2rem 0.6rem;
        border-radius: 10px;
        font-size: 0.8rem;
    }

    .status-online {
        color: #28a745;
        font-weight: bold;
    }

    .status-offline {
        color: #dc3545;
        font-weight: bold;
    }

    #MainMenu {visibility: hidden;}
    footer {visibility: hidden;}
</style>
""", unsafe_allow_html=True)

PAGES = ["💬 Insights", "📈 Chart", "🗓️ Calendar", "⭐ Watchlist"]
PERIOD_LABELS = {'1d': '1 Day', '1w': '1 Week', '1m': '1 Month', '6m': '6 Months', '1y': '1 Year', '3y': '3 Years'}
STATUS_POLL_SECONDS = 0.3


def initialize_session_state():
    defaults = {
        'token': None,
        'email': None,
        'page': PAGES[0],
        'ticker': "",
        'messages': [],
        'earnings_period': None,
        'insight_context': None,
        'insight_attempted': False,
        'backend_status': None,
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


initialize_session_state()

try:
    BACKEND_URL = st.secrets.get("BACKEND_URL", os.getenv("BACKEND_URL", "http://127.0.0.1:8000"))
except Exception:
    BACKEND_URL = os.getenv("BACKEND_URL", "http://127.0.0.1:8000")


def check_backend_status() -> bool:
    try:
        response = requests.get(f"{BACKEND_URL}/health", timeout=5)
        status = response.status_code == 200
    except requests.exceptions.RequestException:
        status = False
    st.session_state.backend_status = status
    return status


def auth_headers() -> Dict[str, str]:
    if not st.session_state.token:
        return {}
    return {"Authorization": f"Bearer {st.session_state.token}"}


def api_call(method: str, path: str, timeout: int = 60, **kwargs) -> Optional[Dict[str, Any]]:
    """Call the backend and surface failures in the page. Returns None on error."""
    try:
        response = requests.request(method, f"{BACKEND_URL}{path}", headers=auth_headers(),
                                    timeout=timeout, **kwargs)
    except requests.exceptions.Timeout:
        st.error("⏱️ Request timed out. Please try again.")
        return None
    except requests.exceptions.ConnectionError:
        st.error("🔌 Cannot connect to backend. Please ensure the server is running.")
        return None

    if response.status_code == 401 and st.session_state.token:
        st.session_state.token = None
        st.warning("Your session has expired. Please sign in again.")
        return None
    if response.status_code == 429:
        st.warning("⏳ Data provider rate limit reached. Please try again in a minute.")
        return None
    if not response.ok:
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = response.text
        st.error(f"❌ {detail or f'Request failed with status {response.status_code}'}")
        return None
    return response.json()


# Auth

def display_auth_forms():
    st.markdown(
        '<div class="hero-container"><h1 style="margin:0;">📈 EarnSight</h1>'
        '<p style="margin:0.4rem 0 0 0;">Post-earnings analysis for US stocks</p></div>',
        unsafe_allow_html=True,
    )
    col1, col2, col3 = st.columns([1, 2, 1])
    with col2:
        login_tab, register_tab = st.tabs(["Sign in", "Create account"])
        for tab, path, label in ((login_tab, "/api/auth/login", "Sign in"),
                                 (register_tab, "/api/auth/register", "Create account")):
            with tab:
                with st.form(f"form_{path}"):
                    email = st.text_input("Email")
                    password = st.text_input("Password", type="password")
                    submitted = st.form_submit_button(label, type="primary", use_container_width=True)
                if submitted:
                    result = api_call("POST", path, json={"email": email, "password": password})
                    if result:
                        st.session_state.token = result["token"]
                        st.session_state.email = result["email"]
                        st.rerun()


def sign_out():
    api_call("POST", "/api/auth/logout")
    for key in ('token', 'email', 'messages', 'earnings_period', 'insight_context'):
        st.session_state[key] = None if key != 'messages' else []
    st.rerun()


# Insights

def new_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def run_initial_insights(ticker: str, context: Optional[Dict[str, str]]):
    """POST the analysis in a worker thread and poll its status until it returns."""
    request_id = new_request_id()
    payload = {"ticker": ticker, "isInitial": True, "requestId": request_id, **(context or {})}
    status_box = st.empty()

    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(
            requests.post, f"{BACKEND_URL}/api/insights",
            json=payload, headers=auth_headers(), timeout=360,
        )
        while not future.done():
            try:
                status = requests.get(f"{BACKEND_URL}/api/insights/status",
                                      params={"requestId": request_id, "t": int(time.time() * 1000)},
                                      timeout=5).json().get("status")
            except (requests.exceptions.RequestException, ValueError):
                status = None
            status_box.info(f"🤖 {status or 'Analyzing...'}")
            time.sleep(STATUS_POLL_SECONDS)

    status_box.empty()
    try:
        response = future.result()
    except requests.exceptions.RequestException as e:
        st.error(f"🔌 Cannot reach backend: {e}")
        return

    if not response.ok:
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = response.text
        st.error(f"❌ Analysis failed: {detail}")
        return

    data = response.json()
    st.session_state.earnings_period = data.get("earningsPeriod")
    st.session_state.messages = [{"role": "assistant", "content": data.get("content", "")}]


def stream_follow_up(ticker: str, question: str, history: List[Dict[str, str]]) -> Optional[str]:
    """Stream a follow-up answer into the page; returns the final text."""
    payload = {
        "ticker": ticker,
        "isInitial": False,
        "message": question,
        "conversationHistory": history,
        "requestId": new_request_id(),
    }
    placeholder = st.empty()
    parts: List[str] = []

    try:
        with requests.post(f"{BACKEND_URL}/api/insights/stream", json=payload, headers=auth_headers(),
                           stream=True, timeout=360) as response:
            if not response.ok:
                st.error(f"❌ Request failed with status {response.status_code}")
                return None
            for line in response.iter_lines(decode_unicode=True):
                if not line or not line.startswith("data: "):
                    continue
                body = line[len("data: "):]
                if body == "[DONE]":
                    break
                event = json.loads(body)
                if "error" in event:
                    st.error(f"❌ {event['error']}")
                    return None
                if event.get("reset"):
                    parts = []
                if "chunk" in event:
                    parts.append(event["chunk"])
                    placeholder.markdown("".join(parts) + " ▌")
    except requests.exceptions.RequestException as e:
        st.error(f"🔌 Cannot reach backend: {e}")
        return None

    answer = "".join(parts)
    placeholder.markdown(answer)
    return answer


def display_insights_page():
    context = st.session_state.insight_context or {}

    col1, col2 = st.columns([3, 1])
    with col1:
        ticker = st.text_input("Ticker", value=st.session_state.ticker, placeholder="e.g. NVDA").strip().upper()
    with col2:
        st.markdown("<br>", unsafe_allow_html=True)
        analyze = st.button("🚀 Analyze", type="primary", use_container_width=True, disabled=not ticker)

    if ticker != st.session_state.ticker:
        st.session_state.ticker = ticker
        st.session_state.messages = []
        st.session_state.insight_context = None
        st.session_state.insight_attempted = False
        context = {}

    if context.get("earningsType") == "past" and context.get("earningsPeriod"):
        st.markdown(f"## {ticker} {context['earningsPeriod']} Earnings Analysis")
    elif context.get("earningsType") == "future":
        st.markdown(f"## {ticker} Pre-Earnings Analysis ({context.get('reportDate')})")
    elif ticker and st.session_state.messages:
        period = st.session_state.earnings_period
        st.markdown(f"## {ticker} Earnings Insights" + (f" · {period}" if period else ""))

    # a context from another page runs once; a failed attempt waits for the Analyze button
    auto_run = ticker and context and not st.session_state.messages and not st.session_state.insight_attempted
    if analyze or auto_run:
        st.session_state.insight_attempted = True
        run_initial_insights(ticker, context)

    for message in st.session_state.messages:
        with st.chat_message(message["role"]):
            st.markdown(message["content"])

    if st.session_state.messages:
        question = st.chat_input(f"Ask a follow-up question about {ticker}")
        if question:
            history = list(st.session_state.messages)
            st.session_state.messages.append({"role": "user", "content": question})
            with st.chat_message("user"):
                st.markdown(question)
            with st.chat_message("assistant"):
                answer = stream_follow_up(ticker, question, history)
            if answer:
                st.session_state.messages.append({"role": "assistant", "content": answer})

    if ticker:
        with st.expander("🕘 Previous analyses"):
            history = api_call("GET", "/api/insights/history", params={"ticker": ticker})
            if history and history.get("analyses"):
                for item in history["analyses"][:5]:
                    st.caption(item["created_at"])
                    st.markdown(item["initial_insights"])
                    st.markdown("---")
            elif history is not None:
                st.caption("No saved analyses yet.")


# Chart

def create_price_chart(points: List[Dict[str, Any]], matched: List[Dict[str, Any]], ticker: str) -> go.Figure:
    df = pd.DataFrame(points)
    df['time'] = pd.to_datetime(df['timestamp'], unit='ms')

    fig = go.Figure()
    fig.add_trace(go.Scatter(
        x=df['time'],
        y=df['price'],
        mode='lines',
        name=ticker,
        line=dict(color='#667eea', width=2),
    ))

    if matched:
        markers = pd.DataFrame(matched)
        markers['time'] = pd.to_datetime(markers['timestamp'], unit='ms')
        hover = [
            f"{m['earningsLabel']}<br>Reported EPS: {m['earningsMarker'].get('reportedEPS') or 'n/a'}"
            f"<br>Estimated EPS: {m['earningsMarker'].get('estimatedEPS') or 'n/a'}"
            f"<br>Surprise: {m['earningsMarker'].get('surprisePercentage') or 'n/a'}%"
            for m in matched
        ]
        fig.add_trace(go.Scatter(
            x=markers['time'],
            y=markers['price'],
            mode='markers+text',
            name='Earnings',
            text=markers['earningsLabel'],
            textposition='top center',
            hovertext=hover,
            hoverinfo='text',
            marker=dict(color='#ef5350', size=11, symbol='diamond'),
        ))

    fig.update_layout(
        title=f"{ticker} price",
        yaxis_title="Price (USD)",
        template="plotly_white",
        height=500,
        showlegend=True,
    )
    return fig


def display_chart_page():
    col1, col2 = st.columns([2, 3])
    with col1:
        ticker = st.text_input("Ticker", value=st.session_state.ticker, key="chart_ticker").strip().upper()
    with col2:
        period = st.radio("Period", PERIODS, index=PERIODS.index('1y'), horizontal=True,
                          format_func=lambda p: PERIOD_LABELS[p])

    if not ticker:
        st.info("Enter a ticker to see its price history and earnings.")
        return

    with st.spinner(f"Loading {ticker} chart..."):
        series = api_call("GET", "/api/chart-data", params={"ticker": ticker, "period": period})
        markers = api_call("GET", "/api/earnings-dates", params={"ticker": ticker, "period": period})

    if not series:
        return
    points = series.get("data") or []
    if not points:
        st.warning("No price data for this period.")
        return

    matched = match_markers_to_series(points, (markers or {}).get("markers") or [], series.get("interval", "daily"))
    st.plotly_chart(create_price_chart(points, matched, ticker), use_container_width=True)

    if matched:
        st.markdown("### Earnings in this period")
        for m in reversed(matched):
            marker = m["earningsMarker"]
            col1, col2 = st.columns([4, 1])
            with col1:
                st.markdown(
                    f"**{m['earningsLabel']}** · {marker['date']} · EPS {marker.get('reportedEPS') or 'n/a'} "
                    f"vs est. {marker.get('estimatedEPS') or 'n/a'}"
                )
            with col2:
                if st.button("Analyze", key=f"chart_{marker['date']}"):
                    open_insights(ticker, {"earningsType": "past", "earningsPeriod": m['earningsLabel'],
                                           "reportDate": marker['date']})


# Calendar

def open_insights(ticker: str, context: Dict[str, str]):
    st.session_state.ticker = ticker
    st.session_state.messages = []
    st.session_state.insight_context = context
    st.session_state.insight_attempted = False
    st.session_state.pending_page = PAGES[0]
    st.rerun()


def display_calendar_page():
    today = date.today()
    col1, col2 = st.columns(2)
    with col1:
        year = st.number_input("Year", min_value=2000, max_value=2100, value=today.year, step=1)
    with col2:
        month = st.selectbox("Month", list(range(1, 13)), index=today.month - 1,
                             format_func=lambda m: date(2000, m, 1).strftime("%B"))

    with st.spinner("Loading earnings calendar..."):
        data = api_call("GET", "/api/calendar/earnings", params={"year": int(year), "month": month}, timeout=120)
    if data is None:
        return

    earnings = data.get("earnings") or {}
    if not earnings:
        st.info("No earnings this month for stocks on your watchlist.")
        return

    for day in sorted(earnings):
        st.markdown(f"#### {day}")
        for event in earnings[day]:
            badge = "badge-past" if event.get("isPast") else "badge-future"
            col1, col2 = st.columns([4, 1])
            with col1:
                st.markdown(
                    f'<div class="earnings-card"><b>{event["ticker"]}</b> {event.get("companyName") or ""} '
                    f'<span class="{badge}">{event.get("label") or ""}</span><br>'
                    f'Estimated EPS: {event.get("estimatedEPS") or "n/a"} · '
                    f'Reported EPS: {event.get("reportedEPS") or "n/a"}</div>',
                    unsafe_allow_html=True,
                )
            with col2:
                if st.button("Analyze", key=f"cal_{event['ticker']}_{day}"):
                    if event.get("isPast"):
                        context = {"earningsType": "past", "earningsPeriod": event.get("label"), "reportDate": day}
                    else:
                        context = {"earningsType": "future", "earningsPeriod": event.get("label"), "reportDate": day}
                    open_insights(event["ticker"], context)


# Watchlist

def display_watchlist_page():
    keywords = st.text_input("Search for a stock to add", placeholder="Company or ticker")
    if keywords:
        results = api_call("GET", "/api/search-ticker", params={"keywords": keywords})
        for match in (results or {}).get("matches", [])[:5]:
            col1, col2 = st.columns([4, 1])
            with col1:
                st.markdown(f"**{match['symbol']}** · {match['name']} ({match.get('region') or ''})")
            with col2:
                if st.button("➕ Add", key=f"add_{match['symbol']}"):
                    added = api_call("POST", "/api/watchlist",
                                     json={"ticker": match['symbol'], "company_name": match['name']})
                    if added:
                        st.success(f"Added {match['symbol']} to your watchlist")

    data = api_call("GET", "/api/watchlist")
    if data is None:
        return
    watchlist = data.get("watchlist") or []
    if not watchlist:
        st.info("Your watchlist is empty.")
        return

    with st.spinner("Refreshing prices and earnings dates..."):
        refreshed = api_call("POST", "/api/watchlist/data", timeout=120, json={
            "watchlist": [{"ticker": w["ticker"], "company_name": w["company_name"]} for w in watchlist]
        })

    rows = (refreshed or {}).get("data") or []
    if rows:
        df = pd.DataFrame(rows)[["ticker", "companyName", "price", "changePercent",
                                 "nextEarningsDate", "nextEarningsLabel"]]
        df.columns = ["Ticker", "Company", "Price", "Change", "Next earnings", "Period"]
        st.dataframe(df, use_container_width=True, hide_index=True)

    for entry in watchlist:
        col1, col2, col3 = st.columns([4, 1, 1])
        with col1:
            st.markdown(f"**{entry['ticker']}** · {entry['company_name']}")
        with col2:
            if st.button("Analyze", key=f"wl_analyze_{entry['ticker']}"):
                open_insights(entry['ticker'], {})
        with col3:
            if st.button("🗑️", key=f"wl_remove_{entry['ticker']}"):
                if api_call("DELETE", "/api/watchlist", params={"ticker": entry['ticker']}):
                    st.rerun()


def display_sidebar():
    with st.sidebar:
        st.markdown("### 📈 EarnSight")
        if check_backend_status():
            st.markdown('<p class="status-online">🟢 Backend Online</p>', unsafe_allow_html=True)
        else:
            st.markdown('<p class="status-offline">🔴 Backend Offline</p>', unsafe_allow_html=True)
            st.warning("Start the FastAPI server: python -m earnsight.main")

        if st.session_state.token:
            # the radio owns "page" once drawn, so redirects are applied before it
            if st.session_state.get("pending_page"):
                st.session_state.page = st.session_state.pop("pending_page")
            st.radio("Navigate", PAGES, key="page")
            st.markdown("---")
            st.caption(f"Signed in as {st.session_state.email}")
            if st.button("Sign out"):
                sign_out()

        with st.expander("Data Sources"):
            st.markdown("""
            - 📈 **Alpha Vantage**: prices, earnings, news sentiment
            - 🤖 **Google Gemini**: earnings analysis
            - 💾 **SQLAlchemy**: analyses, conversations, watchlist
            """)


def main():
    display_sidebar()

    if not st.session_state.token:
        display_auth_forms()
        return

    page = st.session_state.page
    if page == PAGES[0]:
        display_insights_page()
    elif page == PAGES[1]:
        display_chart_page()
    elif page == PAGES[2]:
        display_calendar_page()
    else:
        display_watchlist_page()


if __name__ == "__main__":
    main()
