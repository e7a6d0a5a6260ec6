import json
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from . import auth, database
from .analyzer import EarningsAnalyst
from .chart import (
    DAILY,
    build_earnings_markers,
    filter_time_series,
    interval_for_period,
    validate_period,
)
from .config import ConfigurationError, get_alpha_vantage_api_key, get_google_api_key, validate_configuration
from .data_collectors import (
    PROVIDER_ERROR,
    RATE_LIMIT,
    error_kind,
    fetch_daily_series,
    fetch_earnings,
    fetch_earnings_calendar,
    fetch_intraday,
    fetch_overview,
    fetch_quote_summary,
    search_symbols,
)
from .earnings import (
    filter_events_by_month,
    format_earnings_label,
    group_events_by_date,
    load_earnings_events,
    next_earnings_date,
    parse_calendar_csv,
    previous_earnings_date,
)
from .logos import fetch_logo
from .status_store import delete_status, get_status, status_reporter

logger = logging.getLogger(__name__)

RATE_LIMIT_DETAIL = "API rate limit exceeded. Please try again later."
WATCHLIST_WORKERS = 4


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Starting EarnSight API...")
    if not validate_configuration():
        logger.warning("⚠ Some API keys are missing; affected routes will answer 500")

    try:
        database.init_db()
        logger.info("✅ Database initialized")
    except SQLAlchemyError as e:
        logger.error(f"❌ Error initializing database: {e}")
        raise

    yield

    logger.info("Shutting down EarnSight API...")


app = FastAPI(
    title="EarnSight API",
    description="Earnings analysis, price charts, earnings calendar and watchlist",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error(f"Configuration error on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": str(exc).split(".")[0]})


# Request bodies

class Credentials(BaseModel):
    email: str
    password: str


class ChatTurn(BaseModel):
    role: str
    content: str


class InsightRequest(BaseModel):
    ticker: str
    isInitial: bool = True
    message: Optional[str] = None
    conversationHistory: List[ChatTurn] = []
    earningsType: Optional[str] = None
    earningsPeriod: Optional[str] = None
    reportDate: Optional[str] = None
    requestId: Optional[str] = None


class WatchlistAddRequest(BaseModel):
    ticker: str
    company_name: str


class WatchlistItem(BaseModel):
    ticker: str
    company_name: Optional[str] = None


class WatchlistDataRequest(BaseModel):
    watchlist: List[WatchlistItem]


# Helpers

def _require_key(getter) -> None:
    """Fail with 500 "<service> API key not configured" before any upstream call."""
    try:
        getter()
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e).split(".")[0])


def _raise_for_provider(result: Any, detail: Optional[str] = None) -> None:
    kind = error_kind(result)
    if kind == RATE_LIMIT:
        raise HTTPException(status_code=429, detail=RATE_LIMIT_DETAIL)
    if kind == PROVIDER_ERROR:
        raise HTTPException(status_code=400, detail=detail or result.get('error'))


def _normalize_ticker(ticker: Optional[str]) -> str:
    ticker = (ticker or "").strip().upper()
    if not ticker:
        raise HTTPException(status_code=400, detail="Ticker is required")
    return ticker


def _history(req: InsightRequest) -> List[Dict[str, str]]:
    return [{"role": turn.role, "content": turn.content} for turn in req.conversationHistory]


def _build_messages(analyst: EarningsAnalyst, req: InsightRequest, ticker: str, on_status):
    """Messages for the request and the earnings period to report back."""
    if not req.isInitial:
        return analyst.follow_up_messages(ticker, req.message, _history(req), on_status), None

    if req.earningsType == "past" and req.earningsPeriod and req.reportDate:
        return (analyst.specific_messages(ticker, req.earningsPeriod, req.reportDate, on_status),
                req.earningsPeriod)
    if req.earningsType == "future" and req.reportDate:
        return analyst.pre_earnings_messages(ticker, req.reportDate, on_status), req.earningsPeriod
    return analyst.initial_messages(ticker, on_status)


def _persist(user_id: str, ticker: str, req: InsightRequest, content: str) -> None:
    """Store the analysis or turn; failures are logged, never surfaced."""
    try:
        if req.isInitial:
            database.save_analysis(user_id, ticker, content)
        else:
            database.save_conversation(user_id, ticker, req.message, content)
    except SQLAlchemyError as e:
        logger.error(f"Error storing {'analysis' if req.isInitial else 'conversation'} for {ticker}: {e}")


def _validate_insight_request(req: InsightRequest) -> str:
    ticker = _normalize_ticker(req.ticker)
    if not req.isInitial and not (req.message or "").strip():
        raise HTTPException(status_code=400, detail="Message is required")
    _require_key(get_alpha_vantage_api_key)
    _require_key(get_google_api_key)
    return ticker


def _sse(payload: Any) -> str:
    body = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {body}\n\n"


def get_analyst() -> EarningsAnalyst:
    return EarningsAnalyst()


# Public

@app.get("/health")
def health_check() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/")
def root() -> Dict[str, str]:
    return {
        "message": "Welcome to EarnSight API",
        "description": "Earnings analysis for US equities",
        "docs": "/docs",
        "health": "/health"
    }


# Auth

@app.post("/api/auth/register")
def register(body: Credentials) -> Dict[str, str]:
    try:
        return auth.register(body.email, body.password)
    except auth.AuthError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/api/auth/login")
def login(body: Credentials) -> Dict[str, str]:
    try:
        return auth.login(body.email, body.password)
    except auth.AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))


@app.post("/api/auth/logout")
def logout(user: Dict[str, str] = Depends(auth.get_current_user)) -> Dict[str, bool]:
    auth.logout(user["token"])
    return {"success": True}


# Insights

@app.post("/api/insights")
def create_insights(req: InsightRequest,
                    user: Dict[str, str] = Depends(auth.get_current_user),
                    analyst: EarningsAnalyst = Depends(get_analyst)) -> Dict[str, Any]:
    ticker = _validate_insight_request(req)
    on_status = status_reporter(req.requestId)
    logger.info(f"Insights request for {ticker} (initial={req.isInitial}, type={req.earningsType})")

    try:
        messages, earnings_period = _build_messages(analyst, req, ticker, on_status)
        if on_status:
            on_status("Generating earnings insights..." if req.isInitial else "Generating response...")
        content = analyst.complete(messages)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ Error generating insights for {ticker}: {e}")
        raise HTTPException(status_code=500, detail=str(e) or "Failed to generate insights")
    finally:
        if req.requestId:
            delete_status(req.requestId)

    _persist(user["id"], ticker, req, content)
    return {"content": content, "earningsPeriod": earnings_period}


@app.post("/api/insights/stream")
def stream_insights(req: InsightRequest,
                    user: Dict[str, str] = Depends(auth.get_current_user),
                    analyst: EarningsAnalyst = Depends(get_analyst)) -> StreamingResponse:
    ticker = _validate_insight_request(req)
    on_status = status_reporter(req.requestId)

    def events():
        parts: List[str] = []
        pending_reset: List[bool] = []

        def on_fallback():
            parts.clear()
            pending_reset.append(True)

        try:
            messages, earnings_period = _build_messages(analyst, req, ticker, on_status)
            if earnings_period:
                yield _sse({"earningsPeriod": earnings_period})
            if on_status:
                on_status("Generating earnings insights..." if req.isInitial else "Generating response...")

            for fragment in analyst.stream_messages_with_fallback(messages, on_fallback=on_fallback):
                if pending_reset:
                    pending_reset.clear()
                    yield _sse({"reset": True})
                parts.append(fragment)
                yield _sse({"chunk": fragment})

            _persist(user["id"], ticker, req, "".join(parts))
            yield _sse("[DONE]")
        except Exception as e:
            logger.error(f"❌ Error in insights stream for {ticker}: {e}")
            yield _sse({"error": str(e) or "Internal server error"})
        finally:
            if req.requestId:
                delete_status(req.requestId)

    return StreamingResponse(events(), media_type="text/event-stream",
                             headers={"Cache-Control": "no-cache", "Connection": "keep-alive"})


@app.get("/api/insights/status")
def insights_status(requestId: Optional[str] = None) -> Dict[str, str]:
    if not requestId:
        raise HTTPException(status_code=400, detail="Missing requestId")
    return {"status": get_status(requestId) or ""}


@app.get("/api/insights/history")
def insights_history(ticker: Optional[str] = None,
                     user: Dict[str, str] = Depends(auth.get_current_user)) -> Dict[str, Any]:
    ticker = _normalize_ticker(ticker)
    return {
        "ticker": ticker,
        "analyses": database.get_analyses(user["id"], ticker),
        "conversations": database.get_conversations(user["id"], ticker),
    }


# Market data

@app.get("/api/chart-data")
def chart_data(ticker: Optional[str] = None, period: Optional[str] = None,
               user: Dict[str, str] = Depends(auth.get_current_user)) -> Dict[str, Any]:
    if not ticker or not period:
        raise HTTPException(status_code=400, detail="Ticker and period are required")
    try:
        interval = interval_for_period(period)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    _require_key(get_alpha_vantage_api_key)

    ticker = ticker.strip().upper()
    payload = fetch_daily_series(ticker) if interval == DAILY else fetch_intraday(ticker, interval)
    _raise_for_provider(payload)
    if error_kind(payload):
        raise HTTPException(status_code=500, detail=payload.get('error') or payload.get('information'))

    return {"data": filter_time_series(payload, period, interval), "interval": interval}


@app.get("/api/earnings-dates")
def earnings_dates(ticker: Optional[str] = None, period: Optional[str] = None,
                   user: Dict[str, str] = Depends(auth.get_current_user)) -> Dict[str, Any]:
    if not ticker or not period:
        raise HTTPException(status_code=400, detail="Ticker and period are required")
    try:
        validate_period(period)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    _require_key(get_alpha_vantage_api_key)

    ticker = ticker.strip().upper()
    with ThreadPoolExecutor(max_workers=2) as executor:
        earnings_future = executor.submit(fetch_earnings, ticker)
        daily_future = executor.submit(fetch_daily_series, ticker)
        earnings = earnings_future.result()
        daily = daily_future.result()

    _raise_for_provider(earnings)
    if error_kind(daily):
        logger.warning(f"Daily series unavailable for {ticker} markers: {daily}")
        daily = {}

    return {"markers": build_earnings_markers(earnings, daily, period)}


@app.get("/api/search-ticker")
def search_ticker(keywords: Optional[str] = None) -> Dict[str, Any]:
    if not keywords:
        raise HTTPException(status_code=400, detail="Keywords are required")
    _require_key(get_alpha_vantage_api_key)

    matches = search_symbols(keywords)
    _raise_for_provider(matches)
    if error_kind(matches):
        raise HTTPException(status_code=500, detail="Failed to search tickers")
    return {"matches": matches}


@app.get("/api/stock-quote")
def stock_quote(ticker: Optional[str] = None,
                user: Dict[str, str] = Depends(auth.get_current_user)) -> Dict[str, Any]:
    ticker = _normalize_ticker(ticker)
    _require_key(get_alpha_vantage_api_key)

    quote = fetch_quote_summary(ticker)
    _raise_for_provider(quote)
    if error_kind(quote):
        raise HTTPException(status_code=500, detail="Failed to fetch stock quote")
    return quote


# Watchlist

@app.get("/api/watchlist")
def get_watchlist(user: Dict[str, str] = Depends(auth.get_current_user)) -> Dict[str, Any]:
    try:
        return {"watchlist": database.list_watchlist(user["id"])}
    except SQLAlchemyError as e:
        logger.error(f"Error fetching watchlist: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch watchlist")


@app.post("/api/watchlist")
def add_to_watchlist(body: WatchlistAddRequest,
                     user: Dict[str, str] = Depends(auth.get_current_user)) -> Dict[str, Any]:
    if not body.ticker.strip() or not body.company_name.strip():
        raise HTTPException(status_code=400, detail="Ticker and company name are required")
    try:
        item = database.add_watchlist_entry(user["id"], body.ticker.strip(), body.company_name.strip())
    except database.WatchlistConflictError:
        raise HTTPException(status_code=400, detail="Stock already in watchlist")
    except SQLAlchemyError as e:
        logger.error(f"Error adding to watchlist: {e}")
        raise HTTPException(status_code=500, detail="Failed to add to watchlist")
    return {"watchlistItem": item}


@app.delete("/api/watchlist")
def remove_from_watchlist(ticker: Optional[str] = None,
                          user: Dict[str, str] = Depends(auth.get_current_user)) -> Dict[str, bool]:
    ticker = _normalize_ticker(ticker)
    try:
        database.remove_watchlist_entry(user["id"], ticker)
    except SQLAlchemyError as e:
        logger.error(f"Error removing from watchlist: {e}")
        raise HTTPException(status_code=500, detail="Failed to remove from watchlist")
    return {"success": True}


def _watchlist_row(item: WatchlistItem, today: date) -> Dict[str, Any]:
    ticker = item.ticker.upper()
    row = {
        "ticker": ticker,
        "companyName": item.company_name,
        "price": None,
        "changePercent": None,
        "nextEarningsDate": None,
        "nextEarningsLabel": None,
    }

    quote = fetch_quote_summary(ticker)
    if not error_kind(quote):
        row["price"] = quote.get("price")
        row["changePercent"] = quote.get("changePercent")

    calendar_text = fetch_earnings_calendar(ticker)
    if isinstance(calendar_text, str):
        upcoming = next_earnings_date(parse_calendar_csv(calendar_text), today)
        row["nextEarningsDate"] = upcoming
        row["nextEarningsLabel"] = format_earnings_label(upcoming)
    return row


@app.post("/api/watchlist/data")
def watchlist_data(body: WatchlistDataRequest,
                   user: Dict[str, str] = Depends(auth.get_current_user)) -> Dict[str, Any]:
    _require_key(get_alpha_vantage_api_key)
    if not body.watchlist:
        return {"data": []}

    today = date.today()
    with ThreadPoolExecutor(max_workers=min(WATCHLIST_WORKERS, len(body.watchlist))) as executor:
        results = list(executor.map(lambda item: _watchlist_row(item, today), body.watchlist))
    return {"data": results}


# Calendar and lookups

@app.get("/api/calendar/earnings")
def calendar_earnings(year: Optional[int] = None,
                      month: Optional[int] = Query(default=None, ge=1, le=12),
                      user: Dict[str, str] = Depends(auth.get_current_user)) -> Dict[str, Any]:
    _require_key(get_alpha_vantage_api_key)
    try:
        watchlist = database.list_watchlist(user["id"])
    except SQLAlchemyError as e:
        logger.error(f"Error fetching watchlist for calendar: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch watchlist")
    if not watchlist:
        return {"earnings": {}}

    today = date.today()
    year = year or today.year
    month = month or today.month

    def events_for(entry):
        try:
            return load_earnings_events(entry["ticker"], entry["company_name"], today=today)
        except Exception as e:
            logger.error(f"Error loading earnings events for {entry['ticker']}: {e}")
            return []

    with ThreadPoolExecutor(max_workers=min(WATCHLIST_WORKERS, len(watchlist))) as executor:
        events = [event for batch in executor.map(events_for, watchlist) for event in batch]

    return {"earnings": group_events_by_date(filter_events_by_month(events, year, month))}


@app.get("/api/earnings-lookup")
def earnings_lookup(ticker: Optional[str] = None,
                    user: Dict[str, str] = Depends(auth.get_current_user)) -> Dict[str, Any]:
    ticker = _normalize_ticker(ticker)
    _require_key(get_alpha_vantage_api_key)

    with ThreadPoolExecutor(max_workers=3) as executor:
        overview_future = executor.submit(fetch_overview, ticker)
        earnings_future = executor.submit(fetch_earnings, ticker)
        calendar_future = executor.submit(fetch_earnings_calendar, ticker)
        overview = overview_future.result()
        earnings = earnings_future.result()
        calendar_text = calendar_future.result()

    for result in (overview, earnings, calendar_text):
        _raise_for_provider(result, detail="Failed to fetch earnings data")

    today = date.today()
    rows = parse_calendar_csv(calendar_text) if isinstance(calendar_text, str) else []
    history = earnings.get("quarterlyEarnings") if not error_kind(earnings) else []

    return {
        "ticker": ticker,
        "companyName": overview.get("Name") or ticker,
        "nextEarningsDate": next_earnings_date(rows, today),
        "previousEarningsDate": previous_earnings_date(history or [], today),
    }


@app.get("/api/logo/{ticker}")
def company_logo(ticker: str) -> Response:
    if not ticker.strip():
        raise HTTPException(status_code=400, detail="Ticker is required")
    logo = fetch_logo(ticker.strip())
    if logo is None:
        raise HTTPException(status_code=404, detail="Logo not found")
    content, content_type = logo
    return Response(content=content, media_type=content_type, headers={
        "Cache-Control": "public, max-age=86400, stale-while-revalidate=604800",
    })


if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    reload_flag = os.getenv("UVICORN_RELOAD", "false").lower() == "true"
    log_level = os.getenv("LOG_LEVEL", "info").lower()
    logger.info(f"Starting EarnSight FastAPI server on 0.0.0.0:{port} (reload={reload_flag}) ...")
    uvicorn.run(
        "earnsight.main:app",
        host="0.0.0.0",
        port=port,
        reload=reload_flag,
        log_level=log_level
    )
