"""
Shared fixtures for the EarnSight test suite.

Upstream HTTP is replaced by a fake Alpha Vantage keyed on the `function`
query parameter, the chat model by a fake with invoke/stream, and the
database by a fresh in-memory SQLite engine per test.
"""

import json
import os
import sys
from datetime import date, datetime, timedelta
from pathlib import Path

import pytest

# Must be set before earnsight is imported: the engine is built at import time.
os.environ["EARNSIGHT_DATABASE_URL"] = "sqlite://"
os.environ["ALPHA_VANTAGE_API_KEY"] = "test-alpha-vantage-key"
os.environ["GOOGLE_API_KEY"] = "test-google-key"

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from langchain_core.messages import AIMessage, AIMessageChunk  # noqa: E402

from earnsight import database  # noqa: E402


# Provider payload builders

def make_daily_series(today=None, days=500, start_price=100.0):
    """Weekday bars ending today, rising 0.1 per calendar day."""
    today = today or date.today()
    series = {}
    for offset in range(days):
        day = today - timedelta(days=offset)
        if day.weekday() >= 5:
            continue
        close = start_price + (days - offset) * 0.1
        series[day.isoformat()] = {
            "1. open": f"{close - 0.5:.2f}",
            "2. high": f"{close + 1:.2f}",
            "3. low": f"{close - 1:.2f}",
            "4. close": f"{close:.2f}",
            "5. volume": "1000000",
        }
    return {"Meta Data": {"2. Symbol": "NVDA"}, "Time Series (Daily)": series}


def make_intraday_series(interval_minutes, count, now=None):
    """Bars every interval_minutes going back from now."""
    now = (now or datetime.now()).replace(second=0, microsecond=0)
    series = {}
    for k in range(1, count + 1):
        moment = now - timedelta(minutes=interval_minutes * k)
        series[moment.strftime("%Y-%m-%d %H:%M:%S")] = {
            "1. open": "10.00", "2. high": "11.00", "3. low": "9.00",
            "4. close": f"{10 + k / 100:.2f}", "5. volume": "100",
        }
    return {"Meta Data": {}, f"Time Series ({interval_minutes}min)": series}


def make_earnings(today=None):
    """Four reported quarters, newest first, about 90 days apart."""
    today = today or date.today()
    quarters = []
    for i, days_ago in enumerate((30, 120, 210, 300)):
        reported = today - timedelta(days=days_ago)
        quarters.append({
            "fiscalDateEnding": (reported - timedelta(days=25)).isoformat(),
            "reportedDate": reported.isoformat(),
            "reportedEPS": f"{0.80 - i * 0.05:.2f}",
            "estimatedEPS": f"{0.75 - i * 0.05:.2f}",
            "surprise": "0.05",
            "surprisePercentage": "6.67",
            "reportTime": "post-market",
        })
    return {
        "symbol": "NVDA",
        "annualEarnings": [{"fiscalDateEnding": f"{today.year - n}-12-31", "reportedEPS": "2.94"} for n in range(6)],
        "quarterlyEarnings": quarters,
    }


def make_calendar_csv(today=None):
    today = today or date.today()
    return (
        "symbol,name,reportDate,fiscalDateEnding,estimate,currency\r\n"
        f"NVDA,NVIDIA Corp,{(today + timedelta(days=20)).isoformat()},"
        f"{(today - timedelta(days=5)).isoformat()},0.85,USD\r\n"
    )


OVERVIEW = {
    "Symbol": "NVDA",
    "Name": "NVIDIA Corp",
    "Sector": "TECHNOLOGY",
    "Industry": "SEMICONDUCTORS",
    "MarketCapitalization": "3000000000000",
    "PERatio": "55.1",
    "Description": "NVIDIA designs graphics processors. " * 30,
    "Address": "2788 San Tomas Expressway",
}

NEWS = {
    "items": "12",
    "feed": [
        {
            "title": f"Headline {i}",
            "time_published": "20250101T120000",
            "overall_sentiment_score": 0.2,
            "overall_sentiment_label": "Somewhat-Bullish",
            "summary": "s" * 400,
            "url": "https://example.com",
        }
        for i in range(12)
    ],
}

QUOTE = {
    "Global Quote": {
        "01. symbol": "NVDA",
        "05. price": "123.4500",
        "09. change": "1.2000",
        "10. change percent": "0.9817%",
    }
}

SEARCH = {
    "bestMatches": [
        {
            "1. symbol": f"NV{i}",
            "2. name": f"Company {i}",
            "3. type": "Equity",
            "4. region": "United States",
            "5. marketOpen": "09:30",
            "6. marketClose": "16:00",
            "7. timezone": "UTC-04",
            "8. currency": "USD",
            "9. matchScore": "0.8000",
        }
        for i in range(12)
    ]
}


class FakeResponse:
    def __init__(self, payload=None, text=None, status_code=200, content=b"", headers=None):
        self._payload = payload
        self.status_code = status_code
        self.text = text if text is not None else ""
        self.content = content
        self.headers = headers or {}

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload

    def raise_for_status(self):
        import requests
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeAlphaVantage:
    """Stands in for requests.get; answers by Alpha Vantage function name."""

    def __init__(self):
        today = date.today()
        self.calls = []
        self.responses = {
            "OVERVIEW": OVERVIEW,
            "NEWS_SENTIMENT": NEWS,
            "EARNINGS": make_earnings(today),
            "TIME_SERIES_DAILY": make_daily_series(today),
            "GLOBAL_QUOTE": QUOTE,
            "SYMBOL_SEARCH": SEARCH,
            "EARNINGS_CALENDAR": make_calendar_csv(today),
        }

    def __call__(self, url, params=None, headers=None, timeout=None):
        params = params or {}
        self.calls.append((url, dict(params)))
        function = params.get("function")

        if function == "TIME_SERIES_INTRADAY" and function not in self.responses:
            minutes = int(params["interval"].replace("min", ""))
            return FakeResponse(make_intraday_series(minutes, 400))

        payload = self.responses.get(function)
        if isinstance(payload, Exception):
            raise payload
        if isinstance(payload, str):
            return FakeResponse(text=payload)
        if payload is None:
            return FakeResponse(status_code=404)
        return FakeResponse(payload, text=json.dumps(payload))

    def functions(self):
        return [params.get("function") for _, params in self.calls]


class FakeChatModel:
    """Minimal chat model: records prompts, returns canned text."""

    def __init__(self, text="Shares rallied after a strong beat.", fail_stream_after=None, on_call=None):
        self.text = text
        self.fail_stream_after = fail_stream_after
        self.on_call = on_call
        self.invocations = []
        self.streams = []

    def invoke(self, messages):
        self.invocations.append(messages)
        if self.on_call:
            self.on_call()
        return AIMessage(content=self.text)

    def stream(self, messages):
        self.streams.append(messages)
        if self.on_call:
            self.on_call()
        words = self.text.split(" ")
        for i, word in enumerate(words):
            if self.fail_stream_after is not None and i >= self.fail_stream_after:
                raise RuntimeError("stream interrupted")
            yield AIMessageChunk(content=word if i == 0 else " " + word)


@pytest.fixture
def fake_av(monkeypatch):
    fake = FakeAlphaVantage()
    monkeypatch.setattr("earnsight.data_collectors.requests.get", fake)
    return fake


@pytest.fixture
def fake_llm():
    return FakeChatModel()


@pytest.fixture
def db():
    """Fresh in-memory database bound to the repository module."""
    database.configure_engine("sqlite://")
    database.init_db()
    yield database
    database.ENGINE.dispose()


@pytest.fixture
def client(db, fake_av, fake_llm):
    from fastapi.testclient import TestClient

    from earnsight.analyzer import EarningsAnalyst
    from earnsight.main import app, get_analyst

    app.dependency_overrides[get_analyst] = lambda: EarningsAnalyst(llm=fake_llm)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(client):
    response = client.post("/api/auth/register", json={"email": "analyst@example.com", "password": "s3cret-pass"})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}
