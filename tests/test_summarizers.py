"""
Unit tests for the context summarizers that condense provider payloads
before they are handed to the chat model.
"""

import json
from datetime import date

from earnsight.summarizers import (
    EARNINGS_UNAVAILABLE,
    NEWS_UNAVAILABLE,
    NOT_AVAILABLE,
    OVERVIEW_UNAVAILABLE,
    QUOTE_UNAVAILABLE,
    TIME_SERIES_UNAVAILABLE,
    monthly_rollup,
    summarize_earnings,
    summarize_earnings_estimates,
    summarize_news,
    summarize_overview,
    summarize_quote,
    summarize_time_series,
)

from conftest import NEWS, OVERVIEW, QUOTE, make_earnings


def bar(high, low, close):
    return {"1. open": "0", "2. high": str(high), "3. low": str(low), "4. close": str(close)}


class TestSentinels:
    """Malformed or failed payloads yield fixed text instead of raising"""

    def test_error_values(self):
        error = {"error": "Rate limit exceeded", "Note": "slow down"}
        assert summarize_news(error) == NEWS_UNAVAILABLE
        assert summarize_overview(error) == OVERVIEW_UNAVAILABLE
        assert summarize_earnings(error) == EARNINGS_UNAVAILABLE
        assert summarize_time_series(error) == TIME_SERIES_UNAVAILABLE
        assert summarize_quote(error) == QUOTE_UNAVAILABLE
        assert summarize_earnings_estimates(error) == NOT_AVAILABLE

    def test_wrong_types(self):
        assert summarize_news({"feed": "not a list"}) == NEWS_UNAVAILABLE
        assert summarize_news(None) == NEWS_UNAVAILABLE
        assert summarize_overview("text") == OVERVIEW_UNAVAILABLE
        assert summarize_quote({"Global Quote": "n/a"}) == QUOTE_UNAVAILABLE
        assert summarize_time_series({}) == TIME_SERIES_UNAVAILABLE

    def test_unparseable_bars(self):
        payload = {"Time Series (Daily)": {"2025-01-02": {"2. high": "abc", "3. low": "1", "4. close": "1"}}}
        assert summarize_time_series(payload, today=date(2025, 2, 1)) == TIME_SERIES_UNAVAILABLE

    def test_empty_earnings(self):
        assert summarize_earnings_estimates({"quarterlyEarnings": [], "annualEarnings": []}) == NOT_AVAILABLE

    def test_estimates_with_non_list_entries(self):
        assert summarize_earnings_estimates({"annualEarnings": {"a": 1}}) == NOT_AVAILABLE
        assert summarize_earnings_estimates({"annualEarnings": 5, "quarterlyEarnings": "n/a"}) == NOT_AVAILABLE

    def test_estimates_skip_malformed_annual_for_quarterly(self):
        quarterly = [{"fiscalDateEnding": "2025-04-27", "estimatedEPS": "0.93"}]
        result = summarize_earnings_estimates({"annualEarnings": {"a": 1}, "quarterlyEarnings": quarterly})
        assert json.loads(result) == quarterly


class TestNewsAndOverview:
    """Truncation of news and overview"""

    def test_news_keeps_ten_items_and_short_summaries(self):
        items = json.loads(summarize_news(NEWS))
        assert len(items) == 10
        assert items[0] == {
            "title": "Headline 0",
            "time_published": "20250101T120000",
            "sentiment_score": 0.2,
            "sentiment_label": "Somewhat-Bullish",
            "summary": "s" * 200,
        }

    def test_overview_allow_list(self):
        overview = json.loads(summarize_overview(OVERVIEW))
        assert overview["Name"] == "NVIDIA Corp"
        assert "Address" not in overview
        assert len(overview["Description"]) == 500
        assert overview["DividendYield"] is None


class TestEarnings:
    """Earnings history and estimates"""

    def test_quarterly_fields_are_trimmed(self):
        earnings = make_earnings(date(2025, 6, 1))
        summary = json.loads(summarize_earnings(earnings))
        assert len(summary["quarterlyEarnings"]) == 4
        assert set(summary["quarterlyEarnings"][0]) == {
            "fiscalDateEnding", "reportedEPS", "surprise", "surprisePercentage"
        }
        assert len(summary["annualEarnings"]) == 4

    def test_quarterly_capped_at_eight(self):
        earnings = {"quarterlyEarnings": [{"fiscalDateEnding": f"2020-0{i % 9 + 1}-30"} for i in range(12)]}
        assert len(json.loads(summarize_earnings(earnings))["quarterlyEarnings"]) == 8

    def test_estimates_prefer_annual(self):
        earnings = make_earnings(date(2025, 6, 1))
        assert json.loads(summarize_earnings_estimates(earnings)) == earnings["annualEarnings"][:4]

    def test_estimates_fall_back_to_quarterly(self):
        earnings = make_earnings(date(2025, 6, 1))
        earnings["annualEarnings"] = []
        assert json.loads(summarize_earnings_estimates(earnings)) == earnings["quarterlyEarnings"][:4]


class TestMonthlyRollup:
    """Per-month max high, min low and last-seen close"""

    def test_rollup_uses_iteration_order_for_close(self):
        daily = {
            "2025-01-31": bar(12, 9, 11),
            "2025-01-02": bar(15, 8, 10),
            "2025-02-03": bar(20, 18, 19),
        }
        monthly = monthly_rollup(daily)
        assert monthly["2025-01"] == {"high": 15.0, "low": 8.0, "close": 10.0}
        assert monthly["2025-02"] == {"high": 20.0, "low": 18.0, "close": 19.0}

    def test_rollup_respects_since(self):
        daily = {"2020-01-02": bar(1, 1, 1), "2025-01-02": bar(2, 2, 2)}
        assert list(monthly_rollup(daily, since=date(2022, 1, 1))) == ["2025-01"]

    def test_time_series_summary_format(self):
        payload = {"Time Series (Daily)": {
            "2025-01-03": bar(15, 8, 10),
            "2024-12-31": bar(9.5, 7.25, 9),
            "2019-12-31": bar(1, 1, 1),
        }}
        summary = summarize_time_series(payload, today=date(2025, 1, 10))
        assert summary == (
            "Monthly price summary (last 3 years):\n"
            "2024-12: High=9.50, Low=7.25, Close=9.00\n"
            "2025-01: High=15.00, Low=8.00, Close=10.00"
        )

    def test_time_series_keeps_last_36_months(self):
        daily = {}
        for year in (2022, 2023, 2024, 2025):
            for month in range(1, 13):
                daily[f"{year}-{month:02d}-15"] = bar(2, 1, 1.5)
        summary = summarize_time_series({"Time Series (Daily)": daily}, today=date(2025, 12, 31))
        lines = summary.splitlines()[1:]
        assert len(lines) == 36
        assert lines[0].startswith("2023-01")
        assert lines[-1].startswith("2025-12")


class TestQuote:

    def test_quote_fields(self):
        assert json.loads(summarize_quote(QUOTE)) == {
            "symbol": "NVDA",
            "price": "123.4500",
            "change": "1.2000",
            "changePercent": "0.9817%",
        }
