"""
Unit tests for the earnings analyst: context building, price movement
lines, message assembly and streaming with fallback.
"""

from datetime import date, timedelta

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from earnsight.analyzer import (
    EarningsAnalyst,
    compute_post_earnings_movement,
    compute_pre_earnings_movement,
    compute_price_movement,
    content_text,
    find_earnings_entry,
    history_messages,
    latest_earnings_period,
    stream_with_fallback,
)
from earnsight.prompts import FOLLOW_UP_PROMPT, INITIAL_ANALYSIS_PROMPT, PRE_EARNINGS_PROMPT, SPECIFIC_EARNINGS_PROMPT

from conftest import FakeChatModel


def series(closes):
    return {"Time Series (Daily)": {day: {"4. close": str(price)} for day, price in closes.items()}}


class TestPriceMovement:
    """Movement lines computed from daily closes"""

    def test_latest_vs_previous_close(self):
        line = compute_price_movement(series({"2025-06-26": 100, "2025-06-27": 102.5, "2025-06-25": 90}))
        assert line == "Stock price movement: +2.50% from previous period."

    def test_negative_movement(self):
        line = compute_price_movement(series({"2025-06-26": 100, "2025-06-27": 97}))
        assert line == "Stock price movement: -3.00% from previous period."

    def test_not_enough_data(self):
        assert compute_price_movement(series({"2025-06-27": 100})) == ""
        assert compute_price_movement({"error": "limit"}) == ""

    def test_post_earnings_week(self):
        closes = {"2025-05-28": 100, "2025-05-29": 105, "2025-06-04": 120, "2025-06-05": 130}
        line = compute_post_earnings_movement(series(closes), "2025-05-28")
        assert line == "Stock price movement after earnings: +20.00% one week after the announcement."

    def test_post_earnings_uses_first_close_after_weekend_report(self):
        closes = {"2025-05-26": 100, "2025-06-02": 90}
        line = compute_post_earnings_movement(series(closes), "2025-05-24")
        assert line == "Stock price movement after earnings: -10.00% one week after the announcement."

    def test_post_earnings_missing_week_after(self):
        assert compute_post_earnings_movement(series({"2025-05-28": 100}), "2025-05-28") == ""

    def test_pre_earnings_thirty_days(self):
        closes = {"2025-05-27": 110, "2025-05-26": 108, "2025-04-28": 100, "2025-04-20": 50}
        line = compute_pre_earnings_movement(series(closes), "2025-05-28")
        assert line == "Stock price movement leading into earnings: +10.00% over the past 30 days."

    def test_non_date_keys_are_ignored(self):
        post = {"2025-05-28": 100, "bogus-key": 1, "2025-06-04": 120}
        assert compute_post_earnings_movement(series(post), "2025-05-28") == (
            "Stock price movement after earnings: +20.00% one week after the announcement."
        )
        pre = {"2025-05-27": 110, "bogus-key": 1, "2025-04-28": 100}
        assert compute_pre_earnings_movement(series(pre), "2025-05-28") == (
            "Stock price movement leading into earnings: +10.00% over the past 30 days."
        )

    def test_only_malformed_keys(self):
        assert compute_post_earnings_movement(series({"bogus-key": 1}), "2025-05-28") == ""
        assert compute_pre_earnings_movement(series({"bogus-key": 1}), "2025-05-28") == ""

    def test_initial_context_with_malformed_earnings(self, fake_av):
        fake_av.responses["EARNINGS"] = {"annualEarnings": 5, "quarterlyEarnings": {"a": 1}}
        llm = FakeChatModel()
        result = EarningsAnalyst(llm=llm).generate_initial_insights("NVDA")
        assert result["earningsPeriod"] is None
        assert "Stock Ticker: NVDA" in llm.invocations[0][1].content

    def test_pre_earnings_bad_date(self):
        assert compute_pre_earnings_movement(series({"2025-05-27": 1}), "soon") == ""


class TestEarningsLookups:

    EARNINGS = {"quarterlyEarnings": [
        {"fiscalDateEnding": "2025-04-27", "reportedDate": "2025-05-28", "reportedEPS": "0.96"},
        {"fiscalDateEnding": "2025-01-26", "reportedDate": "None", "reportedEPS": "0.89"},
    ]}

    def test_latest_period_label(self):
        assert latest_earnings_period(self.EARNINGS) == "Q2FY25"
        assert latest_earnings_period({"error": "x"}) is None

    def test_find_by_reported_date(self):
        assert find_earnings_entry(self.EARNINGS, "2025-05-28T00:00:00")["reportedEPS"] == "0.96"

    def test_find_falls_back_to_fiscal_date(self):
        assert find_earnings_entry(self.EARNINGS, "2025-01-26")["reportedEPS"] == "0.89"

    def test_find_nothing(self):
        assert find_earnings_entry(self.EARNINGS, "2024-01-01") is None
        assert find_earnings_entry(self.EARNINGS, None) is None


class TestMessageHelpers:

    def test_history_roles(self):
        messages = history_messages([
            {"role": "user", "content": "Why did it drop?"},
            {"role": "assistant", "content": "Guidance."},
            {"role": "system", "content": "odd"},
        ])
        assert [type(m) for m in messages] == [HumanMessage, AIMessage, AIMessage]
        assert messages[0].content == "Why did it drop?"

    def test_content_text_flattens_parts(self):
        assert content_text("plain") == "plain"
        assert content_text([{"type": "text", "text": "a"}, "b", {"type": "image_url"}]) == "ab"


class TestEarningsAnalyst:
    """Prompt assembly against the fake provider and chat model"""

    def test_initial_insights(self, fake_av):
        llm = FakeChatModel(text="NVDA beat.")
        result = EarningsAnalyst(llm=llm).generate_initial_insights("NVDA")

        today = date.today()
        expected_period = latest_earnings_period({"quarterlyEarnings": [
            {"fiscalDateEnding": (today - timedelta(days=55)).isoformat()}
        ]})
        assert result == {"content": "NVDA beat.", "earningsPeriod": expected_period}

        system, human = llm.invocations[0]
        assert isinstance(system, SystemMessage)
        assert system.content == INITIAL_ANALYSIS_PROMPT
        assert "Stock Ticker: NVDA" in human.content
        assert "Stock price movement:" in human.content
        assert "Monthly price summary (last 3 years):" in human.content
        assert "Earnings Call Transcript: Not available" in human.content

    def test_initial_insights_with_provider_failures(self, fake_av):
        for function in ("OVERVIEW", "NEWS_SENTIMENT", "TIME_SERIES_DAILY"):
            fake_av.responses[function] = {"Note": "limit"}
        llm = FakeChatModel()
        EarningsAnalyst(llm=llm).generate_initial_insights("NVDA")
        human = llm.invocations[0][1].content
        assert "Overview data not available" in human
        assert "News data not available" in human
        assert "Time series data not available" in human

    def test_status_reported_through_generation(self, fake_av):
        seen = []
        EarningsAnalyst(llm=FakeChatModel()).generate_initial_insights("NVDA", on_status=seen.append)
        assert seen[0] == "Fetching company overview..."
        assert seen[-1] == "Generating earnings insights..."

    def test_specific_earnings(self, fake_av):
        llm = FakeChatModel()
        report_date = (date.today() - timedelta(days=120)).isoformat()
        EarningsAnalyst(llm=llm).generate_specific_earnings_analysis("NVDA", "Q1FY25", report_date)
        system, human = llm.invocations[0]
        assert system.content == SPECIFIC_EARNINGS_PROMPT
        assert "Earnings Period: Q1FY25" in human.content
        assert f"Report Date: {report_date}" in human.content
        assert '"reportedEPS": "0.75"' in human.content
        assert "one week after the announcement" in human.content

    def test_specific_earnings_unknown_date(self, fake_av):
        llm = FakeChatModel()
        EarningsAnalyst(llm=llm).generate_specific_earnings_analysis("NVDA", "Q1FY20", "2020-01-01")
        assert "Specific earnings details not available" in llm.invocations[0][1].content

    def test_pre_earnings(self, fake_av):
        llm = FakeChatModel()
        report_date = (date.today() + timedelta(days=20)).isoformat()
        EarningsAnalyst(llm=llm).generate_pre_earnings_analysis("NVDA", report_date)
        system, human = llm.invocations[0]
        assert system.content == PRE_EARNINGS_PROMPT
        assert f"Expected Report Date: {report_date}" in human.content
        assert "Earnings Expectations and Recent History" in human.content

    def test_follow_up_message_order(self, fake_av):
        llm = FakeChatModel(text="Margins expanded.")
        answer = EarningsAnalyst(llm=llm).handle_follow_up(
            "NVDA", "What about margins?",
            [{"role": "assistant", "content": "Initial take."}, {"role": "user", "content": "And guidance?"},
             {"role": "assistant", "content": "Raised."}],
        )
        assert answer == "Margins expanded."
        messages = llm.invocations[0]
        assert messages[0].content == FOLLOW_UP_PROMPT
        assert "comprehensive stock data bank for NVDA" in messages[1].content
        assert [type(m) for m in messages[2:]] == [AIMessage, HumanMessage, AIMessage, HumanMessage]
        assert messages[-1].content == "What about margins?"

    def test_generation_errors_propagate(self, fake_av):
        class BrokenModel(FakeChatModel):
            def invoke(self, messages):
                raise RuntimeError("model unavailable")

        with pytest.raises(RuntimeError, match="model unavailable"):
            EarningsAnalyst(llm=BrokenModel()).generate_initial_insights("NVDA")


class TestStreamWithFallback:
    """Streaming falls back to the complete answer in chunks"""

    def test_streams_when_possible(self):
        out = list(stream_with_fallback(lambda: iter(["a", "b"]), lambda: pytest.fail("not needed")))
        assert out == ["a", "b"]

    def test_fallback_before_first_fragment(self):
        def broken():
            raise RuntimeError("organization not verified")
            yield  # pragma: no cover

        out = list(stream_with_fallback(broken, lambda: "x" * 250, delay=0))
        assert out == ["x" * 100, "x" * 100, "x" * 50]

    def test_fallback_mid_stream_notifies_consumer(self):
        def partial():
            yield "Shares "
            raise RuntimeError("connection reset")

        resets = []
        out = list(stream_with_fallback(partial, lambda: "Shares rallied.", on_fallback=lambda: resets.append(True),
                                        delay=0))
        assert out == ["Shares ", "Shares rallied."]
        assert resets == [True]

    def test_complete_failure_propagates(self):
        def broken():
            raise RuntimeError("stream down")
            yield  # pragma: no cover

        def complete():
            raise RuntimeError("model down")

        with pytest.raises(RuntimeError, match="model down"):
            list(stream_with_fallback(broken, complete, delay=0))

    def test_analyst_stream_falls_back(self, fake_av):
        llm = FakeChatModel(text="one two three", fail_stream_after=1)
        analyst = EarningsAnalyst(llm=llm)
        messages, _ = analyst.initial_messages("NVDA")
        resets = []
        out = list(analyst.stream_messages_with_fallback(messages, on_fallback=lambda: resets.append(True)))
        assert out == ["one", "one two three"]
        assert resets == [True]
        assert len(llm.invocations) == 1
