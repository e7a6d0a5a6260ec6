import json
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from .config import get_chat_llm
from .data_collectors import StatusCallback, fetch_stock_data, is_error
from .earnings import format_earnings_label, normalize_date, parse_date
from .prompts import FOLLOW_UP_PROMPT, INITIAL_ANALYSIS_PROMPT, PRE_EARNINGS_PROMPT, SPECIFIC_EARNINGS_PROMPT
from .summarizers import (
    DAILY_SERIES_KEY,
    NOT_AVAILABLE,
    summarize_earnings,
    summarize_earnings_estimates,
    summarize_news,
    summarize_overview,
    summarize_quote,
    summarize_time_series,
)

logger = logging.getLogger(__name__)

FALLBACK_CHUNK_SIZE = 100
FALLBACK_CHUNK_DELAY = 0.005

TRANSCRIPT_NOTE = 'Earnings Call Transcript: Not available via Alpha Vantage API'


def _daily_closes(time_series: Any) -> Dict[str, float]:
    if not isinstance(time_series, dict) or is_error(time_series):
        return {}
    series = time_series.get(DAILY_SERIES_KEY)
    if not isinstance(series, dict):
        return {}
    closes = {}
    for day, bar in series.items():
        # keys must parse as dates; the movement helpers subtract them
        key = normalize_date(day)
        if key is None:
            continue
        try:
            closes[key] = float(bar['4. close'])
        except (KeyError, TypeError, ValueError):
            continue
    return closes


def _pct_change(new: Optional[float], old: Optional[float]) -> Optional[float]:
    if new is None or not old:
        return None
    return (new - old) / old * 100


def _signed(change: float) -> str:
    return f"{'+' if change >= 0 else ''}{change:.2f}%"


def compute_price_movement(time_series: Any) -> str:
    """Latest close against the previous close."""
    closes = _daily_closes(time_series)
    days = sorted(closes, reverse=True)
    if len(days) < 2:
        return ''
    change = _pct_change(closes[days[0]], closes[days[1]])
    if change is None:
        return ''
    return f"Stock price movement: {_signed(change)} from previous period."


def compute_post_earnings_movement(time_series: Any, report_date: Any) -> str:
    """Close on (or up to two days after) the report against the close a week later."""
    earnings_day = parse_date(report_date)
    if earnings_day is None:
        return ''

    closes = _daily_closes(time_series)
    earnings_price = None
    week_after_price = None
    for day in sorted(closes):
        diff = (parse_date(day) - earnings_day).days
        if diff == 0 or (0 <= diff <= 2 and earnings_price is None):
            earnings_price = closes[day]
        if 7 <= diff <= 9 and week_after_price is None:
            week_after_price = closes[day]

    change = _pct_change(week_after_price, earnings_price)
    if change is None:
        return ''
    return f"Stock price movement after earnings: {_signed(change)} one week after the announcement."


def compute_pre_earnings_movement(time_series: Any, report_date: Any) -> str:
    """Trailing 30-day change ending at the expected report date."""
    earnings_day = parse_date(report_date)
    if earnings_day is None:
        return ''

    closes = _daily_closes(time_series)
    current_price = None
    price_30_days_ago = None
    for day in sorted(closes, reverse=True):
        diff = (earnings_day - parse_date(day)).days
        if 0 <= diff <= 5 and current_price is None:
            current_price = closes[day]
        if 25 <= diff <= 35 and price_30_days_ago is None:
            price_30_days_ago = closes[day]

    change = _pct_change(current_price, price_30_days_ago)
    if change is None:
        return ''
    return f"Stock price movement leading into earnings: {_signed(change)} over the past 30 days."


def _quarterly(earnings: Any) -> List[Dict[str, Any]]:
    if not isinstance(earnings, dict) or is_error(earnings):
        return []
    quarterly = earnings.get('quarterlyEarnings')
    return [q for q in quarterly if isinstance(q, dict)] if isinstance(quarterly, list) else []


def latest_earnings_period(earnings: Any) -> Optional[str]:
    quarterly = _quarterly(earnings)
    if not quarterly:
        return None
    return format_earnings_label(quarterly[0].get('fiscalDateEnding'))


def _report_day(entry: Dict[str, Any]):
    return parse_date(entry.get('reportedDate')) or parse_date(entry.get('fiscalDateEnding'))


def find_earnings_entry(earnings: Any, report_date: Any) -> Optional[Dict[str, Any]]:
    """Quarter whose reported date (else fiscal date) equals report_date."""
    target = normalize_date(report_date)
    if not target:
        return None
    for entry in _quarterly(earnings):
        if normalize_date(_report_day(entry)) == target:
            return entry
    return None


def _with_movement(movement: str) -> str:
    return f"{movement}\n" if movement else ''


def build_initial_context(ticker: str, stock_data: Dict[str, Any]) -> str:
    return f"""
Stock Ticker: {ticker}
{_with_movement(compute_price_movement(stock_data.get('time_series')))}
Company Overview: {summarize_overview(stock_data.get('overview'))}

Market News and Sentiment (Top 10 recent): {summarize_news(stock_data.get('news'))}

Earnings Estimates: {summarize_earnings_estimates(stock_data.get('earnings'))}

Earnings History (Last 8 quarters): {summarize_earnings(stock_data.get('earnings'))}

{TRANSCRIPT_NOTE}

Time Series Summary: {summarize_time_series(stock_data.get('time_series'))}

Current Quote: {summarize_quote(stock_data.get('quote'))}
"""


def _specific_details(entry: Optional[Dict[str, Any]]) -> str:
    if not entry:
        return 'Specific earnings details not available'
    return json.dumps({
        'fiscalDateEnding': entry.get('fiscalDateEnding'),
        'reportedDate': entry.get('reportedDate'),
        'reportedEPS': entry.get('reportedEPS'),
        'estimatedEPS': entry.get('estimatedEPS'),
        'surprise': entry.get('surprise'),
        'surprisePercentage': entry.get('surprisePercentage'),
    }, indent=2)


def build_specific_context(ticker: str, earnings_period: str, report_date: str,
                           stock_data: Dict[str, Any]) -> str:
    entry = find_earnings_entry(stock_data.get('earnings'), report_date)
    movement = ''
    if entry:
        movement = compute_post_earnings_movement(
            stock_data.get('time_series'), _report_day(entry))

    return f"""
Stock Ticker: {ticker}
Earnings Period: {earnings_period}
Report Date: {report_date}
{_with_movement(movement)}
Company Overview: {summarize_overview(stock_data.get('overview'))}

Market News and Sentiment (Around earnings period): {summarize_news(stock_data.get('news'))}

Specific Earnings Event Details: {_specific_details(entry)}

Recent Earnings History (For context): {summarize_earnings(stock_data.get('earnings'))}

Time Series Summary: {summarize_time_series(stock_data.get('time_series'))}
"""


def _earnings_expectations(earnings: Any) -> str:
    quarterly = _quarterly(earnings)
    if not quarterly:
        return NOT_AVAILABLE
    return json.dumps([
        {
            'fiscalDateEnding': q.get('fiscalDateEnding'),
            'estimatedEPS': q.get('estimatedEPS'),
            'reportedEPS': q.get('reportedEPS'),
        }
        for q in quarterly[:4]
    ], indent=2)


def build_pre_earnings_context(ticker: str, report_date: str, stock_data: Dict[str, Any]) -> str:
    movement = compute_pre_earnings_movement(stock_data.get('time_series'), report_date)
    return f"""
Stock Ticker: {ticker}
Expected Report Date: {report_date}
{_with_movement(movement)}
Company Overview: {summarize_overview(stock_data.get('overview'))}

Market News and Sentiment (Recent, leading into earnings): {summarize_news(stock_data.get('news'))}

Earnings Expectations and Recent History: {_earnings_expectations(stock_data.get('earnings'))}

Current Quote: {summarize_quote(stock_data.get('quote'))}
"""


def build_follow_up_context(ticker: str, stock_data: Dict[str, Any]) -> str:
    return f"""
Stock Ticker: {ticker}
Company Overview: {summarize_overview(stock_data.get('overview'))}

Market News and Sentiment (Top 10 recent): {summarize_news(stock_data.get('news'))}

Earnings Estimates: {summarize_earnings_estimates(stock_data.get('earnings'))}

Earnings History (Last 8 quarters): {summarize_earnings(stock_data.get('earnings'))}

{TRANSCRIPT_NOTE}

Time Series Summary: {summarize_time_series(stock_data.get('time_series'))}

Current Quote: {summarize_quote(stock_data.get('quote'))}
"""


def history_messages(conversation_history: Optional[List[Dict[str, str]]]) -> List[BaseMessage]:
    """user turns become human messages, everything else AI messages."""
    messages: List[BaseMessage] = []
    for turn in conversation_history or []:
        content = turn.get('content') or ''
        if turn.get('role') == 'user':
            messages.append(HumanMessage(content=content))
        else:
            messages.append(AIMessage(content=content))
    return messages


def content_text(content: Any) -> str:
    """Flatten a LangChain message content (str or list of parts) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get('type') == 'text':
                parts.append(part.get('text', ''))
        return ''.join(parts)
    return str(content or '')


def rechunk(text: str, chunk_size: int = FALLBACK_CHUNK_SIZE, delay: float = FALLBACK_CHUNK_DELAY) -> Iterator[str]:
    for i in range(0, len(text), chunk_size):
        if i and delay:
            time.sleep(delay)
        yield text[i:i + chunk_size]


def stream_with_fallback(stream_fn: Callable[[], Iterator[str]],
                         complete_fn: Callable[[], str],
                         on_fallback: Optional[Callable[[], None]] = None,
                         chunk_size: int = FALLBACK_CHUNK_SIZE,
                         delay: float = FALLBACK_CHUNK_DELAY) -> Iterator[str]:
    """Yield streamed fragments; if streaming breaks, yield the complete answer in chunks.

    on_fallback is called before the complete answer is emitted so consumers
    can drop fragments they already received. Errors from complete_fn propagate.
    """
    try:
        for fragment in stream_fn():
            yield fragment
        return
    except Exception as e:
        logger.warning(f"Streaming failed, falling back to non-streaming: {e}")

    if on_fallback is not None:
        on_fallback()
    yield from rechunk(complete_fn(), chunk_size, delay)


class EarningsAnalyst:
    """Builds analysis prompts from provider data and runs them through the chat model."""

    def __init__(self, llm=None, fetch_data: Callable[..., Dict[str, Any]] = fetch_stock_data):
        self._llm = llm
        self._fetch_data = fetch_data

    @property
    def llm(self):
        if self._llm is None:
            self._llm = get_chat_llm()
        return self._llm

    # Message builders

    def _gather(self, ticker: str, on_status: Optional[StatusCallback]) -> Dict[str, Any]:
        if on_status is None:
            return self._fetch_data(ticker)
        return self._fetch_data(ticker, on_status=on_status)

    def initial_messages(self, ticker: str, on_status: Optional[StatusCallback] = None):
        stock_data = self._gather(ticker, on_status)
        messages = [
            SystemMessage(content=INITIAL_ANALYSIS_PROMPT),
            HumanMessage(content=(
                f"Analyze the following comprehensive stock data bank for {ticker} and provide your "
                f"expert earnings analysis:\n\n{build_initial_context(ticker, stock_data)}"
            )),
        ]
        return messages, latest_earnings_period(stock_data.get('earnings'))

    def specific_messages(self, ticker: str, earnings_period: str, report_date: str,
                          on_status: Optional[StatusCallback] = None) -> List[BaseMessage]:
        stock_data = self._gather(ticker, on_status)
        context = build_specific_context(ticker, earnings_period, report_date, stock_data)
        return [
            SystemMessage(content=SPECIFIC_EARNINGS_PROMPT),
            HumanMessage(content=(
                f"Analyze the following earnings data for {ticker} for the {earnings_period} earnings "
                f"event reported on {report_date}:\n\n{context}"
            )),
        ]

    def pre_earnings_messages(self, ticker: str, report_date: str,
                              on_status: Optional[StatusCallback] = None) -> List[BaseMessage]:
        stock_data = self._gather(ticker, on_status)
        context = build_pre_earnings_context(ticker, report_date, stock_data)
        return [
            SystemMessage(content=PRE_EARNINGS_PROMPT),
            HumanMessage(content=(
                f"Prepare a pre-earnings analysis for {ticker} ahead of the earnings announcement "
                f"expected on {report_date}:\n\n{context}"
            )),
        ]

    def follow_up_messages(self, ticker: str, question: str,
                           conversation_history: Optional[List[Dict[str, str]]] = None,
                           on_status: Optional[StatusCallback] = None) -> List[BaseMessage]:
        stock_data = self._gather(ticker, on_status)
        return [
            SystemMessage(content=FOLLOW_UP_PROMPT),
            HumanMessage(content=(
                f"Here is the comprehensive stock data bank for {ticker} for context:\n\n"
                f"{build_follow_up_context(ticker, stock_data)}"
            )),
            *history_messages(conversation_history),
            HumanMessage(content=question),
        ]

    # Model calls

    def complete(self, messages: List[BaseMessage]) -> str:
        started = datetime.now()
        response = self.llm.invoke(messages)
        logger.info(f"Generation finished in {(datetime.now() - started).total_seconds():.1f}s")
        return content_text(response.content)

    def stream(self, messages: List[BaseMessage]) -> Iterator[str]:
        for chunk in self.llm.stream(messages):
            text = content_text(chunk.content)
            if text:
                yield text

    # Complete-string variants

    def generate_initial_insights(self, ticker: str, on_status: Optional[StatusCallback] = None) -> Dict[str, Any]:
        messages, earnings_period = self.initial_messages(ticker, on_status)
        if on_status:
            on_status('Generating earnings insights...')
        return {'content': self.complete(messages), 'earningsPeriod': earnings_period}

    def generate_specific_earnings_analysis(self, ticker: str, earnings_period: str, report_date: str,
                                            on_status: Optional[StatusCallback] = None) -> str:
        messages = self.specific_messages(ticker, earnings_period, report_date, on_status)
        if on_status:
            on_status('Generating earnings insights...')
        return self.complete(messages)

    def generate_pre_earnings_analysis(self, ticker: str, report_date: str,
                                       on_status: Optional[StatusCallback] = None) -> str:
        messages = self.pre_earnings_messages(ticker, report_date, on_status)
        if on_status:
            on_status('Generating earnings insights...')
        return self.complete(messages)

    def handle_follow_up(self, ticker: str, question: str,
                         conversation_history: Optional[List[Dict[str, str]]] = None,
                         on_status: Optional[StatusCallback] = None) -> str:
        messages = self.follow_up_messages(ticker, question, conversation_history, on_status)
        if on_status:
            on_status('Generating response...')
        return self.complete(messages)

    # Streaming variants

    def stream_messages_with_fallback(self, messages: List[BaseMessage],
                                      on_fallback: Optional[Callable[[], None]] = None) -> Iterator[str]:
        return stream_with_fallback(
            lambda: self.stream(messages),
            lambda: self.complete(messages),
            on_fallback=on_fallback,
        )
