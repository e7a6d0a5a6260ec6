"""Condense raw provider payloads into bounded text for the language model.

Every summarizer tolerates missing or malformed input and returns a fixed
"not available" sentence instead of raising.
"""
import json
import logging
from datetime import date, datetime
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

NEWS_UNAVAILABLE = 'News data not available'
OVERVIEW_UNAVAILABLE = 'Overview data not available'
EARNINGS_UNAVAILABLE = 'Earnings data not available'
TIME_SERIES_UNAVAILABLE = 'Time series data not available'
QUOTE_UNAVAILABLE = 'Quote data not available'
NOT_AVAILABLE = 'Not available'

DAILY_SERIES_KEY = 'Time Series (Daily)'

OVERVIEW_FIELDS = [
    'Symbol', 'Name', 'Sector', 'Industry', 'MarketCapitalization', 'PERatio',
    'DividendYield', 'EPS', 'RevenueTTM', 'ProfitMargin', '52WeekHigh', '52WeekLow',
]


def _dumps(value: Any) -> str:
    return json.dumps(value, indent=2)


def _usable(payload: Any) -> bool:
    return isinstance(payload, dict) and 'error' not in payload


def summarize_news(news_data: Any) -> str:
    try:
        if not _usable(news_data) or not isinstance(news_data.get('feed'), list):
            return NEWS_UNAVAILABLE

        recent = [
            {
                'title': item.get('title'),
                'time_published': item.get('time_published'),
                'sentiment_score': item.get('overall_sentiment_score'),
                'sentiment_label': item.get('overall_sentiment_label'),
                'summary': (item.get('summary') or '')[:200],
            }
            for item in news_data['feed'][:10]
        ]
        return _dumps(recent)
    except (AttributeError, TypeError) as e:
        logger.error(f"Error summarizing news data: {e}")
        return NEWS_UNAVAILABLE


def summarize_overview(overview_data: Any) -> str:
    try:
        if not _usable(overview_data):
            return OVERVIEW_UNAVAILABLE

        essential = {field: overview_data.get(field) for field in OVERVIEW_FIELDS}
        essential['Description'] = (overview_data.get('Description') or '')[:500]
        return _dumps(essential)
    except (AttributeError, TypeError) as e:
        logger.error(f"Error summarizing overview data: {e}")
        return OVERVIEW_UNAVAILABLE


def summarize_earnings(earnings_data: Any) -> str:
    try:
        if not _usable(earnings_data):
            return EARNINGS_UNAVAILABLE

        summary: Dict[str, Any] = {}
        quarterly = earnings_data.get('quarterlyEarnings')
        if isinstance(quarterly, list):
            summary['quarterlyEarnings'] = [
                {
                    'fiscalDateEnding': q.get('fiscalDateEnding'),
                    'reportedEPS': q.get('reportedEPS'),
                    'surprise': q.get('surprise'),
                    'surprisePercentage': q.get('surprisePercentage'),
                }
                for q in quarterly[:8]
            ]

        annual = earnings_data.get('annualEarnings')
        if isinstance(annual, list):
            summary['annualEarnings'] = annual[:4]

        return _dumps(summary)
    except (AttributeError, TypeError) as e:
        logger.error(f"Error summarizing earnings data: {e}")
        return EARNINGS_UNAVAILABLE


def summarize_earnings_estimates(earnings_data: Any) -> str:
    if not _usable(earnings_data):
        return NOT_AVAILABLE
    try:
        for key in ('annualEarnings', 'quarterlyEarnings'):
            entries = earnings_data.get(key)
            if isinstance(entries, list) and entries:
                return _dumps(entries[:4])
    except (AttributeError, TypeError) as e:
        logger.error(f"Error summarizing earnings estimates: {e}")
    return NOT_AVAILABLE


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # Feb 29 in a non-leap target year
        return day.replace(year=day.year - years, day=28)


def monthly_rollup(daily_series: Dict[str, Dict[str, str]], since: Optional[date] = None) -> Dict[str, Dict[str, float]]:
    """Collapse daily bars into per-month high/low/close.

    high is the max of the month's highs, low the min of its lows, close the
    close of the last entry of that month seen in iteration order.
    """
    monthly: Dict[str, Dict[str, float]] = {}
    for day_str, bar in daily_series.items():
        day = datetime.strptime(day_str[:10], '%Y-%m-%d').date()
        if since is not None and day < since:
            continue

        high = float(bar['2. high'])
        low = float(bar['3. low'])
        close = float(bar['4. close'])
        key = day.strftime('%Y-%m')

        if key not in monthly:
            monthly[key] = {'high': high, 'low': low, 'close': close}
        else:
            month = monthly[key]
            month['high'] = max(month['high'], high)
            month['low'] = min(month['low'], low)
            month['close'] = close
    return monthly


def summarize_time_series(time_series_data: Any, today: Optional[date] = None) -> str:
    try:
        if not _usable(time_series_data) or not time_series_data.get(DAILY_SERIES_KEY):
            return TIME_SERIES_UNAVAILABLE

        today = today or date.today()
        monthly = monthly_rollup(time_series_data[DAILY_SERIES_KEY], since=_years_before(today, 3))

        lines = [
            f"{month}: High={data['high']:.2f}, Low={data['low']:.2f}, Close={data['close']:.2f}"
            for month, data in sorted(monthly.items())[-36:]
        ]
        return 'Monthly price summary (last 3 years):\n' + '\n'.join(lines)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.error(f"Error summarizing time series data: {e}")
        return TIME_SERIES_UNAVAILABLE


def summarize_quote(quote_data: Any) -> str:
    if not _usable(quote_data):
        return QUOTE_UNAVAILABLE
    quote = quote_data.get('Global Quote')
    if not isinstance(quote, dict):
        return QUOTE_UNAVAILABLE
    return _dumps({
        'symbol': quote.get('01. symbol'),
        'price': quote.get('05. price'),
        'change': quote.get('09. change'),
        'changePercent': quote.get('10. change percent'),
    })
