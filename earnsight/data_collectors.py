import json
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Union

import requests

from .config import get_alpha_vantage_api_key

logger = logging.getLogger(__name__)

ALPHA_VANTAGE_URL = "https://www.alphavantage.co/query"
REQUEST_TIMEOUT = 30

RATE_LIMIT = "rate_limit"
PROVIDER_ERROR = "provider_error"
INFORMATION = "information"

StatusCallback = Callable[[str], None]


def normalize_provider_response(data: Any, function_name: str) -> Any:
    """Map Alpha Vantage failure markers onto the uniform error shape."""
    if not isinstance(data, dict):
        return data

    if data.get('Note'):
        logger.warning(f"Rate limit hit for {function_name}")
        return {'error': 'Rate limit exceeded', 'Note': data['Note']}

    if data.get('Error Message'):
        logger.warning(f"Error for {function_name}: {data['Error Message']}")
        return {'error': data['Error Message']}

    if data.get('Information'):
        logger.warning(f"Information message for {function_name}: {data['Information']}")
        return {'information': data['Information']}

    return data


def error_kind(result: Any) -> Optional[str]:
    """Classify a collector result: rate_limit, provider_error, information or None."""
    if not isinstance(result, dict):
        return None
    if 'Note' in result:
        return RATE_LIMIT
    if 'error' in result:
        return PROVIDER_ERROR
    if 'information' in result:
        return INFORMATION
    return None


def is_error(result: Any) -> bool:
    return error_kind(result) is not None


def _get(function_name: str, params: Dict[str, str]) -> requests.Response:
    query = {'function': function_name, **params, 'apikey': get_alpha_vantage_api_key()}
    response = requests.get(ALPHA_VANTAGE_URL, params=query, timeout=REQUEST_TIMEOUT)
    response.raise_for_status()
    return response


def fetch_alpha_vantage(function_name: str, **params: str) -> Dict[str, Any]:
    """Fetch one JSON endpoint. Never raises for provider or transport failures."""
    try:
        response = _get(function_name, params)
        return normalize_provider_response(response.json(), function_name)
    except requests.RequestException as e:
        logger.error(f"Error fetching {function_name}: {e}")
        return {'error': str(e)}
    except ValueError as e:
        logger.error(f"Invalid JSON from {function_name}: {e}")
        return {'error': f"Invalid response from {function_name}"}


def fetch_overview(ticker: str) -> Dict[str, Any]:
    return fetch_alpha_vantage('OVERVIEW', symbol=ticker)


def fetch_news_sentiment(ticker: str) -> Dict[str, Any]:
    return fetch_alpha_vantage('NEWS_SENTIMENT', tickers=ticker, limit='20')


def fetch_earnings(ticker: str) -> Dict[str, Any]:
    return fetch_alpha_vantage('EARNINGS', symbol=ticker)


def fetch_daily_series(ticker: str) -> Dict[str, Any]:
    return fetch_alpha_vantage('TIME_SERIES_DAILY', symbol=ticker, outputsize='full')


def fetch_intraday(ticker: str, interval: str) -> Dict[str, Any]:
    return fetch_alpha_vantage('TIME_SERIES_INTRADAY', symbol=ticker, interval=interval, outputsize='full')


def fetch_quote(ticker: str) -> Dict[str, Any]:
    return fetch_alpha_vantage('GLOBAL_QUOTE', symbol=ticker)


def fetch_earnings_calendar(ticker: str) -> Union[str, Dict[str, Any]]:
    """Fetch the 12-month earnings calendar as CSV text.

    The provider answers CSV on success but JSON when rate limited or refused,
    so a JSON body is classified like any other response.
    """
    try:
        response = _get('EARNINGS_CALENDAR', {'symbol': ticker, 'horizon': '12month'})
    except requests.RequestException as e:
        logger.error(f"Error fetching EARNINGS_CALENDAR: {e}")
        return {'error': str(e)}

    text = response.text or ''
    if text.lstrip().startswith('{'):
        try:
            data = json.loads(text)
        except ValueError:
            return {'error': 'Invalid response from EARNINGS_CALENDAR'}
        normalized = normalize_provider_response(data, 'EARNINGS_CALENDAR')
        if is_error(normalized):
            return normalized
        return {'error': 'Unexpected JSON response from EARNINGS_CALENDAR'}
    return text


def fetch_quote_summary(ticker: str) -> Dict[str, Any]:
    """Price and change percent from GLOBAL_QUOTE, or an error value."""
    data = fetch_quote(ticker)
    if is_error(data):
        return data

    price = None
    change_percent = None
    quote = data.get('Global Quote') or {}
    if quote.get('05. price'):
        try:
            price = float(quote['05. price'])
        except ValueError:
            price = None
    if quote.get('10. change percent'):
        change_percent = quote['10. change percent']
    return {'price': price, 'changePercent': change_percent}


def search_symbols(keywords: str) -> Union[List[Dict[str, str]], Dict[str, Any]]:
    data = fetch_alpha_vantage('SYMBOL_SEARCH', keywords=keywords)
    if is_error(data):
        return data

    matches = data.get('bestMatches') or []
    return [
        {
            'symbol': match.get('1. symbol'),
            'name': match.get('2. name'),
            'type': match.get('3. type'),
            'region': match.get('4. region'),
            'marketOpen': match.get('5. marketOpen'),
            'marketClose': match.get('6. marketClose'),
            'timezone': match.get('7. timezone'),
            'currency': match.get('8. currency'),
            'matchScore': match.get('9. matchScore'),
        }
        for match in matches[:10]
    ]


_STOCK_DATA_STEPS = [
    ('overview', fetch_overview, 'Fetching company overview...'),
    ('earnings', fetch_earnings, 'Fetching earnings history...'),
    ('time_series', fetch_daily_series, 'Fetching price history...'),
    ('news', fetch_news_sentiment, 'Fetching market sentiment...'),
    ('quote', fetch_quote, None),
]


def fetch_stock_data(ticker: str, on_status: Optional[StatusCallback] = None) -> Dict[str, Any]:
    """Fetch overview, news, earnings, daily series and quote for a ticker.

    Without a status callback the five requests run concurrently. With one,
    they run in sequence so each step can be reported before it starts.
    """
    if on_status is None:
        with ThreadPoolExecutor(max_workers=len(_STOCK_DATA_STEPS)) as executor:
            futures = {key: executor.submit(fn, ticker) for key, fn, _ in _STOCK_DATA_STEPS}
            return {key: future.result() for key, future in futures.items()}

    results = {}
    for key, fn, status in _STOCK_DATA_STEPS:
        if status:
            on_status(status)
        results[key] = fn(ticker)
    return results
