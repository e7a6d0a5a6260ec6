import logging
from typing import Optional, Tuple

import requests

from .config import get_logo_dev_api_key

logger = logging.getLogger(__name__)

# Tickers whose company domain is not simply "<ticker>.com"
TICKER_TO_DOMAIN = {
    'aapl': 'apple.com',
    'msft': 'microsoft.com',
    'googl': 'google.com',
    'goog': 'google.com',
    'amzn': 'amazon.com',
    'meta': 'meta.com',
    'tsla': 'tesla.com',
    'nvda': 'nvidia.com',
    'nflx': 'netflix.com',
    'mcd': 'mcdonalds.com',
    'abnb': 'airbnb.com',
    'csco': 'cisco.com',
    'hd': 'homedepot.com',
    'dell': 'dell.com',
}

LOGO_DEV_URL = "https://img.logo.dev/{domain}"
CLEARBIT_URL = "https://logo.clearbit.com/{domain}"
HEADERS = {'User-Agent': 'Mozilla/5.0'}
REQUEST_TIMEOUT = 10


def domain_for_ticker(ticker: str) -> str:
    ticker = ticker.lower()
    return TICKER_TO_DOMAIN.get(ticker, f"{ticker}.com")


def _try(url: str, params: Optional[dict] = None) -> Optional[Tuple[bytes, str]]:
    try:
        response = requests.get(url, params=params, headers=HEADERS, timeout=REQUEST_TIMEOUT)
    except requests.RequestException as e:
        logger.warning(f"Logo request failed for {url}: {e}")
        return None
    if not response.ok:
        return None
    return response.content, response.headers.get('content-type') or 'image/png'


def fetch_logo(ticker: str) -> Optional[Tuple[bytes, str]]:
    """Image bytes and content type, trying logo.dev (when keyed) then Clearbit."""
    domain = domain_for_ticker(ticker)

    token = get_logo_dev_api_key()
    if token:
        logo = _try(LOGO_DEV_URL.format(domain=domain), params={'token': token})
        if logo:
            return logo

    return _try(CLEARBIT_URL.format(domain=domain))
