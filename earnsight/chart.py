import calendar
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from .earnings import clean_value, format_earnings_label, parse_date

logger = logging.getLogger(__name__)

PERIODS = ('1d', '1w', '1m', '6m', '1y', '3y')

INTRADAY_INTERVALS = {'1d': '5min', '1w': '30min'}
DAILY = 'daily'

SERIES_KEYS = {
    '5min': 'Time Series (5min)',
    '30min': 'Time Series (30min)',
    '60min': 'Time Series (60min)',
    DAILY: 'Time Series (Daily)',
}

_PERIOD_OFFSETS = {
    '1d': pd.DateOffset(days=1),
    '1w': pd.DateOffset(days=7),
    '1m': pd.DateOffset(months=1),
    '6m': pd.DateOffset(months=6),
    '1y': pd.DateOffset(years=1),
    '3y': pd.DateOffset(years=3),
}

MARKER_SEARCH_DAYS = 5
INTRADAY_TOLERANCE = timedelta(days=1)
DAILY_TOLERANCE = timedelta(days=7)

ChartPoint = Dict[str, Any]


def validate_period(period: str) -> str:
    if period not in PERIODS:
        raise ValueError(f"Unsupported period '{period}'. Use one of: {', '.join(PERIODS)}")
    return period


def get_date_range(period: str, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Start and end of the window ending at now."""
    validate_period(period)
    end = now or datetime.now()
    start = (pd.Timestamp(end) - _PERIOD_OFFSETS[period]).to_pydatetime()
    return start, end


def interval_for_period(period: str) -> str:
    """5min bars for a day, 30min bars for a week, daily bars otherwise."""
    return INTRADAY_INTERVALS.get(validate_period(period), DAILY)


def is_intraday(interval: str) -> bool:
    return interval != DAILY


def to_timestamp_ms(moment: datetime) -> int:
    return calendar.timegm(moment.timetuple()) * 1000


def _parse_series_time(raw: str, interval: str) -> Tuple[str, datetime]:
    if is_intraday(interval):
        moment = datetime.strptime(raw[:16], '%Y-%m-%d %H:%M')
        return moment.strftime('%Y-%m-%dT%H:%M'), moment
    moment = datetime.strptime(raw[:10], '%Y-%m-%d')
    return raw[:10], moment


def filter_time_series(payload: Dict[str, Any], period: str, interval: str,
                       now: Optional[datetime] = None) -> List[ChartPoint]:
    """Points of the payload inside the period's window, oldest first."""
    series = (payload or {}).get(SERIES_KEYS.get(interval, SERIES_KEYS[DAILY]))
    if not isinstance(series, dict):
        return []

    start, end = get_date_range(period, now)
    points = []
    for raw_time, bar in series.items():
        try:
            label, moment = _parse_series_time(raw_time, interval)
            price = float(bar['4. close'])
        except (KeyError, TypeError, ValueError):
            logger.debug(f"Skipping malformed bar {raw_time!r}")
            continue
        if start <= moment <= end:
            points.append({'date': label, 'price': price, 'timestamp': to_timestamp_ms(moment)})

    points.sort(key=lambda p: p['timestamp'])
    return points


def build_earnings_markers(earnings: Dict[str, Any], daily_payload: Dict[str, Any], period: str,
                           now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Place quarterly earnings on the closest trading day within five days."""
    quarterly = (earnings or {}).get('quarterlyEarnings')
    if not isinstance(quarterly, list):
        return []

    daily = (daily_payload or {}).get(SERIES_KEYS[DAILY]) or {}
    start, end = get_date_range(period, now)
    markers = []

    for entry in quarterly:
        if not isinstance(entry, dict):
            continue
        earnings_day = parse_date(entry.get('reportedDate')) or parse_date(entry.get('fiscalDateEnding'))
        if earnings_day is None:
            continue
        moment = datetime.combine(earnings_day, datetime.min.time())
        if not (start <= moment <= end):
            continue

        closest_day = None
        price = 0.0
        for offset in sorted(range(-MARKER_SEARCH_DAYS, MARKER_SEARCH_DAYS + 1), key=abs):
            candidate = (earnings_day + timedelta(days=offset)).isoformat()
            bar = daily.get(candidate)
            if bar:
                try:
                    price = float(bar['4. close'])
                except (KeyError, TypeError, ValueError):
                    continue
                closest_day = candidate
                break

        if closest_day is None or price <= 0:
            continue

        markers.append({
            'date': closest_day,
            'label': format_earnings_label(entry.get('fiscalDateEnding') or earnings_day),
            'price': price,
            'timestamp': to_timestamp_ms(datetime.strptime(closest_day, '%Y-%m-%d')),
            'reportedEPS': clean_value(entry.get('reportedEPS')),
            'estimatedEPS': clean_value(entry.get('estimatedEPS')),
            'surprise': clean_value(entry.get('surprise')),
            'surprisePercentage': clean_value(entry.get('surprisePercentage')),
        })

    markers.sort(key=lambda m: m['timestamp'])
    return markers


def match_markers_to_series(points: List[ChartPoint], markers: List[Dict[str, Any]],
                            interval: str) -> List[Dict[str, Any]]:
    """Attach each marker to a series point.

    A point on the marker's calendar day wins (closest one if several);
    otherwise the nearest point within one day for intraday series or seven
    days for daily series. Markers without a candidate are dropped.
    """
    tolerance_ms = (INTRADAY_TOLERANCE if is_intraday(interval) else DAILY_TOLERANCE).total_seconds() * 1000
    matched = []

    for marker in markers:
        marker_day = parse_date(marker['date'])
        marker_ts = marker.get('timestamp')
        if marker_ts is None and marker_day is not None:
            marker_ts = to_timestamp_ms(datetime.combine(marker_day, datetime.min.time()))
        if marker_ts is None:
            continue

        same_day = None
        nearby = None
        for point in points:
            diff = abs(point['timestamp'] - marker_ts)
            if parse_date(point['date']) == marker_day:
                if same_day is None or diff < same_day[0]:
                    same_day = (diff, point)
            elif diff < tolerance_ms and (nearby is None or diff < nearby[0]):
                nearby = (diff, point)

        chosen = same_day or nearby
        if chosen is not None:
            matched.append({**chosen[1], 'earningsLabel': marker.get('label'), 'earningsMarker': marker})

    return matched
