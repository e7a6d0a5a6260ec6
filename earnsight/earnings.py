"""Earnings calendar / earnings history reconciliation.

The provider exposes two differently shaped feeds: a forward-looking CSV
calendar and a JSON history of reported quarters. Calendar rows are the
primary source; history fills in EPS values the calendar lacks and supplies
quarters the calendar no longer lists.
"""
import csv
import io
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from .data_collectors import fetch_earnings, fetch_earnings_calendar, is_error

logger = logging.getLogger(__name__)

PAST_MATCH_WINDOW_DAYS = 5
ESTIMATE_LOOKBACK_DAYS = 90

MISSING_TOKENS = {'', 'none', 'null', '-', 'n/a', 'nan'}

_DATE_FORMATS = ('%Y-%m-%d', '%m/%d/%Y', '%Y/%m/%d')

HEADER_ALIASES = {
    'symbol': ('symbol', 'ticker'),
    'name': ('name', 'company name', 'companyname'),
    'reportDate': ('reportdate', 'report date'),
    'fiscalDateEnding': ('fiscaldateending', 'fiscal date ending'),
    'estimate': ('estimate', 'estimatedeps', 'estimated eps', 'eps estimate', 'epsestimate', 'consensus eps'),
    'reportedEPS': ('reportedeps', 'reported eps', 'actual eps', 'actualeps'),
}

EVENT_FIELDS = ('ticker', 'companyName', 'reportDate', 'fiscalDateEnding', 'label',
                'estimatedEPS', 'reportedEPS', 'isPast')


def clean_value(value: Any) -> Optional[str]:
    """Provider placeholders such as "None" become None."""
    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in MISSING_TOKENS:
        return None
    return text


def parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = clean_value(value)
    if not text:
        return None
    text = text.replace('T', ' ').split(' ')[0]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def normalize_date(value: Any) -> Optional[str]:
    """YYYY-MM-DD, or None when the value is not a recognizable date."""
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else None


def format_earnings_label(value: Any) -> Optional[str]:
    """Q{quarter}FY{yy} from the calendar month of the date."""
    parsed = parse_date(value)
    if parsed is None:
        return None
    quarter = (parsed.month - 1) // 3 + 1
    return f"Q{quarter}FY{parsed.year % 100:02d}"


def _entry_date(entry: Dict[str, Any]) -> Optional[date]:
    return parse_date(entry.get('reportedDate')) or parse_date(entry.get('fiscalDateEnding'))


def parse_calendar_csv(text: str) -> List[Dict[str, Optional[str]]]:
    """Parse the calendar CSV into rows keyed by canonical column names.

    Column names vary between provider responses, so the header row is
    matched case-insensitively against HEADER_ALIASES. Returns [] when neither
    a report-date nor a fiscal-date column is present.
    """
    if not text or not text.strip():
        return []

    reader = csv.reader(io.StringIO(text.strip()))
    try:
        header = [h.strip().lower() for h in next(reader)]
    except StopIteration:
        return []

    columns = {}
    for canonical, aliases in HEADER_ALIASES.items():
        for idx, name in enumerate(header):
            if name in aliases:
                columns[canonical] = idx
                break

    if 'reportDate' not in columns and 'fiscalDateEnding' not in columns:
        logger.warning(f"Earnings calendar header has no date column: {header}")
        return []

    rows = []
    for values in reader:
        if not values or not any(v.strip() for v in values):
            continue
        row = {}
        for canonical in HEADER_ALIASES:
            idx = columns.get(canonical)
            row[canonical] = clean_value(values[idx]) if idx is not None and idx < len(values) else None
        rows.append(row)
    return rows


def _nearest_reported_entry(history: Iterable[Dict[str, Any]], target: date,
                            max_days: int = PAST_MATCH_WINDOW_DAYS) -> Optional[Dict[str, Any]]:
    best = None
    best_diff = None
    for entry in history:
        if clean_value(entry.get('reportedEPS')) is None:
            continue
        entry_day = _entry_date(entry)
        if entry_day is None:
            continue
        diff = abs((entry_day - target).days)
        if diff <= max_days and (best_diff is None or diff < best_diff):
            best, best_diff = entry, diff
    return best


def _latest_estimate_entry(history: Iterable[Dict[str, Any]], today: date,
                           lookback_days: int = ESTIMATE_LOOKBACK_DAYS) -> Optional[Dict[str, Any]]:
    best = None
    best_day = None
    for entry in history:
        if clean_value(entry.get('estimatedEPS')) is None:
            continue
        entry_day = _entry_date(entry)
        if entry_day is None:
            continue
        if entry_day < today and (today - entry_day).days > lookback_days:
            continue
        if best_day is None or entry_day > best_day:
            best, best_day = entry, entry_day
    return best


def _backfill(primary: Dict[str, Any], secondary: Dict[str, Any]) -> Dict[str, Any]:
    """Keep primary's values; take secondary's only where primary has none."""
    merged = dict(primary)
    for field in EVENT_FIELDS:
        if merged.get(field) is None and secondary.get(field) is not None:
            merged[field] = secondary[field]
    return merged


def _make_event(ticker: str, company_name: Optional[str], event_day: date, fiscal: Optional[str],
                estimated: Optional[str], reported: Optional[str], today: date) -> Dict[str, Any]:
    return {
        'ticker': ticker,
        'companyName': company_name,
        'reportDate': event_day.isoformat(),
        'fiscalDateEnding': fiscal,
        'label': format_earnings_label(event_day),
        'estimatedEPS': estimated,
        'reportedEPS': reported,
        'isPast': event_day < today,
    }


def reconcile_earnings_events(ticker: str,
                              calendar_rows: List[Dict[str, Optional[str]]],
                              history: List[Dict[str, Any]],
                              today: Optional[date] = None,
                              company_name: Optional[str] = None) -> List[Dict[str, Any]]:
    """Merge calendar rows and quarterly history into one event per (date, ticker).

    EPS resolution for a calendar row, first hit wins per field:
      1. the value in the calendar row itself
      2. history entry keyed by the row's report date
      3. history entry keyed by the row's fiscal date
      4. past events: nearest reported history entry within 5 days
      5. future events: latest history estimate that is future-dated or at
         most 90 days old
    """
    today = today or date.today()
    ticker = ticker.upper()
    history = [entry for entry in history or [] if isinstance(entry, dict)]

    by_report: Dict[str, Dict[str, Any]] = {}
    by_fiscal: Dict[str, Dict[str, Any]] = {}
    for entry in history:
        report_key = normalize_date(entry.get('reportedDate'))
        fiscal_key = normalize_date(entry.get('fiscalDateEnding'))
        if report_key:
            by_report.setdefault(report_key, entry)
        if fiscal_key:
            by_fiscal.setdefault(fiscal_key, entry)

    def lookup(key: Optional[str]) -> Optional[Dict[str, Any]]:
        if not key:
            return None
        return by_report.get(key) or by_fiscal.get(key)

    merged: Dict[tuple, Dict[str, Any]] = {}
    matched_ids = set()

    for row in calendar_rows or []:
        report = normalize_date(row.get('reportDate'))
        fiscal = normalize_date(row.get('fiscalDateEnding'))
        event_day = parse_date(report or fiscal)
        if event_day is None:
            continue

        is_past = event_day < today
        estimated = clean_value(row.get('estimate'))
        reported = clean_value(row.get('reportedEPS'))

        for match in (lookup(report), lookup(fiscal)):
            if match is None:
                continue
            matched_ids.add(id(match))
            estimated = estimated or clean_value(match.get('estimatedEPS'))
            reported = reported or clean_value(match.get('reportedEPS'))
            fiscal = fiscal or normalize_date(match.get('fiscalDateEnding'))

        if is_past and reported is None:
            nearest = _nearest_reported_entry(history, event_day)
            if nearest is not None:
                matched_ids.add(id(nearest))
                reported = clean_value(nearest.get('reportedEPS'))
                estimated = estimated or clean_value(nearest.get('estimatedEPS'))

        if not is_past and estimated is None:
            latest = _latest_estimate_entry(history, today)
            if latest is not None:
                estimated = clean_value(latest.get('estimatedEPS'))

        event = _make_event(ticker, company_name or row.get('name'), event_day, fiscal,
                            estimated, reported, today)
        key = (event['reportDate'], ticker)
        merged[key] = _backfill(merged[key], event) if key in merged else event

    for entry in history:
        event_day = _entry_date(entry)
        if event_day is None:
            continue
        event = _make_event(ticker, company_name, event_day,
                            normalize_date(entry.get('fiscalDateEnding')),
                            clean_value(entry.get('estimatedEPS')),
                            clean_value(entry.get('reportedEPS')), today)
        key = (event['reportDate'], ticker)
        if key in merged:
            merged[key] = _backfill(merged[key], event)
        elif id(entry) not in matched_ids:
            merged[key] = event

    return sorted(merged.values(), key=lambda e: e['reportDate'])


def filter_events_by_month(events: List[Dict[str, Any]], year: int, month: int) -> List[Dict[str, Any]]:
    prefix = f"{year:04d}-{month:02d}-"
    return [event for event in events if event['reportDate'].startswith(prefix)]


def group_events_by_date(events: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for event in events:
        grouped.setdefault(event['reportDate'], []).append(event)
    return grouped


def next_earnings_date(calendar_rows: List[Dict[str, Optional[str]]], today: Optional[date] = None) -> Optional[str]:
    """Earliest calendar date strictly after today."""
    today = today or date.today()
    upcoming = []
    for row in calendar_rows or []:
        day = parse_date(row.get('reportDate')) or parse_date(row.get('fiscalDateEnding'))
        if day is not None and day > today:
            upcoming.append(day)
    return min(upcoming).isoformat() if upcoming else None


def previous_earnings_date(history: List[Dict[str, Any]], today: Optional[date] = None) -> Optional[str]:
    """Most recent history date strictly before today (reported date, else fiscal date)."""
    today = today or date.today()
    past = [d for d in (_entry_date(e) for e in history or [] if isinstance(e, dict)) if d is not None and d < today]
    return max(past).isoformat() if past else None


def fetch_calendar_inputs(ticker: str) -> Dict[str, Any]:
    """Fetch and parse both feeds for a ticker; provider errors degrade to empty inputs."""
    with ThreadPoolExecutor(max_workers=2) as executor:
        calendar_future = executor.submit(fetch_earnings_calendar, ticker)
        earnings_future = executor.submit(fetch_earnings, ticker)
        calendar_text = calendar_future.result()
        earnings = earnings_future.result()

    if is_error(calendar_text) or not isinstance(calendar_text, str):
        logger.warning(f"Earnings calendar unavailable for {ticker}: {calendar_text}")
        rows = []
    else:
        rows = parse_calendar_csv(calendar_text)

    if is_error(earnings):
        logger.warning(f"Earnings history unavailable for {ticker}: {earnings}")
        history = []
    else:
        history = earnings.get('quarterlyEarnings') or []

    return {'calendar_rows': rows, 'history': history, 'earnings': earnings}


def load_earnings_events(ticker: str, company_name: Optional[str] = None,
                         today: Optional[date] = None) -> List[Dict[str, Any]]:
    inputs = fetch_calendar_inputs(ticker)
    return reconcile_earnings_events(ticker, inputs['calendar_rows'], inputs['history'],
                                     today=today, company_name=company_name)
