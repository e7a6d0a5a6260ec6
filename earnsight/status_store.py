"""In-process request status, polled by the UI while an analysis runs.

Each request id has a single writer (the request that owns it). Entries live
only in this process; a multi-instance deployment would need a shared store.
"""
from typing import Dict, Optional

_status: Dict[str, str] = {}


def set_status(request_id: str, status: str) -> None:
    _status[request_id] = status


def get_status(request_id: str) -> Optional[str]:
    return _status.get(request_id)


def delete_status(request_id: str) -> None:
    _status.pop(request_id, None)


def status_reporter(request_id: Optional[str]):
    """Callback that records status for request_id, or None without an id."""
    if not request_id:
        return None

    def report(status: str) -> None:
        set_status(request_id, status)

    return report
