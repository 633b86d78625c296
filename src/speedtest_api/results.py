"""
Read queries over the ``results`` table.

Every operation takes a checked-out DB-API connection, runs one of the SQL
statements below with bound parameters, and returns JSON-safe Python values.
"""
import base64
import functools
import logging
import math
import re
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from speedtest_api import db

log = logging.getLogger(__name__)

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 10

# Largest integer a JSON client can hold in a double without losing precision.
MAX_SAFE_INTEGER = 2**53 - 1

_TODAY = "WHERE created_at >= %s AND created_at < %s"

TODAY_DOWNLOADS_SQL = f"SELECT created_at, download FROM results {_TODAY}"
TODAY_UPLOADS_SQL = f"SELECT upload FROM results {_TODAY}"
TODAY_PINGS_SQL = f"SELECT ping FROM results {_TODAY}"
TODAY_AVERAGES_SQL = (
    "SELECT AVG(download) AS avg_download, AVG(upload) AS avg_upload, AVG(ping) AS avg_ping "
    f"FROM results {_TODAY}"
)
ALL_RESULTS_SQL = "SELECT * FROM results"
FULL_DATA_SQL = "SELECT data FROM results"
COUNT_SQL = "SELECT COUNT(*) AS total_rows FROM results"
PAGE_SQL = "SELECT * FROM results ORDER BY id DESC LIMIT %s OFFSET %s"
DATA_BY_ID_SQL = "SELECT data FROM results WHERE id = %s"

_INT_PATTERN = re.compile(r"-?[0-9]+")


class ResultsError(Exception):
    """Base class for query layer errors."""


class InvalidParameterError(ResultsError):
    pass


class ResultNotFoundError(ResultsError):
    pass


class QueryFailedError(ResultsError):
    """A query or its row transform failed; the cause is chained."""


class DatabaseUnavailableError(ResultsError):
    """No connection could be obtained from the pool."""


def _query_operation(func):
    """Log unexpected failures and report them as QueryFailedError."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ResultsError:
            raise
        except Exception as exc:
            log.exception("Query operation %s failed", func.__name__)
            raise QueryFailedError(func.__name__) from exc

    return wrapper


# PUBLIC_INTERFACE
def to_json_value(value: Any) -> Any:
    """Map a column value from the driver to something json.dumps emits as-is."""
    if value is None or isinstance(value, (bool, float, str)):
        return value
    if isinstance(value, int):
        return float(value) if abs(value) > MAX_SAFE_INTEGER else value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            return base64.b64encode(raw).decode("ascii")
    return value


def _to_number(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {column: to_json_value(value) for column, value in row.items()}


# PUBLIC_INTERFACE
def utc_day_bounds(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Return [start, end) of the UTC calendar day containing ``now``."""
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    start = datetime.combine(now.astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


# PUBLIC_INTERFACE
def coerce_int(raw: Any, default: int) -> int:
    """
    Parse a query-string integer.

    Missing, blank, non-numeric and zero values all fall back to ``default``.
    Negative values are returned unchanged.
    """
    if raw is None:
        return default
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw or default
    text = str(raw).strip()
    if not _INT_PATTERN.fullmatch(text):
        return default
    return int(text) or default


# PUBLIC_INTERFACE
def parse_id(raw_id: Any) -> int:
    """Parse an untrusted path id; anything but an optionally signed integer is rejected."""
    text = str(raw_id).strip()
    if not _INT_PATTERN.fullmatch(text):
        raise InvalidParameterError(f"Invalid id: {raw_id!r}")
    return int(text)


# PUBLIC_INTERFACE
@_query_operation
def today_downloads(conn, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Downloads measured during the current UTC day, with their timestamps."""
    rows = db.fetch_all(conn, TODAY_DOWNLOADS_SQL, list(utc_day_bounds(now)))
    return [
        {"date": to_json_value(r["created_at"]), "download": _to_number(r["download"])}
        for r in rows
    ]


# PUBLIC_INTERFACE
@_query_operation
def today_uploads(conn, now: Optional[datetime] = None) -> List[Optional[float]]:
    """Uploads measured during the current UTC day."""
    rows = db.fetch_all(conn, TODAY_UPLOADS_SQL, list(utc_day_bounds(now)))
    return [_to_number(r["upload"]) for r in rows]


# PUBLIC_INTERFACE
@_query_operation
def today_pings(conn, now: Optional[datetime] = None) -> List[Optional[float]]:
    """Pings measured during the current UTC day."""
    rows = db.fetch_all(conn, TODAY_PINGS_SQL, list(utc_day_bounds(now)))
    return [_to_number(r["ping"]) for r in rows]


# PUBLIC_INTERFACE
@_query_operation
def today_averages(conn, now: Optional[datetime] = None) -> Dict[str, Optional[float]]:
    """
    Mean download, upload and ping over the current UTC day.

    AVG() over zero rows is NULL, so a day without measurements yields None
    for all three averages.
    """
    row = db.fetch_one(conn, TODAY_AVERAGES_SQL, list(utc_day_bounds(now))) or {}
    return {
        "averageDownload": _to_number(row.get("avg_download")),
        "averageUpload": _to_number(row.get("avg_upload")),
        "averagePing": _to_number(row.get("avg_ping")),
    }


# PUBLIC_INTERFACE
@_query_operation
def all_results(conn) -> List[Dict[str, Any]]:
    """Every row with every column."""
    return [normalize_row(r) for r in db.fetch_all(conn, ALL_RESULTS_SQL)]


# PUBLIC_INTERFACE
@_query_operation
def full_data(conn) -> List[Any]:
    """The raw ``data`` payload of every row."""
    return [to_json_value(r["data"]) for r in db.fetch_all(conn, FULL_DATA_SQL)]


# PUBLIC_INTERFACE
@_query_operation
def list_page(conn, page: int = DEFAULT_PAGE, page_size: int = DEFAULT_PAGE_SIZE) -> Dict[str, Any]:
    """
    One page of rows, newest id first, plus pagination metadata.

    page_size has no upper bound, and negative page/page_size values go to the
    database as they are.
    """
    count = db.fetch_one(conn, COUNT_SQL) or {}
    total_rows = int(count.get("total_rows") or 0)
    total_pages = math.ceil(total_rows / page_size)
    offset = (page - 1) * page_size
    rows = db.fetch_all(conn, PAGE_SQL, [page_size, offset])
    return {
        "totalRows": total_rows,
        "totalPages": total_pages,
        "remainingPages": total_pages - page,
        "data": [normalize_row(r) for r in rows],
    }


# PUBLIC_INTERFACE
@_query_operation
def data_by_id(conn, raw_id: Any) -> Any:
    """Return the ``data`` payload of one row; ``raw_id`` comes straight from the URL."""
    result_id = parse_id(raw_id)
    row = db.fetch_one(conn, DATA_BY_ID_SQL, [result_id])
    if row is None:
        raise ResultNotFoundError(f"No result with id {result_id}")
    return to_json_value(row["data"])
