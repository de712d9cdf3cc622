"""
Event sources feeding the raw event ingestor.

A source serves a bounded date range as a sequence of pages. Each page
carries the normalized events, the events it had to reject, and the cursor
of the next page (``None`` marks the end of the stream). Failures are
classified so the ingestor can decide whether to retry:

    RateLimitError        -> retry after the advertised delay
    TransientSourceError  -> retry with backoff (timeouts, 5xx, dropped connections)
    PermanentSourceError  -> abort immediately (auth, malformed request)
"""
import glob
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar

import requests

from clock import to_naive_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIXPANEL_EXPORT_BASE = "https://data.mixpanel.com/api/2.0"
MIXPANEL_API_BASE = "https://mixpanel.com/api/2.0"

# Mixpanel rejects export URLs above ~8KB; 200 ids of ~18 chars stays well under.
MAX_USER_IDS_PER_REQUEST = 200

# Property that discriminates otherwise identical events, per event name
DEFAULT_SECONDARY_KEY_PROPERTIES = {
    "Viewed Portfolio Details": "portfolioTicker",
    "Viewed Creator Profile": "creatorUsername",
}


# --- Errors ------------------------------------------------------------------


class SourceError(Exception):
    """Base class for event source failures."""


class TransientSourceError(SourceError):
    pass


class RateLimitError(TransientSourceError):
    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class PermanentSourceError(SourceError):
    pass


def raise_for_source_status(response, context: str):
    """Map an HTTP response to the source error taxonomy (no-op on 2xx)."""
    status = response.status_code
    if status < 400:
        return
    body = (getattr(response, "text", "") or "")[:300]
    if status == 429:
        retry_after = response.headers.get("Retry-After")
        try:
            retry_after = float(retry_after) if retry_after else None
        except ValueError:
            retry_after = None
        raise RateLimitError(f"{context}: rate limited (429): {body}", retry_after=retry_after)
    if status >= 500 or status == 408:
        raise TransientSourceError(f"{context}: server error ({status}): {body}")
    raise PermanentSourceError(f"{context}: request rejected ({status}): {body}")


def call_with_retry(
    fetch: Callable[[], T],
    context: str,
    max_retries: int = 3,
    backoff_seconds: float = 1.0,
    max_rate_limit_sleep_seconds: float = 60.0,
    sleep: Callable[[float], None] = time.sleep,
    log: logging.Logger = None,
) -> T:
    """
    Call ``fetch`` until it succeeds, retrying rate limits and transient errors.

    Permanent errors propagate immediately. A 429 waits for its Retry-After
    (capped), anything transient backs off exponentially. Both share the
    ``max_retries`` budget.
    """
    log = log or logger
    attempt = 0
    while True:
        try:
            return fetch()
        except PermanentSourceError:
            log.error(f"Permanent source error on {context}; not retrying")
            raise
        except RateLimitError as e:
            if attempt >= max_retries:
                log.error(f"Rate limited on {context} after {attempt} retries: {e}")
                raise
            wait = e.retry_after if e.retry_after is not None else backoff_seconds * (2**attempt)
            delay = min(wait, max_rate_limit_sleep_seconds)
        except TransientSourceError as e:
            if attempt >= max_retries:
                log.error(f"{context} failed after {attempt} retries: {e}")
                raise
            delay = backoff_seconds * (2**attempt)
        attempt += 1
        log.warning(f"Fetch failed for {context} (attempt {attempt}/{max_retries}); retrying in {delay:.1f}s")
        sleep(delay)


# --- Events ------------------------------------------------------------------


@dataclass(frozen=True)
class RawEvent:
    user_id: str
    event_name: str
    event_time: datetime
    secondary_key: str
    properties: Dict = field(default_factory=dict, compare=False, hash=False)


@dataclass
class EventPage:
    events: List[RawEvent]
    next_cursor: Optional[str]
    rejected: List[Dict] = field(default_factory=list)


def normalize_mixpanel_event(
    raw: Dict, secondary_key_properties: Dict[str, str] = None
) -> Tuple[Optional[RawEvent], Optional[str]]:
    """
    Turn one Mixpanel export record into a RawEvent.

    Returns (event, None) on success or (None, reason) when the record can't
    be keyed: no user id, a device-only id, no timestamp, or a missing
    required secondary key.
    """
    secondary_key_properties = (
        DEFAULT_SECONDARY_KEY_PROPERTIES if secondary_key_properties is None else secondary_key_properties
    )
    props = raw.get("properties") or {}
    event_name = raw.get("event")
    if not event_name:
        return None, "missing:event"

    user_id = props.get("$user_id") or props.get("distinct_id") or props.get("$distinct_id")
    if not user_id:
        return None, "missing:user_id"
    user_id = str(user_id)
    if user_id.startswith("$device:"):
        return None, "device_only_id"

    ts = props.get("time")
    if ts in (None, ""):
        return None, "missing:time"
    try:
        event_time = to_naive_utc(ts)
    except (TypeError, ValueError, OverflowError, OSError):
        return None, "invalid:time"

    key_property = secondary_key_properties.get(event_name)
    if key_property:
        secondary_key = props.get(key_property)
        if not secondary_key:
            return None, f"missing:{key_property}"
    else:
        secondary_key = props.get("$insert_id") or ""

    return RawEvent(user_id, event_name, event_time, str(secondary_key), props), None


def _chunk(values: Sequence[str], size: int) -> List[List[str]]:
    return [list(values[i : i + size]) for i in range(0, len(values), size)]


# --- Sources -----------------------------------------------------------------


class EventSource(ABC):
    name: str = "event_source"

    @abstractmethod
    def fetch_page(
        self,
        date_from: datetime,
        date_to: datetime,
        cursor: Optional[str] = None,
        user_ids: Optional[Sequence[str]] = None,
    ) -> EventPage:
        """Fetch one page; ``cursor=None`` requests the first page."""
        ...

    def iter_events(
        self, date_from: datetime, date_to: datetime, user_ids: Optional[Sequence[str]] = None
    ) -> Iterator[RawEvent]:
        """Lazy, finite sequence of every event in [date_from, date_to]."""
        cursor = None
        while True:
            page = self.fetch_page(date_from, date_to, cursor=cursor, user_ids=user_ids)
            yield from page.events
            if page.next_cursor is None:
                return
            cursor = page.next_cursor


class MixpanelExportSource(EventSource):
    """
    Mixpanel raw event export (JSONL), one page per UTC day per user-id chunk.

    Cursor format: ``"YYYY-MM-DD|<chunk index>"``.
    """

    name = "mixpanel_export"

    def __init__(
        self,
        username: str,
        secret: str,
        project_id: str,
        event_names: Sequence[str],
        secondary_key_properties: Dict[str, str] = None,
        export_base: str = MIXPANEL_EXPORT_BASE,
        timeout_seconds: float = 240,
        max_user_ids_per_request: int = MAX_USER_IDS_PER_REQUEST,
        session: requests.Session = None,
    ):
        if not username or not secret:
            raise PermanentSourceError("Mixpanel credentials are not configured")
        self.username = username
        self.secret = secret
        self.project_id = project_id
        self.event_names = list(event_names)
        self.secondary_key_properties = secondary_key_properties
        self.export_base = export_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_user_ids_per_request = max_user_ids_per_request
        self.session = session or requests.Session()

    def _pages(self, date_from: datetime, date_to: datetime, user_ids):
        n_chunks = max(1, -(-len(user_ids) // self.max_user_ids_per_request)) if user_ids else 1
        day = date_from.date()
        while day <= date_to.date():
            for idx in range(n_chunks):
                yield f"{day.isoformat()}|{idx}"
            day += timedelta(days=1)

    def _next_cursor(self, cursor: str, date_from: datetime, date_to: datetime, user_ids) -> Optional[str]:
        pages = list(self._pages(date_from, date_to, user_ids))
        pos = pages.index(cursor)
        return pages[pos + 1] if pos + 1 < len(pages) else None

    def fetch_page(self, date_from, date_to, cursor=None, user_ids=None) -> EventPage:
        if date_from > date_to:
            raise PermanentSourceError(f"Malformed range: {date_from} > {date_to}")
        if user_ids is not None and len(user_ids) == 0:
            # An explicit empty filter matches nothing
            return EventPage(events=[], next_cursor=None)

        cursor = cursor or next(self._pages(date_from, date_to, user_ids))
        try:
            day, idx = cursor.split("|")
            idx = int(idx)
        except ValueError:
            raise PermanentSourceError(f"Malformed cursor: {cursor!r}")

        params = {
            "project_id": self.project_id,
            "from_date": day,
            "to_date": day,
            "event": json.dumps(self.event_names),
        }
        if user_ids:
            chunk = _chunk(list(user_ids), self.max_user_ids_per_request)[idx]
            params["where"] = f'properties["$user_id"] in {json.dumps(chunk)}'

        context = f"mixpanel export {cursor}"
        try:
            response = self.session.get(
                f"{self.export_base}/export",
                params=params,
                auth=(self.username, self.secret),
                headers={"Accept": "text/plain"},
                timeout=self.timeout_seconds,
                stream=True,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientSourceError(f"{context}: {e}") from e

        events, rejected = [], []
        try:
            raise_for_source_status(response, context)
            for line_number, line in enumerate(response.iter_lines(decode_unicode=True), start=1):
                if not line or not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as e:
                    rejected.append({"stage": "parse", "cursor": cursor, "line_number": line_number,
                                     "error": str(e), "raw_event": line.strip()})
                    continue
                event, reason = normalize_mixpanel_event(record, self.secondary_key_properties)
                if event is None:
                    rejected.append({"stage": "normalize", "cursor": cursor, "error": reason, "raw_event": record})
                    continue
                if date_from <= event.event_time <= date_to:
                    events.append(event)
        except (requests.Timeout, requests.ConnectionError, requests.exceptions.ChunkedEncodingError) as e:
            raise TransientSourceError(f"{context}: stream interrupted: {e}") from e
        finally:
            response.close()

        logger.info(f"Fetched {context}: events={len(events)} rejected={len(rejected)}")
        return EventPage(
            events=events,
            next_cursor=self._next_cursor(cursor, date_from, date_to, user_ids),
            rejected=rejected,
        )


class JsonlFileEventSource(EventSource):
    """
    Replays Mixpanel export dumps from disk, one file per page (sorted by name).

    Used for backfills from previously downloaded exports. Cursor is the
    index of the next file.
    """

    name = "jsonl_files"

    def __init__(
        self,
        directory: str,
        pattern: str = "*.jsonl",
        secondary_key_properties: Dict[str, str] = None,
        event_names: Sequence[str] = None,
    ):
        self.directory = directory
        self.pattern = pattern
        self.secondary_key_properties = secondary_key_properties
        self.event_names = set(event_names) if event_names else None

    def _files(self) -> List[str]:
        return sorted(glob.glob(os.path.join(self.directory, self.pattern)))

    def fetch_page(self, date_from, date_to, cursor=None, user_ids=None) -> EventPage:
        if date_from > date_to:
            raise PermanentSourceError(f"Malformed range: {date_from} > {date_to}")
        files = self._files()
        idx = int(cursor) if cursor else 0
        if idx >= len(files):
            return EventPage(events=[], next_cursor=None)

        wanted = set(user_ids) if user_ids is not None else None
        events, rejected = [], []
        with open(files[idx], "r") as f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as e:
                    rejected.append({"stage": "parse", "filepath": files[idx], "line_number": line_number,
                                     "error": str(e), "raw_event": line.strip()})
                    continue
                event, reason = normalize_mixpanel_event(record, self.secondary_key_properties)
                if event is None:
                    rejected.append({"stage": "normalize", "filepath": files[idx], "error": reason, "raw_event": record})
                    continue
                if self.event_names is not None and event.event_name not in self.event_names:
                    continue
                if wanted is not None and event.user_id not in wanted:
                    continue
                if date_from <= event.event_time <= date_to:
                    events.append(event)

        next_cursor = str(idx + 1) if idx + 1 < len(files) else None
        return EventPage(events=events, next_cursor=next_cursor, rejected=rejected)


class MixpanelProfileSource:
    """
    Pages user profiles from the Mixpanel Engage API.

    Yields ``{"$distinct_id": ..., "$properties": {...}}`` records. Paging
    follows Mixpanel's ``page`` + ``session_id`` protocol and stops on a
    short page. Each page is retried like an export page.
    """

    def __init__(
        self,
        username: str,
        secret: str,
        project_id: str,
        api_base: str = MIXPANEL_API_BASE,
        timeout_seconds: float = 120,
        max_page_retries: int = 3,
        retry_backoff_seconds: float = 1.0,
        max_rate_limit_sleep_seconds: float = 60.0,
        session: requests.Session = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not username or not secret:
            raise PermanentSourceError("Mixpanel credentials are not configured")
        self.username = username
        self.secret = secret
        self.project_id = project_id
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_page_retries = max_page_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.max_rate_limit_sleep_seconds = max_rate_limit_sleep_seconds
        self.session = session or requests.Session()
        self.sleep = sleep

    def fetch_profile_page(self, page: int = 0, session_id: str = None) -> Dict:
        data = {"page": page}
        if session_id:
            data["session_id"] = session_id
        context = f"mixpanel engage page {page}"
        try:
            response = self.session.post(
                f"{self.api_base}/engage",
                params={"project_id": self.project_id},
                data=data,
                auth=(self.username, self.secret),
                headers={"Accept": "application/json"},
                timeout=self.timeout_seconds,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientSourceError(f"{context}: {e}") from e
        raise_for_source_status(response, context)
        try:
            return response.json()
        except ValueError as e:
            raise TransientSourceError(f"{context}: invalid JSON body: {e}") from e

    def iter_profiles(self) -> Iterator[Dict]:
        page, session_id = 0, None
        while True:
            body = call_with_retry(
                lambda: self.fetch_profile_page(page, session_id),
                f"engage page {page}",
                max_retries=self.max_page_retries,
                backoff_seconds=self.retry_backoff_seconds,
                max_rate_limit_sleep_seconds=self.max_rate_limit_sleep_seconds,
                sleep=self.sleep,
            )
            results = body.get("results") or []
            yield from results
            page_size = body.get("page_size") or len(results)
            if not results or len(results) < page_size:
                return
            session_id = body.get("session_id", session_id)
            page += 1
