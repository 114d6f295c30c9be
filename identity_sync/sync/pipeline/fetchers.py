"""
Source batch fetchers.

Every fetcher honours one contract: ``fetch(cursor, max_batch_size)`` returns
at most ``max_batch_size`` pending raw records in a stable order together with
the advanced cursor and a ``has_more`` flag. Staged sources read rows already
written by push ingestion or uploads. Provider sources page through a remote
API, upsert each item into ``raw_records`` and then serve the pending rows.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Sequence

import requests
from sqlalchemy.orm import Session

from identity_sync.models import RawRecord, RawRecordStatus, SyncRun, SyncRunStatus, db

from ..errors import SourceFetchError, UnknownSourceError
from .checkpoint import ProviderCursor, RowIdCursor, RunCheckpoint, SourceCursor


@dataclass(frozen=True)
class FetchResult:
    records: list[RawRecord]
    cursor: SourceCursor
    has_more: bool
    pages_fetched: int = 0


@dataclass(frozen=True)
class ProviderPage:
    items: list[Mapping[str, Any]]
    next_token: str | None
    has_more: bool


def compute_checksum(payload: Mapping[str, Any]) -> str:
    """Return a stable checksum for a payload to support idempotent staging."""

    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class SourceFetcher:
    """Base class for per-source batch fetchers."""

    source: str = ""

    def __init__(self, *, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def initial_cursor(self) -> SourceCursor:
        raise NotImplementedError

    def fetch(self, cursor: SourceCursor, max_batch_size: int) -> FetchResult:
        raise NotImplementedError

    def count_pending(self, cursor: SourceCursor | None = None) -> int:
        raise NotImplementedError

    def _pending_query(self):
        return self.session.query(RawRecord).filter(
            RawRecord.source == self.source,
            RawRecord.processing_status == RawRecordStatus.PENDING,
        )


class StagedRecordFetcher(SourceFetcher):
    """
    Keyset pager over pending ``raw_records`` rows for a push or upload source.

    Rows are ordered by id; the cursor remembers the last id handed out so a
    row that keeps failing never blocks the rest of the run.
    """

    def __init__(self, source: str, *, session: Session | None = None, import_id: str | None = None) -> None:
        super().__init__(session=session)
        self.source = source
        self.import_id = import_id

    def initial_cursor(self) -> RowIdCursor:
        return RowIdCursor()

    def _scoped_query(self, cursor: SourceCursor | None):
        query = self._pending_query()
        if self.import_id:
            query = query.filter(RawRecord.import_id == self.import_id)
        if isinstance(cursor, RowIdCursor) and cursor.last_id:
            query = query.filter(RawRecord.id > cursor.last_id)
        return query

    def fetch(self, cursor: SourceCursor, max_batch_size: int) -> FetchResult:
        if not isinstance(cursor, RowIdCursor):
            raise SourceFetchError(self.source, f"expected a row id cursor, got {type(cursor).__name__}")
        limit = max(1, int(max_batch_size))
        rows = self._scoped_query(cursor).order_by(RawRecord.id.asc()).limit(limit + 1).all()
        has_more = len(rows) > limit
        rows = rows[:limit]
        next_cursor = cursor.advance(rows[-1].id if rows else None)
        return FetchResult(records=rows, cursor=next_cursor, has_more=has_more)

    def count_pending(self, cursor: SourceCursor | None = None) -> int:
        return self._scoped_query(cursor).count()


class ProviderPageFetcher(SourceFetcher):
    """
    Shared pagination, pacing and staging for rate-limited provider APIs.

    Calls are serialized with a fixed delay between consecutive requests and
    each invocation fetches at most ``max_pages`` pages.
    """

    def __init__(
        self,
        *,
        session: Session | None = None,
        http: requests.Session | None = None,
        call_delay: float = 0.25,
        max_pages: int = 5,
        page_size: int = 100,
        timeout: float = 30.0,
        sleep_fn: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(session=session)
        self.http = http or requests.Session()
        self.call_delay = max(0.0, float(call_delay))
        self.max_pages = max(1, int(max_pages))
        self.page_size = max(1, int(page_size))
        self.timeout = timeout
        self.sleep = sleep_fn
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logger or logging.getLogger(__name__)
        self._calls_made = 0

    # Provider hooks -------------------------------------------------------------

    def build_params(self, previous_window_end: str | None) -> dict[str, Any]:
        raise NotImplementedError

    def fetch_page(self, cursor: ProviderCursor) -> ProviderPage:
        raise NotImplementedError

    def item_external_id(self, item: Mapping[str, Any]) -> str | None:
        raise NotImplementedError

    # Public API -----------------------------------------------------------------

    def initial_cursor(self) -> ProviderCursor:
        return ProviderCursor(params=self.build_params(self._previous_window_end()))

    def fetch(self, cursor: SourceCursor, max_batch_size: int) -> FetchResult:
        if not isinstance(cursor, ProviderCursor):
            raise SourceFetchError(self.source, f"expected a provider cursor, got {type(cursor).__name__}")
        limit = max(1, int(max_batch_size))
        pending = self._pending_rows(limit)
        pages = 0
        while len(pending) < limit and not cursor.exhausted and pages < self.max_pages:
            page = self.fetch_page(cursor)
            pages += 1
            staged = self._stage_items(page.items)
            cursor = cursor.next_page(page.next_token, has_more=page.has_more)
            self.logger.info(
                "Fetched provider page",
                extra={
                    "sync_source": self.source,
                    "sync_page_items": len(page.items),
                    "sync_page_staged": staged,
                    "sync_pages_fetched": cursor.pages_fetched,
                    "sync_provider_exhausted": cursor.exhausted,
                },
            )
            pending = self._pending_rows(limit)

        remaining_rows = self._pending_query().count() - len(pending)
        has_more = not cursor.exhausted or remaining_rows > 0
        return FetchResult(records=pending, cursor=cursor, has_more=has_more, pages_fetched=pages)

    def count_pending(self, cursor: SourceCursor | None = None) -> int:
        staged = self._pending_query().count()
        exhausted = isinstance(cursor, ProviderCursor) and cursor.exhausted
        return staged + (0 if exhausted else 1)

    # Internal helpers -----------------------------------------------------------

    def _pending_rows(self, limit: int) -> list[RawRecord]:
        return self._pending_query().order_by(RawRecord.id.asc()).limit(limit).all()

    def _stage_items(self, items: Sequence[Mapping[str, Any]]) -> int:
        staged = 0
        for item in items:
            external_id = self.item_external_id(item)
            if not external_id:
                self.logger.warning(
                    "Skipping provider item without an id",
                    extra={"sync_source": self.source},
                )
                continue
            payload = dict(item)
            checksum = compute_checksum(payload)
            row = (
                self.session.query(RawRecord)
                .filter(RawRecord.source == self.source, RawRecord.external_id == external_id)
                .one_or_none()
            )
            if row is None:
                self.session.add(
                    RawRecord(
                        source=self.source,
                        external_id=external_id,
                        payload_json=payload,
                        checksum=checksum,
                        processing_status=RawRecordStatus.PENDING,
                    )
                )
                staged += 1
            elif row.checksum != checksum:
                row.payload_json = payload
                row.checksum = checksum
                row.processing_status = RawRecordStatus.PENDING
                row.processed_at = None
                row.error_message = None
                row.fetched_at = datetime.now(timezone.utc)
                staged += 1
        self.session.flush()
        return staged

    def _previous_window_end(self) -> str | None:
        runs = (
            self.session.query(SyncRun)
            .filter(SyncRun.status == SyncRunStatus.COMPLETED)
            .order_by(SyncRun.completed_at.desc(), SyncRun.id.desc())
            .limit(20)
            .all()
        )
        for run in runs:
            cursor = RunCheckpoint.from_dict(run.checkpoint).cursor_for(self.source)
            if isinstance(cursor, ProviderCursor) and cursor.exhausted:
                window_end = cursor.params.get("window_end")
                if window_end:
                    return str(window_end)
        return None

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        if self._calls_made and self.call_delay:
            self.sleep(self.call_delay)
        self._calls_made += 1
        try:
            response = self.http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise SourceFetchError(self.source, f"request failed: {exc}") from exc
        return response

    def _json(self, response: requests.Response) -> Mapping[str, Any]:
        if not response.ok:
            raise SourceFetchError(
                self.source,
                f"API error {response.status_code}: {response.text[:200]}",
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise SourceFetchError(self.source, "response was not valid JSON") from exc
        if not isinstance(data, Mapping):
            raise SourceFetchError(self.source, "response JSON was not an object")
        return data


class StripeFetcher(ProviderPageFetcher):
    """Page through Stripe payment intents with ``starting_after`` cursors."""

    source = "stripe"

    def __init__(self, *, api_key: str | None, api_base: str = "https://api.stripe.com", **kwargs) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")

    def build_params(self, previous_window_end: str | None) -> dict[str, Any]:
        window_end = int(self.clock().timestamp())
        params: dict[str, Any] = {"window_end": window_end}
        if previous_window_end:
            params["window_start"] = int(previous_window_end)
        return params

    def item_external_id(self, item: Mapping[str, Any]) -> str | None:
        value = item.get("id")
        return str(value) if value else None

    def fetch_page(self, cursor: ProviderCursor) -> ProviderPage:
        if not self.api_key:
            raise SourceFetchError(self.source, "STRIPE_SECRET_KEY is not configured")
        query: list[tuple[str, Any]] = [
            ("limit", self.page_size),
            ("expand[]", "data.customer"),
        ]
        if cursor.params.get("window_start") is not None:
            query.append(("created[gte]", cursor.params["window_start"]))
        if cursor.params.get("window_end") is not None:
            query.append(("created[lte]", cursor.params["window_end"]))
        if cursor.token:
            query.append(("starting_after", cursor.token))
        response = self._request(
            "GET",
            f"{self.api_base}/v1/payment_intents",
            headers={"Authorization": f"Bearer {self.api_key}"},
            params=query,
        )
        data = self._json(response)
        items = list(data.get("data") or [])
        has_more = bool(data.get("has_more")) and bool(items)
        next_token = str(items[-1].get("id")) if items else None
        return ProviderPage(items=items, next_token=next_token, has_more=has_more)


class PayPalFetcher(ProviderPageFetcher):
    """Page through the PayPal transaction reporting API by page number."""

    source = "paypal"

    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        api_base: str = "https://api-m.paypal.com",
        lookback_days: int = 30,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_base = api_base.rstrip("/")
        self.lookback_days = max(1, int(lookback_days))
        self._access_token: str | None = None

    @staticmethod
    def _format_date(value: datetime) -> str:
        return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    def build_params(self, previous_window_end: str | None) -> dict[str, Any]:
        now = self.clock()
        start = previous_window_end or self._format_date(now - timedelta(days=self.lookback_days))
        return {"window_start": start, "window_end": self._format_date(now)}

    def item_external_id(self, item: Mapping[str, Any]) -> str | None:
        info = item.get("transaction_info") or {}
        value = info.get("transaction_id")
        return str(value) if value else None

    def _token(self) -> str:
        if self._access_token:
            return self._access_token
        if not self.client_id or not self.client_secret:
            raise SourceFetchError(self.source, "PAYPAL_CLIENT_ID/PAYPAL_CLIENT_SECRET are not configured")
        response = self._request(
            "POST",
            f"{self.api_base}/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        data = self._json(response)
        token = data.get("access_token")
        if not token:
            raise SourceFetchError(self.source, "OAuth response did not include an access token")
        self._access_token = str(token)
        return self._access_token

    def fetch_page(self, cursor: ProviderCursor) -> ProviderPage:
        page_number = int(cursor.token or 0) + 1
        response = self._request(
            "GET",
            f"{self.api_base}/v1/reporting/transactions",
            headers={"Authorization": f"Bearer {self._token()}", "Content-Type": "application/json"},
            params={
                "start_date": cursor.params.get("window_start"),
                "end_date": cursor.params.get("window_end"),
                "page_size": self.page_size,
                "page": page_number,
                "fields": "transaction_info,payer_info,cart_info",
            },
        )
        if response.status_code == 404 or (not response.ok and "NO_DATA" in response.text):
            return ProviderPage(items=[], next_token=None, has_more=False)
        data = self._json(response)
        items = list(data.get("transaction_details") or [])
        total_pages = int(data.get("total_pages") or 1)
        return ProviderPage(items=items, next_token=str(page_number), has_more=page_number < total_pages)


STAGED_SOURCES: tuple[str, ...] = ("ghl", "manychat", "csv")
PROVIDER_SOURCES: tuple[str, ...] = ("stripe", "paypal")


def build_fetcher(
    source: str,
    config: Mapping[str, Any],
    *,
    session: Session | None = None,
    import_id: str | None = None,
    http: requests.Session | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> SourceFetcher:
    """Construct the fetcher for ``source`` from Flask-style configuration."""

    if source in STAGED_SOURCES:
        return StagedRecordFetcher(source, session=session, import_id=import_id if source == "csv" else None)

    provider_kwargs: dict[str, Any] = {
        "session": session,
        "http": http,
        "call_delay": config.get("SYNC_PROVIDER_CALL_DELAY_SECONDS", 0.25),
        "max_pages": config.get("SYNC_PROVIDER_MAX_PAGES", 5),
        "page_size": config.get("SYNC_PROVIDER_PAGE_SIZE", 100),
        "timeout": config.get("SYNC_PROVIDER_TIMEOUT_SECONDS", 30.0),
        "sleep_fn": sleep_fn,
    }
    if source == "stripe":
        return StripeFetcher(
            api_key=config.get("STRIPE_SECRET_KEY"),
            api_base=config.get("STRIPE_API_BASE") or "https://api.stripe.com",
            **provider_kwargs,
        )
    if source == "paypal":
        return PayPalFetcher(
            client_id=config.get("PAYPAL_CLIENT_ID"),
            client_secret=config.get("PAYPAL_CLIENT_SECRET"),
            api_base=config.get("PAYPAL_API_BASE") or "https://api-m.paypal.com",
            lookback_days=config.get("SYNC_PAYPAL_LOOKBACK_DAYS", 30),
            **provider_kwargs,
        )
    raise UnknownSourceError(f"No fetcher registered for source '{source}'.")
