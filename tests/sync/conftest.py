from __future__ import annotations

from typing import Any

import pytest

from identity_sync.models import Client, ClientIdentity, RawRecord, RawRecordStatus, db
from identity_sync.sync.pipeline import ContinuationScheduler, SyncCoordinator


class RecordingDispatcher:
    """Continuation dispatcher that records payloads and can fail on demand."""

    def __init__(self, *, failures: list[Exception] | None = None) -> None:
        self.failures = list(failures or [])
        self.calls: list[dict[str, Any]] = []

    def __call__(self, payload, *, countdown):
        self.calls.append({"payload": dict(payload), "countdown": countdown})
        if self.failures:
            raise self.failures.pop(0)
        return f"task-{len(self.calls)}"


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str | None = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else ("" if payload is None else str(payload))

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeHttpSession:
    """Stand-in for ``requests.Session`` replaying queued responses."""

    def __init__(self, responses: list[FakeResponse]) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "timeout": timeout, **kwargs})
        if not self.responses:
            raise AssertionError(f"Unexpected request {method} {url}")
        return self.responses.pop(0)


@pytest.fixture
def raw_record_factory(app):
    def _factory(
        source: str = "csv",
        payload: dict | None = None,
        *,
        external_id: str | None = None,
        import_id: str | None = None,
        status: RawRecordStatus = RawRecordStatus.PENDING,
        commit: bool = True,
    ) -> RawRecord:
        record = RawRecord(
            source=source,
            external_id=external_id,
            import_id=import_id,
            payload_json=payload or {},
            processing_status=status,
        )
        db.session.add(record)
        if commit:
            db.session.commit()
        return record

    return _factory


@pytest.fixture
def csv_rows(raw_record_factory):
    """Stage ``count`` csv rows with distinct emails and phones."""

    def _stage(count: int, *, import_id: str | None = None, prefix: str = "row") -> list[RawRecord]:
        rows = [
            raw_record_factory(
                "csv",
                {
                    "email": f"{prefix}{index}@example.com",
                    "phone": f"+1555{index:07d}",
                    "name": f"Contact {index}",
                },
                external_id=f"{prefix}-{index}",
                import_id=import_id,
                commit=False,
            )
            for index in range(count)
        ]
        db.session.commit()
        return rows

    return _stage


@pytest.fixture
def client_factory(app):
    def _factory(*, identities: tuple[tuple[str, str], ...] = (), **fields) -> Client:
        client = Client(**fields)
        db.session.add(client)
        db.session.flush()
        for source, external_id in identities:
            db.session.add(
                ClientIdentity(
                    client_id=client.id,
                    source=source,
                    external_id=external_id,
                    email_normalized=fields.get("email"),
                    phone_e164=fields.get("phone_e164"),
                )
            )
        db.session.commit()
        return client

    return _factory


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def scheduler(dispatcher, sleeps):
    return ContinuationScheduler(
        dispatcher,
        max_attempts=3,
        backoff_seconds=0.5,
        debounce_seconds=0.0,
        sleep=sleeps.append,
    )


@pytest.fixture
def coordinator_factory(app, scheduler):
    def _factory(**kwargs) -> SyncCoordinator:
        kwargs.setdefault("scheduler", scheduler)
        return SyncCoordinator(**kwargs)

    return _factory


@pytest.fixture
def dispatcher_factory():
    return RecordingDispatcher


@pytest.fixture
def response_factory():
    return FakeResponse


@pytest.fixture
def http_factory():
    def _factory(*responses: FakeResponse) -> FakeHttpSession:
        return FakeHttpSession(list(responses))

    return _factory
