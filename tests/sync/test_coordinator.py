from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest

from identity_sync.models import (
    Client,
    RawRecord,
    RawRecordStatus,
    SyncRun,
    SyncRunStatus,
    db,
)
from identity_sync.sync.errors import (
    ChainDispatchError,
    ChainUnavailable,
    SourceFetchError,
    SyncRequestError,
    SyncRunNotFound,
    UnknownSourceError,
)
from identity_sync.sync.pipeline import ContinuationScheduler, RunCheckpoint, SyncRequest, source_tag
from identity_sync.sync.pipeline.chain import InlineDispatcher
from identity_sync.sync.pipeline.checkpoint import PROVIDER_TOKEN_KIND
from identity_sync.sync.pipeline.coordinator import DRY_RUN_STATUS, NO_WORK_STATUS
from identity_sync.sync.pipeline.fetchers import StagedRecordFetcher, StripeFetcher

ALLOWED = ("ghl", "manychat", "csv", "stripe", "paypal")


def _request(*sources, batch_size=50, run_id=None, **extra):
    return SyncRequest(sources=tuple(sources), batch_size=batch_size, sync_run_id=run_id, **extra)


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------


def test_source_tag_is_order_independent():
    assert source_tag(["csv"]) == "csv"
    assert source_tag(["stripe", "csv", "stripe"]) == "csv+stripe"


def test_request_coerce_accepts_camel_and_snake_case():
    camel = SyncRequest.coerce(
        {"sources": ["CSV", "ghl"], "batchSize": "20", "importId": "upload-1"},
        allowed_sources=ALLOWED,
    )
    snake = SyncRequest.coerce({"source": "csv,ghl", "batch_size": 20}, allowed_sources=ALLOWED)

    assert camel.sources == ("csv", "ghl")
    assert camel.batch_size == 20
    assert camel.import_id == "upload-1"
    assert snake.sources == ("csv", "ghl")
    assert camel.tag == snake.tag == "csv+ghl"


def test_request_coerce_clamps_and_defaults_batch_size():
    assert SyncRequest.coerce({"sources": ["csv"]}, allowed_sources=ALLOWED, default_batch_size=40).batch_size == 40
    clamped = SyncRequest.coerce({"sources": ["csv"], "batchSize": 10_000}, allowed_sources=ALLOWED, max_batch_size=500)
    assert clamped.batch_size == 500


@pytest.mark.parametrize(
    "payload,error",
    [
        ({}, SyncRequestError),
        ({"sources": ["hubspot"]}, UnknownSourceError),
        ({"sources": ["csv"], "batchSize": 0}, SyncRequestError),
        ({"sources": ["csv"], "batchSize": "many"}, SyncRequestError),
        ({"sources": 5}, SyncRequestError),
        ({"syncRunId": True}, SyncRequestError),
    ],
)
def test_request_coerce_rejects_invalid_payloads(payload, error):
    with pytest.raises(error):
        SyncRequest.coerce(payload, allowed_sources=ALLOWED)


def test_request_coerce_allows_run_id_only():
    request = SyncRequest.coerce({"syncRunId": "12"}, allowed_sources=ALLOWED)
    assert request.sources == ()
    assert request.sync_run_id == 12


@pytest.mark.parametrize(
    "value,expected",
    [("false", False), ("0", False), ("", False), (None, False), ("TRUE", True), ("yes", True), (1, True), (True, True)],
)
def test_request_coerce_parses_flags_strictly(value, expected):
    request = SyncRequest.coerce({"sources": ["csv"], "forceCancel": value, "dryRun": value}, allowed_sources=ALLOWED)

    assert request.force_cancel is expected
    assert request.dry_run is expected


@pytest.mark.parametrize("field_name", ["forceCancel", "dryRun"])
@pytest.mark.parametrize("value", ["maybe", 2, [True]])
def test_request_coerce_rejects_unrecognised_flags(field_name, value):
    with pytest.raises(SyncRequestError, match=field_name):
        SyncRequest.coerce({"sources": ["csv"], field_name: value}, allowed_sources=ALLOWED)


def test_dry_run_requires_sources():
    with pytest.raises(SyncRequestError):
        SyncRequest.coerce({"syncRunId": 3, "dryRun": True}, allowed_sources=ALLOWED)


# ---------------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------------


def test_run_completes_over_multiple_invocations(csv_rows, coordinator_factory, dispatcher):
    csv_rows(250)
    coordinator = coordinator_factory()

    responses = [coordinator.trigger(_request("csv", batch_size=50)) for _ in range(5)]

    run_ids = {response.sync_run_id for response in responses}
    assert len(run_ids) == 1
    assert [response.has_more for response in responses] == [True, True, True, True, False]
    assert [response.chunk for response in responses] == [1, 2, 3, 4, 5]
    assert [response.status for response in responses[:4]] == ["continuing"] * 4
    assert responses[-1].status == "completed"
    assert responses[-1].progress_pct == 100.0
    assert responses[0].progress_pct == 20.0
    assert responses[0].pending == {"csv": 200}
    assert all(response.batch["processed"] == 50 for response in responses)

    run = db.session.get(SyncRun, run_ids.pop())
    assert run.status == SyncRunStatus.COMPLETED
    assert run.total_fetched == 250
    assert run.total_inserted == 250
    assert run.completed_at is not None
    assert RunCheckpoint.from_dict(run.checkpoint).chunk == 5
    assert Client.query.count() == 250
    assert RawRecord.query.filter_by(processing_status=RawRecordStatus.PENDING).count() == 0
    assert len(dispatcher.calls) == 4
    assert dispatcher.calls[0]["payload"]["sync_run_id"] == run.id
    assert dispatcher.calls[0]["payload"]["sources"] == ["csv"]


def test_response_payload_shape(csv_rows, coordinator_factory):
    csv_rows(3)
    payload = coordinator_factory().trigger(_request("csv", batch_size=2)).to_dict()

    assert payload["ok"] is True
    assert payload["status"] == "continuing"
    assert payload["hasMore"] is True
    assert payload["pending"] == {"perSource": {"csv": 1}, "total": 1}
    assert payload["batch"]["inserted"] == 2
    assert payload["totals"]["fetched"] == 2
    assert payload["chunk"] == 1
    assert "duration_ms" in payload


def test_no_pending_work_completes_immediately(app, coordinator_factory, dispatcher):
    response = coordinator_factory().trigger(_request("csv"))

    assert response.ok is True
    assert response.status == NO_WORK_STATUS
    assert response.has_more is False
    assert response.progress_pct == 100.0
    run = db.session.get(SyncRun, response.sync_run_id)
    assert run.status == SyncRunStatus.COMPLETED
    assert run.metadata_json["initial_pending_total"] == 0
    assert dispatcher.calls == []


def test_trigger_reuses_active_run_for_same_sources(csv_rows, coordinator_factory):
    csv_rows(10)
    coordinator = coordinator_factory()

    first = coordinator.trigger(_request("csv", batch_size=4))
    second = coordinator.trigger(_request("csv", batch_size=4))

    assert second.sync_run_id == first.sync_run_id
    assert second.totals["fetched"] == 8
    assert SyncRun.query.count() == 1


def test_import_id_scopes_csv_run(csv_rows, coordinator_factory):
    csv_rows(3, import_id="upload-a", prefix="a")
    csv_rows(2, import_id="upload-b", prefix="b")

    response = coordinator_factory().trigger(_request("csv", import_id="upload-b"))

    assert response.status == "completed"
    assert response.totals["fetched"] == 2
    assert RawRecord.query.filter_by(import_id="upload-a", processing_status=RawRecordStatus.PENDING).count() == 3
    run = db.session.get(SyncRun, response.sync_run_id)
    assert run.metadata_json["import_id"] == "upload-b"


def test_composite_run_processes_each_source(csv_rows, raw_record_factory, coordinator_factory):
    csv_rows(2)
    raw_record_factory("ghl", {"id": "g-1", "email": "g1@example.com"}, external_id="g-1")

    response = coordinator_factory().trigger(_request("ghl", "csv"))

    assert response.status == "completed"
    run = db.session.get(SyncRun, response.sync_run_id)
    assert run.source == "csv+ghl"
    assert run.total_fetched == 3
    assert set(RunCheckpoint.from_dict(run.checkpoint).cursors) == {"csv", "ghl"}


def test_terminal_run_returns_snapshot(csv_rows, coordinator_factory):
    csv_rows(2)
    coordinator = coordinator_factory()
    completed = coordinator.trigger(_request("csv"))

    snapshot = coordinator.trigger(_request(run_id=completed.sync_run_id))

    assert snapshot.status == "completed"
    assert snapshot.sync_run_id == completed.sync_run_id
    assert snapshot.batch["processed"] == 0
    assert snapshot.totals == completed.totals


def test_unknown_run_id_raises(app, coordinator_factory):
    with pytest.raises(SyncRunNotFound):
        coordinator_factory().trigger(_request(run_id=999))


def test_continuation_resumes_by_run_id(csv_rows, coordinator_factory, dispatcher):
    csv_rows(5)
    coordinator = coordinator_factory()
    first = coordinator.trigger(_request("csv", batch_size=3))

    payload = dispatcher.calls[0]["payload"]
    second = coordinator.trigger(
        SyncRequest(sources=(), batch_size=payload["batch_size"], sync_run_id=payload["sync_run_id"])
    )

    assert second.sync_run_id == first.sync_run_id
    assert second.status == "completed"
    assert second.totals["fetched"] == 5


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


def test_cancel_halts_further_progress(csv_rows, coordinator_factory):
    csv_rows(6)
    coordinator = coordinator_factory()
    first = coordinator.trigger(_request("csv", batch_size=2))

    assert coordinator.cancel(run_id=first.sync_run_id) == 1
    after = coordinator.trigger(_request(run_id=first.sync_run_id))

    assert after.status == "cancelled"
    assert after.has_more is False
    assert after.totals["fetched"] == 2
    run = db.session.get(SyncRun, first.sync_run_id)
    assert run.error_message == "Cancelled by operator."
    assert RawRecord.query.filter_by(processing_status=RawRecordStatus.PENDING).count() == 4


def test_cancelled_run_is_not_reused(csv_rows, coordinator_factory):
    csv_rows(4)
    coordinator = coordinator_factory()
    first = coordinator.trigger(_request("csv", batch_size=2))
    coordinator.cancel(sources=("csv",))

    second = coordinator.trigger(_request("csv", batch_size=2))

    assert second.sync_run_id != first.sync_run_id
    assert second.status == "completed"


def test_force_cancel_reports_count(csv_rows, coordinator_factory):
    csv_rows(4)
    coordinator = coordinator_factory()
    coordinator.trigger(_request("csv", batch_size=2))

    response = coordinator.trigger(_request("csv", force_cancel=True))

    assert response.to_dict() == {"ok": True, "status": "cancelled", "cancelled": 1}
    assert coordinator.cancel(sources=("csv",)) == 0


def test_cancel_requires_target(app, coordinator_factory):
    with pytest.raises(SyncRequestError):
        coordinator_factory().cancel()


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class _ExplodingFetcher(StagedRecordFetcher):
    def fetch(self, cursor, max_batch_size):
        raise SourceFetchError(self.source, "API error 503: maintenance")


def test_fetch_failure_marks_run_failed(csv_rows, coordinator_factory):
    csv_rows(2)
    coordinator = coordinator_factory(fetcher_factory=lambda source, request: _ExplodingFetcher(source))

    response = coordinator.trigger(_request("csv"))

    assert response.ok is False
    assert response.status == "failed"
    assert response.has_more is False
    assert "maintenance" in response.error
    run = db.session.get(SyncRun, response.sync_run_id)
    assert run.status == SyncRunStatus.FAILED
    assert "maintenance" in run.error_message
    assert RawRecord.query.filter_by(processing_status=RawRecordStatus.PENDING).count() == 2


def test_failed_run_snapshot_reports_error(csv_rows, coordinator_factory):
    csv_rows(1)
    coordinator = coordinator_factory(fetcher_factory=lambda source, request: _ExplodingFetcher(source))
    failed = coordinator.trigger(_request("csv"))

    snapshot = coordinator.trigger(_request(run_id=failed.sync_run_id))

    assert snapshot.ok is False
    assert snapshot.status == "failed"
    assert "maintenance" in snapshot.error


def test_bad_record_does_not_block_the_batch(raw_record_factory, coordinator_factory):
    raw_record_factory("csv", {"email": "good1@example.com"}, external_id="r1")
    bad = raw_record_factory("csv", {"email": "bad@example.com", "total_spend": "lots"}, external_id="r2")
    raw_record_factory("csv", {"email": "good2@example.com"}, external_id="r3")

    response = coordinator_factory().trigger(_request("csv"))

    assert response.status == "completed"
    assert response.batch["errors"] == 1
    assert response.batch["inserted"] == 2
    assert response.totals["errors"] == 1
    record = db.session.get(RawRecord, bad.id)
    assert record.processing_status == RawRecordStatus.ERROR
    assert "Invalid monetary amount" in record.error_message
    assert Client.query.filter_by(email="bad@example.com").count() == 0


def test_records_are_finalized_with_outcome(raw_record_factory, coordinator_factory):
    raw_record_factory("csv", {"email": "same@example.com"}, external_id="r1")
    raw_record_factory("csv", {"email": "same@example.com"}, external_id="r2")
    raw_record_factory("csv", {"name": "No contact"}, external_id="r3")

    response = coordinator_factory().trigger(_request("csv"))

    assert response.batch["inserted"] == 1
    assert response.batch["conflicts"] == 1
    assert response.batch["skipped"] == 1
    statuses = {record.external_id: record.processing_status for record in RawRecord.query.all()}
    assert statuses == {
        "r1": RawRecordStatus.MERGED,
        "r2": RawRecordStatus.CONFLICT,
        "r3": RawRecordStatus.SKIPPED,
    }
    run = db.session.get(SyncRun, response.sync_run_id)
    assert all(record.sync_run_id == run.id for record in RawRecord.query.all())


def test_unscheduled_continuation_pauses_run(csv_rows, coordinator_factory, dispatcher_factory):
    csv_rows(4)
    dispatcher = dispatcher_factory(failures=[ChainDispatchError("broker down")] * 2)
    scheduler = ContinuationScheduler(dispatcher, max_attempts=2, backoff_seconds=0, sleep=lambda _: None)
    coordinator = coordinator_factory(scheduler=scheduler)

    paused = coordinator.trigger(_request("csv", batch_size=2))

    assert paused.ok is True
    assert paused.status == "paused"
    assert paused.has_more is True
    run = db.session.get(SyncRun, paused.sync_run_id)
    assert run.status == SyncRunStatus.PAUSED
    assert run.error_message.startswith("Continuation scheduling failed after 2 attempt(s)")
    assert RunCheckpoint.from_dict(run.checkpoint).can_resume is True

    resumed = coordinator_factory().trigger(_request(run_id=run.id, batch_size=2))

    assert resumed.status == "completed"
    assert resumed.totals["fetched"] == 4
    run = db.session.get(SyncRun, run.id)
    assert run.error_message is None
    assert RunCheckpoint.from_dict(run.checkpoint).can_resume is False


def test_unavailable_queue_pauses_without_retry(csv_rows, coordinator_factory, dispatcher_factory):
    csv_rows(3)
    dispatcher = dispatcher_factory(failures=[ChainUnavailable("worker disabled")])
    scheduler = ContinuationScheduler(dispatcher, max_attempts=3, backoff_seconds=0, sleep=lambda _: None)

    response = coordinator_factory(scheduler=scheduler).trigger(_request("csv", batch_size=1))

    assert response.status == "paused"
    assert len(dispatcher.calls) == 1


def test_default_scheduler_pauses_when_worker_disabled(csv_rows, app):
    from identity_sync.sync.pipeline import SyncCoordinator

    csv_rows(2)
    app.extensions["sync"]["worker_enabled"] = False

    response = SyncCoordinator().trigger(_request("csv", batch_size=1))

    assert response.status == "paused"
    assert "SYNC_WORKER_ENABLED" in db.session.get(SyncRun, response.sync_run_id).error_message


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


def test_notifier_receives_merged_clients(csv_rows, coordinator_factory):
    csv_rows(3)
    seen = []

    response = coordinator_factory(notifier=lambda result, source, run_id: seen.append((result.action, source, run_id))).trigger(
        _request("csv")
    )

    assert [entry[0] for entry in seen] == ["inserted"] * 3
    assert {entry[1] for entry in seen} == {"csv"}
    assert {entry[2] for entry in seen} == {response.sync_run_id}


def test_notifier_failure_is_logged_and_ignored(csv_rows, coordinator_factory, caplog):
    csv_rows(2)
    caplog.set_level(logging.WARNING, logger="identity_sync")

    def broken_notifier(result, source, run_id):
        raise RuntimeError("webhook down")

    response = coordinator_factory(notifier=broken_notifier).trigger(_request("csv"))

    assert response.status == "completed"
    assert response.totals["inserted"] == 2
    assert "Merge notification failed" in caplog.text


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------


def test_dry_run_reports_counts_without_writing(csv_rows, coordinator_factory, dispatcher):
    csv_rows(3)

    response = coordinator_factory().trigger(_request("csv", batch_size=2, dry_run=True))

    assert response.ok is True
    assert response.status == DRY_RUN_STATUS
    assert response.sync_run_id is None
    assert response.has_more is True
    assert response.pending == {"csv": 3}
    assert response.batch["processed"] == 2
    assert response.batch["inserted"] == 2
    assert response.to_dict()["dryRun"] is True
    assert SyncRun.query.count() == 0
    assert Client.query.count() == 0
    assert RawRecord.query.filter_by(processing_status=RawRecordStatus.PENDING).count() == 3
    assert dispatcher.calls == []


def test_dry_run_counts_conflicts_and_skips(raw_record_factory, coordinator_factory, client_factory):
    client_factory(email="taken@example.com", identities=(("csv", "row-0"),))
    raw_record_factory("csv", {"email": "taken@example.com"}, external_id="row-1")
    raw_record_factory("csv", {"name": "No Contact"}, external_id="row-2")
    raw_record_factory("csv", {"email": "fresh@example.com"}, external_id="row-3")

    response = coordinator_factory().trigger(_request("csv", dry_run=True))

    assert response.batch == {"processed": 3, "inserted": 1, "updated": 0, "conflicts": 1, "skipped": 1, "errors": 0}
    assert Client.query.count() == 1
    assert RawRecord.query.filter_by(processing_status=RawRecordStatus.PENDING).count() == 3


def test_dry_run_leaves_active_run_alone(csv_rows, coordinator_factory):
    csv_rows(4)
    coordinator = coordinator_factory()
    first = coordinator.trigger(_request("csv", batch_size=2))

    preview = coordinator.trigger(_request("csv", batch_size=2, dry_run=True))

    assert preview.status == DRY_RUN_STATUS
    assert preview.batch["processed"] == 2
    run = db.session.get(SyncRun, first.sync_run_id)
    assert SyncRun.query.count() == 1
    assert run.status == SyncRunStatus.CONTINUING
    assert RunCheckpoint.from_dict(run.checkpoint).chunk == 1
    assert run.total_fetched == 2


def test_dry_run_fetch_failure_reports_error(csv_rows, coordinator_factory):
    csv_rows(1)
    coordinator = coordinator_factory(fetcher_factory=lambda source, request: _ExplodingFetcher(source))

    response = coordinator.trigger(_request("csv", dry_run=True))

    assert response.ok is False
    assert response.status == DRY_RUN_STATUS
    assert "maintenance" in response.error
    assert SyncRun.query.count() == 0


# ---------------------------------------------------------------------------
# Stale runs
# ---------------------------------------------------------------------------


def _age_heartbeat(run_id, minutes):
    run = db.session.get(SyncRun, run_id)
    checkpoint = RunCheckpoint.from_dict(run.checkpoint)
    checkpoint.touch(datetime.now(timezone.utc) - timedelta(minutes=minutes))
    run.checkpoint = checkpoint.to_dict()
    db.session.commit()


def test_stale_run_is_paused_and_resumable(csv_rows, coordinator_factory):
    csv_rows(4)
    coordinator = coordinator_factory()
    first = coordinator.trigger(_request("csv", batch_size=2))
    _age_heartbeat(first.sync_run_id, minutes=30)

    assert coordinator.expire_stale_runs(max_idle_seconds=600) == 1

    run = db.session.get(SyncRun, first.sync_run_id)
    assert run.status == SyncRunStatus.PAUSED
    assert run.error_message.startswith("Stale: no heartbeat for")
    assert RunCheckpoint.from_dict(run.checkpoint).can_resume is True

    resumed = coordinator.trigger(_request("csv", batch_size=2))

    assert resumed.sync_run_id == first.sync_run_id
    assert resumed.status == "completed"
    assert resumed.totals["fetched"] == 4
    assert db.session.get(SyncRun, first.sync_run_id).error_message is None


def test_fresh_runs_are_not_expired(csv_rows, coordinator_factory):
    csv_rows(4)
    coordinator = coordinator_factory()
    first = coordinator.trigger(_request("csv", batch_size=2))

    assert coordinator.expire_stale_runs() == 0
    _age_heartbeat(first.sync_run_id, minutes=30)
    assert coordinator.expire_stale_runs(max_idle_seconds=0) == 0
    assert db.session.get(SyncRun, first.sync_run_id).status == SyncRunStatus.CONTINUING


def test_trigger_sweeps_stale_runs_of_other_sources(csv_rows, coordinator_factory):
    csv_rows(4)
    coordinator = coordinator_factory()
    stale = coordinator.trigger(_request("csv", batch_size=2))
    _age_heartbeat(stale.sync_run_id, minutes=30)

    response = coordinator.trigger(_request("ghl"))

    assert response.status == NO_WORK_STATUS
    assert db.session.get(SyncRun, stale.sync_run_id).status == SyncRunStatus.PAUSED


# ---------------------------------------------------------------------------
# Provider sources
# ---------------------------------------------------------------------------

STRIPE_NOW = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)


def _stripe_page(ids, has_more):
    return {
        "object": "list",
        "data": [
            {
                "id": value,
                "amount": 1000,
                "currency": "usd",
                "status": "succeeded",
                "customer": {"id": f"cus_{value}", "email": f"{value}@example.com"},
            }
            for value in ids
        ],
        "has_more": has_more,
    }


def _stripe_factory(http, built):
    def _factory(source, request):
        now = STRIPE_NOW + timedelta(minutes=len(built))
        built.append(now)
        return StripeFetcher(
            api_key="sk_test_123",
            session=db.session,
            http=http,
            call_delay=0,
            max_pages=1,
            page_size=2,
            clock=lambda: now,
        )

    return _factory


def test_provider_run_resumes_from_page_token(app, coordinator_factory, http_factory, response_factory):
    http = http_factory(
        response_factory(200, _stripe_page(["pi_1", "pi_2"], True)),
        response_factory(200, _stripe_page(["pi_3", "pi_4"], True)),
        response_factory(200, _stripe_page(["pi_5"], False)),
    )
    built = []
    inline = InlineDispatcher()
    coordinator = coordinator_factory(
        fetcher_factory=_stripe_factory(http, built),
        scheduler=ContinuationScheduler(inline, debounce_seconds=0, sleep=lambda _: None),
    )

    responses = [coordinator.trigger(_request("stripe"))]
    tokens = []
    while responses[-1].has_more:
        run = db.session.get(SyncRun, responses[-1].sync_run_id)
        stored = run.checkpoint["cursors"]["stripe"]
        assert stored["kind"] == PROVIDER_TOKEN_KIND
        tokens.append(stored["token"])
        payload = inline.payloads[-1]
        responses.append(
            coordinator.trigger(_request(*payload["sources"], batch_size=payload["batch_size"], run_id=payload["sync_run_id"]))
        )

    assert [(response.status, response.has_more) for response in responses] == [
        ("continuing", True),
        ("continuing", True),
        ("completed", False),
    ]
    assert tokens == ["pi_2", "pi_4"]
    assert [dict(call["params"]).get("starting_after") for call in http.calls] == [None, "pi_2", "pi_4"]
    # Later fetchers see a later clock, but the window stays pinned to the first one.
    assert len(set(built)) == len(built) > 3
    assert {dict(call["params"])["created[lte]"] for call in http.calls} == {int(STRIPE_NOW.timestamp())}

    run = db.session.get(SyncRun, responses[0].sync_run_id)
    assert run.status == SyncRunStatus.COMPLETED
    assert run.checkpoint["cursors"]["stripe"]["exhausted"] is True
    assert run.total_inserted == 5
    assert Client.query.count() == 5
    assert RawRecord.query.filter_by(source="stripe", processing_status=RawRecordStatus.MERGED).count() == 5
    assert len(inline.payloads) == 2


def test_provider_http_error_fails_run(app, coordinator_factory, http_factory, response_factory):
    http = http_factory(response_factory(500, None, text="upstream exploded"))
    coordinator = coordinator_factory(fetcher_factory=_stripe_factory(http, []))

    response = coordinator.trigger(_request("stripe"))

    assert response.ok is False
    assert response.status == "failed"
    assert "API error 500" in response.error
    run = db.session.get(SyncRun, response.sync_run_id)
    assert run.status == SyncRunStatus.FAILED
    assert "upstream exploded" in run.error_message


def test_provider_dry_run_discards_staged_rows(app, coordinator_factory, http_factory, response_factory):
    http = http_factory(response_factory(200, _stripe_page(["pi_1", "pi_2"], False)))
    coordinator = coordinator_factory(fetcher_factory=_stripe_factory(http, []))

    response = coordinator.trigger(_request("stripe", dry_run=True))

    assert response.status == DRY_RUN_STATUS
    assert response.pending == {"stripe": 1}
    assert response.has_more is False
    assert response.batch["inserted"] == 2
    assert len(http.calls) == 1
    assert RawRecord.query.count() == 0
    assert Client.query.count() == 0
    assert SyncRun.query.count() == 0
