from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from focus_queue.services.adapters import (
    HttpSourceAdapter,
    SourceAdapterError,
    fetch_all,
    record_from_payload,
)
from focus_queue.services.records import SourceType

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


def _adapter(handler, source_type: SourceType = SourceType.TASK) -> tuple[HttpSourceAdapter, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpSourceAdapter(source_type, "https://records.example/api/", "secret", client=client), client


def test_fetch_records_parses_items() -> None:
    captured: dict[str, httpx.Request] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = request
        return httpx.Response(
            200,
            json={
                "items": [
                    {
                        "id": "t1",
                        "title": "Prep board deck",
                        "scoring_inputs": {"priority": "high"},
                        "direct_links": [{"target_type": "project", "target_id": "p1"}],
                    },
                    {"id": "", "title": "broken"},
                    "garbage",
                ]
            },
        )

    async def scenario():
        adapter, client = _adapter(handler)
        async with client:
            return await adapter.fetch_records("owner-1", ["t1", "t2"])

    records = asyncio.run(scenario())

    request = captured["request"]
    assert request.url.path == "/api/sources/task"
    assert request.url.params["ids"] == "t1,t2"
    assert request.url.params["owner_id"] == "owner-1"
    assert request.headers["Authorization"] == "Bearer secret"
    assert list(records) == ["t1"]
    assert records["t1"].has_direct_link is True
    assert records["t1"].direct_links[0].reason == "direct_link"
    assert records["t1"].scoring_inputs == {"priority": "high"}


def test_fetch_records_accepts_bare_list() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"id": "t1"}])

    async def scenario():
        adapter, client = _adapter(handler)
        async with client:
            return await adapter.fetch_records("owner-1", ["t1"])

    records = asyncio.run(scenario())

    assert records["t1"].title == "Untitled"
    assert records["t1"].has_direct_link is False


def test_fetch_records_skips_request_for_no_ids() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    async def scenario():
        adapter, client = _adapter(handler)
        async with client:
            return await adapter.fetch_records("owner-1", [])

    assert asyncio.run(scenario()) == {}


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"detail": "boom"}),
        httpx.Response(200, content=b"not json"),
        httpx.Response(200, json={"items": "nope"}),
    ],
)
def test_fetch_records_wraps_failures(response: httpx.Response) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return response

    async def scenario():
        adapter, client = _adapter(handler)
        async with client:
            return await adapter.fetch_records("owner-1", ["t1"])

    with pytest.raises(SourceAdapterError):
        asyncio.run(scenario())


def test_list_upcoming_events() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/sources/calendar_event/upcoming"
        return httpx.Response(
            200,
            json={
                "items": [
                    {"title": "Partner meeting", "start_at": "2026-03-10T09:20:00Z", "end_at": "2026-03-10T10:00:00Z"},
                    {"title": "No start"},
                ]
            },
        )

    async def scenario():
        adapter, client = _adapter(handler, SourceType.CALENDAR_EVENT)
        async with client:
            return await adapter.list_upcoming_events("owner-1", now=NOW)

    events = asyncio.run(scenario())

    assert len(events) == 1
    assert events[0].title == "Partner meeting"
    assert events[0].start_at == datetime(2026, 3, 10, 9, 20, tzinfo=timezone.utc)


def test_fetch_all_reports_failed_source_types() -> None:
    def ok_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"id": "m1", "title": "Hello"}])

    def failing_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    async def scenario():
        email, email_client = _adapter(ok_handler, SourceType.EMAIL)
        task, task_client = _adapter(failing_handler, SourceType.TASK)
        async with email_client, task_client:
            return await fetch_all(
                {SourceType.EMAIL: email, SourceType.TASK: task},
                "owner-1",
                [(SourceType.EMAIL, "m1"), (SourceType.TASK, "t1"), (SourceType.NOTE, "n1")],
            )

    records, failed = asyncio.run(scenario())

    assert list(records) == [(SourceType.EMAIL, "m1")]
    assert failed == [SourceType.TASK, SourceType.NOTE]


def test_record_from_payload_rejects_missing_id() -> None:
    assert record_from_payload({"title": "no id"}) is None
    assert record_from_payload(None) is None
