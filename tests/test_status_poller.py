"""
Tests for the client-side status poller against a mocked HTTP transport.
"""

import asyncio

import httpx
import pytest

from nodeflow.services.status_poller import StatusPoller

BASE_URL = "http://engine.test"


def run_payload(status: str, nodes: dict[str, str]) -> dict:
    return {
        "runId": "run-1",
        "workflowId": "wf-1",
        "status": status,
        "nodeExecutions": [{"nodeId": nid, "status": s} for nid, s in nodes.items()],
    }


def scripted_client(responses: list, seen: list[httpx.Request]) -> httpx.AsyncClient:
    """Client answering each request with the next scripted response."""
    remaining = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        item = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        return httpx.Response(200, json=item)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestStatusPoller:
    @pytest.mark.asyncio
    async def test_polls_until_terminal_status(self):
        seen: list[httpx.Request] = []
        updates: list[dict[str, str]] = []
        client = scripted_client(
            [
                run_payload("RUNNING", {"T": "COMPLETED", "L": "RUNNING"}),
                run_payload("COMPLETED", {"T": "COMPLETED", "L": "COMPLETED"}),
            ],
            seen,
        )
        poller = StatusPoller(BASE_URL, "run-1", updates.append, interval=0.01, client=client)

        poller.start()
        await poller.wait()

        assert updates == [
            {"T": "COMPLETED", "L": "RUNNING"},
            {"T": "COMPLETED", "L": "COMPLETED"},
        ]
        assert poller.run_status == "COMPLETED"
        assert poller.last_error is None
        assert not poller.is_running
        assert len(seen) == 2
        assert seen[0].url == httpx.URL(f"{BASE_URL}/api/v1/runs/run-1")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_stops_on_failed_and_cancelled(self):
        for terminal in ("FAILED", "CANCELLED"):
            seen: list[httpx.Request] = []
            updates: list[dict[str, str]] = []
            client = scripted_client([run_payload(terminal, {"A": "SKIPPED"})], seen)
            poller = StatusPoller(BASE_URL, "run-1", updates.append, interval=0.01, client=client)

            poller.start()
            await poller.wait()

            assert updates == [{"A": "SKIPPED"}]
            assert len(seen) == 1
            await client.aclose()

    @pytest.mark.asyncio
    async def test_http_error_stops_polling(self):
        seen: list[httpx.Request] = []
        updates: list[dict[str, str]] = []
        client = scripted_client([httpx.Response(404, json={"detail": "Run not found"})], seen)
        poller = StatusPoller(BASE_URL, "run-1", updates.append, interval=0.01, client=client)

        poller.start()
        await poller.wait()

        assert updates == []
        assert poller.last_error.startswith("HTTPStatusError")
        assert len(seen) == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_stops_polling(self):
        seen: list[httpx.Request] = []
        updates: list[dict[str, str]] = []
        client = scripted_client([httpx.ConnectError("connection refused")], seen)
        poller = StatusPoller(BASE_URL, "run-1", updates.append, interval=0.01, client=client)

        poller.start()
        await poller.wait()

        assert updates == []
        assert poller.last_error.startswith("ConnectError")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_cancel_stops_further_callbacks(self):
        seen: list[httpx.Request] = []
        updates: list[dict[str, str]] = []
        client = scripted_client([run_payload("RUNNING", {"A": "RUNNING"})], seen)
        poller = StatusPoller(BASE_URL, "run-1", updates.append, interval=0.01, client=client)

        poller.start()
        while not updates:
            await asyncio.sleep(0.005)
        await poller.cancel()
        count = len(updates)
        await asyncio.sleep(0.05)

        assert not poller.is_running
        assert len(updates) == count
        await client.aclose()

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_stop_polling(self):
        seen: list[httpx.Request] = []
        calls: list[dict[str, str]] = []

        def flaky(update: dict[str, str]) -> None:
            calls.append(update)
            if len(calls) == 1:
                raise RuntimeError("ui went away")

        client = scripted_client(
            [
                run_payload("RUNNING", {"A": "RUNNING"}),
                run_payload("COMPLETED", {"A": "COMPLETED"}),
            ],
            seen,
        )
        poller = StatusPoller(BASE_URL, "run-1", flaky, interval=0.01, client=client)

        poller.start()
        await poller.wait()

        assert len(calls) == 2
        assert poller.run_status == "COMPLETED"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_sends_configured_headers(self):
        seen: list[httpx.Request] = []
        client = scripted_client([run_payload("COMPLETED", {})], seen)
        poller = StatusPoller(
            BASE_URL,
            "run-1",
            lambda update: None,
            interval=0.01,
            client=client,
            headers={"Authorization": "Bearer token"},
        )

        poller.start()
        await poller.wait()

        assert seen[0].headers["Authorization"] == "Bearer token"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_non_object_body_stops_polling_with_error(self):
        seen: list[httpx.Request] = []
        updates: list[dict[str, str]] = []
        client = scripted_client([httpx.Response(200, json=["not", "a", "run"])], seen)
        poller = StatusPoller(BASE_URL, "run-1", updates.append, interval=0.01, client=client)

        poller.start()
        await poller.wait()

        assert updates == []
        assert poller.last_error == "ValueError: Unexpected run status payload: list"
        assert not poller.is_running
        await client.aclose()

    @pytest.mark.asyncio
    async def test_invalid_json_stops_polling_with_error(self):
        seen: list[httpx.Request] = []
        client = scripted_client([httpx.Response(200, content=b"<html>gateway</html>")], seen)
        poller = StatusPoller(BASE_URL, "run-1", lambda update: None, interval=0.01, client=client)

        poller.start()
        await poller.wait()

        assert poller.last_error is not None
        await client.aclose()
