"""
Client-side run status poller.

Fetches `/api/v1/runs/{run_id}` on a fixed interval and republishes the
node id -> status map until the run reaches a terminal status. Transport or
HTTP errors end the loop; they are recorded on the poller, never raised into
the host.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

import httpx

from nodeflow.config import get_poll_interval_seconds
from nodeflow.models.workflow import TERMINAL_RUN_STATUSES

logger = logging.getLogger(__name__)

StatusCallback = Callable[[dict[str, str]], None]


class StatusPoller:
    def __init__(
        self,
        base_url: str,
        run_id: str,
        on_update: StatusCallback,
        interval: float | None = None,
        client: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.run_id = run_id
        self.on_update = on_update
        self.interval = interval if interval is not None else get_poll_interval_seconds()
        self.headers = headers or {}

        self._client = client
        self._owns_client = client is None
        self._task: asyncio.Task | None = None

        self.node_statuses: dict[str, str] = {}
        self.run_status: str | None = None
        self.last_error: str | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.is_running:
            return self._task
        self._task = asyncio.create_task(self._poll_loop(), name=f"poll-{self.run_id}")
        return self._task

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def cancel(self) -> None:
        """Stop polling; no callback fires after this returns."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)

    async def fetch_once(self, client: httpx.AsyncClient) -> dict[str, Any]:
        resp = await client.get(f"{self.base_url}/api/v1/runs/{self.run_id}", headers=self.headers)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected run status payload: {type(data).__name__}")
        return data

    async def _poll_loop(self) -> None:
        client = self._client or httpx.AsyncClient(timeout=10.0)
        try:
            while True:
                await asyncio.sleep(self.interval)
                try:
                    run = await self.fetch_once(client)
                except (httpx.HTTPError, ValueError) as e:
                    self.last_error = f"{type(e).__name__}: {e}"
                    logger.warning("Polling run %s failed, stopping: %s", self.run_id, self.last_error)
                    return

                self.node_statuses = {
                    entry["nodeId"]: entry["status"]
                    for entry in run.get("nodeExecutions") or []
                    if isinstance(entry, dict) and "nodeId" in entry
                }
                self.run_status = run.get("status")
                try:
                    self.on_update(dict(self.node_statuses))
                except Exception:
                    logger.exception("Status callback for run %s raised", self.run_id)

                if self.run_status in TERMINAL_RUN_STATUSES:
                    logger.info("Run %s reached %s, polling stopped", self.run_id, self.run_status)
                    return
        finally:
            if self._owns_client:
                await client.aclose()
