"""
Asynchronous scraping-job client.

Submits a job to the remote job provider, polls it until it settles and returns
the dataset items it produced. Polling is bounded, detects jobs that stopped
making progress and honours the caller's cancellation flag between polls.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import aiohttp


class JobState(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


# Apify run statuses -> JobState
_APIFY_STATES: Dict[str, JobState] = {
    "READY": JobState.QUEUED,
    "RUNNING": JobState.RUNNING,
    "SUCCEEDED": JobState.SUCCEEDED,
    "FAILED": JobState.FAILED,
    "TIMING-OUT": JobState.FAILED,
    "TIMED-OUT": JobState.FAILED,
    "ABORTING": JobState.ABORTED,
    "ABORTED": JobState.ABORTED,
}


@dataclass
class JobHandle:
    job_id: str
    dataset_id: str
    job_type: str


@dataclass
class JobStatus:
    state: JobState
    detail: str = ""


class JobError(Exception):
    """Base error for remote job failures."""


class JobFailed(JobError):
    """The provider reported the job as failed or aborted."""


class JobStuck(JobError):
    """The job kept reporting the same running status for too long."""


class ApifyJobProvider:
    """Thin async client for the Apify v2 REST API (actor runs + datasets)."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str,
        base_url: str = "https://api.apify.com/v2",
        timeout: float = 60.0,
    ):
        self.session = session
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None, **params: Any) -> Any:
        query = {"token": self.token}
        query.update({k: v for k, v in params.items() if v is not None})
        url = f"{self.base_url}{path}"
        try:
            async with self.session.request(
                method,
                url,
                params=query,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise JobError(f"{method} {path} failed with HTTP {resp.status}: {body[:200]}")
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise JobError(f"{method} {path} error: {exc}") from exc

    async def submit_job(self, job_type: str, payload: Dict[str, Any]) -> JobHandle:
        body = await self._request("POST", f"/acts/{job_type}/runs", payload)
        data = (body or {}).get("data") or {}
        job_id = data.get("id")
        if not job_id:
            raise JobError(f"Job submission for {job_type} returned no run id")
        return JobHandle(job_id=job_id, dataset_id=data.get("defaultDatasetId") or "", job_type=job_type)

    async def get_status(self, handle: JobHandle) -> JobStatus:
        body = await self._request("GET", f"/actor-runs/{handle.job_id}")
        data = (body or {}).get("data") or {}
        raw_state = str(data.get("status") or "").upper()
        stats = data.get("stats") or {}
        detail = f"{data.get('statusMessage') or ''}|{stats.get('requestsFinished', '')}"
        if raw_state not in _APIFY_STATES:
            logging.debug("Unknown job status %r for %s", raw_state, handle.job_id)
        return JobStatus(state=_APIFY_STATES.get(raw_state, JobState.RUNNING), detail=detail)

    async def get_result_items(self, handle: JobHandle) -> List[Dict[str, Any]]:
        if not handle.dataset_id:
            return []
        body = await self._request("GET", f"/datasets/{handle.dataset_id}/items", clean="true")
        if isinstance(body, list):
            return [item for item in body if isinstance(item, dict)]
        return []


class JobClient:
    """Runs a job to completion on top of a provider with bounded polling."""

    def __init__(
        self,
        provider: Any,
        poll_interval: float = 5.0,
        max_polls: int = 30,
        stuck_threshold: int = 10,
    ):
        self.provider = provider
        self.poll_interval = poll_interval
        self.max_polls = max(1, max_polls)
        self.stuck_threshold = stuck_threshold

    async def run(
        self,
        job_type: str,
        payload: Dict[str, Any],
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Submit a job and wait for its items.

        Returns an empty list when the caller cancels. Returns whatever partial
        items exist when the poll cap is reached. Raises JobFailed / JobStuck.
        """
        keep_going = should_continue or (lambda: True)
        if not keep_going():
            return []

        handle = await self.provider.submit_job(job_type, payload)
        logging.info("[JOB] Started %s (run %s)", job_type, handle.job_id)

        last_seen: Optional[tuple] = None
        same_count = 0
        for poll in range(1, self.max_polls + 1):
            if not keep_going():
                logging.info("[JOB] Cancelled while waiting for %s", handle.job_id)
                return []
            await asyncio.sleep(self.poll_interval)
            if not keep_going():
                logging.info("[JOB] Cancelled while waiting for %s", handle.job_id)
                return []

            status = await self.provider.get_status(handle)
            if poll % 4 == 0:
                logging.info("[JOB] %s status: %s (poll %d/%d)", handle.job_id, status.state.value, poll, self.max_polls)

            if status.state == JobState.SUCCEEDED:
                items = await self.provider.get_result_items(handle)
                logging.info("[JOB] %s finished with %d items", handle.job_id, len(items))
                return items
            if status.state in (JobState.FAILED, JobState.ABORTED):
                raise JobFailed(f"Job {handle.job_id} ended as {status.state.value}: {status.detail}")

            observed = (status.state, status.detail)
            if status.state == JobState.RUNNING and observed == last_seen:
                same_count += 1
            else:
                same_count = 1
            last_seen = observed
            if status.state == JobState.RUNNING and same_count > self.stuck_threshold:
                raise JobStuck(f"Job {handle.job_id} reported no progress for {same_count} polls")

        logging.warning("[JOB] %s still running after %d polls; using partial results", handle.job_id, self.max_polls)
        try:
            return await self.provider.get_result_items(handle)
        except Exception as exc:  # noqa: BLE001
            logging.warning("[JOB] Could not fetch partial results for %s: %s", handle.job_id, exc)
            return []
