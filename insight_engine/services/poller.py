"""
Status Poller: the client's view of a running job.

Reads the job status at a fixed interval until it is "complete" or "error".
There is no channel back to the orchestrator; stopping the poller does not
stop the job.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from insight_engine.services.jobs import TERMINAL_STATUSES

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 2.0

Fetcher = Callable[[str], Awaitable[Dict[str, Any]]]

_TERMINAL_VALUES = frozenset(s.value for s in TERMINAL_STATUSES)


class PollTimeout(TimeoutError):
    """The job did not reach a terminal status in time."""


@dataclass
class PollResult:
    job_id: str
    snapshot: Dict[str, Any]
    statuses: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return self.snapshot.get("status", "")


async def poll_job_status(
    fetch: Fetcher,
    job_id: str,
    interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    timeout: Optional[float] = None,
) -> PollResult:
    """
    Poll ``fetch(job_id)`` until a terminal status.

    Returns the terminal snapshot (``status``/``error``/``finalReport``) and
    the distinct statuses observed, in order. Raises ``PollTimeout`` when
    ``timeout`` elapses first.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout is not None else None
    statuses: List[str] = []

    while True:
        snapshot = await fetch(job_id)
        status = snapshot.get("status", "")
        if not statuses or statuses[-1] != status:
            statuses.append(status)
            logger.debug(f"[{job_id}] status -> {status}")

        if status in _TERMINAL_VALUES:
            return PollResult(job_id=job_id, snapshot=snapshot, statuses=statuses)

        if deadline is not None and loop.time() + interval > deadline:
            raise PollTimeout(f"Job {job_id} still '{status}' after {timeout:g} seconds")
        await asyncio.sleep(interval)


class HttpStatusFetcher:
    """Reads ``GET /api/jobs/{jobId}`` from a running Insight Engine API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def __call__(self, job_id: str) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.get(f"{self.base_url}/api/jobs/{job_id}")
            response.raise_for_status()
            return response.json()


def store_fetcher(store) -> Fetcher:
    """Fetcher reading straight from a JobStore (same process)."""

    async def fetch(job_id: str) -> Dict[str, Any]:
        job = await store.get_job(job_id)
        if job is None:
            raise LookupError(f"Job {job_id} not found")
        return job.public_view()

    return fetch
