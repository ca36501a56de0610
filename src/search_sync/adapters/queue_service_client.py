"""HTTP client for the external queue service (the "new" job backend)."""

import asyncio
from typing import Any

import aiohttp

from search_sync.config import Settings
from search_sync.core.constants import BACKEND_EXTERNAL
from search_sync.core.exceptions import QueueServiceError
from search_sync.core.logging import get_logger
from search_sync.schemas.changes import JobDescriptor, JobSubmission
from search_sync.schemas.queue import QueueServiceStats

logger = get_logger(__name__)

_STATS_FIELDS = ("waiting", "active", "completed", "failed", "delayed", "paused")


class QueueServiceClient:
    """Async client for the queue service job API.

    Retries happen at the HTTP layer only: connection errors, timeouts and 5xx
    responses are retried with exponential backoff, 4xx responses are not.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        retries: int = 2,
        retry_backoff: float = 0.5,
        session: aiohttp.ClientSession | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Queue service root URL.
            timeout: Total timeout per HTTP attempt, in seconds.
            retries: Extra attempts after the first one.
            retry_backoff: Base delay between attempts, doubled every retry.
            session: Optional shared aiohttp session.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.retries = retries
        self.retry_backoff = retry_backoff
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueueServiceClient":
        return cls(
            settings.queue_service_url,
            timeout=settings.queue_service_timeout,
            retries=settings.queue_service_retries,
            retry_backoff=settings.queue_service_retry_backoff,
        )

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def aclose(self) -> None:
        """Close the owned HTTP session."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        last_error: QueueServiceError | None = None

        for attempt in range(self.retries + 1):
            try:
                async with self._get_session().request(
                    method, url, json=payload, timeout=self.timeout
                ) as response:
                    if response.status >= 400:
                        body = await response.text()
                        raise QueueServiceError(
                            f"{method} {path} returned HTTP {response.status}: {body[:200]}",
                            status_code=response.status,
                        )
                    data = await response.json(content_type=None)
                    return data if isinstance(data, dict) else {"data": data}
            except QueueServiceError as e:
                if e.status_code is not None and e.status_code < 500:
                    raise
                last_error = e
            except (aiohttp.ClientError, TimeoutError) as e:
                last_error = QueueServiceError(f"{method} {path} failed: {e or type(e).__name__}")

            if attempt < self.retries:
                delay = self.retry_backoff * (2**attempt)
                logger.warning(
                    f"Queue service request failed (attempt {attempt + 1}/{self.retries + 1}), "
                    f"retrying in {delay:g}s: {last_error}"
                )
                await asyncio.sleep(delay)

        assert last_error is not None
        raise last_error

    async def submit_job(self, job: JobDescriptor) -> JobSubmission:
        """Submit a job to the queue service.

        Args:
            job: Backend-neutral job descriptor.

        Returns:
            JobSubmission: Id and status assigned by the queue service.

        Raises:
            QueueServiceError: The service was unreachable or rejected the job.
        """
        body = await self._request("POST", "/api/v1/queue/jobs", job.to_wire())
        if body.get("success") is False:
            raise QueueServiceError(f"Queue service rejected job: {body.get('error', 'unknown')}")

        data = body.get("data") or {}
        if "id" not in data:
            raise QueueServiceError("Queue service response has no job id")

        submission = JobSubmission(
            id=str(data["id"]),
            status=str(data.get("status", "queued")),
            backend=BACKEND_EXTERNAL,
        )
        logger.info(
            f"Submitted job {submission.id} for {job.entity_kind}:{job.entity_id} to queue service"
        )
        return submission

    async def health_check(self) -> bool:
        try:
            await self._request("GET", "/health")
            return True
        except QueueServiceError as e:
            logger.warning(f"Queue service health check failed: {e}")
            return False

    async def get_stats(self) -> QueueServiceStats:
        """Fetch job counts from the queue service.

        Raises:
            QueueServiceError: The service was unreachable.
        """
        body = await self._request("GET", "/api/v1/queue/stats")
        data = body.get("data", body)
        if not isinstance(data, dict):
            raise QueueServiceError("Queue service stats response is not an object")

        known = {key: int(data.get(key) or 0) for key in _STATS_FIELDS}
        extra = {key: value for key, value in data.items() if key not in _STATS_FIELDS}
        return QueueServiceStats(**known, extra=extra)
