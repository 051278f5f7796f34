"""Polling fallback for confirming a stage through the status endpoint.

Notifications are best effort, so a client that must know a stage's
results are stored (strategy generation in particular) confirms it by
polling ``GET /api/projects/{id}/status`` a bounded number of times.
Past the stage's timeout the poller reports that the stage is taking
longer than expected; it never cancels the backend task.

Usage:
    >>> async with StatusPoller("http://localhost:8000") as poller:
    ...     result = await poller.wait_for_stage(42, StageType.STRATEGY)
    >>> result.confirmed
    True
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from config import settings
from workflow.state_machine import StageType

logger = structlog.get_logger(__name__)

StatusPredicate = Callable[[dict[str, Any]], bool]
SlowCallback = Callable[[int, float], Awaitable[None]]

# Status flag confirming each stage's results are stored
STAGE_FLAGS: dict[StageType, str] = {
    StageType.PERSONA: "hasPersonas",
    StageType.COMPETITOR_DETECTION: "hasCompetitors",
    StageType.COMPETITOR_ANALYSIS: "hasCompetitorAnalysis",
    StageType.STRATEGY: "hasStrategy",
    StageType.ASSETS: "hasAssets",
}


@dataclass
class PollResult:
    """Outcome of a polling run.

    Attributes:
        confirmed: Whether the predicate held before attempts ran out.
        status: Last status body received, if any.
        attempts: Number of requests made.
        taking_longer: Whether the stage timeout elapsed while polling.
    """

    confirmed: bool
    status: dict[str, Any] | None
    attempts: int
    taking_longer: bool = False


class StatusPoller:
    """Bounded poller over the project status endpoint.

    Attributes:
        attempts: Maximum number of requests per run.
        interval: Seconds between requests.
        stage_timeouts: Seconds after which a stage counts as slow.
    """

    def __init__(
        self,
        base_url: str = "",
        client: httpx.AsyncClient | None = None,
        attempts: int | None = None,
        interval: float | None = None,
        stage_timeouts: dict[str, float] | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(10.0))
        self.attempts = attempts or settings.status_poll_attempts
        self.interval = settings.status_poll_interval_seconds if interval is None else interval
        self.stage_timeouts = stage_timeouts or settings.stage_timeouts_seconds

    async def __aenter__(self) -> "StatusPoller":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_status(self, project_id: int) -> dict[str, Any] | None:
        """One status request; None on a transport error or non-200 reply."""
        try:
            response = await self._client.get(f"/api/projects/{project_id}/status")
        except httpx.RequestError as e:
            logger.warning("status_poll_request_failed", project_id=project_id, error=str(e))
            return None
        if response.status_code != 200:
            logger.warning(
                "status_poll_unexpected_response",
                project_id=project_id,
                status_code=response.status_code,
            )
            return None
        return response.json()

    async def wait_for(
        self,
        project_id: int,
        predicate: StatusPredicate,
        stage: StageType | None = None,
        on_slow: SlowCallback | None = None,
    ) -> PollResult:
        """Poll until ``predicate(status)`` holds or the attempts run out.

        Args:
            project_id: Project to poll.
            predicate: Test applied to each status body.
            stage: Stage being waited on; selects the slow-stage timeout.
            on_slow: Awaited once with (attempt, elapsed seconds) when the
                stage timeout has elapsed.
        """
        timeout = self.stage_timeouts.get(stage.value) if stage else None
        started = time.monotonic()
        last: dict[str, Any] | None = None
        taking_longer = False

        for attempt in range(1, self.attempts + 1):
            status = await self.fetch_status(project_id)
            if status is not None:
                last = status
                if predicate(status):
                    logger.info("status_confirmed", project_id=project_id, attempt=attempt)
                    return PollResult(True, last, attempt, taking_longer)

            elapsed = time.monotonic() - started
            if timeout is not None and not taking_longer and elapsed >= timeout:
                taking_longer = True
                logger.warning(
                    "stage_taking_longer_than_expected",
                    project_id=project_id,
                    stage=stage.value if stage else None,
                    elapsed_seconds=round(elapsed, 1),
                )
                if on_slow is not None:
                    await on_slow(attempt, elapsed)

            if attempt < self.attempts:
                await asyncio.sleep(self.interval)

        logger.warning("status_not_confirmed", project_id=project_id, attempts=self.attempts)
        return PollResult(False, last, self.attempts, taking_longer)

    async def wait_for_stage(
        self,
        project_id: int,
        stage: StageType,
        on_slow: SlowCallback | None = None,
    ) -> PollResult:
        """Poll until the stage's results are reported as stored."""
        flag = STAGE_FLAGS[stage]
        return await self.wait_for(
            project_id, lambda status: bool(status.get(flag)), stage=stage, on_slow=on_slow
        )
