"""Tests for status_client.py -- bounded status polling over httpx."""

from collections.abc import Callable
from typing import Any

import httpx

from status_client import StatusPoller
from workflow.state_machine import StageType

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _status(**flags: bool) -> dict[str, Any]:
    body: dict[str, Any] = {
        "projectId": 1,
        "status": "strategy_in_progress",
        "hasPersonas": True,
        "hasCompetitors": True,
        "hasCompetitorAnalysis": False,
        "hasStrategy": False,
        "hasAssets": False,
    }
    body.update(flags)
    return body


def _poller(
    handler: Callable[[httpx.Request], httpx.Response],
    attempts: int = 3,
    stage_timeouts: dict[str, float] | None = None,
) -> StatusPoller:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
    return StatusPoller(
        client=client,
        attempts=attempts,
        interval=0,
        stage_timeouts=stage_timeouts or {"strategy": 3600.0},
    )


def _sequence(
    *replies: tuple[int, dict[str, Any]],
) -> tuple[Callable[[httpx.Request], httpx.Response], list[httpx.Request]]:
    """Handler answering with ``replies`` in order, repeating the last one."""
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        status_code, body = replies[min(len(requests), len(replies)) - 1]
        return httpx.Response(status_code, json=body)

    return handler, requests


# =========================================================================
# Polling
# =========================================================================


class TestStatusPoller:
    async def test_confirms_stage_once_flag_is_set(self) -> None:
        handler, requests = _sequence(
            (200, _status()),
            (200, _status(hasCompetitorAnalysis=True, hasStrategy=True)),
        )
        async with _poller(handler) as poller:
            result = await poller.wait_for_stage(1, StageType.STRATEGY)

        assert result.confirmed
        assert result.attempts == 2
        assert result.status["hasStrategy"] is True
        assert requests[0].url.path == "/api/projects/1/status"

    async def test_gives_up_after_attempts(self) -> None:
        handler, requests = _sequence((200, _status()))
        async with _poller(handler, attempts=4) as poller:
            result = await poller.wait_for_stage(1, StageType.STRATEGY)

        assert not result.confirmed
        assert result.attempts == 4
        assert len(requests) == 4
        assert result.status == _status()

    async def test_errors_count_as_attempts(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise httpx.ConnectError("refused", request=request)
            if calls == 2:
                return httpx.Response(503)
            return httpx.Response(200, json=_status(hasPersonas=True))

        async with _poller(handler) as poller:
            result = await poller.wait_for_stage(1, StageType.PERSONA)

        assert result.confirmed
        assert result.attempts == 3

    async def test_slow_stage_reported_once(self) -> None:
        handler, _ = _sequence((200, _status()))
        slow_calls: list[int] = []

        async def on_slow(attempt: int, elapsed: float) -> None:
            slow_calls.append(attempt)

        async with _poller(handler, stage_timeouts={"strategy": 0.0}) as poller:
            result = await poller.wait_for_stage(1, StageType.STRATEGY, on_slow=on_slow)

        assert not result.confirmed
        assert result.taking_longer
        assert slow_calls == [1]

    async def test_custom_predicate(self) -> None:
        handler, _ = _sequence((200, _status(status="strategy_generated")))
        async with _poller(handler) as poller:
            result = await poller.wait_for(
                1, lambda body: body["status"] == "strategy_generated"
            )
        assert result.confirmed
        assert not result.taking_longer

    async def test_unknown_project_returns_none(self) -> None:
        handler, _ = _sequence((404, {"detail": "Project not found"}))
        async with _poller(handler) as poller:
            assert await poller.fetch_status(999) is None
