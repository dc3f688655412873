"""Follow a job through the live relay with status polling as a fallback."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

import httpx
import websockets

from .api_client import JobState, UnknownJobError

LOGGER = logging.getLogger("reelsmith.client.watcher")

DONE = "done"

StatusFetcher = Callable[[str], JobState]
RelayFactory = Callable[[str], AsyncIterator[dict[str, Any]]]
UpdateCallback = Callable[[Any], None]


def websocket_relay(ws_url: str) -> RelayFactory:
    """Relay factory subscribing to one job on the API's progress socket."""

    async def listen(job_id: str) -> AsyncIterator[dict[str, Any]]:
        async with websockets.connect(ws_url) as socket:
            await socket.send(json.dumps({"type": "subscribe", "jobId": job_id}))
            async for raw in socket:
                try:
                    message = json.loads(raw)
                except ValueError:
                    continue
                if isinstance(message, dict) and message.get("jobId") == job_id:
                    yield message

    return listen


def parse_step(step: Any) -> int | str | None:
    if step == DONE:
        return DONE
    try:
        return max(0, min(100, int(str(step).rstrip("%"))))
    except (TypeError, ValueError):
        return None


@dataclass
class _Session:
    job_id: str
    on_update: UpdateCallback | None
    outcome: asyncio.Future
    last: int = 0
    done_sent: bool = False
    poller: asyncio.Task | None = None


class ProgressWatcher:
    """Supervises a relay listener and a status poller for a single job.

    Polling runs until the relay delivers its first message and resumes if
    the relay goes away. The relay never reports failures, so a relay that
    stays silent for ``relay_idle_timeout`` triggers one status check.
    """

    def __init__(
        self,
        status_fetcher: StatusFetcher,
        relay_factory: RelayFactory | None = None,
        poll_interval: float = 2.0,
        relay_idle_timeout: float = 30.0,
    ) -> None:
        self._status_fetcher = status_fetcher
        self._relay_factory = relay_factory
        self._poll_interval = poll_interval
        self._relay_idle_timeout = relay_idle_timeout

    async def watch(self, job_id: str, on_update: UpdateCallback | None = None) -> JobState:
        """Wait for ``job_id`` to reach a terminal state and return it."""

        session = _Session(job_id, on_update, asyncio.get_running_loop().create_future())
        self._start_polling(session)
        listener = None
        if self._relay_factory is not None:
            listener = asyncio.create_task(self._listen(session))
        try:
            return await session.outcome
        finally:
            if listener is not None:
                listener.cancel()
                with suppress(asyncio.CancelledError):
                    await listener
            self._stop_polling(session)

    # -- polling -------------------------------------------------------

    def _start_polling(self, session: _Session) -> None:
        if session.poller is None or session.poller.done():
            session.poller = asyncio.create_task(self._poll(session))

    def _stop_polling(self, session: _Session) -> None:
        if session.poller is not None:
            session.poller.cancel()
            session.poller = None

    async def _poll(self, session: _Session) -> None:
        while not session.outcome.done():
            await self._check(session)
            await asyncio.sleep(self._poll_interval)

    async def _check(self, session: _Session) -> bool:
        try:
            state = await asyncio.to_thread(self._status_fetcher, session.job_id)
        except UnknownJobError as exc:
            if not session.outcome.done():
                session.outcome.set_exception(exc)
            return False
        except (RuntimeError, httpx.HTTPError) as exc:
            LOGGER.warning("status check failed for %s: %s", session.job_id, exc)
            return False
        self._apply(session, state)
        return True

    # -- relay ---------------------------------------------------------

    async def _pump(self, job_id: str, inbox: asyncio.Queue) -> None:
        assert self._relay_factory is not None
        try:
            async for message in self._relay_factory(job_id):
                inbox.put_nowait(message)
        except (OSError, websockets.WebSocketException) as exc:
            LOGGER.info("progress relay unavailable for %s: %s", job_id, exc)
        finally:
            inbox.put_nowait(None)

    async def _listen(self, session: _Session) -> None:
        inbox: asyncio.Queue = asyncio.Queue()
        pump = asyncio.create_task(self._pump(session.job_id, inbox))
        live = False
        try:
            while not session.outcome.done():
                try:
                    message = await asyncio.wait_for(inbox.get(), self._relay_idle_timeout)
                except asyncio.TimeoutError:
                    if live:
                        await self._check(session)
                    continue
                if message is None:
                    break
                if not live:
                    live = True
                    self._stop_polling(session)
                step = parse_step(message.get("step"))
                if step == DONE:
                    if not await self._check(session):
                        break
                elif step is not None:
                    self._emit(session, step)
        finally:
            pump.cancel()
            with suppress(asyncio.CancelledError):
                await pump
            if not session.outcome.done():
                LOGGER.info("relay closed for %s, resuming polling", session.job_id)
                self._start_polling(session)

    # -- reporting -----------------------------------------------------

    def _emit(self, session: _Session, value: int | str) -> None:
        if session.on_update is None:
            return
        if value == DONE:
            if not session.done_sent:
                session.done_sent = True
                session.on_update(DONE)
            return
        if value <= session.last:
            return
        session.last = value
        session.on_update(value)

    def _apply(self, session: _Session, state: JobState) -> None:
        if session.outcome.done():
            return
        if state.progress > 0:
            self._emit(session, state.progress)
        if not state.is_terminal:
            return
        if state.state == "completed":
            self._emit(session, DONE)
        session.outcome.set_result(state)
