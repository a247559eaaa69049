from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Iterator

import uvicorn
from fastapi import FastAPI


logger = logging.getLogger("mailcourier.health")


class _EmbeddedServer(uvicorn.Server):
    # The host process (the arq worker) owns SIGINT/SIGTERM; uvicorn must not replace its handlers.

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class EmbeddedHealthServer:
    """Serve the health app as a task on the caller's event loop.

    Running inside the worker lets ``/health`` read the same breaker registry
    and counters the consumer updates.
    """

    def __init__(self, app: FastAPI, *, host: str, port: int) -> None:
        config = uvicorn.Config(app, host=host, port=port, lifespan="off", log_config=None, access_log=False)
        self._server = _EmbeddedServer(config)
        self._task: asyncio.Task | None = None

    @property
    def started(self) -> bool:
        return bool(self._server.started)

    @property
    def bound_port(self) -> int | None:
        # Resolves port 0 to the port the OS assigned.
        for server in getattr(self._server, "servers", []) or []:
            for sock in server.sockets:
                return int(sock.getsockname()[1])
        return None

    async def start(self, *, timeout_s: float = 5.0) -> None:
        self._task = asyncio.create_task(self._server.serve())
        deadline = asyncio.get_running_loop().time() + timeout_s
        while not self._server.started:
            if self._task.done():
                # serve() returns early when the port cannot be bound.
                self._task.result()
                raise RuntimeError("health server exited during startup")
            if asyncio.get_running_loop().time() >= deadline:
                raise RuntimeError("health server did not start in time")
            await asyncio.sleep(0.01)
        logger.info("health_server_started port=%s", self.bound_port)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        await self._task
        self._task = None
        logger.info("health_server_stopped")
