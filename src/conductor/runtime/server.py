from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from urllib.parse import urlparse

from conductor.runtime.base import ServerStartError
from conductor.runtime.opencode import OpenCodeClient

logger = logging.getLogger(__name__)

DEFAULT_PORT = 4096


class OpenCodeServer:
    """Starts ``opencode serve`` for the project unless one is already answering."""

    def __init__(
        self,
        client: OpenCodeClient,
        project_path: Path,
        *,
        binary: str = "opencode",
        startup_timeout_seconds: float = 30.0,
        health_interval_seconds: float = 0.5,
        stop_timeout_seconds: float = 5.0,
    ) -> None:
        self.client = client
        self.project_path = project_path
        self.binary = binary
        self.startup_timeout_seconds = startup_timeout_seconds
        self.health_interval_seconds = health_interval_seconds
        self.stop_timeout_seconds = stop_timeout_seconds
        self.port = urlparse(client.base_url).port or DEFAULT_PORT
        self._process: asyncio.subprocess.Process | None = None
        self._drains: list[asyncio.Task[None]] = []

    @property
    def owned(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def build_command(self) -> list[str]:
        return [self.binary, "serve", "--port", str(self.port)]

    async def start(self) -> None:
        if self.owned:
            return
        if await self.client.check_health():
            logger.info("Runtime server already running at %s", self.client.base_url)
            return

        command = self.build_command()
        logger.info("Starting runtime server: %s (cwd=%s)", " ".join(command), self.project_path)
        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.project_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ServerStartError(
                f"Runtime binary not found: {self.binary}", retriable=False
            ) from exc

        self._drains = [
            asyncio.create_task(self._drain(self._process.stdout, logging.DEBUG)),
            asyncio.create_task(self._drain(self._process.stderr, logging.WARNING)),
        ]
        await self._wait_healthy()
        logger.info("Runtime server is healthy on port %s", self.port)

    async def _drain(self, stream: asyncio.StreamReader | None, level: int) -> None:
        if stream is None:
            return
        async for raw_line in stream:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if line:
                logger.log(level, "runtime server: %s", line)

    async def _wait_healthy(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout_seconds
        while loop.time() < deadline:
            if self._process is not None and self._process.returncode is not None:
                raise ServerStartError(
                    f"Runtime server exited with code {self._process.returncode} during startup",
                    retriable=False,
                )
            if await self.client.check_health():
                return
            await asyncio.sleep(self.health_interval_seconds)
        await self.stop()
        raise ServerStartError(
            f"Runtime server did not become healthy within {self.startup_timeout_seconds:.0f}s"
        )

    async def stop(self) -> None:
        process = self._process
        if process is None:
            return
        if process.returncode is None:
            logger.info("Stopping runtime server")
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_timeout_seconds)
            except TimeoutError:
                logger.warning("Runtime server ignored SIGTERM, killing it")
                process.kill()
                await process.wait()
        for drain in self._drains:
            drain.cancel()
        await asyncio.gather(*self._drains, return_exceptions=True)
        self._drains = []
        self._process = None
