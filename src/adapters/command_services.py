"""Subprocess adapter for the build, synth and deploy stages.

Implements the core StackServices port by running the configured commands in
the project root. Output is streamed to the log so long deploys stay visible.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional

from core.config import FingerprintConfig, StageCommands
from core.errors import StageFailure
from core.fingerprint import compute_fingerprint

LOGGER = logging.getLogger(__name__)

OUTPUT_PLACEHOLDER = "{output}"
STDERR_TAIL_LINES = 20
READ_CHUNK_SIZE = 64 * 1024


def expand_command(argv: list[str], output_dir: str) -> list[str]:
    """Replace the output placeholder in every argument."""

    return [arg.replace(OUTPUT_PLACEHOLDER, output_dir) for arg in argv]


class CommandStackServices:
    """StackServices backed by external commands (cdk, npm, tsc, ...)."""

    def __init__(
        self,
        root: str,
        commands: StageCommands,
        output_dir: str,
        fingerprint_config: Optional[FingerprintConfig] = None,
        env: Optional[dict[str, str]] = None,
    ) -> None:
        self._root = root
        self._commands = commands
        self._output_dir = output_dir
        self._fingerprint = fingerprint_config or FingerprintConfig()
        self._env = env

    async def build(self) -> None:
        # Projects without a compile step (e.g. plain Python CDK apps) skip build.
        if not self._commands.build:
            LOGGER.debug("No build command configured")
            return
        await self._run("build", self._commands.build)

    async def synth(self) -> str:
        await self._run("synth", self._commands.synth)
        return compute_fingerprint(
            self._output_dir,
            manifest_name=self._fingerprint.manifest_name,
            artifact_type=self._fingerprint.artifact_type,
        )

    async def deploy(self) -> None:
        await self._run("deploy", self._commands.deploy)

    async def _run(self, stage: str, argv: list[str]) -> None:
        if not argv:
            raise StageFailure(stage, "no command configured")

        command = expand_command(argv, self._output_dir)
        env = None
        if self._env:
            env = {**os.environ, **self._env}

        LOGGER.info("Running %s: %s", stage, " ".join(command))
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=self._root,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise StageFailure(stage, f"could not start {command[0]}: {exc.strerror or exc}") from exc

        stderr_lines: list[str] = []
        pumps = asyncio.gather(
            self._pump(proc.stdout, stage, None),
            self._pump(proc.stderr, stage, stderr_lines),
        )
        try:
            await pumps
        except BaseException:
            pumps.cancel()
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            await proc.wait()
            raise
        returncode = await proc.wait()

        if returncode != 0:
            tail = "\n".join(stderr_lines[-STDERR_TAIL_LINES:]) or "no stderr output"
            raise StageFailure(stage, tail, exit_code=returncode)

    @staticmethod
    async def _pump(
        stream: Optional[asyncio.StreamReader],
        stage: str,
        collected: Optional[list[str]],
    ) -> None:
        if stream is None:
            return

        def emit(raw: bytes) -> None:
            text = raw.decode("utf-8", errors="replace").rstrip()
            LOGGER.debug("[%s] %s", stage, text)
            if collected is not None:
                collected.append(text)

        # readline() raises on lines longer than the StreamReader limit.
        pending = b""
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            pending += chunk
            *lines, pending = pending.split(b"\n")
            for line in lines:
                emit(line)
        if pending:
            emit(pending)
