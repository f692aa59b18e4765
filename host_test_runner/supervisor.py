"""Launching and supervising one host application process."""

import asyncio
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from host_test_runner import process_tree
from host_test_runner.script import ScriptArtifact

log = logging.getLogger(__name__)

type OutcomeKind = Literal["exited", "timed_out", "cancelled", "launch_error"]

LINGER_GRACE = 2.0
TEARDOWN_TIMEOUT = 10.0


class LaunchError(Exception):
    """Raised when the host executable is missing or fails to start."""


@dataclass(frozen=True, kw_only=True)
class ProcessOutcome:
    """How a host launch ended.

    A non-zero ``exit_code`` is advisory only; the results artifact decides
    which tests passed.
    """

    kind: OutcomeKind
    exit_code: int | None = None
    message: str = ""
    duration: float = 0.0


@dataclass(kw_only=True)
class HostProcessHandle:
    """A running host process and the journal it was given."""

    process: asyncio.subprocess.Process = field(repr=False)
    journal_path: Path
    cancel_event: asyncio.Event = field(repr=False)
    started_at: datetime

    @property
    def pid(self) -> int:
        return self.process.pid

    @classmethod
    async def start(
        cls,
        host_executable: Path,
        journal_path: Path,
        *,
        cwd: Path,
        cancel_event: asyncio.Event,
    ) -> "HostProcessHandle":
        """Spawn the host with the journal as its only argument.

        Raises:
            LaunchError: If the executable is missing, not executable or the
                process cannot be started

        """
        if not host_executable.is_file():
            raise LaunchError(f"Host executable not found: {host_executable}")
        if not os.access(host_executable, os.X_OK):
            raise LaunchError(f"Host executable is not executable: {host_executable}")

        popen_kwargs: dict[str, Any] = {}
        process_tree.configure_popen(popen_kwargs)

        try:
            process = await asyncio.create_subprocess_exec(
                str(host_executable),
                str(journal_path),
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                **popen_kwargs,
            )
        except OSError as e:
            raise LaunchError(f"Failed to start {host_executable}: {e}") from e

        return cls(
            process=process,
            journal_path=journal_path,
            cancel_event=cancel_event,
            started_at=datetime.now(timezone.utc),
        )

    async def wait(self, timeout: float | None) -> OutcomeKind:
        """Race process exit against cancellation and the deadline."""
        exit_task = asyncio.create_task(self.process.wait())
        cancel_task = asyncio.create_task(self.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {exit_task, cancel_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (exit_task, cancel_task):
                task.cancel()

        if exit_task in done:
            return "exited"
        if cancel_task in done:
            return "cancelled"
        return "timed_out"

    async def terminate(self) -> None:
        """Kill the host and every helper it spawned, then wait for all of them."""
        helpers = process_tree.collect_tree(self.pid)
        try:
            self.process.kill()
        except ProcessLookupError:
            pass
        process_tree.kill_all(helpers)

        await self.process.wait()
        await process_tree.reap(helpers, timeout=TEARDOWN_TIMEOUT)

    async def release(self, grace: float) -> None:
        """Wait for helpers that outlive a normal exit, killing them after ``grace``."""
        helpers = process_tree.collect_tree(self.pid)
        if helpers:
            log.info(
                "Host pid=%d exited with %d helper process(es) still running",
                self.pid,
                len(helpers),
            )
        await process_tree.reap(helpers, grace=grace, timeout=TEARDOWN_TIMEOUT)


async def launch(
    host_executable: Path,
    artifact: ScriptArtifact,
    timeout_ms: int | None,
    cancel_event: asyncio.Event,
    *,
    cwd: Path,
    on_started: Callable[[HostProcessHandle], None] | None = None,
    linger_grace: float = LINGER_GRACE,
) -> ProcessOutcome:
    """Run the host on ``artifact`` and return once its whole process tree is gone.

    Args:
        host_executable: Path to the host application
        artifact: Generated journal and run configuration
        timeout_ms: Deadline in milliseconds, or None to wait indefinitely
        cancel_event: Set to stop the host early
        cwd: Working directory owned by the host for the launch
        on_started: Called with the handle once the process is running
        linger_grace: Seconds helper processes may outlive a normal exit

    Returns:
        The outcome; ``launch_error`` when the host could not be started

    """
    loop = asyncio.get_running_loop()
    started = loop.time()

    try:
        handle = await HostProcessHandle.start(
            host_executable,
            artifact.journal_path,
            cwd=cwd,
            cancel_event=cancel_event,
        )
    except LaunchError as e:
        log.error("%s", e)
        return ProcessOutcome(kind="launch_error", message=str(e))

    log.info(
        "Launched host pid=%d journal=%s timeout=%s",
        handle.pid,
        artifact.journal_path,
        f"{timeout_ms}ms" if timeout_ms is not None else "none",
    )
    if on_started is not None:
        on_started(handle)

    timeout = timeout_ms / 1000 if timeout_ms is not None else None
    try:
        kind = await handle.wait(timeout)
    finally:
        if handle.process.returncode is None:
            await handle.terminate()
        else:
            await handle.release(linger_grace)

    duration = loop.time() - started
    match kind:
        case "exited":
            log.info(
                "Host pid=%d exited with code %s after %.2fs",
                handle.pid,
                handle.process.returncode,
                duration,
            )
            return ProcessOutcome(
                kind="exited", exit_code=handle.process.returncode, duration=duration
            )
        case "timed_out":
            log.warning("Host pid=%d timed out after %d ms", handle.pid, timeout_ms)
            return ProcessOutcome(
                kind="timed_out",
                message=f"host did not finish within {timeout_ms} ms",
                duration=duration,
            )
        case _:
            log.info("Host pid=%d cancelled", handle.pid)
            return ProcessOutcome(
                kind="cancelled", message="run cancelled", duration=duration
            )
