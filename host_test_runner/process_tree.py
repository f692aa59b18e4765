"""Finding and reaping the helper processes a host launch leaves behind."""

import asyncio
import logging
import os
import sys
from collections.abc import Sequence
from typing import Any

import psutil

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.05


def configure_popen(popen_kwargs: dict[str, Any]) -> None:
    """Start the host in its own process group so its helpers can be found."""
    if sys.platform == "win32":
        popen_kwargs.setdefault("creationflags", 0x00000200)  # CREATE_NEW_PROCESS_GROUP
    else:
        popen_kwargs.setdefault("start_new_session", True)


def collect_descendants(root_pid: int) -> list[psutil.Process]:
    """Return every live descendant of ``root_pid``."""
    try:
        return psutil.Process(root_pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


def collect_process_group(pgid: int) -> list[psutil.Process]:
    """Return live members of process group ``pgid`` (empty where unsupported)."""
    if not hasattr(os, "getpgid"):
        return []

    members: list[psutil.Process] = []
    for proc in psutil.process_iter():
        try:
            if os.getpgid(proc.pid) == pgid:
                members.append(proc)
        except OSError:
            continue
    return members


def collect_tree(root_pid: int, *, exclude_root: bool = True) -> list[psutil.Process]:
    """Return the descendants and process group members of a host launch.

    The host was started as a group leader, so its pid doubles as the group
    id. Group members are still found after the host itself has exited and
    its helpers were re-parented.
    """
    found: dict[int, psutil.Process] = {}
    for proc in (*collect_descendants(root_pid), *collect_process_group(root_pid)):
        found.setdefault(proc.pid, proc)
    if exclude_root:
        found.pop(root_pid, None)
    return [found[pid] for pid in sorted(found)]


def is_alive(proc: psutil.Process) -> bool:
    """Return True unless the process is gone or only a zombie entry remains."""
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return proc.is_running()


def kill_all(procs: Sequence[psutil.Process]) -> None:
    for proc in procs:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            log.warning("Access denied killing process %d", proc.pid)


async def wait_gone(
    procs: Sequence[psutil.Process], timeout: float
) -> Sequence[psutil.Process]:
    """Wait up to ``timeout`` seconds for ``procs`` to exit; return survivors."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while True:
        alive = [proc for proc in procs if is_alive(proc)]
        if not alive or loop.time() >= deadline:
            return alive
        await asyncio.sleep(POLL_INTERVAL)


async def reap(
    procs: Sequence[psutil.Process], *, grace: float = 0.0, timeout: float = 10.0
) -> None:
    """Give ``procs`` ``grace`` seconds to exit, then kill and wait for them.

    Raises:
        RuntimeError: If a process survives being killed

    """
    if not procs:
        return

    alive = await wait_gone(procs, grace) if grace > 0 else procs
    if alive:
        log.info(
            "Killing %d lingering host process(es): %s",
            len(alive),
            ", ".join(str(proc.pid) for proc in alive),
        )
        kill_all(alive)

    if survivors := await wait_gone(alive, timeout):
        raise RuntimeError(
            "Host processes survived termination: "
            + ", ".join(str(proc.pid) for proc in survivors)
        )
