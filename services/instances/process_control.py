"""
Process primitives used by the provisioner and the lifecycle manager.

``CommandRunner`` runs bounded, awaited shell steps (bootstrap, install,
teardown). ``ProcessControl`` spawns detached long-lived processes and
observes them by pid, so a terminal survives an agent restart.
"""

import asyncio
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

import psutil

from core.logging import get_instances_logger_safe
from core.utils.exceptions import CommandError

logger = get_instances_logger_safe("instances.process_control")

STDERR_TAIL_CHARS = 2000
REAP_TIMEOUT_SECONDS = 2.0


@dataclass
class CommandResult:
    argv: list
    returncode: int
    stdout: str
    stderr: str


class CommandRunner:
    """Runs a command to completion with a timeout."""

    async def run(self, argv: Sequence[str], env: Optional[Mapping[str, str]] = None,
                  timeout: Optional[float] = None) -> CommandResult:
        argv = [str(a) for a in argv]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(env) if env is not None else None,
            )
        except OSError as e:
            raise CommandError(f"Cannot execute {argv[0]}: {e}", argv=argv) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CommandError(
                f"{argv[0]} timed out after {timeout}s", argv=argv, timed_out=True
            )

        result = CommandResult(
            argv=argv,
            returncode=proc.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if result.returncode != 0:
            raise CommandError(
                f"{argv[0]} exited with status {result.returncode}",
                argv=argv,
                returncode=result.returncode,
                stderr=result.stderr[-STDERR_TAIL_CHARS:],
            )
        return result


class ProcessControl:
    """Detached spawn plus pid-based liveness and signalling."""

    def __init__(self):
        # Children spawned by this process; polled so exited ones get reaped
        self._children: Dict[int, subprocess.Popen] = {}

    def spawn_detached(self, argv: Sequence[str], env: Optional[Mapping[str, str]] = None,
                       log_path: Optional[Path] = None) -> int:
        """Start a process in its own session and return its pid.

        Output is appended to ``log_path`` when given, discarded otherwise.
        Raises OSError if the executable cannot be started.
        """
        argv = [str(a) for a in argv]
        kwargs = {
            "stdin": subprocess.DEVNULL,
            "env": dict(env) if env is not None else None,
            "close_fds": True,
            "start_new_session": True,
        }
        if log_path is None:
            proc = subprocess.Popen(argv, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, **kwargs)
        else:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("ab") as log_handle:
                proc = subprocess.Popen(argv, stdout=log_handle, stderr=subprocess.STDOUT, **kwargs)
        self._children[proc.pid] = proc
        logger.debug("Spawned detached process", pid=proc.pid, executable=argv[0])
        return proc.pid

    def is_alive(self, pid: int) -> bool:
        """Non-destructive existence check; zombies count as dead."""
        if pid is None or pid <= 0:
            return False
        child = self._children.get(pid)
        if child is not None:
            if child.poll() is None:
                return True
            self._children.pop(pid, None)
            return False
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def terminate(self, pid: int) -> bool:
        """Send SIGTERM. Returns False if the process is already gone."""
        try:
            psutil.Process(pid).terminate()
            return True
        except psutil.NoSuchProcess:
            return False

    def kill(self, pid: int) -> bool:
        """Send SIGKILL. Returns False if the process is already gone."""
        try:
            psutil.Process(pid).kill()
        except psutil.NoSuchProcess:
            return False
        child = self._children.pop(pid, None)
        if child is not None:
            try:
                child.wait(timeout=1)
            except subprocess.TimeoutExpired:
                pass
        return True

    def kill_matching(self, argv_prefix: Sequence[str]) -> int:
        """Terminate every process whose command line starts with ``argv_prefix``.

        The executable is compared by basename. Returns the number signalled.
        """
        prefix = [str(a) for a in argv_prefix]
        signalled = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            cmdline = proc.info.get("cmdline") or []
            if len(cmdline) < len(prefix):
                continue
            if os.path.basename(cmdline[0]) != os.path.basename(prefix[0]):
                continue
            if cmdline[1:len(prefix)] != prefix[1:]:
                continue
            try:
                proc.terminate()
                signalled.append(proc.pid)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        for pid in signalled:
            child = self._children.pop(pid, None)
            if child is None:
                continue
            try:
                child.wait(timeout=REAP_TIMEOUT_SECONDS)
            except subprocess.TimeoutExpired:
                # Still exiting; reap() collects it later
                self._children[pid] = child
        return len(signalled)

    def reap(self) -> List[int]:
        """Collect exited children and forget them. Returns their pids."""
        reaped = []
        for pid, child in list(self._children.items()):
            if child.poll() is not None:
                self._children.pop(pid, None)
                reaped.append(pid)
        if reaped:
            logger.debug("Reaped exited children", pids=reaped)
        return reaped
