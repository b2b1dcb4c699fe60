"""
Process supervisor boundary.

The orchestrator never runs anything itself: it asks a ``Supervisor`` to
launch, stop or kill the process behind a unit and keeps the returned
``ProcessHandle``. ``ContainerManager`` (Docker) and ``SubprocessSupervisor``
(local commands) are the two implementations shipped here.
"""

from __future__ import annotations

import os
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from service_orchestrator.core.errors import LaunchError
from service_orchestrator.core.units import UnitSpec
from service_orchestrator.utils.logger import logger


@dataclass
class ProcessHandle:
    """Opaque reference to a launched unit process."""

    unit: str
    id: str
    info: Dict[str, Any] = field(default_factory=dict)


class Supervisor(ABC):
    """Starts and stops unit processes on behalf of the orchestrator."""

    @abstractmethod
    def launch(self, spec: UnitSpec) -> ProcessHandle:
        """Start the unit's process. Raises ``LaunchError`` on failure."""

    @abstractmethod
    def stop(self, handle: ProcessHandle, timeout: float) -> bool:
        """
        Ask the process to exit, killing it after ``timeout`` seconds.

        Returns:
            True when the process exited on its own, False when it was killed.
        """

    @abstractmethod
    def kill(self, handle: ProcessHandle) -> None:
        """Terminate the process immediately. Must not raise if it is already gone."""


class SubprocessSupervisor(Supervisor):
    """Runs each unit's ``command`` as a local child process."""

    def __init__(self, cwd: Optional[str] = None) -> None:
        self._cwd = cwd
        self._procs: Dict[str, subprocess.Popen] = {}

    @staticmethod
    def _argv(spec: UnitSpec) -> List[str]:
        if isinstance(spec.command, str):
            return shlex.split(spec.command)
        return list(spec.command or ())

    def launch(self, spec: UnitSpec) -> ProcessHandle:
        argv = self._argv(spec)
        if not argv:
            raise LaunchError(spec.name, "no command declared")

        env = dict(os.environ)
        env.update(spec.environment)
        logger.info(f"Launching unit {spec.name}: {shlex.join(argv)}")
        try:
            proc = subprocess.Popen(argv, cwd=self._cwd, env=env)
        except OSError as e:
            raise LaunchError(spec.name, str(e)) from e

        # A process that is already gone with a non-zero code did not start
        code = proc.poll()
        if code not in (None, 0):
            raise LaunchError(spec.name, f"exited immediately with code {code}")

        handle_id = str(proc.pid)
        self._procs[handle_id] = proc
        return ProcessHandle(unit=spec.name, id=handle_id, info={"pid": proc.pid, "argv": argv})

    def stop(self, handle: ProcessHandle, timeout: float) -> bool:
        proc = self._procs.pop(handle.id, None)
        if proc is None or proc.poll() is not None:
            return True
        logger.info(f"Stopping unit {handle.unit} (pid {handle.id}, grace {timeout}s)")
        proc.terminate()
        try:
            proc.wait(timeout=timeout)
            return True
        except subprocess.TimeoutExpired:
            logger.warning(f"Unit {handle.unit} did not exit within {timeout}s, killing")
            proc.kill()
            proc.wait()
            return False

    def kill(self, handle: ProcessHandle) -> None:
        proc = self._procs.pop(handle.id, None)
        if proc is None or proc.poll() is not None:
            return
        logger.warning(f"Killing unit {handle.unit} (pid {handle.id})")
        proc.kill()
        proc.wait()


__all__ = ["ProcessHandle", "Supervisor", "SubprocessSupervisor"]
