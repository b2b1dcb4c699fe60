"""
Lifecycle orchestrator.

Walks the dependency graph to bring units up in dependency order, gated on
health, and tears them down in reverse order. It owns every unit state
transition::

    PENDING -> STARTING -> AWAITING_HEALTH -> READY -> STOPPING -> STOPPED
                  |              |              |
                  +-------> FAILED <------------+      (FAILED -> PENDING on restart)

Independent branches start concurrently. Each unit has its own lock, so
writes to one unit are serialized while different units move independently.
Runtime failures never escape ``up``/``down``: they are contained to the unit
and its dependents and surface through ``states()``.
"""

from __future__ import annotations

import dataclasses
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set

from service_orchestrator.config import (
    EVENT_HISTORY,
    LAUNCH_WORKERS,
    RESTART_BACKOFF_MAX_SEC,
    RESTART_BACKOFF_SEC,
    SHUTDOWN_TIMEOUT_SEC,
)
from service_orchestrator.core.errors import DependencyFailedError, LaunchError, OrchestratorError
from service_orchestrator.core.graph import DependencyGraph
from service_orchestrator.core.supervisor import ProcessHandle, Supervisor
from service_orchestrator.core.units import RestartPolicy, UnitSpec
from service_orchestrator.monitoring.health_monitor import HealthCheckResult, HealthMonitor, HealthVerdict
from service_orchestrator.utils.logger import logger


class Phase(str, Enum):
    PENDING = "pending"
    STARTING = "starting"
    AWAITING_HEALTH = "awaiting_health"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


VALID_TRANSITIONS: Dict[Phase, Set[Phase]] = {
    Phase.PENDING: {Phase.STARTING, Phase.STOPPING},
    Phase.STARTING: {Phase.AWAITING_HEALTH, Phase.READY, Phase.FAILED, Phase.STOPPING},
    Phase.AWAITING_HEALTH: {Phase.READY, Phase.FAILED, Phase.STOPPING},
    Phase.READY: {Phase.FAILED, Phase.STOPPING},
    Phase.STOPPING: {Phase.STOPPED},
    Phase.STOPPED: set(),
    Phase.FAILED: {Phase.PENDING},
}


@dataclass
class UnitState:
    """Runtime record of one unit. Only the orchestrator writes it."""

    name: str
    phase: Phase = Phase.PENDING
    since: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_health: Optional[HealthCheckResult] = None
    restart_count: int = 0
    error: Optional[str] = None
    process_id: Optional[str] = None


@dataclass(frozen=True)
class TransitionEvent:
    unit: str
    from_phase: Phase
    to_phase: Phase
    timestamp: datetime
    reason: str = ""


class _UnitSlot:
    """Mutable per-unit slot; every field is guarded by ``lock``."""

    def __init__(self, spec: UnitSpec) -> None:
        self.spec = spec
        self.state = UnitState(spec.name)
        self.lock = threading.RLock()
        self.handle: Optional[ProcessHandle] = None
        self.restart_timer: Optional[threading.Timer] = None
        self.awaiting_policy = False
        self.doomed = False
        # set while no launch is in flight
        self.launch_done = threading.Event()
        self.launch_done.set()
        # set while the unit sits in STOPPED or FAILED
        self.settled = threading.Event()


class Orchestrator:
    def __init__(
        self,
        graph: DependencyGraph,
        supervisor: Supervisor,
        *,
        monitor: Optional[HealthMonitor] = None,
        store: Optional[Any] = None,
        topology: str = "default",
        shutdown_timeout: float = SHUTDOWN_TIMEOUT_SEC,
        backoff_base: float = RESTART_BACKOFF_SEC,
        backoff_max: float = RESTART_BACKOFF_MAX_SEC,
        max_workers: int = LAUNCH_WORKERS,
        event_history: int = EVENT_HISTORY,
    ) -> None:
        self.graph = graph
        self.topology = topology
        self._supervisor = supervisor
        self._monitor = monitor or HealthMonitor()
        self._store = store
        self._shutdown_timeout = shutdown_timeout
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max

        self._slots: Dict[str, _UnitSlot] = {name: _UnitSlot(graph.spec(name)) for name in graph.start_order}
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="launch")
        self._stopping = threading.Event()
        self._changed = threading.Condition()
        self._lifecycle_lock = threading.Lock()
        self._started = False
        self._torn_down = False
        self._events: Deque[TransitionEvent] = deque(maxlen=max(1, event_history))
        self._events_lock = threading.Lock()

    # ---------- read side ----------

    def state(self, name: str) -> UnitState:
        slot = self._slots[name]
        with slot.lock:
            return dataclasses.replace(slot.state)

    def states(self) -> List[UnitState]:
        return [self.state(name) for name in self.graph.start_order]

    def phase(self, name: str) -> Phase:
        return self._slots[name].state.phase

    def events(self, unit: Optional[str] = None) -> List[TransitionEvent]:
        with self._events_lock:
            if unit is None:
                return list(self._events)
            return [e for e in self._events if e.unit == unit]

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    # ---------- transitions ----------

    def _transition(
        self,
        slot: _UnitSlot,
        to: Phase,
        *,
        expect: Optional[Set[Phase]] = None,
        reason: str = "",
        error: Optional[str] = None,
    ) -> bool:
        with slot.lock:
            frm = slot.state.phase
            if expect is not None and frm not in expect:
                return False
            if to not in VALID_TRANSITIONS[frm]:
                logger.warning(f"Refusing transition for {slot.spec.name}: {frm.value} -> {to.value}")
                return False

            now = datetime.now(timezone.utc)
            slot.state.phase = to
            slot.state.since = now
            if error is not None:
                slot.state.error = error
            if to in (Phase.STOPPED, Phase.FAILED):
                slot.settled.set()
            else:
                slot.settled.clear()

            event = TransitionEvent(slot.spec.name, frm, to, now, reason)
            with self._events_lock:
                self._events.append(event)
            logger.info(f"Unit {event.unit}: {frm.value} -> {to.value}" + (f" ({reason})" if reason else ""))
            self._record_event(event)

        self._notify()
        return True

    def _notify(self) -> None:
        with self._changed:
            self._changed.notify_all()

    # --- event helper ---
    def _record_event(self, event: TransitionEvent) -> None:
        if self._store is None or not getattr(self._store, "enabled", False):
            return
        try:
            self._store.record_event({
                "topology": self.topology,
                "unit": event.unit,
                "from_phase": event.from_phase.value,
                "to_phase": event.to_phase.value,
                "reason": event.reason,
                "ts": event.timestamp,
            })
        except Exception as e:
            logger.warning(f"Failed to persist transition for {event.unit}: {e}")

    def _record_health(self, name: str, result: HealthCheckResult) -> None:
        if self._store is None or not getattr(self._store, "enabled", False):
            return
        try:
            self._store.record_health({
                "topology": self.topology,
                "unit": name,
                "outcome": result.outcome.value,
                "message": result.message,
                "ts": result.timestamp,
            })
        except Exception as e:
            logger.warning(f"Failed to persist health result for {name}: {e}")

    # ---------- startup ----------

    def up(self, wait: bool = True, timeout: Optional[float] = None) -> bool:
        """
        Start every unit in dependency order.

        Args:
            wait: Block until every unit is READY, STOPPED or permanently FAILED.
            timeout: Upper bound for the wait, in seconds.

        Returns:
            True when all units are READY.
        """
        with self._lifecycle_lock:
            if self._torn_down or self._stopping.is_set():
                raise OrchestratorError("topology has already been torn down")
            if self._started:
                raise OrchestratorError("topology already started")
            self._started = True

        logger.info(f"Bringing up {len(self.graph)} units: {' -> '.join(self.graph.start_order)}")
        for name in self.graph.roots():
            self._try_start(name)

        if not wait:
            return False
        self.wait_until_settled(timeout)
        return all(self.phase(name) is Phase.READY for name in self.graph.start_order)

    def wait_until_settled(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._changed:
            while not self._is_settled():
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._changed.wait(remaining)
        return True

    def _is_settled(self) -> bool:
        for slot in self._slots.values():
            phase = slot.state.phase
            if phase in (Phase.READY, Phase.STOPPED):
                continue
            if phase is Phase.FAILED and not slot.awaiting_policy and slot.restart_timer is None:
                continue
            return False
        return True

    def _try_start(self, name: str) -> None:
        if self._stopping.is_set():
            return
        waiting_on = [d for d in self.graph.dependencies(name) if self._slots[d].state.phase is not Phase.READY]
        if waiting_on:
            logger.debug(f"Unit {name} waiting on {', '.join(waiting_on)}")
            return

        slot = self._slots[name]
        with slot.lock:
            if self._stopping.is_set() or slot.doomed or slot.state.phase is not Phase.PENDING:
                return
            slot.launch_done.clear()
            self._transition(slot, Phase.STARTING, reason="dependencies ready")

        try:
            self._executor.submit(self._launch, name)
        except RuntimeError:
            # executor already shut down by teardown
            slot.launch_done.set()

    def _launch(self, name: str) -> None:
        slot = self._slots[name]
        spec = slot.spec
        try:
            try:
                handle = self._supervisor.launch(spec)
            except LaunchError as e:
                logger.error(str(e))
                self._fail(slot, str(e))
                return
            except Exception as e:
                logger.exception("Unexpected error launching %s: %s", name, e)
                self._fail(slot, f"launch error: {e}")
                return

            orphan = False
            with slot.lock:
                if slot.state.phase in (Phase.STOPPING, Phase.STOPPED):
                    # teardown gave up waiting for this launch
                    orphan = True
                else:
                    slot.handle = handle
                    slot.state.process_id = handle.id
                    if self._stopping.is_set() or slot.doomed:
                        # whoever is stopping this unit picks up the handle
                        return
                    if spec.health_check is not None:
                        self._transition(slot, Phase.AWAITING_HEALTH, reason="process launched")
                    else:
                        self._transition(slot, Phase.READY, reason="process launched, no health check")

            if orphan:
                self._kill_quietly(handle)
            elif spec.health_check is not None:
                self._monitor.watch(spec, self.record_health)
            else:
                self._on_ready(name)
        finally:
            slot.launch_done.set()

    def _on_ready(self, name: str) -> None:
        for child in self.graph.dependents(name):
            self._try_start(child)

    # ---------- health ----------

    def record_health(self, name: str, result: HealthCheckResult, verdict: HealthVerdict) -> None:
        """Entry point for the health monitor; the only way probe results reach a unit."""
        slot = self._slots[name]
        with slot.lock:
            slot.state.last_health = result
            phase = slot.state.phase
        self._record_health(name, result)

        if self._stopping.is_set():
            return
        if verdict is HealthVerdict.READY and phase is Phase.AWAITING_HEALTH:
            if self._transition(slot, Phase.READY, expect={Phase.AWAITING_HEALTH}, reason="health checks passing"):
                self._on_ready(name)
        elif verdict is HealthVerdict.FAILED and phase in (Phase.AWAITING_HEALTH, Phase.READY):
            self._fail(slot, f"health check failed: {result.message or result.outcome.value}")

    # ---------- failure policy ----------

    def _fail(self, slot: _UnitSlot, reason: str) -> None:
        with slot.lock:
            # flagged before the transition so waiters never see an unhandled FAILED as settled
            pending, slot.awaiting_policy = slot.awaiting_policy, True
            if not self._transition(slot, Phase.FAILED, reason=reason, error=reason):
                slot.awaiting_policy = pending
                return
        # own thread: propagation may wait on launches queued in the executor
        threading.Thread(
            target=self._handle_failure,
            args=(slot.spec.name,),
            name=f"failure-{slot.spec.name}",
            daemon=True,
        ).start()

    def _restart_allowed(self, spec: UnitSpec, attempts: int) -> bool:
        if spec.restart is RestartPolicy.ALWAYS:
            return True
        if spec.restart is RestartPolicy.ON_FAILURE:
            return spec.max_restarts is None or attempts < spec.max_restarts
        return False

    def backoff(self, attempts: int) -> float:
        return min(self._backoff_base * (2 ** attempts), self._backoff_max)

    def _handle_failure(self, name: str) -> None:
        slot = self._slots[name]
        try:
            self._monitor.unwatch(name)
            with slot.lock:
                handle, slot.handle = slot.handle, None
                slot.state.process_id = None
            if handle is not None:
                self._release(slot, handle, deadline=None)

            if self._stopping.is_set():
                return

            timer = None
            with slot.lock:
                attempts = slot.state.restart_count
                if not slot.doomed and self._restart_allowed(slot.spec, attempts):
                    delay = self.backoff(attempts)
                    slot.state.restart_count += 1
                    timer = threading.Timer(delay, self._restart, args=(name,))
                    timer.daemon = True
                    slot.restart_timer = timer

            if timer is not None:
                logger.warning(
                    f"Unit {name} failed; restart {attempts + 1} in {delay:.2f}s "
                    f"(policy {slot.spec.restart.value})"
                )
                timer.start()
            else:
                logger.error(f"Unit {name} failed permanently (restart policy {slot.spec.restart.value})")
                self._propagate_failure(name)
        finally:
            with slot.lock:
                slot.awaiting_policy = False
            self._notify()

    def _restart(self, name: str) -> None:
        slot = self._slots[name]
        with slot.lock:
            slot.restart_timer = None
            if self._stopping.is_set() or slot.doomed:
                restarted = False
            else:
                restarted = self._transition(slot, Phase.PENDING, expect={Phase.FAILED}, reason="restarting")
        if restarted:
            self._try_start(name)
        else:
            self._notify()

    def _propagate_failure(self, name: str) -> None:
        doomed = self.graph.transitive_dependents(name)
        if not doomed:
            return
        logger.warning(f"Stopping dependents of failed unit {name}: {', '.join(sorted(doomed))}")
        for dep_name in doomed:
            slot = self._slots[dep_name]
            with slot.lock:
                slot.doomed = True
                timer, slot.restart_timer = slot.restart_timer, None
            if timer is not None:
                timer.cancel()

        for dep_name in self.graph.stop_order:
            if dep_name in doomed:
                error = DependencyFailedError(dep_name, name)
                self._stop_unit(dep_name, None, reason=f"dependency {name} failed", error=str(error))

    # ---------- teardown ----------

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())

    def _kill_quietly(self, handle: ProcessHandle) -> None:
        try:
            self._supervisor.kill(handle)
        except Exception as e:
            logger.error(f"Failed to kill process {handle.id} of unit {handle.unit}: {e}")

    def _release(self, slot: _UnitSlot, handle: ProcessHandle, deadline: Optional[float]) -> bool:
        grace = slot.spec.stop_grace_period
        remaining = self._remaining(deadline)
        if remaining is not None:
            grace = min(grace, remaining)
        try:
            return self._supervisor.stop(handle, grace)
        except Exception as e:
            logger.error(f"Error stopping unit {slot.spec.name}: {e}")
            self._kill_quietly(handle)
            return False

    def _stop_unit(
        self,
        name: str,
        deadline: Optional[float],
        *,
        reason: str,
        error: Optional[str] = None,
    ) -> None:
        slot = self._slots[name]
        while True:
            if not slot.launch_done.wait(self._remaining(deadline)):
                self._force_stopped(slot, reason="shutdown timeout while launching")
                return
            with slot.lock:
                if not slot.launch_done.is_set():
                    continue  # a launch started after the wait
                phase = slot.state.phase
                if phase in (Phase.STOPPING, Phase.STOPPED):
                    return
                if phase is Phase.FAILED:
                    timer, slot.restart_timer = slot.restart_timer, None
                    if timer is not None:
                        timer.cancel()
                    if error is not None:
                        slot.state.error = error
                    return
                self._transition(slot, Phase.STOPPING, reason=reason, error=error)
                handle, slot.handle = slot.handle, None
                slot.state.process_id = None
            break

        self._monitor.unwatch(name)
        if handle is None:
            note = "never started"
        elif self._release(slot, handle, deadline):
            note = "exited"
        else:
            note = "killed after grace period"
        self._transition(slot, Phase.STOPPED, reason=note)

    def _force_stopped(self, slot: _UnitSlot, reason: str) -> None:
        with slot.lock:
            phase = slot.state.phase
            if phase in (Phase.STOPPED, Phase.FAILED):
                return
            if phase is not Phase.STOPPING:
                self._transition(slot, Phase.STOPPING, reason=reason)
            handle, slot.handle = slot.handle, None
            slot.state.process_id = None
        self._monitor.unwatch(slot.spec.name, timeout=0)
        if handle is not None:
            self._kill_quietly(handle)
        self._transition(slot, Phase.STOPPED, reason=reason)

    def _teardown_unit(self, name: str, deadline: float) -> None:
        slot = self._slots[name]
        for child in self.graph.dependents(name):
            if not self._slots[child].settled.wait(self._remaining(deadline)):
                logger.warning(f"Shutdown timeout waiting for {child} to stop; forcing {name}")
                self._force_stopped(slot, reason="shutdown timeout")
                return
        self._stop_unit(name, deadline, reason="teardown requested")

    def down(self, timeout: Optional[float] = None) -> bool:
        """
        Stop every unit in reverse dependency order.

        Safe to call mid-startup and safe to call twice. Units that have not
        confirmed STOPPED when ``timeout`` (default: the shutdown timeout)
        runs out are killed and marked STOPPED.

        Returns:
            True when every unit stopped before the deadline.
        """
        with self._lifecycle_lock:
            if self._torn_down:
                logger.debug("Teardown requested on a stopped topology; nothing to do")
                return True

            timeout = self._shutdown_timeout if timeout is None else timeout
            deadline = time.monotonic() + timeout
            self._stopping.set()
            logger.info(f"Tearing down {len(self.graph)} units (timeout {timeout}s)")

            for slot in self._slots.values():
                with slot.lock:
                    timer, slot.restart_timer = slot.restart_timer, None
                if timer is not None:
                    timer.cancel()

            pool = ThreadPoolExecutor(max_workers=len(self._slots), thread_name_prefix="teardown")
            try:
                # dependents are submitted first, so a waiting task never blocks a worker it needs
                futures = [pool.submit(self._teardown_unit, name, deadline) for name in self.graph.stop_order]
                _, not_done = wait(futures, timeout=self._remaining(deadline) + 1.0)
            finally:
                pool.shutdown(wait=False)

            clean = not not_done
            for name in self.graph.stop_order:
                slot = self._slots[name]
                if slot.state.phase not in (Phase.STOPPED, Phase.FAILED):
                    clean = False
                    logger.warning(f"Unit {name} did not stop in time; forcing")
                    self._force_stopped(slot, reason="shutdown timeout")

            self._monitor.stop_all()
            self._executor.shutdown(wait=False)
            self._torn_down = True

        self._notify()
        logger.info("Teardown complete" if clean else "Teardown complete (forced)")
        return clean


__all__ = ["Orchestrator", "Phase", "TransitionEvent", "UnitState", "VALID_TRANSITIONS"]
