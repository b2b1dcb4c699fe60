"""
Main entry point for running a topology.

This module loads a topology, brings it up, serves the status API in a
background thread and tears everything down on SIGINT/SIGTERM.
"""

from __future__ import annotations

import signal
import threading
from pathlib import Path
from typing import Optional

from service_orchestrator import config
from service_orchestrator.core.errors import CycleError, ValidationError
from service_orchestrator.core.graph import build
from service_orchestrator.core.orchestrator import Orchestrator
from service_orchestrator.core.supervisor import SubprocessSupervisor, Supervisor
from service_orchestrator.core.units import load_file
from service_orchestrator.monitoring.status import StatusReporter
from service_orchestrator.utils.logger import logger

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2


def make_supervisor(runtime: str, project: str) -> Supervisor:
    if runtime == "process":
        return SubprocessSupervisor()
    if runtime == "docker":
        from service_orchestrator.core.container_manager import ContainerManager

        return ContainerManager(project)
    raise ValueError(f"unknown runtime {runtime!r}")


def make_store():
    """PostgresStore when POSTGRES_URL is set, otherwise None."""
    if not config.POSTGRES_URL:
        return None
    from service_orchestrator.storage.postgres_store import PostgresStore

    store = PostgresStore(config.POSTGRES_URL)
    if not store.enabled:
        logger.warning("PostgreSQL store disabled - events will not be persisted")
        return None
    if config.HEALTH_RETENTION_DAYS > 0:
        pruned = store.prune_old_health(config.HEALTH_RETENTION_DAYS)
        if pruned:
            logger.info(f"Pruned {pruned} old health records")
    return store


def _start_api(orchestrator: Orchestrator, host: str, port: int):
    import uvicorn

    from service_orchestrator.api.app import create_app

    server = uvicorn.Server(uvicorn.Config(
        app=create_app(orchestrator),
        host=host,
        port=port,
        log_level="info",
        access_log=False,
    ))
    thread = threading.Thread(target=server.run, name="status-api", daemon=True)
    thread.start()
    logger.info(f"Status API listening on http://{host}:{port}")
    return server, thread


def run(
    topology_path: str,
    *,
    runtime: str = "docker",
    project: Optional[str] = None,
    serve_api: bool = True,
    host: str = config.API_HOST,
    port: int = config.API_PORT,
    shutdown_timeout: float = config.SHUTDOWN_TIMEOUT_SEC,
) -> int:
    """
    Bring a topology up and keep it running until a shutdown signal arrives.

    Returns:
        Process exit code: 0 after a clean teardown, 1 if teardown had to
        force-stop units, 2 if the topology failed to load.
    """
    try:
        units = load_file(topology_path)
        graph = build(units)
    except (ValidationError, CycleError) as e:
        logger.error(f"Topology {topology_path} rejected: {e}")
        return EXIT_INVALID

    project = project or config.PROJECT_NAME or Path(topology_path).stem
    orchestrator = Orchestrator(
        graph,
        make_supervisor(runtime, project),
        store=make_store(),
        topology=project,
        shutdown_timeout=shutdown_timeout,
    )
    reporter = StatusReporter(orchestrator)

    stop = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    server = None
    if serve_api:
        server, _ = _start_api(orchestrator, host, port)

    logger.info(f"Starting topology {project} from {topology_path}")
    orchestrator.up(wait=False)

    def report_when_settled():
        if orchestrator.wait_until_settled() and not orchestrator.stopping:
            logger.info("Topology settled:\n" + reporter.snapshot().render())

    threading.Thread(target=report_when_settled, name="settle-report", daemon=True).start()

    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass

    clean = orchestrator.down()
    logger.info("Final status:\n" + reporter.snapshot().render())
    if server is not None:
        server.should_exit = True
    logger.info("Shutdown complete")
    return EXIT_OK if clean else EXIT_FAILED
