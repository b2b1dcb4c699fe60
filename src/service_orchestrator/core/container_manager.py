from __future__ import annotations

import math
import time
from typing import Any, Dict, List, Optional, Tuple

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.models.containers import Container

from service_orchestrator.config import PROJECT_NAME
from service_orchestrator.core.errors import LaunchError
from service_orchestrator.core.supervisor import ProcessHandle, Supervisor
from service_orchestrator.core.units import UnitSpec
from service_orchestrator.utils.logger import logger


def parse_port(entry: str) -> Tuple[str, Any]:
    """
    Turn a Compose port string into a docker-py ``ports`` item.

    ``"80"`` -> ``("80/tcp", None)``, ``"8080:80"`` -> ``("80/tcp", 8080)``,
    ``"127.0.0.1:8080:80/udp"`` -> ``("80/udp", ("127.0.0.1", 8080))``.
    """
    spec, _, proto = entry.partition("/")
    proto = proto or "tcp"
    parts = spec.split(":")
    if len(parts) == 1:
        return f"{parts[0]}/{proto}", None
    if len(parts) == 2:
        host_port, container_port = parts
        return f"{container_port}/{proto}", int(host_port) if host_port else None
    if len(parts) == 3:
        ip, host_port, container_port = parts
        return f"{container_port}/{proto}", (ip, int(host_port)) if host_port else (ip,)
    raise ValueError(f"invalid port mapping {entry!r}")


def parse_volume(entry: str) -> Tuple[str, Dict[str, str]]:
    """``"data:/var/lib/x:ro"`` -> ``("data", {"bind": "/var/lib/x", "mode": "ro"})``."""
    parts = entry.split(":")
    if len(parts) == 2:
        return parts[0], {"bind": parts[1], "mode": "rw"}
    if len(parts) == 3:
        return parts[0], {"bind": parts[1], "mode": parts[2]}
    raise ValueError(f"invalid volume mapping {entry!r}")


class ContainerManager(Supervisor):
    """Docker-backed supervisor: one container per unit, on a per-project network."""

    LABEL_KEY = "managed-by"
    UNIT_LABEL = "orchestrator.unit"

    def __init__(self, project: str = PROJECT_NAME or "stack", *, network: Optional[str] = None) -> None:
        logger.info(f"Initializing ContainerManager for project {project}")
        self.project = project
        self.network = network or f"{project}_default"
        self.client = None
        self._init_docker_client()

    def _init_docker_client(self, max_retries: int = 3) -> None:
        """Initialize Docker client with retry logic"""
        for attempt in range(max_retries):
            try:
                self.client = docker.from_env()
                self.client.ping()
                logger.info("Docker client initialized successfully")
                return
            except DockerException as e:
                logger.warning(f"Docker client initialization attempt {attempt + 1}/{max_retries} failed: {e}")
                if attempt < max_retries - 1:
                    time.sleep(2 ** attempt)  # Exponential backoff
                else:
                    logger.error(f"Failed to initialize Docker client after {max_retries} attempts: {e}")
                    raise RuntimeError(f"Cannot connect to Docker daemon: {e}")

    def _ensure_docker_client(self) -> None:
        """Ensure Docker client is available, reinitialize if needed"""
        if self.client is None:
            logger.warning("Docker client is None, attempting to reinitialize...")
            self._init_docker_client()
            return

        try:
            self.client.ping()
        except DockerException as e:
            logger.error(f"Docker client connection lost: {e}")
            self._init_docker_client()

    # ---------- helpers ----------
    def container_name(self, unit: str) -> str:
        return f"{self.project}-{unit}"

    def _ensure_network(self) -> None:
        if self.client.networks.list(names=[self.network]):
            return
        logger.info(f"Creating network {self.network}")
        self.client.networks.create(self.network, driver="bridge", labels={self.LABEL_KEY: self.project})

    def _ensure_image(self, spec: UnitSpec) -> None:
        try:
            self.client.images.get(spec.image)
            logger.debug(f"Image {spec.image} already exists locally")
        except NotFound:
            logger.info(f"Pulling image {spec.image}...")
            try:
                self.client.images.pull(spec.image)
                logger.info(f"Successfully pulled image {spec.image}")
            except APIError as e:
                logger.error(f"Failed to pull image {spec.image}: {e}")
                raise LaunchError(spec.name, f"image {spec.image} not available and cannot be pulled: {e}")

    def _remove_stale(self, name: str) -> None:
        try:
            stale = self.client.containers.get(name)
        except NotFound:
            return
        logger.info(f"Removing stale container {name} ({stale.short_id})")
        stale.remove(force=True)

    @staticmethod
    def _summarize_container(c: Container) -> Dict[str, Any]:
        c.reload()
        attrs = c.attrs or {}
        net = attrs.get("NetworkSettings", {}) or {}
        ports_raw = net.get("Ports", {}) or {}
        host_ports: Dict[str, Optional[int]] = {}
        for cport, bindings in ports_raw.items():
            if bindings and isinstance(bindings, list) and bindings[0].get("HostPort"):
                try:
                    host_ports[cport] = int(bindings[0]["HostPort"])
                except (TypeError, ValueError):
                    host_ports[cport] = None
            else:
                host_ports[cport] = None
        return {
            "id": c.id,
            "name": c.name,
            "state": c.status,
            "created_at": attrs.get("Created", "") or "",
            "host_ports": host_ports,
        }

    # -------- Supervisor API --------

    def launch(self, spec: UnitSpec) -> ProcessHandle:
        if not spec.image:
            raise LaunchError(spec.name, "no image declared")

        name = self.container_name(spec.name)
        logger.info(f"Creating container {name} for unit {spec.name} ({spec.image})")
        logger.debug(f"Container config - env: {spec.environment}, ports: {spec.ports}, volumes: {spec.volumes}")

        try:
            ports = dict(parse_port(p) for p in spec.ports)
            volumes = dict(parse_volume(v) for v in spec.volumes)
        except ValueError as e:
            raise LaunchError(spec.name, str(e)) from e

        container = None
        try:
            self._ensure_docker_client()
            self._ensure_image(spec)
            self._ensure_network()
            self._remove_stale(name)

            command = list(spec.command) if isinstance(spec.command, tuple) else spec.command
            container = self.client.containers.run(
                image=spec.image,
                name=name,
                command=command,
                detach=True,
                environment=spec.environment or None,
                ports=ports or None,
                volumes=volumes or None,
                network=self.network,
                hostname=spec.name,
                labels={self.LABEL_KEY: self.project, self.UNIT_LABEL: spec.name},
            )
            logger.info(f"Container created: {container.id} ({container.name})")

            # Wait a bit for container to stabilize
            time.sleep(0.5)

            container.reload()
            if container.status == "exited":
                code = (container.attrs.get("State") or {}).get("ExitCode", 0)
                if code != 0:
                    logs = container.logs(tail=50).decode("utf-8", errors="ignore")
                    if logs.strip():
                        logger.error(f"Container logs for {name}: {logs}")
                    raise LaunchError(spec.name, f"container exited with code {code}")

            summary = self._summarize_container(container)
            logger.info(f"Container {container.id} ready with ports: {summary.get('host_ports', {})}")
            return ProcessHandle(unit=spec.name, id=container.id, info=summary)

        except LaunchError:
            self._cleanup(container)
            raise
        except (APIError, DockerException, RuntimeError) as e:
            logger.error(f"Failed to create container for unit {spec.name}: {e}")
            self._cleanup(container)
            raise LaunchError(spec.name, str(e)) from e

    def _cleanup(self, container: Optional[Container]) -> None:
        if container is None:
            return
        try:
            container.remove(force=True)
            logger.info(f"Cleaned up failed container {container.id}")
        except APIError as e:
            logger.warning(f"Could not clean up container {container.id}: {e}")

    def stop(self, handle: ProcessHandle, timeout: float) -> bool:
        logger.info(f"Stopping container for unit {handle.unit} (timeout: {timeout}s)")
        try:
            c = self.client.containers.get(handle.id)
        except NotFound:
            logger.warning(f"Container not found: {handle.id}")
            return True

        started = time.monotonic()
        try:
            # Docker sends SIGKILL itself once the timeout runs out
            c.stop(timeout=math.ceil(max(timeout, 0)))
            c.remove()
        except NotFound:
            return True
        except APIError as e:
            logger.error(f"API error stopping container {handle.id}: {e}")
            self.kill(handle)
            return False

        voluntary = time.monotonic() - started < timeout
        logger.info(f"Container {handle.id} stopped ({'graceful' if voluntary else 'killed'})")
        return voluntary

    def kill(self, handle: ProcessHandle) -> None:
        try:
            c = self.client.containers.get(handle.id)
            c.remove(force=True)
            logger.warning(f"Container {handle.id} of unit {handle.unit} force-removed")
        except NotFound:
            return
        except APIError as e:
            logger.error(f"API error killing container {handle.id}: {e}")

    def list_managed_containers(self) -> List[Dict[str, Any]]:
        self._ensure_docker_client()
        items = self.client.containers.list(all=True, filters={"label": f"{self.LABEL_KEY}={self.project}"})
        return [self._summarize_container(c) for c in items]


__all__ = ["ContainerManager", "parse_port", "parse_volume"]
