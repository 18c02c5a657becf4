"""
Docker runtime adapter.

Wraps the docker SDK and the `docker compose` CLI behind the small surface
the matcher and update orchestrator need:
  - Listing compose projects and their containers
  - Listing all containers with their labels
  - Inspecting local images (repo digests, architecture)
  - Streaming compose subcommands line by line with an exit code

Query methods follow a fail-safe pattern: exceptions are caught and logged,
returning empty/default values. Streaming compose commands report failure
through CommandResult instead; only cancellation raises.

Key Classes:
  - DockerRuntime: docker.from_env() client + compose subprocesses

Dependencies:
  - docker>=7.0.0 (docker-py client)
  - subprocess (compose CLI)
"""

import json
import logging
import os
import platform
import queue
import re
import subprocess
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import docker

from .errors import OperationCancelled, RuntimeUnavailableError, check_cancelled, runtime_safe
from .model import (
    CommandResult,
    ComposeService,
    ContainerRecord,
    LocalImageInfo,
    ProjectState,
    RuntimeProject,
)
from .registry import parse_timestamp

logger = logging.getLogger(__name__)

PROJECT_LABEL = "com.docker.compose.project"
SERVICE_LABEL = "com.docker.compose.service"
CONFIG_FILES_LABEL = "com.docker.compose.project.config_files"
WORKING_DIR_LABEL = "com.docker.compose.project.working_dir"

ARCHITECTURE_ALIASES = {
    "x86_64": "amd64",
    "x64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm/v7",
    "arm": "arm/v7",
}

STATUS_COUNT = re.compile(r"([a-z]+)\((\d+)\)")

# Lines of merged output kept as the error text of a failed command
ERROR_TAIL_LINES = 20
STREAM_POLL_SECONDS = 0.1


def normalize_architecture(arch: Optional[str]) -> Optional[str]:
    if not arch:
        return None
    return ARCHITECTURE_ALIASES.get(arch.strip().lower(), arch.strip().lower())


def parse_status_counts(status: str) -> Dict[str, int]:
    """`exited(1), running(2)` -> {"exited": 1, "running": 2}."""
    counts: Dict[str, int] = {}
    for state, count in STATUS_COUNT.findall((status or "").lower()):
        counts[state] = counts.get(state, 0) + int(count)
    return counts


def derive_project_state(service_states: List[str]) -> ProjectState:
    """Roll service (container) states up into one project state."""
    if not service_states:
        return ProjectState.DOWN
    states = [s.lower() for s in service_states]
    running = states.count("running")
    if running == len(states):
        return ProjectState.RUNNING
    if running > 0:
        return ProjectState.DEGRADED
    if "restarting" in states:
        return ProjectState.RESTARTING
    if "paused" in states:
        return ProjectState.PAUSED
    if "exited" in states:
        return ProjectState.EXITED
    if "created" in states:
        return ProjectState.CREATED
    return ProjectState.STOPPED


def parse_compose_ls(output: str) -> List[Dict[str, Any]]:
    """Accept `compose ls --format json` output as a JSON array or NDJSON."""
    text = (output or "").strip()
    if not text:
        return []
    if text.startswith("["):
        data = json.loads(text)
        return [item for item in data if isinstance(item, dict)]
    items = []
    for line in text.splitlines():
        line = line.strip()
        if line:
            item = json.loads(line)
            if isinstance(item, dict):
                items.append(item)
    return items


def split_config_files(config_files: str) -> List[str]:
    if not config_files or config_files == "n/a":
        return []
    return [p.strip() for p in config_files.split(",") if p.strip()]


def format_ports(ports: Optional[Dict[str, Any]]) -> List[str]:
    formatted = []
    for container_port, bindings in (ports or {}).items():
        if not bindings:
            formatted.append(container_port)
            continue
        for binding in bindings:
            host = binding.get("HostPort", "")
            formatted.append(f"{host}:{container_port}" if host else container_port)
    return formatted


class DockerRuntime:
    def __init__(self, client: Any = None, docker_command: str = "docker"):
        if client is None:
            try:
                client = docker.from_env()
            except docker.errors.DockerException as e:
                logger.error(f"Docker is not reachable: {e}")
                client = None
        self.client = client
        self.docker_command = docker_command
        self._architecture: Optional[str] = None
        self._arch_lock = threading.Lock()

    def _require_client(self) -> Any:
        if self.client is None:
            raise RuntimeUnavailableError("Docker client is not available")
        return self.client

    # --- QUERIES ---

    @runtime_safe(default_return=[])
    def list_projects(self) -> List[RuntimeProject]:
        result = subprocess.run(
            [self.docker_command, "compose", "ls", "-a", "--format", "json"],
            check=False, capture_output=True, text=True,
        )
        if result.returncode != 0:
            logger.error(f"docker compose ls failed: {(result.stderr or result.stdout).strip()}")
            return []

        projects = []
        for item in parse_compose_ls(result.stdout):
            name = item.get("Name") or item.get("name")
            if not name:
                continue
            config_files = split_config_files(item.get("ConfigFiles") or item.get("configFiles") or "")
            status_text = item.get("Status") or item.get("status") or ""
            services = self.list_project_services(name)

            if services:
                state = derive_project_state([s.state for s in services])
            else:
                counts = parse_status_counts(status_text)
                state = derive_project_state([s for s, n in counts.items() for _ in range(n)])

            projects.append(RuntimeProject(
                name=name,
                path=os.path.dirname(config_files[0]) if config_files else "",
                state=state,
                services=services,
                compose_files=config_files,
                status_text=status_text,
            ))
        logger.debug(f"Runtime reported {len(projects)} compose projects")
        return projects

    @runtime_safe(default_return=[])
    def list_project_services(self, project_name: str) -> List[ComposeService]:
        client = self._require_client()
        containers = client.containers.list(all=True, filters={"label": f"{PROJECT_LABEL}={project_name}"})
        services = []
        for c in containers:
            record = self._to_record(c)
            services.append(ComposeService(
                id=record.id,
                name=record.service_name or record.name,
                image=record.image,
                state=record.state,
                status=record.status,
                ports=record.ports,
                health=record.health,
            ))
        return services

    @runtime_safe(default_return=[])
    def list_containers(self) -> List[ContainerRecord]:
        client = self._require_client()
        return [self._to_record(c) for c in client.containers.list(all=True)]

    @runtime_safe(default_return=None)
    def get_container(self, container_id: str) -> Optional[ContainerRecord]:
        client = self._require_client()
        try:
            return self._to_record(client.containers.get(container_id))
        except docker.errors.NotFound:
            return None

    @runtime_safe(default_return=None)
    def get_local_image(self, image: str) -> Optional[LocalImageInfo]:
        client = self._require_client()
        try:
            img = client.images.get(image)
        except docker.errors.ImageNotFound:
            logger.debug(f"Image {image} not present locally")
            return None
        attrs = img.attrs or {}
        return LocalImageInfo(
            image=image,
            repo_digests=list(attrs.get("RepoDigests") or []),
            architecture=normalize_architecture(attrs.get("Architecture")),
            created_at=parse_timestamp(attrs.get("Created")),
        )

    def get_host_architecture(self) -> str:
        """Host architecture in registry platform notation (amd64, arm64, arm/v7)."""
        with self._arch_lock:
            if self._architecture:
                return self._architecture
            arch = None
            try:
                arch = normalize_architecture(self._require_client().info().get("Architecture"))
            except (docker.errors.DockerException, RuntimeUnavailableError) as e:
                logger.warning(f"Could not read Docker host architecture: {e}")
            if not arch:
                arch = normalize_architecture(platform.machine()) or "amd64"
                logger.debug(f"Falling back to local machine architecture {arch}")
            self._architecture = arch
            return arch

    def _to_record(self, c: Any) -> ContainerRecord:
        attrs = c.attrs or {}
        state = attrs.get("State") or {}
        health = (state.get("Health") or {}).get("Status") if isinstance(state, dict) else None
        image = (attrs.get("Config") or {}).get("Image")
        if not image:
            tags = getattr(c.image, "tags", None) or []
            image = tags[0] if tags else "unknown"
        return ContainerRecord(
            id=c.id,
            name=c.name,
            image=image,
            state=c.status,
            status=attrs.get("Status") or (state.get("Status", "") if isinstance(state, dict) else ""),
            labels=dict(c.labels or {}),
            ports=format_ports(getattr(c, "ports", None)),
            health=health,
        )

    # --- COMPOSE COMMANDS ---

    def _build_compose_command(self, compose_file: str, args: List[str]) -> List[str]:
        return [self.docker_command, "compose", "-f", compose_file] + list(args)

    def stream_compose(self, compose_file: str, args: List[str],
                       on_line: Optional[Callable[[str], None]] = None,
                       cancel_event: Optional[threading.Event] = None) -> CommandResult:
        """Run a compose subcommand in the file's directory, streaming merged output."""
        check_cancelled(cancel_event)
        cmd = self._build_compose_command(compose_file, args)
        cwd = os.path.dirname(compose_file) or None
        logger.info(f"Running: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            logger.error(f"Failed to start compose command: {e}")
            return CommandResult(exit_code=-1, output="", error=str(e))

        # Cancellation is checked every STREAM_POLL_SECONDS, output or not
        pending: "queue.Queue[Optional[str]]" = queue.Queue()

        def pump() -> None:
            try:
                for raw in process.stdout:
                    pending.put(raw)
            except (OSError, ValueError) as e:
                logger.debug(f"Compose output stream closed: {e}")
            finally:
                pending.put(None)

        reader = threading.Thread(target=pump, name="composewatch-compose-output", daemon=True)
        reader.start()

        lines: List[str] = []
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    process.kill()
                    raise OperationCancelled("Compose command cancelled")
                try:
                    raw = pending.get(timeout=STREAM_POLL_SECONDS)
                except queue.Empty:
                    continue
                if raw is None:
                    break
                line = raw.rstrip("\r\n")
                lines.append(line)
                if on_line is not None:
                    on_line(line)
            exit_code = process.wait()
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()
            reader.join(STREAM_POLL_SECONDS * 10)
            if process.stdout is not None:
                process.stdout.close()

        output = "\n".join(lines)
        error = "" if exit_code == 0 else "\n".join(lines[-ERROR_TAIL_LINES:]).strip() or f"exit code {exit_code}"
        if exit_code != 0:
            logger.error(f"Compose command failed ({exit_code}): {' '.join(cmd)}")
        return CommandResult(exit_code=exit_code, output=output, error=error)
