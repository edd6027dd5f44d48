"""
Container lifecycle helpers.

`ContainerManager` talks to the Docker Engine through the Docker SDK for
inspection, exec, image and volume housekeeping. Streams that the SDK does not
handle well (feeding a SQL dump to psql, writing pg_dumpall output to a file)
go through the docker CLI. `ComposeProject` wraps docker compose for the
stack-level up/down.
"""

import re
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

import docker
from docker.errors import APIError, ImageNotFound, NotFound

from .errors import CommandError, HealthCheckTimeout
from .logging_config import get_logger
from .shell import CommandResult, Runner, get_docker_compose_cmd, run

logger = get_logger(__name__)

_SAFE_IDENTIFIER = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def is_safe_container_identifier(value: str) -> bool:
    """Docker-style names only; rejects option-like values such as '-rf'."""
    if not value or value.startswith("-"):
        return False
    return _SAFE_IDENTIFIER.match(value) is not None


def sanitize_for_log(value: str) -> str:
    return (value or "").replace("\r", "\\r").replace("\n", "\\n").replace("\t", "\\t")


def split_image_reference(image: str):
    """'user/repo:tag' -> ('user/repo', 'tag'); a registry port is not a tag."""
    repository, sep, tag = image.rpartition(":")
    if not sep or "/" in tag:
        return image, "latest"
    return repository, tag


class ContainerManager:
    """Docker SDK wrapper scoped to what the FusionPBX tooling needs."""

    def __init__(
        self,
        client=None,
        runner: Runner = run,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = client
        self.runner = runner
        self.sleep = sleep

    @property
    def client(self):
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def _get(self, name: str):
        try:
            return self.client.containers.get(name)
        except NotFound:
            return None

    def exists(self, name: str) -> bool:
        return self._get(name) is not None

    def is_running(self, name: str) -> bool:
        container = self._get(name)
        return container is not None and container.status == "running"

    def health_status(self, name: str) -> Optional[str]:
        """Docker health status ('healthy', 'starting', 'unhealthy'), None when absent or no healthcheck."""
        container = self._get(name)
        if container is None:
            return None
        container.reload()
        health = (container.attrs.get("State") or {}).get("Health") or {}
        return health.get("Status")

    def wait_until_healthy(self, name: str, attempts: int, interval: float) -> int:
        """Poll the container health a fixed number of times.

        Returns the attempt number that saw 'healthy'; raises HealthCheckTimeout otherwise.
        """
        status = None
        for attempt in range(1, attempts + 1):
            status = self.health_status(name)
            if status == "healthy":
                logger.info("Container is healthy", container=name, attempt=attempt)
                return attempt
            logger.info(
                "Waiting for container to become healthy",
                container=name,
                attempt=attempt,
                attempts=attempts,
                status=status or "unknown",
            )
            if attempt < attempts:
                self.sleep(interval)
        raise HealthCheckTimeout(name, attempts, status)

    def stop(self, name: str, timeout: int = 10) -> bool:
        container = self._get(name)
        if container is None:
            return False
        container.stop(timeout=timeout)
        return True

    def remove(self, name: str, force: bool = True) -> bool:
        container = self._get(name)
        if container is None:
            return False
        container.remove(force=force)
        logger.info("Removed container", container=name)
        return True

    def restart(self, name: str, timeout: int = 10) -> None:
        container = self.client.containers.get(name)
        container.restart(timeout=timeout)
        logger.info("Container restarted", container=sanitize_for_log(name))

    def status_line(self, name: str) -> str:
        container = self._get(name)
        if container is None:
            return f"{name}\tnot found"
        return f"{container.name}\t{container.status}"

    def ip_address(self, name: str) -> str:
        container = self._get(name)
        if container is None:
            return "N/A"
        networks = (container.attrs.get("NetworkSettings") or {}).get("Networks") or {}
        for net in networks.values():
            if net.get("IPAddress"):
                return net["IPAddress"]
        return "N/A"

    def network_mode(self, name: str) -> Optional[str]:
        container = self._get(name)
        if container is None:
            return None
        return (container.attrs.get("HostConfig") or {}).get("NetworkMode")

    def list_containers(self, name_filter: Optional[str] = None) -> List[dict]:
        filters = {"name": name_filter} if name_filter else None
        result = []
        for c in self.client.containers.list(all=True, filters=filters):
            result.append({
                "id": c.id,
                "name": c.name,
                "image": c.image.tags[0] if c.image.tags else c.image.short_id,
                "status": c.status,
                "health": ((c.attrs.get("State") or {}).get("Health") or {}).get("Status"),
            })
        return result

    def exec(
        self,
        name: str,
        cmd: Union[str, Sequence[str]],
        environment: Optional[Dict[str, str]] = None,
        user: str = "",
        check: bool = False,
    ) -> CommandResult:
        """Run a command inside a running container and collect its output."""
        container = self.client.containers.get(name)
        argv = [cmd] if isinstance(cmd, str) else list(cmd)
        exit_code, output = container.exec_run(
            cmd if isinstance(cmd, str) else argv,
            environment=environment,
            user=user,
            demux=True,
        )
        stdout, stderr = output if output else (None, None)
        result = CommandResult(
            argv,
            exit_code if exit_code is not None else 0,
            (stdout or b"").decode("utf-8", errors="replace"),
            (stderr or b"").decode("utf-8", errors="replace"),
        )
        if check and not result.ok:
            raise CommandError(
                f"Command failed inside {name}: {' '.join(argv)}",
                argv,
                result.returncode,
                result.stdout,
                result.stderr,
            )
        return result

    def exec_with_stdin(self, name: str, cmd: Sequence[str], path: Path) -> CommandResult:
        """`docker exec -i NAME CMD < path`"""
        return self.runner(["docker", "exec", "-i", name, *cmd], stdin_path=path, check=True)

    def exec_to_file(self, name: str, cmd: Sequence[str], path: Path) -> CommandResult:
        """`docker exec NAME CMD > path`"""
        return self.runner(["docker", "exec", name, *cmd], stdout_path=path, check=True)

    def pull(self, image: str) -> None:
        repository, tag = split_image_reference(image)
        logger.info("Pulling image", image=image)
        self.client.images.pull(repository, tag=tag)

    def tag(self, source: str, target: str) -> None:
        repository, tag = split_image_reference(target)
        self.client.images.get(source).tag(repository, tag)
        logger.info("Tagged image", source=source, target=target)

    def build(self, context: Path, tag: str, dockerfile: str = "Dockerfile") -> None:
        logger.info("Building image", tag=tag, context=str(context))
        self.client.images.build(path=str(context), tag=tag, dockerfile=dockerfile, rm=True)

    def local_images(self, repository: str) -> List[str]:
        try:
            images = self.client.images.list(name=repository)
        except ImageNotFound:
            return []
        return [t for image in images for t in image.tags]

    def prune_volumes(self) -> None:
        result = self.client.volumes.prune()
        logger.info("Pruned unused volumes", removed=len(result.get("VolumesDeleted") or []))

    def remove_volume(self, name: str) -> bool:
        try:
            self.client.volumes.get(name).remove(force=True)
        except NotFound:
            return False
        except APIError as exc:
            logger.warning("Could not remove volume", volume=name, error=str(exc))
            return False
        logger.info("Removed volume", volume=name)
        return True

    def remove_network(self, name: str) -> bool:
        try:
            self.client.networks.get(name).remove()
        except NotFound:
            return False
        except APIError as exc:
            logger.warning("Could not remove network", network=name, error=str(exc))
            return False
        logger.info("Removed network", network=name)
        return True


class ComposeProject:
    """docker compose invocations for one project directory."""

    def __init__(
        self,
        project_dir: Path,
        compose_file: Optional[str] = None,
        runner: Runner = run,
        compose_cmd: Optional[List[str]] = None,
    ):
        self.project_dir = Path(project_dir)
        self.compose_file = compose_file
        self.runner = runner
        self._compose_cmd = compose_cmd
        # Interpolation variables for the compose file, e.g. FUSIONPBX_IMAGE
        self.env: Dict[str, str] = {}

    @property
    def base_cmd(self) -> List[str]:
        if self._compose_cmd is None:
            self._compose_cmd = get_docker_compose_cmd(self.runner)
        cmd = list(self._compose_cmd)
        if self.compose_file:
            cmd += ["-f", self.compose_file]
        return cmd

    def _run(self, *args: str, check: bool = True, capture: bool = True, timeout: Optional[float] = None) -> CommandResult:
        return self.runner(
            self.base_cmd + list(args),
            cwd=self.project_dir,
            env=self.env or None,
            check=check,
            capture=capture,
            timeout=timeout,
        )

    def up(self, detach: bool = True) -> CommandResult:
        logger.info("Starting stack", compose_file=self.compose_file or "docker-compose.yml")
        return self._run("up", "-d") if detach else self._run("up", capture=False)

    def down(self, volumes: bool = False, ignore_errors: bool = False) -> CommandResult:
        args = ["down", "-v"] if volumes else ["down"]
        logger.info("Stopping stack", remove_volumes=volumes)
        return self._run(*args, check=not ignore_errors)

    def restart(self) -> CommandResult:
        return self._run("restart")

    def ps(self) -> CommandResult:
        return self._run("ps", check=False)

    def exec(self, service: str, cmd: Sequence[str], check: bool = False) -> CommandResult:
        return self._run("exec", "-T", service, *cmd, check=check)

    def logs(self, service: Optional[str] = None, tail: int = 100) -> CommandResult:
        args = ["logs", "--tail", str(tail)]
        if service:
            args.append(service)
        return self._run(*args, check=False)
