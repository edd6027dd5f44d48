"""
Multi-architecture image build and push with docker buildx.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from .containers import ContainerManager
from .errors import CommandError, OpsError
from .logging_config import get_logger
from .shell import Runner, run

logger = get_logger(__name__)

RESULTS_FILE = "rebuild-push-results.txt"


@dataclass
class BuildOptions:
    username: str
    repo: str = "fusionpbx"
    version: str = "5.4"
    platforms: str = "linux/amd64,linux/arm64"
    no_cache: bool = False
    build_only: bool = False
    push_only: bool = False
    builder_name: str = "fusionpbx-multiarch"
    context: str = "."

    def validate(self) -> None:
        if not self.username:
            raise OpsError("Docker Hub username is required")
        if self.build_only and self.push_only:
            raise OpsError("Cannot use --build-only and --push-only together")

    @property
    def image(self) -> str:
        return f"{self.username}/{self.repo}"

    @property
    def latest_tag(self) -> str:
        return f"{self.image}:latest"

    @property
    def version_tag(self) -> str:
        return f"{self.image}:{self.version}"

    @property
    def hub_url(self) -> str:
        return f"https://hub.docker.com/r/{self.username}/{self.repo}"

    @property
    def pushes(self) -> bool:
        return not self.build_only


def build_command(options: BuildOptions) -> List[str]:
    cmd = [
        "docker", "buildx", "build",
        "--platform", options.platforms,
        "--tag", options.latest_tag,
        "--tag", options.version_tag,
    ]
    if options.no_cache:
        cmd.append("--no-cache")
    cmd.append("--load" if options.build_only else "--push")
    cmd.append(options.context)
    return cmd


def render_results(options: BuildOptions, when: datetime) -> str:
    return f"""Rebuild and Push Completed Successfully!

Your FusionPBX image is now available at:
- Latest: {options.latest_tag}
- Version: {options.version_tag}
- Platforms: {options.platforms}

To use the image on different architectures:

1. Pull the image (Docker will automatically select the right architecture):
   docker pull {options.latest_tag}

2. Run on any supported platform:
   docker run -d --name fusionpbx -p 80:80 -p 443:443 -p 5060:5060/udp {options.latest_tag}

3. Verify architecture:
   docker run --rm {options.latest_tag} uname -m

Build Details:
- Build time: {when.strftime('%a %b %d %H:%M:%S %Y')}
- Platforms: {options.platforms}
- Builder: {options.builder_name}
- Tags: {options.latest_tag}, {options.version_tag}
"""


class MultiArchBuilder:
    def __init__(
        self,
        runner: Runner = run,
        containers: Optional[ContainerManager] = None,
        clock: Callable[[], datetime] = datetime.now,
        results_dir: Path = Path("."),
    ):
        self.runner = runner
        self.containers = containers or ContainerManager(runner=runner)
        self.clock = clock
        self.results_dir = Path(results_dir)

    def ensure_logged_in(self) -> None:
        logger.info("Checking Docker Hub authentication")
        info = self.runner(["docker", "info"])
        if "Username:" in info.stdout:
            return
        logger.warning("Not logged in to Docker Hub, running docker login")
        login = self.runner(["docker", "login"], capture=False)
        if not login.ok:
            raise CommandError("Failed to login to Docker Hub", login.args, login.returncode)

    def setup_builder(self, name: str) -> None:
        logger.info("Setting up Docker Buildx builder", builder=name)
        if self.runner(["docker", "buildx", "inspect", name]).ok:
            logger.info("Using existing builder", builder=name)
        else:
            logger.info("Creating new builder", builder=name)
            self.runner(
                ["docker", "buildx", "create", "--name", name, "--driver", "docker-container", "--bootstrap"],
                check=True,
            )
        self.runner(["docker", "buildx", "use", name], check=True)
        self.runner(["docker", "buildx", "inspect", "--bootstrap"], check=True)

    def build(self, options: BuildOptions) -> None:
        if options.build_only:
            logger.warning("Building without push - only the native platform will be loaded locally")
        cmd = build_command(options)
        logger.info("Building multi-architecture image", cmd=" ".join(cmd))
        self.runner(cmd, capture=False, check=True)

    def push_existing(self, options: BuildOptions) -> None:
        if not self.containers.local_images(options.image):
            raise OpsError(
                f"No local images found for {options.image}. "
                "Build the image first or run without --push-only"
            )
        for tag in (options.latest_tag, options.version_tag):
            logger.info("Pushing tag", tag=tag)
            self.runner(["docker", "push", tag], capture=False, check=True)

    def inspect_manifest(self, tag: str) -> str:
        return self.runner(["docker", "buildx", "imagetools", "inspect", tag], check=True).stdout

    def write_results(self, options: BuildOptions) -> Path:
        path = self.results_dir / RESULTS_FILE
        path.write_text(render_results(options, self.clock()))
        logger.info("Results saved", path=str(path))
        return path

    def run(self, options: BuildOptions) -> Optional[Path]:
        options.validate()
        logger.info(
            "FusionPBX rebuild and push started",
            image=options.image,
            version=options.version,
            platforms=options.platforms,
            build_only=options.build_only,
            push_only=options.push_only,
            no_cache=options.no_cache,
        )

        if options.pushes:
            self.ensure_logged_in()

        if options.push_only:
            self.push_existing(options)
        else:
            self.setup_builder(options.builder_name)
            self.build(options)

        if not options.pushes:
            logger.info("Build completed without push", platforms=options.platforms)
            return None

        logger.info("Images pushed", tags=[options.latest_tag, options.version_tag], url=options.hub_url)
        if not options.push_only:
            manifest = self.inspect_manifest(options.latest_tag)
            logger.info("Manifest", manifest=manifest.strip())
        return self.write_results(options)
