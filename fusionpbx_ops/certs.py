"""Self-signed certificate for the nginx front end."""

from pathlib import Path
from typing import List, Optional

from .containers import ComposeProject
from .errors import PreconditionError
from .logging_config import get_logger
from .shell import Runner, run

logger = get_logger(__name__)

SSL_DIR = Path("data") / "ssl"
KEY_NAME = "nginx-selfsigned.key"
CERT_NAME = "nginx-selfsigned.crt"
SUBJECT = "/C=US/ST=State/L=City/O=Organization/CN=fusionpbx.local"
INFO_FIELDS = ("Subject", "Not Before", "Not After")


class CertificateManager:
    def __init__(self, project_dir: Path, runner: Runner = run, compose: Optional[ComposeProject] = None):
        self.project_dir = Path(project_dir)
        self.runner = runner
        self.compose = compose

    @property
    def ssl_dir(self) -> Path:
        return self.project_dir / SSL_DIR

    @property
    def cert_path(self) -> Path:
        return self.ssl_dir / CERT_NAME

    @property
    def key_path(self) -> Path:
        return self.ssl_dir / KEY_NAME

    def generate(self, days: int = 365, subject: str = SUBJECT) -> Path:
        logger.info("Generating self-signed SSL certificate", path=str(self.cert_path), days=days)
        self.ssl_dir.mkdir(parents=True, exist_ok=True)
        self.runner(
            [
                "openssl", "req", "-x509", "-nodes",
                "-days", str(days),
                "-newkey", "rsa:2048",
                "-keyout", str(self.key_path),
                "-out", str(self.cert_path),
                "-subj", subject,
            ],
            check=True,
        )
        if self.compose is not None:
            self.compose.restart()
        return self.cert_path

    def info(self) -> List[str]:
        if not self.cert_path.is_file():
            raise PreconditionError("SSL certificate not found")
        text = self.runner(
            ["openssl", "x509", "-in", str(self.cert_path), "-text", "-noout"],
            check=True,
        ).stdout
        return [line.strip() for line in text.splitlines() if any(f in line for f in INFO_FIELDS)]
