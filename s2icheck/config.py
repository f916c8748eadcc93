"""Configuration for a verification run, read from the environment."""

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

DEFAULT_IMAGE_NAME = "s2i-openresty-centos7-candidate"
DEFAULT_WORKER_PATTERN = r"^nginx: (master|worker) process"


def testapp_tag(image: str) -> str:
    return f"{image}-testapp"


def runtime_testapp_tag(image: str) -> str:
    return f"{image}-runtime-testapp"


@dataclass
class VerifyConfig:
    """Everything a run needs, passed explicitly to each component."""

    image_name: str = DEFAULT_IMAGE_NAME
    runtime_image: Optional[str] = None
    test_app_dir: Path = Path("test/test-app")
    context_dir: str = "."
    s2i_binary: str = "s2i"
    s2i_loglevel: int = 2

    test_port: int = 8080
    health_path: str = "/"
    portal_endpoint: str = "http://localhost:8081/config"
    portal_endpoint_env: str = "THREESCALE_PORTAL_ENDPOINT"

    self_test_command: list[str] = field(
        default_factory=lambda: ["bin/apicast", "--test"]
    )
    restricted_user: str = "100001"
    temp_dir: str = "/tmp"
    worker_pattern: str = DEFAULT_WORKER_PATTERN

    poll_attempts: int = 10
    poll_interval: float = 1.0
    http_attempts: int = 10
    http_interval: float = 1.0
    http_timeout: float = 5.0

    report_path: Optional[Path] = None

    @property
    def testapp_image(self) -> str:
        return testapp_tag(self.image_name)

    @property
    def runtime_testapp_image(self) -> str:
        return runtime_testapp_tag(self.image_name)

    @property
    def runtime_base_image(self) -> str:
        return self.runtime_image or self.image_name

    @property
    def source_url(self) -> str:
        return f"file://{self.test_app_dir.resolve()}"

    @property
    def container_env(self) -> dict[str, str]:
        return {self.portal_endpoint_env: self.portal_endpoint}

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "VerifyConfig":
        env = os.environ if environ is None else environ
        defaults = cls()

        def get(name: str, default):
            value = env.get(name)
            return default if value in (None, "") else value

        report_path = env.get("REPORT_PATH")
        self_test = env.get("SELF_TEST_COMMAND")

        return cls(
            image_name=get("IMAGE_NAME", defaults.image_name),
            runtime_image=env.get("RUNTIME_IMAGE") or None,
            test_app_dir=Path(get("TEST_APP_DIR", defaults.test_app_dir)),
            context_dir=get("CONTEXT_DIR", defaults.context_dir),
            s2i_binary=get("S2I_BINARY", defaults.s2i_binary),
            s2i_loglevel=int(get("S2I_LOGLEVEL", defaults.s2i_loglevel)),
            test_port=int(get("TEST_PORT", defaults.test_port)),
            health_path=get("HEALTH_PATH", defaults.health_path),
            portal_endpoint=get("PORTAL_ENDPOINT", defaults.portal_endpoint),
            portal_endpoint_env=get("PORTAL_ENDPOINT_ENV", defaults.portal_endpoint_env),
            self_test_command=shlex.split(self_test) if self_test else defaults.self_test_command,
            restricted_user=get("RESTRICTED_USER", defaults.restricted_user),
            temp_dir=get("TEMP_DIR", defaults.temp_dir),
            worker_pattern=get("WORKER_PATTERN", defaults.worker_pattern),
            poll_attempts=int(get("POLL_ATTEMPTS", defaults.poll_attempts)),
            poll_interval=float(get("POLL_INTERVAL", defaults.poll_interval)),
            http_attempts=int(get("HTTP_ATTEMPTS", defaults.http_attempts)),
            http_interval=float(get("HTTP_INTERVAL", defaults.http_interval)),
            http_timeout=float(get("HTTP_TIMEOUT", defaults.http_timeout)),
            report_path=Path(report_path) if report_path else None,
        )
