"""Shared fixtures: fake collaborators for the orchestrator and checks."""

from pathlib import Path
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from s2icheck.config import VerifyConfig
from s2icheck.models import (
    ContainerHandle,
    ContainerRole,
    ExecResponse,
    ReadinessTimeout,
)

NGINX_PROCESSES = [
    "nginx: master process /usr/local/openresty/nginx/sbin/nginx -c /opt/app/conf/nginx.conf",
    "nginx: worker process",
    "nginx: worker process",
]


class FakeBuilder:
    """Records s2i invocations; exit codes are set per call type."""

    def __init__(self):
        self.build_codes: list[int] = []
        self.usage_code = 0
        self.prepare_code = 0
        self.builds: list[dict] = []
        self.usage_calls: list[str] = []
        self.prepared: list[Path] = []

    async def prepare_source(self, path: Path) -> int:
        self.prepared.append(path)
        return self.prepare_code

    async def build(self, source, image, tag, incremental=False, runtime_image=None) -> int:
        self.builds.append(
            {
                "source": source,
                "image": image,
                "tag": tag,
                "incremental": incremental,
                "runtime_image": runtime_image,
            }
        )
        if self.build_codes:
            return self.build_codes.pop(0)
        return 0

    async def usage(self, image: str) -> int:
        self.usage_calls.append(image)
        return self.usage_code


class FakeTracker:
    """In-memory stand-in for ContainerTracker."""

    def __init__(self):
        self.image_present = True
        self.start_times_out = False
        self.processes = list(NGINX_PROCESSES)
        self.exec_code = 0
        self.address_value = ("127.0.0.1", 8080)
        self.handles: dict[ContainerRole, ContainerHandle] = {}
        self.started: list[tuple] = []
        self.stopped: list[ContainerRole] = []
        self.exec_calls: list[tuple] = []
        self.removed_images: list[str] = []
        self.stop_all_calls = 0

    async def image_exists(self, name: str) -> bool:
        return self.image_present

    async def start(self, role, image, port, env=None) -> ContainerHandle:
        handle = ContainerHandle(
            role=role,
            image=image,
            port=port,
            cid_file=Path(f"/nonexistent/{role.value}.cid"),
        )
        self.handles[role] = handle
        self.started.append((role, image, env))
        return handle

    async def wait_started(self, handle, attempts=10, interval=1.0) -> None:
        if self.start_times_out:
            raise ReadinessTimeout(f"{handle.role.value} container to start not ready")

    async def address(self, handle) -> tuple[str, int]:
        return self.address_value

    async def exec(self, handle, command, user: Optional[str] = None) -> ExecResponse:
        self.exec_calls.append((list(command), user))
        return ExecResponse(exit_code=self.exec_code, stdout="", stderr="")

    async def top(self, handle) -> list[str]:
        return list(self.processes)

    async def stop(self, handle) -> None:
        self.stopped.append(handle.role)
        if self.handles.get(handle.role) is handle:
            del self.handles[handle.role]

    async def stop_all(self) -> None:
        self.stop_all_calls += 1
        for handle in list(self.handles.values()):
            await self.stop(handle)

    async def remove_image(self, name: str) -> bool:
        self.removed_images.append(name)
        return True


@pytest.fixture
def config(tmp_path):
    app_dir = tmp_path / "test-app"
    app_dir.mkdir()
    return VerifyConfig(image_name="example/s2i-openresty", test_app_dir=app_dir)


@pytest.fixture
def fake_builder():
    return FakeBuilder()


@pytest.fixture
def fake_tracker():
    return FakeTracker()


def make_http_client(*status_codes: int) -> MagicMock:
    """Mock AsyncClient whose GETs answer with ``status_codes`` in turn.

    The last code repeats once the list is exhausted.
    """
    codes = list(status_codes)

    async def get(url, timeout=None):
        code = codes.pop(0) if len(codes) > 1 else codes[0]
        return MagicMock(status_code=code)

    client = MagicMock()
    client.is_closed = False
    client.get = AsyncMock(side_effect=get)
    return client


@pytest.fixture
def http_ok():
    return make_http_client(200)


@pytest.fixture
def http_client_factory():
    return make_http_client
