import asyncio
import logging
import tempfile
import uuid
from pathlib import Path
from typing import Callable, Optional, TypeVar

import docker
from docker.errors import APIError, NotFound
from docker.models.containers import Container

from s2icheck.models import (
    ContainerHandle,
    ContainerNotStarted,
    ContainerRole,
    ExecResponse,
    ToolFailure,
)
from s2icheck.poller import poll

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Exit status `docker run` uses when the daemon itself fails
DOCKER_RUN_FAILED = 125


class ContainerTracker:
    """Starts, queries and tears down the containers of a verification run.

    Each started container gets a tracking file holding its id. The file
    is written once the container exists and removed when it is stopped,
    so "file present" means "container believed running". At most one
    container per role is tracked at a time.
    """

    def __init__(
        self,
        docker_client: Optional[docker.DockerClient] = None,
        cid_dir: Optional[str] = None,
    ):
        self.docker_client = docker_client or docker.from_env()
        self.cid_dir = Path(cid_dir) if cid_dir else Path(tempfile.gettempdir())
        self.handles: dict[ContainerRole, ContainerHandle] = {}
        self._start_tasks: dict[ContainerRole, asyncio.Task] = {}

    async def _in_executor(self, fn: Callable[[], T]) -> T:
        return await asyncio.get_event_loop().run_in_executor(None, fn)

    def _new_cid_file(self, role: ContainerRole) -> Path:
        return self.cid_dir / f"s2icheck-{role.value}-{uuid.uuid4().hex[:12]}.cid"

    async def start(
        self,
        role: ContainerRole,
        image: str,
        port: int,
        env: Optional[dict[str, str]] = None,
    ) -> ContainerHandle:
        """Launch a container in the background and return its handle.

        Returns before the container exists; use ``wait_started`` to wait
        for the tracking file.
        """
        handle = ContainerHandle(
            role=role,
            image=image,
            port=port,
            cid_file=self._new_cid_file(role),
        )
        self.handles[role] = handle
        self._start_tasks[role] = asyncio.create_task(
            self._run_container(handle, env or {})
        )
        logger.info(f"Starting {role.value} container from {image}")
        return handle

    async def _run_container(self, handle: ContainerHandle, env: dict[str, str]) -> None:
        container = await self._in_executor(
            lambda: self._create_container(handle, env)
        )
        self._write_cid(handle, container.id)
        logger.info(
            f"Started {handle.role.value} container {container.short_id} "
            f"(tracking file {handle.cid_file})"
        )

    def _create_container(self, handle: ContainerHandle, env: dict[str, str]) -> Container:
        """Create and start a container (sync, runs in executor)."""
        return self.docker_client.containers.run(
            handle.image,
            detach=True,
            auto_remove=True,
            environment=env,
            ports={f"{handle.port}/tcp": handle.port},
            labels={
                "s2icheck": "true",
                "role": handle.role.value,
            },
        )

    @staticmethod
    def _write_cid(handle: ContainerHandle, cid: str) -> None:
        # Readers poll for the final name, so it must never hold a partial id
        partial = handle.cid_file.with_name(handle.cid_file.name + ".partial")
        partial.write_text(cid)
        partial.replace(handle.cid_file)

    async def wait_started(
        self,
        handle: ContainerHandle,
        attempts: int = 10,
        interval: float = 1.0,
    ) -> None:
        """Wait for the tracking file of ``handle`` to appear.

        Raises:
            ToolFailure: the background start failed.
            ReadinessTimeout: the file did not appear in time.
        """
        task = self._start_tasks.get(handle.role)

        def started() -> bool:
            if task is not None and task.done() and not task.cancelled():
                error = task.exception()
                if error is not None:
                    raise ToolFailure(
                        f"Could not start {handle.role.value} container from "
                        f"{handle.image}: {error}",
                        exit_code=DOCKER_RUN_FAILED,
                    ) from error
            return handle.cid_file.exists()

        await poll(
            started,
            max_attempts=attempts,
            interval=interval,
            description=f"{handle.role.value} container to start",
        )

    async def _get_container(self, handle: ContainerHandle) -> Container:
        cid = handle.read_id()
        if cid is None:
            raise ContainerNotStarted(f"{handle.role.value} container has not started")
        return await self._in_executor(lambda: self.docker_client.containers.get(cid))

    async def exists(self, handle: ContainerHandle) -> bool:
        """True if the tracked container still resolves to a known container."""
        try:
            await self._get_container(handle)
        except (ContainerNotStarted, NotFound):
            return False
        return True

    async def ip(self, handle: ContainerHandle) -> str:
        """Network address of the tracked container."""
        container = await self._get_container(handle)
        settings = container.attrs["NetworkSettings"]
        if settings.get("IPAddress"):
            return settings["IPAddress"]
        for network in (settings.get("Networks") or {}).values():
            if network.get("IPAddress"):
                return network["IPAddress"]
        raise ContainerNotStarted(f"{handle.role.value} container has no IP address")

    async def address(self, handle: ContainerHandle) -> tuple[str, int]:
        """Host and port to reach the container's application port."""
        container = await self._get_container(handle)
        ports = container.attrs["NetworkSettings"].get("Ports") or {}
        port_mapping = ports.get(f"{handle.port}/tcp")
        if port_mapping:
            # Published ports work where container IPs are not routable (macOS)
            return ("127.0.0.1", int(port_mapping[0]["HostPort"]))
        return (await self.ip(handle), handle.port)

    async def exec(
        self,
        handle: ContainerHandle,
        command: list[str],
        user: Optional[str] = None,
    ) -> ExecResponse:
        """Run a command inside the tracked container."""
        container = await self._get_container(handle)
        result = await self._in_executor(
            lambda: container.exec_run(command, user=user or "", demux=True)
        )
        stdout, stderr = result.output or (None, None)
        return ExecResponse(
            exit_code=result.exit_code,
            stdout=(stdout or b"").decode("utf-8", errors="replace"),
            stderr=(stderr or b"").decode("utf-8", errors="replace"),
        )

    async def top(self, handle: ContainerHandle) -> list[str]:
        """Command lines of the processes running in the container."""
        container = await self._get_container(handle)
        table = await self._in_executor(container.top)
        titles = table.get("Titles") or []
        column = len(titles) - 1
        for name in ("CMD", "COMMAND"):
            if name in titles:
                column = titles.index(name)
                break
        return [row[column] for row in table.get("Processes") or []]

    async def stop(self, handle: ContainerHandle) -> None:
        """Stop the container if it exists and remove its tracking file.

        Safe to call repeatedly and for handles that never started.
        """
        task = self._start_tasks.pop(handle.role, None)
        if task is not None:
            # The container may still appear; let the start finish first
            await asyncio.gather(task, return_exceptions=True)

        cid = handle.read_id()
        if cid is not None:
            try:
                container = await self._in_executor(
                    lambda: self.docker_client.containers.get(cid)
                )
                await self._in_executor(container.stop)
                logger.info(f"Stopped {handle.role.value} container {container.short_id}")
            except NotFound:
                logger.warning(f"{handle.role.value} container {cid[:12]} already gone")
            except APIError as e:
                logger.error(f"Failed to stop {handle.role.value} container {cid[:12]}: {e}")

        handle.cid_file.unlink(missing_ok=True)
        if self.handles.get(handle.role) is handle:
            del self.handles[handle.role]

    async def stop_all(self) -> None:
        for handle in list(self.handles.values()):
            await self.stop(handle)

    async def image_exists(self, name: str) -> bool:
        try:
            await self._in_executor(lambda: self.docker_client.images.get(name))
        except NotFound:
            return False
        return True

    async def remove_image(self, name: str) -> bool:
        """Remove an image if present. Returns whether anything was removed."""
        try:
            await self._in_executor(lambda: self.docker_client.images.remove(name))
        except NotFound:
            return False
        except APIError as e:
            logger.error(f"Failed to remove image {name}: {e}")
            return False
        logger.info(f"Removed image {name}")
        return True

    def close(self) -> None:
        for task in self._start_tasks.values():
            if not task.done():
                task.cancel()
        self._start_tasks.clear()
        self.docker_client.close()
