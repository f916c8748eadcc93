"""Verification checks run against a started test application container.

Each check takes a :class:`CheckContext` and returns a :class:`CheckResult`.
Checks are independent of each other; :func:`run_checks` runs them in order
and stops at the first failure.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

import httpx
from docker.errors import APIError

from s2icheck.config import VerifyConfig
from s2icheck.container_tracker import ContainerTracker
from s2icheck.models import (
    CheckResult,
    ContainerHandle,
    ContainerNotStarted,
    ReadinessTimeout,
)
from s2icheck.poller import poll

logger = logging.getLogger(__name__)


@dataclass
class CheckContext:
    tracker: ContainerTracker
    handle: ContainerHandle
    config: VerifyConfig
    http_client: httpx.AsyncClient


Check = Callable[[CheckContext], Awaitable[CheckResult]]


async def check_http(ctx: CheckContext) -> CheckResult:
    """GET the health path until it answers 200 or attempts run out."""
    name = "http"
    try:
        host, port = await ctx.tracker.address(ctx.handle)
    except (ContainerNotStarted, APIError) as e:
        return CheckResult(name, False, f"no address: {e}")

    url = f"http://{host}:{port}{ctx.config.health_path}"
    logger.info(f"Testing HTTP connection ({url})")
    last_seen = "no response"

    async def responds_ok() -> bool:
        nonlocal last_seen
        try:
            response = await ctx.http_client.get(url, timeout=ctx.config.http_timeout)
        except httpx.TransportError as e:
            last_seen = f"{type(e).__name__}: {e}"
            return False
        last_seen = f"HTTP {response.status_code}"
        return response.status_code == 200

    try:
        attempt = await poll(
            responds_ok,
            max_attempts=ctx.config.http_attempts,
            interval=ctx.config.http_interval,
            description=f"HTTP 200 from {url}",
        )
    except ReadinessTimeout as e:
        return CheckResult(name, False, f"{e}; last: {last_seen}")
    return CheckResult(name, True, f"HTTP 200 on attempt {attempt}")


async def check_config_self_test(ctx: CheckContext) -> CheckResult:
    """Run the entrypoint's self-test subcommand inside the container."""
    name = "config-self-test"
    command = ctx.config.self_test_command
    logger.info(f"Testing configuration ({' '.join(command)})")
    try:
        result = await ctx.tracker.exec(ctx.handle, command)
    except (ContainerNotStarted, APIError) as e:
        return CheckResult(name, False, str(e))
    if result.exit_code != 0:
        output = (result.stderr or result.stdout).strip()
        return CheckResult(name, False, f"exit code {result.exit_code}: {output}")
    return CheckResult(name, True)


async def check_writable_temp(ctx: CheckContext) -> CheckResult:
    """Create a file in the temp dir as a restricted, non-default user."""
    name = "writable-temp"
    path = f"{ctx.config.temp_dir.rstrip('/')}/s2icheck-{uuid.uuid4().hex[:8]}"
    user = ctx.config.restricted_user
    logger.info(f"Testing {ctx.config.temp_dir} is writable by user {user}")
    try:
        result = await ctx.tracker.exec(ctx.handle, ["touch", path], user=user)
    except (ContainerNotStarted, APIError) as e:
        return CheckResult(name, False, str(e))
    if result.exit_code != 0:
        return CheckResult(
            name, False, f"user {user} cannot create {path}: {result.stderr.strip()}"
        )
    return CheckResult(name, True, path)


async def check_process_shape(ctx: CheckContext) -> CheckResult:
    """Every process in the container must look like a worker process."""
    name = "process-shape"
    pattern = re.compile(ctx.config.worker_pattern)
    logger.info("Testing container processes")
    try:
        processes = await ctx.tracker.top(ctx.handle)
    except (ContainerNotStarted, APIError) as e:
        return CheckResult(name, False, str(e))

    if not processes:
        return CheckResult(name, False, "no processes running")
    for command in processes:
        if not pattern.search(command):
            return CheckResult(
                name, False, f"unexpected process {command!r} (expected {pattern.pattern})"
            )
    return CheckResult(name, True, f"{len(processes)} processes")


DEFAULT_CHECKS: tuple[Check, ...] = (
    check_http,
    check_config_self_test,
    check_writable_temp,
    check_process_shape,
)


async def run_checks(
    ctx: CheckContext,
    checks: Sequence[Check] = DEFAULT_CHECKS,
) -> list[CheckResult]:
    """Run ``checks`` in order, stopping after the first failure."""
    results = []
    for check in checks:
        result = await check(ctx)
        results.append(result)
        if result.passed:
            logger.info(f"[{ctx.handle.role.value}] {result.name}: PASS {result.detail}".rstrip())
        else:
            logger.error(f"[{ctx.handle.role.value}] {result.name}: FAIL {result.detail}")
            break
    return results
