"""Runs the build-and-verify sequence for an S2I image."""

import asyncio
import json
import logging
import time
from typing import Optional, Sequence

import httpx

from s2icheck.builder import S2IBuilder
from s2icheck.checks import DEFAULT_CHECKS, Check, CheckContext, run_checks
from s2icheck.config import VerifyConfig
from s2icheck.container_tracker import ContainerTracker
from s2icheck.models import (
    ContainerRole,
    Phase,
    PhaseRecord,
    PreconditionError,
    RunReport,
    StepFailure,
    ToolFailure,
    VerificationFailure,
)

logger = logging.getLogger(__name__)

# Exit status for a run interrupted by SIGINT/SIGTERM
INTERRUPTED = 130


class Orchestrator:
    """Drives one verification run from preconditions to cleanup.

    Phases are entered strictly in order. A step failure moves the run to
    ``Phase.FAILED``; every failure except a precondition triggers cleanup,
    as does reaching ``Phase.DONE``. Cleanup happens at most once per run.
    """

    def __init__(
        self,
        config: VerifyConfig,
        builder: Optional[S2IBuilder] = None,
        tracker: Optional[ContainerTracker] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        checks: Sequence[Check] = DEFAULT_CHECKS,
    ):
        self.config = config
        self.builder = builder or S2IBuilder(config)
        self.tracker = tracker or ContainerTracker()
        self.checks = checks
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self.report = RunReport(image_name=config.image_name)
        self.built_images: list[str] = []
        self.cleanup_count = 0

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.http_timeout)
            )
        return self._http_client

    def _enter(self, phase: Phase) -> None:
        self._finish_record(ok=True)
        self.report.phase = phase
        self.report.records.append(PhaseRecord(phase=phase))
        logger.debug(f"Entered phase {phase.value}")

    def _finish_record(self, ok: bool, detail: str = "") -> None:
        if not self.report.records:
            return
        record = self.report.records[-1]
        if record.ok is None:
            record.ok = ok
            record.detail = detail
            record.duration = time.monotonic() - record.started_at

    async def run(self) -> RunReport:
        """Execute the full sequence and return the report.

        Never raises; the outcome is in ``report.exit_code``. Errors that
        are not step failures are reported as tool failures with exit
        code 1.
        """
        self._enter(Phase.INIT)
        try:
            await self._prepare()

            self._enter(Phase.BUILDING)
            await self._build_app()

            await self._check_usage()
            self._enter(Phase.USAGE_CHECKED)

            await self._build_runtime_app()
            self._enter(Phase.RUNTIME_BUILT)

            await self._verify_role(ContainerRole.APP, self.config.testapp_image)
            await self._verify_role(
                ContainerRole.RUNTIME_APP, self.config.runtime_testapp_image
            )

            self._enter(Phase.DONE)
            await self._cleanup_to_completion()
            self._finish_record(ok=True)
        except PreconditionError as e:
            self._fail(e)
        except StepFailure as e:
            self._fail(e)
            await self._cleanup_to_completion()
        except asyncio.CancelledError:
            logger.warning("Run interrupted, cleaning up")
            self._finish_record(ok=False, detail="interrupted")
            self.report.phase = Phase.FAILED
            self.report.exit_code = INTERRUPTED
            await self._cleanup_to_completion()
        except Exception as e:
            logger.exception(f"Unexpected error during {self.report.phase.value}")
            self._fail(ToolFailure(f"{type(e).__name__}: {e}"))
            await self._cleanup_to_completion()
        finally:
            await self._close_http_client()

        self._log_summary()
        self._write_report()
        return self.report

    def _fail(self, error: StepFailure) -> None:
        logger.error(str(error))
        self._finish_record(ok=False, detail=str(error))
        self.report.phase = Phase.FAILED
        self.report.failure_kind = error.kind
        self.report.exit_code = error.exit_code

    async def _prepare(self) -> None:
        config = self.config
        if not await self.tracker.image_exists(config.image_name):
            raise PreconditionError(
                f"The image {config.image_name} must exist before this script is executed."
            )
        if not config.test_app_dir.is_dir():
            raise PreconditionError(
                f"Test application directory {config.test_app_dir} does not exist."
            )
        code = await self.builder.prepare_source(config.test_app_dir)
        if code != 0:
            raise ToolFailure(
                f"Could not prepare git repository in {config.test_app_dir}",
                exit_code=code,
            )

    async def _run_build(self, tag: str, **options) -> None:
        if tag not in self.built_images:
            self.built_images.append(tag)
        code = await self.builder.build(
            self.config.source_url, self.config.image_name, tag, **options
        )
        if code != 0:
            raise ToolFailure(f"s2i build of {tag} failed", exit_code=code)

    async def _build_app(self) -> None:
        # The second build restores artifacts saved by the first
        await self._run_build(self.config.testapp_image)
        await self._run_build(self.config.testapp_image, incremental=True)

    async def _check_usage(self) -> None:
        code = await self.builder.usage(self.config.image_name)
        if code != 0:
            raise ToolFailure(f"s2i usage of {self.config.image_name} failed", exit_code=code)

    async def _build_runtime_app(self) -> None:
        await self._run_build(
            self.config.runtime_testapp_image,
            runtime_image=self.config.runtime_base_image,
        )

    async def _verify_role(self, role: ContainerRole, image: str) -> None:
        if role == ContainerRole.APP:
            running, verified = Phase.APP_RUNNING, Phase.VERIFIED
        else:
            running, verified = Phase.RUNTIME_APP_RUNNING, Phase.RUNTIME_VERIFIED

        self._enter(running)
        handle = await self.tracker.start(
            role, image, self.config.test_port, self.config.container_env
        )
        await self.tracker.wait_started(
            handle,
            attempts=self.config.poll_attempts,
            interval=self.config.poll_interval,
        )

        ctx = CheckContext(
            tracker=self.tracker,
            handle=handle,
            config=self.config,
            http_client=await self._get_http_client(),
        )
        results = await run_checks(ctx, self.checks)
        self.report.checks.extend(results)
        failed = [r for r in results if not r.passed]
        if failed:
            raise VerificationFailure(
                f"{role.value} check '{failed[0].name}' failed: {failed[0].detail}"
            )

        await self.tracker.stop(handle)
        self._enter(verified)

    async def cleanup(self) -> None:
        """Stop tracked containers and remove built images. Never raises."""
        if self.cleanup_count:
            return
        self.cleanup_count += 1
        try:
            await self.tracker.stop_all()
        except Exception as e:
            logger.error(f"Failed to stop containers: {e}")
        for image in reversed(self.built_images):
            try:
                await self.tracker.remove_image(image)
            except Exception as e:
                logger.error(f"Failed to remove image {image}: {e}")

    async def _cleanup_to_completion(self) -> None:
        # A further interrupt must not leave containers or images behind
        task = asyncio.ensure_future(self.cleanup())
        while not task.done():
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                logger.warning("Interrupt ignored, cleanup in progress")

    async def _close_http_client(self) -> None:
        if self._owns_http_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    def _log_summary(self) -> None:
        report = self.report
        for record in report.records:
            status = {True: "ok", False: "FAILED", None: "-"}[record.ok]
            logger.info(f"  {record.phase.value:<20} {status:<7} {record.duration:6.2f}s")
        if report.passed:
            logger.info(f"S2I image '{report.image_name}' test PASSED")
        else:
            logger.error(
                f"S2I image '{report.image_name}' test FAILED "
                f"(exit code: {report.exit_code})"
            )

    def _write_report(self) -> None:
        if self.config.report_path is None:
            return
        try:
            self.config.report_path.write_text(json.dumps(self.report.to_dict(), indent=2))
        except OSError as e:
            logger.error(f"Could not write report to {self.config.report_path}: {e}")
        else:
            logger.info(f"Report written to {self.config.report_path}")
