"""Internal models for the image verifier."""

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


@dataclass
class ExecResponse:
    """Response from a command executed inside a container."""
    exit_code: int
    stdout: str
    stderr: str


class ContainerRole(str, Enum):
    """Which test application a container runs."""
    APP = "app"
    RUNTIME_APP = "runtime-app"


class Phase(str, Enum):
    """States of a verification run, in the order they are entered."""
    INIT = "init"
    BUILDING = "building"
    USAGE_CHECKED = "usage_checked"
    RUNTIME_BUILT = "runtime_built"
    APP_RUNNING = "app_running"
    VERIFIED = "verified"
    RUNTIME_APP_RUNNING = "runtime_app_running"
    RUNTIME_VERIFIED = "runtime_verified"
    DONE = "done"
    FAILED = "failed"


class FailureKind(str, Enum):
    """Why a step aborted the run."""
    TOOL = "tool"  # external command exited non-zero
    PRECONDITION = "precondition"  # required image or source missing
    READINESS_TIMEOUT = "readiness_timeout"
    VERIFICATION = "verification"


class StepFailure(Exception):
    """A step of the run failed; carries the exit code the run ends with."""

    kind = FailureKind.TOOL

    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code if exit_code else 1


class ToolFailure(StepFailure):
    kind = FailureKind.TOOL


class PreconditionError(StepFailure):
    kind = FailureKind.PRECONDITION


class ReadinessTimeout(StepFailure):
    kind = FailureKind.READINESS_TIMEOUT


class VerificationFailure(StepFailure):
    kind = FailureKind.VERIFICATION


class ContainerNotStarted(Exception):
    """Raised when a handle has no tracking file yet."""


@dataclass
class ContainerHandle:
    """A container started by the tracker.

    The container id lives in ``cid_file``, which only exists while the
    container is believed to be running.
    """

    role: ContainerRole
    image: str
    port: int
    cid_file: Path

    def read_id(self) -> Optional[str]:
        """Container id from the tracking file, or None if there is none."""
        try:
            cid = self.cid_file.read_text().strip()
        except FileNotFoundError:
            return None
        return cid or None


@dataclass
class CheckResult:
    """Outcome of one verification check."""
    name: str
    passed: bool
    detail: str = ""


@dataclass
class PhaseRecord:
    """A phase that was entered during a run."""
    phase: Phase
    started_at: float = field(default_factory=time.monotonic)
    duration: float = 0.0
    ok: Optional[bool] = None
    detail: str = ""


@dataclass
class RunReport:
    """Summary of a verification run."""

    image_name: str
    phase: Phase = Phase.INIT
    exit_code: int = 0
    failure_kind: Optional[FailureKind] = None
    records: list[PhaseRecord] = field(default_factory=list)
    checks: list[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.phase == Phase.DONE and self.exit_code == 0

    def to_dict(self) -> dict:
        return {
            "image_name": self.image_name,
            "phase": self.phase.value,
            "exit_code": self.exit_code,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "phases": [
                {
                    "phase": r.phase.value,
                    "ok": r.ok,
                    "duration": round(r.duration, 3),
                    "detail": r.detail,
                }
                for r in self.records
            ],
            "checks": [
                {"name": c.name, "passed": c.passed, "detail": c.detail}
                for c in self.checks
            ],
        }
