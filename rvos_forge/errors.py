"""Error taxonomy for the pipeline.

Every stage raises a subclass of PipelineError carrying a stable ``code``
for programmatic handling and the underlying tool output in
``diagnostics``, unmodified.
"""

from __future__ import annotations

from pathlib import Path

# Error code constants
PROVISION_ERROR = "provision_failed"
BUILD_ERROR = "build_failed"
ASSEMBLY_ERROR = "assembly_failed"
LAUNCH_ERROR = "launch_failed"
STATE_ERROR = "invalid_state"

# CLI exit status per failing stage
EXIT_CODES = {
    "provision": 2,
    "build": 3,
    "assemble": 4,
    "launch": 5,
    "pipeline": 6,
}


class PipelineError(Exception):
    """Base error for all pipeline stages.

    Attributes:
        code: Stable error code.
        stage: Pipeline stage that failed.
        diagnostics: Verbatim output of the failing tool, if any.
        log_path: Log file with the complete output, if any.
    """

    stage = "pipeline"

    def __init__(
        self,
        message: str,
        code: str = STATE_ERROR,
        diagnostics: str | None = None,
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.diagnostics = diagnostics
        self.log_path = log_path

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.stage]


class ProvisionError(PipelineError):
    """Raised when a provisioning step fails. The environment is unusable."""

    stage = "provision"

    def __init__(
        self,
        step: str,
        message: str,
        code: str = PROVISION_ERROR,
        diagnostics: str | None = None,
        log_path: Path | None = None,
    ) -> None:
        super().__init__(
            f"[{step}] {message}",
            code=code,
            diagnostics=diagnostics,
            log_path=log_path,
        )
        self.step = step


class BuildError(PipelineError):
    """Raised when a compile target fails or the vendor override is broken."""

    stage = "build"

    def __init__(
        self,
        target: str,
        message: str,
        code: str = BUILD_ERROR,
        diagnostics: str | None = None,
        log_path: Path | None = None,
    ) -> None:
        super().__init__(
            f"[{target}] {message}",
            code=code,
            diagnostics=diagnostics,
            log_path=log_path,
        )
        self.target = target


class AssemblyError(PipelineError):
    """Raised when the disk image cannot be assembled.

    No image is produced; any file left from the failed run is invalid.
    """

    stage = "assemble"

    def __init__(
        self,
        message: str,
        code: str = ASSEMBLY_ERROR,
        diagnostics: str | None = None,
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message, code=code, diagnostics=diagnostics, log_path=log_path)


class LaunchError(PipelineError):
    """Raised when the emulator cannot start or exits with non-zero status."""

    stage = "launch"

    def __init__(
        self,
        message: str,
        exit_status: int | None = None,
        code: str = LAUNCH_ERROR,
        diagnostics: str | None = None,
    ) -> None:
        super().__init__(message, code=code, diagnostics=diagnostics)
        self.exit_status = exit_status


class PipelineStateError(PipelineError):
    """Raised on a transition the pipeline state machine does not allow."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot {requested} from state '{current}'",
            code=STATE_ERROR,
        )
        self.current = current
        self.requested = requested


__all__ = [
    "ASSEMBLY_ERROR",
    "BUILD_ERROR",
    "EXIT_CODES",
    "LAUNCH_ERROR",
    "PROVISION_ERROR",
    "STATE_ERROR",
    "AssemblyError",
    "BuildError",
    "LaunchError",
    "PipelineError",
    "PipelineStateError",
    "ProvisionError",
]
