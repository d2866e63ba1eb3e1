from __future__ import annotations


class SandboxError(RuntimeError):
    """Base class for failures surfaced by the preview sandbox."""

    kind = "sandbox_error"


class BootFailure(SandboxError):
    kind = "boot_failure"


class MountFailure(SandboxError):
    kind = "mount_failure"


class InstallFailure(SandboxError):
    kind = "install_failure"

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class FixServiceFailure(SandboxError):
    kind = "fix_service_failure"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
