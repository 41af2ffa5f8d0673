"""
Exception hierarchy shared by the build pipeline and the runtime managers.

Every error carries an ``exit_code`` so the CLI can map failures to a
distinct, non-zero process status, and a ``step`` naming the stage or
runtime step that failed.
"""
from typing import Optional


class StackshipError(Exception):
    """Base class for all stackship failures."""

    exit_code = 1

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.step = step

    def __str__(self) -> str:
        if self.step:
            return f"[{self.step}] {self.message}"
        return self.message


class BuildError(StackshipError):
    """
    A build stage exited abnormally. The whole build is aborted and no
    image is tagged.
    """

    exit_code = 2

    def __init__(self, stage_index: int, stage_name: str, cause: BaseException):
        super().__init__(
            f"stage {stage_index} ({stage_name}) failed: {cause}",
            step=f"stage {stage_index}",
        )
        self.stage_index = stage_index
        self.stage_name = stage_name
        self.cause = cause


class BuildOrderError(StackshipError):
    """The dependency manifest is copied after (or together with) the source tree."""

    exit_code = 2


class AssemblyError(StackshipError):
    """The runtime image could not be assembled from the build output."""

    exit_code = 2


class ConfigurationError(StackshipError):
    """Resolved configuration is invalid, e.g. a database target pointing at the caller itself."""

    exit_code = 3


class NameResolutionError(StackshipError):
    """A logical name could not be resolved from the calling instance's networks."""

    exit_code = 3


class ResourceConflictError(StackshipError):
    """A named resource or port is already taken."""

    exit_code = 4


class PortConflictError(ResourceConflictError):
    """A requested host port is already bound."""

    def __init__(self, port: int, service: str, suggestion: Optional[int] = None,
                 holder: Optional[str] = None):
        remedy = (f"remap it to a free host port such as {suggestion}"
                  if suggestion else "remap it to a different host port")
        held = f" (held by {holder})" if holder else ""
        super().__init__(
            f"host port {port} requested by service '{service}' is already in use{held}; {remedy}",
            step=f"ports:{service}",
        )
        self.port = port
        self.service = service
        self.suggestion = suggestion
        self.holder = holder


class GuardedOperationError(StackshipError):
    """A destructive operation was refused."""

    exit_code = 5


class ConfirmationRequiredError(GuardedOperationError):
    """A destructive operation was invoked without explicit confirmation."""


class VolumeInUseError(GuardedOperationError):
    """A volume is still bound to a running instance."""

    def __init__(self, volume: str, instance: str):
        super().__init__(
            f"volume '{volume}' is bound to running instance '{instance}'; stop it first",
            step=f"volume:{volume}",
        )
        self.volume = volume
        self.instance = instance


class MountPathChangedError(GuardedOperationError):
    """A volume is being mounted at a different data path than before without a migration."""


class DependencyUnreachableError(StackshipError):
    """A dependency's logical name never resolved within the allowed attempts."""

    exit_code = 6


class DependencyUnreadyError(StackshipError):
    """
    A dependency resolved but never accepted connections within the retry
    limit. Distinct from ``DependencyUnreachableError`` so operators can
    tell "not ready yet" from "not there".
    """

    exit_code = 6

    def __init__(self, target: str, address: str, port: int, attempts: int):
        super().__init__(
            f"dependency '{target}' at {address}:{port} did not become ready after {attempts} attempts",
            step=f"readiness:{target}",
        )
        self.target = target
        self.address = address
        self.port = port
        self.attempts = attempts
