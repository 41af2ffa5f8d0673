"""
Lifecycle management for individual service instances.
"""
import logging
import os
from typing import Dict, List, Optional

from ..MODELS.container_image import Image
from ..MODELS.service_definition import ServiceDefinition
from ..RUNNERS.process_runner import ProcessRunner
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)


def full_command(service_def: ServiceDefinition, image: Optional[Image]) -> List[str]:
    """
    Picks the command an instance runs. A service ``entrypoint`` replaces the
    image's command and takes the service ``cmd`` as arguments; a service
    ``cmd`` alone replaces the image's command.
    """
    if service_def.entrypoint:
        return service_def.entrypoint + service_def.cmd
    if service_def.cmd:
        return list(service_def.cmd)
    return list(image.entry_command) if image else []


def rebase_argv(command: List[str], rootfs: str) -> List[str]:
    """
    Points absolute arguments that name files shipped in the instance root
    at their copy under ``rootfs``.
    """
    rebased = []
    for arg in command:
        if arg.startswith("/"):
            candidate = os.path.join(rootfs, arg.lstrip("/"))
            if os.path.lexists(candidate):
                arg = candidate
        rebased.append(arg)
    return rebased


class ProcessManager:
    """
    Manages the lifecycle of a single service instance.
    """
    def __init__(self,
                 instance: str,
                 service_def: ServiceDefinition,
                 rootfs: str,
                 log_file: str,
                 image: Optional[Image] = None):
        """
        Initializes the process manager for an instance.

        :param instance: Instance name.
        :param service_def: Definition of the service.
        :param rootfs: Directory the instance's image was extracted to.
        :param log_file: Where the instance's output goes.
        :param image: The image the instance runs, when it was built locally.
        """
        self.instance = instance
        self.service_def = service_def
        self.rootfs = rootfs
        self.image = image
        self.runner = ProcessRunner(instance, log_file=log_file)
        self.env: Dict[str, str] = {}
        self.stopped = False

    @property
    def working_dir(self) -> str:
        inside = self.service_def.working_dir or (self.image.working_dir if self.image else "/")
        return os.path.join(self.rootfs, inside.lstrip("/"))

    def _run_as(self):
        if self.service_def.user:
            uid, _, gid = self.service_def.user.partition(":")
            if uid.isdigit():
                return int(uid), int(gid) if gid.isdigit() else None
            return None, None
        if self.image:
            return self.image.run_as_identity.uid, self.image.run_as_identity.gid
        return None, None

    def start(self, env: Dict[str, str]) -> int:
        """
        Starts the instance process.

        :param env: The complete process environment.
        :return: The process id.
        """
        command = full_command(self.service_def, self.image)
        if not command:
            raise ConfigurationError(f"service '{self.service_def.name}' has no command to run",
                                     step=f"start:{self.instance}")

        self.env = dict(env)
        uid, gid = self._run_as()
        self.stopped = False
        return self.runner.start(
            rebase_argv(command, self.rootfs),
            env=self.env,
            working_dir=self.working_dir,
            uid=uid,
            gid=gid,
        )

    def restart(self) -> int:
        """Starts the instance again with the environment it last ran with."""
        self.runner.stop()
        return self.start(self.env)

    def adopt(self, pid: int) -> bool:
        return self.runner.adopt(pid)

    def stop(self):
        """
        Stops the instance process.
        """
        self.stopped = True
        self.runner.stop()

    @property
    def pid(self) -> Optional[int]:
        return self.runner.pid

    def status(self) -> str:
        """
        Gets the current status of the instance.

        :return: Status string (e.g., 'running', 'stopped', 'exited(0)').
        """
        if self.runner.is_running():
            return "running"
        exit_code = self.runner.get_exit_code()
        if exit_code is None:
            return "stopped"
        return f"exited({exit_code})"
