"""
Models for defining service instances, including restart policies, mounts and
the security options a hardening profile can layer on.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, Field
from enum import Enum


class RestartPolicyCondition(str, Enum):
    """
    Conditions under which a service should be restarted.
    """
    NO = "no"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"

    @classmethod
    def parse(cls, value: Optional[str]) -> "RestartPolicyCondition":
        """Accepts ``never`` as an alias for ``no``."""
        if value in (None, "", "never", False):
            return cls.NO
        if value == "unless-stopped":
            return cls.ALWAYS
        return cls(str(value))


class RestartPolicy(BaseModel):
    """
    Defines how a service should be restarted on failure or exit.
    """
    condition: RestartPolicyCondition = RestartPolicyCondition.NO
    max_retries: int = 0
    delay: float = 0.0


class VolumeMount(BaseModel):
    """
    Defines a mapping between a named volume (or host path) and a path inside the instance.
    """
    source: str
    target: str
    read_only: bool = False

    @property
    def is_named(self) -> bool:
        return not (self.source.startswith("/") or self.source.startswith("."))


class ServiceDefinition(BaseModel):
    """
    The full definition of a single service instance in a topology.
    """
    name: str
    image_name: str

    # Execution
    cmd: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None

    # Environment
    environment: Dict[str, str] = {}
    environment_files: List[str] = []

    # Networking
    ports: Dict[int, Optional[int]] = {}  # {container: host}
    expose_ports: List[int] = []
    networks: List[str] = []
    aliases: List[str] = []

    # Storage
    volumes: List[VolumeMount] = []
    tmpfs: List[str] = []
    writable_paths: List[str] = []  # paths the service writes to at runtime

    # Lifecycle
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)
    depends_on: List[str] = []
    readiness_port: Optional[int] = None

    # Security
    user: Optional[str] = None
    cap_drop: List[str] = []
    read_only: bool = False
    security_opt: List[str] = []

    labels: Dict[str, str] = {}

    @property
    def no_new_privileges(self) -> bool:
        return any(opt.replace(":", "=") in ("no-new-privileges", "no-new-privileges=true")
                   for opt in self.security_opt)

    @property
    def service_port(self) -> Optional[int]:
        """The port peers connect to: explicit readiness port, then first exposed/published port."""
        if self.readiness_port:
            return self.readiness_port
        if self.expose_ports:
            return self.expose_ports[0]
        if self.ports:
            return next(iter(self.ports))
        return None
