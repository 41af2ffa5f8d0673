"""
Models representing assembled runtime images.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict


def is_root_user(user: Optional[str]) -> bool:
    """True when a ``user[:group]`` spec names root, by name or by uid 0 in any spelling."""
    if user is None:
        return False
    name = user.split(":")[0].strip()
    if name.isdigit():
        return int(name) == 0
    return name == "root"


class RunIdentity(BaseModel):
    """
    The unprivileged account an image runs as.
    """
    model_config = ConfigDict(frozen=True)

    name: str = "app"
    uid: int = 10001
    gid: int = 10001
    home: str = "/nonexistent"
    shell: str = "/usr/sbin/nologin"

    def passwd_entry(self) -> str:
        return f"{self.name}:x:{self.uid}:{self.gid}::{self.home}:{self.shell}"


class Image(BaseModel):
    """
    An immutable, ordered sequence of layers plus run metadata.
    Built once by the build orchestrator and image assembler.
    """
    model_config = ConfigDict(frozen=True)

    digest: str
    base_image: str
    layers: List[str]

    entry_command: List[str] = []
    exposed_port: Optional[int] = None
    run_as_identity: RunIdentity = RunIdentity()
    working_dir: str = "/app"
    env: Dict[str, str] = {}

    artifacts: List[str] = []
    labels: Dict[str, str] = {}
    created: str = ""

    @property
    def short_id(self) -> str:
        return self.digest.split(":", 1)[-1][:12]
