"""
Models for named persistent storage.
"""
from typing import Dict, Optional
from pydantic import BaseModel


class VolumeBinding(BaseModel):
    """
    A volume mounted into a running instance.
    """
    instance: str
    mount_path: str
    pid: Optional[int] = None


class NamedVolume(BaseModel):
    """
    Persistent storage whose lifecycle is independent of any instance using it.
    Removing an instance never removes its volumes.
    """
    name: str
    path: str
    mount_path: Optional[str] = None
    created_at: str = ""
    labels: Dict[str, str] = {}
    binding: Optional[VolumeBinding] = None

    @property
    def in_use(self) -> bool:
        return self.binding is not None
