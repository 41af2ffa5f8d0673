"""
Models for hardening overlays.
"""
from typing import List, Optional
from pydantic import BaseModel

from .service_definition import RestartPolicy


class HardeningProfile(BaseModel):
    """
    Additive runtime restrictions layered over a topology at assembly time.
    Unset fields leave the base untouched.
    """
    name: str = "hardened"
    drop_capabilities: List[str] = []
    read_only_root: bool = False
    no_new_privileges: bool = False
    restart_policy: Optional[RestartPolicy] = None
    user: Optional[str] = None
    tmpfs: List[str] = []
    services: List[str] = []  # empty means every service

    @property
    def is_empty(self) -> bool:
        return not (self.drop_capabilities or self.read_only_root or self.no_new_privileges
                    or self.restart_policy or self.user or self.tmpfs)
