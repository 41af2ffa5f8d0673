"""
Models for isolated virtual networks and their name resolution.
"""
from typing import Dict, Optional
from pydantic import BaseModel


class VirtualNetwork(BaseModel):
    """
    An isolated network. Members resolve each other by logical name; the
    lookup reads current membership on every call, so a recreated instance
    that keeps its name is reachable without touching its peers.
    """
    name: str
    subnet: str
    members: Dict[str, str] = {}   # logical name -> address
    aliases: Dict[str, str] = {}   # alias -> logical name

    def resolve(self, logical_name: str) -> Optional[str]:
        """
        Returns the current address for a member name or alias, or None.
        """
        target = self.aliases.get(logical_name, logical_name)
        return self.members.get(target)

    def has_member(self, logical_name: str) -> bool:
        return logical_name in self.members
