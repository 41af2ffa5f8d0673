"""
Models for overall stack topology.
"""
from typing import Dict, List
from pydantic import BaseModel
from .service_definition import ServiceDefinition


class Topology(BaseModel):
    """
    Complete description of a multi-service stack.
    Equivalent to a parsed docker-compose.yml file.
    """
    name: str = "stack"
    services: Dict[str, ServiceDefinition]
    networks: List[str] = []
    volumes: List[str] = []

    def networks_of(self, service: str) -> List[str]:
        """Networks a service joins; services that name none join the default network."""
        declared = self.services[service].networks
        return list(declared) if declared else [self.default_network]

    @property
    def default_network(self) -> str:
        return f"{self.name}_default"
