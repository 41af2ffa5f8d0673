"""
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import List

from ..MODELS.topology import Topology
from ..errors import ConfigurationError


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.
    """
    def resolve_order(self, topology: Topology) -> List[str]:
        """
        Determines the correct order to start services using topological sort.

        :param topology: The stack topology.
        :return: Service names in the order they should be started.
        :raises ConfigurationError: On a circular dependency or a dependency on an undefined service.
        """
        services = topology.services
        for name, svc in services.items():
            missing = [d for d in svc.depends_on if d not in services]
            if missing:
                raise ConfigurationError(f"service '{name}' depends on undefined service(s): {', '.join(missing)}",
                                         step=f"depends_on:{name}")

        ordered = []
        visited = set()
        processing: List[str] = []

        def visit(name):
            """
            Recursive function for topological sort.
            """
            if name in processing:
                cycle = processing[processing.index(name):] + [name]
                raise ConfigurationError(f"circular dependency: {' -> '.join(cycle)}", step="depends_on")
            if name not in visited:
                processing.append(name)
                for dep in services[name].depends_on:
                    visit(dep)
                processing.pop()
                visited.add(name)
                ordered.append(name)

        for name in services:
            visit(name)

        return ordered

    def shutdown_order(self, topology: Topology) -> List[str]:
        return list(reversed(self.resolve_order(topology)))
