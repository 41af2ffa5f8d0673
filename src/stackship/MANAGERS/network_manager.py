"""
Network management for service instances: isolated virtual networks, name
resolution scoped to those networks, and published host ports.
"""
import ipaddress
import logging
import threading
from typing import Dict, List, Optional, Iterable

import psutil
from jinja2 import Template

from ..UTILS.port_finder import get_free_port, is_port_free, suggest_port
from ..MODELS.service_definition import ServiceDefinition
from ..MODELS.virtual_network import VirtualNetwork
from ..errors import NameResolutionError, PortConflictError, ResourceConflictError

logger = logging.getLogger(__name__)

HOSTS_TEMPLATE = Template(
    "127.0.0.1\tlocalhost\n"
    "::1\tlocalhost ip6-localhost ip6-loopback\n"
    "{% for address, names in entries %}{{ address }}\t{{ names | join(' ') }}\n{% endfor %}"
)


def port_holder(port: int) -> Optional[str]:
    """
    Describes the local process listening on ``port``, when the platform lets us see it.
    """
    try:
        for conn in psutil.net_connections(kind="inet"):
            if conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN:
                if conn.pid:
                    try:
                        return f"{psutil.Process(conn.pid).name()} (pid {conn.pid})"
                    except psutil.Error:
                        return f"pid {conn.pid}"
                return None
    except (psutil.AccessDenied, PermissionError):
        return None
    return None


class NetworkManager:
    """
    Manages virtual networks, instance attachment and published port mappings.
    """
    def __init__(self, default_subnet: str = "172.28.0.0/16"):
        """
        Initializes the network manager.

        :param default_subnet: Address pool; each network without an explicit subnet gets a /24 of it.
        """
        self.pool = ipaddress.ip_network(default_subnet)
        self.networks: Dict[str, VirtualNetwork] = {}
        self.service_ports: Dict[str, Dict[int, int]] = {}  # service_name -> {container_port: host_port}
        self.host_port_to_service: Dict[int, str] = {}
        self._lock = threading.RLock()

    def create_network(self, name: str, subnet: Optional[str] = None) -> VirtualNetwork:
        """
        Creates a network. Creating an existing name returns the existing network.

        :param name: Network name.
        :param subnet: CIDR to allocate member addresses from.
        """
        with self._lock:
            if name in self.networks:
                return self.networks[name]
            network = VirtualNetwork(name=name, subnet=subnet or self._next_subnet())
            self.networks[name] = network
            logger.info("Created network %s (%s)", name, network.subnet)
            return network

    def _next_subnet(self) -> str:
        used = {ipaddress.ip_network(n.subnet) for n in self.networks.values()}
        prefix = max(self.pool.prefixlen, min(24, self.pool.max_prefixlen))
        for candidate in self.pool.subnets(new_prefix=prefix):
            if not any(candidate.overlaps(u) for u in used):
                return str(candidate)
        raise ResourceConflictError(f"address pool {self.pool} is exhausted", step="network")

    def remove_network(self, name: str) -> bool:
        """
        Removes a network. Refused while instances are attached.

        :return: True if the network existed.
        """
        with self._lock:
            network = self.networks.get(name)
            if network is None:
                return False
            if network.members:
                raise ResourceConflictError(
                    f"network '{name}' still has attached instances: {', '.join(sorted(network.members))}",
                    step=f"network:{name}",
                )
            del self.networks[name]
            return True

    def attach(self, instance: str, network_name: str, aliases: Iterable[str] = ()) -> str:
        """
        Attaches an instance to a network and returns its address there.
        Name resolution works as soon as this returns; readiness is a separate concern.
        """
        with self._lock:
            network = self.networks.get(network_name)
            if network is None:
                raise NameResolutionError(f"network '{network_name}' does not exist", step=f"attach:{instance}")
            if instance in network.members:
                return network.members[instance]

            taken = set(network.members.values())
            subnet = ipaddress.ip_network(network.subnet)
            hosts = subnet.hosts()
            next(hosts, None)  # first host is the gateway
            for candidate in hosts:
                if str(candidate) not in taken:
                    address = str(candidate)
                    break
            else:
                raise ResourceConflictError(f"network '{network_name}' has no free addresses",
                                            step=f"attach:{instance}")

            for alias in aliases:
                owner = network.aliases.get(alias, alias if alias in network.members else None)
                if owner and owner != instance:
                    raise ResourceConflictError(f"alias '{alias}' is already used by '{owner}' on {network_name}",
                                                step=f"attach:{instance}")

            network.members[instance] = address
            for alias in aliases:
                network.aliases[alias] = instance
            logger.debug("Attached %s to %s at %s", instance, network_name, address)
            return address

    def detach(self, instance: str, network_name: Optional[str] = None) -> None:
        """
        Detaches an instance from one network, or from all of them.
        """
        with self._lock:
            if network_name:
                network = self.networks.get(network_name)
                if network is None:
                    raise NameResolutionError(f"network '{network_name}' does not exist", step=f"detach:{instance}")
                targets = [network]
            else:
                targets = list(self.networks.values())
            for network in targets:
                network.members.pop(instance, None)
                for alias in [a for a, owner in network.aliases.items() if owner == instance]:
                    del network.aliases[alias]

    def networks_of(self, instance: str) -> List[VirtualNetwork]:
        with self._lock:
            return [n for n in self.networks.values() if instance in n.members]

    def resolve(self, caller: str, logical_name: str) -> str:
        """
        Resolves a logical name from the point of view of ``caller``. Only
        networks the caller is attached to are searched, and membership is
        read on every call.

        :raises NameResolutionError: If no shared network knows the name.
        """
        with self._lock:
            for network in sorted(self.networks_of(caller), key=lambda n: n.name):
                address = network.resolve(logical_name)
                if address is not None:
                    return address
        raise NameResolutionError(
            f"'{logical_name}' is not resolvable from '{caller}'; they share no network",
            step=f"resolve:{caller}",
        )

    def shares_network(self, a: str, b: str) -> bool:
        with self._lock:
            return any(n.has_member(a) and n.has_member(b) for n in self.networks.values())

    def allocate_ports(self, service_def: ServiceDefinition) -> Dict[int, int]:
        """
        Reserves host ports for a service's published ports.

        :param service_def: The service definition.
        :return: Mapping from container port to allocated host port.
        :raises PortConflictError: If a requested host port is already bound.
        """
        mappings: Dict[int, int] = {}
        with self._lock:
            for container_port, host_port in service_def.ports.items():
                if host_port is None:
                    allocated_port = get_free_port()
                    while allocated_port in self.host_port_to_service or allocated_port in mappings.values():
                        allocated_port = get_free_port()
                else:
                    owner = self.host_port_to_service.get(host_port)
                    if host_port in mappings.values():
                        owner = service_def.name
                    elif owner == service_def.name:
                        owner = None
                    if owner or (host_port not in self._held_by(service_def.name) and not is_port_free(host_port)):
                        holder = f"service '{owner}'" if owner else port_holder(host_port)
                        raise PortConflictError(host_port, service_def.name,
                                                suggestion=suggest_port(host_port), holder=holder)
                    allocated_port = host_port
                mappings[container_port] = allocated_port

            # Nothing is reserved unless every port was available
            for old_port in self.service_ports.pop(service_def.name, {}).values():
                self.host_port_to_service.pop(old_port, None)
            for allocated_port in mappings.values():
                self.host_port_to_service[allocated_port] = service_def.name
            self.service_ports[service_def.name] = mappings
        return mappings

    def _held_by(self, service_name: str) -> List[int]:
        return list(self.service_ports.get(service_name, {}).values())

    def release_ports(self, service_name: str) -> None:
        with self._lock:
            for host_port in self.service_ports.pop(service_name, {}).values():
                self.host_port_to_service.pop(host_port, None)

    def get_host_port(self, service_name: str, container_port: int) -> Optional[int]:
        """
        Returns the host port for a given service and container port.
        """
        return self.service_ports.get(service_name, {}).get(container_port)

    def get_service_discovery_env(self, caller: str, peers: Dict[str, Optional[int]]) -> Dict[str, str]:
        """
        Generates discovery variables for the peers ``caller`` can resolve.
        Example: DB_HOST=db, DB_ADDR=172.28.0.3, DB_PORT=5432
        """
        env = {}
        for name, port in peers.items():
            if name == caller or not self.shares_network(caller, name):
                continue
            prefix = name.upper().replace('-', '_')
            env[f"{prefix}_HOST"] = name
            env[f"{prefix}_ADDR"] = self.resolve(caller, name)
            if port:
                env[f"{prefix}_PORT"] = str(port)
        return env

    def generate_hosts_file_content(self, instance: str) -> str:
        """
        Renders a hosts table for ``instance``: its own entry plus every peer on a shared network.
        """
        entries: Dict[str, List[str]] = {}
        with self._lock:
            for network in sorted(self.networks_of(instance), key=lambda n: n.name):
                for member, address in sorted(network.members.items()):
                    names = entries.setdefault(address, [])
                    for name in [member] + sorted(a for a, o in network.aliases.items() if o == member):
                        if name not in names:
                            names.append(name)
        return HOSTS_TEMPLATE.render(entries=sorted(entries.items()))
