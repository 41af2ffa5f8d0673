# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Orchestration for a stack of service instances: networks, volumes,
configuration, start order and readiness between dependents.

Instances run as native processes. Each gets its own root directory (the
extracted image), its named volumes linked into that root, a generated hosts
table and discovery variables for the peers it shares a network with.
"""
import json
import logging
import os
import shutil
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional

from ..MODELS.configuration_set import ConfigurationSet
from ..MODELS.container_image import Image
from ..MODELS.topology import Topology
from ..REGISTRY.image_store import ImageStore
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..UTILS.port_finder import accepts_connections
from ..errors import StackshipError
from ..settings import Settings
from .environment_manager import EnvironmentManager
from .network_manager import NetworkManager
from .process_manager import ProcessManager
from .readiness import Probe, wait_until_ready
from .supervisor import Supervisor
from .volume_manager import VolumeManager, recommended_mount_path

logger = logging.getLogger(__name__)

PASSTHROUGH_ENV = ("PATH", "LANG", "LC_ALL", "TZ", "JAVA_HOME")


def local_probe(address: str, port: int) -> bool:
    """
    Native instances share the host's network stack, so a dependency is
    probed on the loopback interface at the port it actually listens on.
    """
    return accepts_connections("127.0.0.1", port)


class ServiceOrchestrator:
    """
    Orchestrates the instances of a topology based on their dependencies.
    """
    def __init__(self,
                 topology: Topology,
                 base_dir: str = ".",
                 settings: Optional[Settings] = None,
                 store: Optional[ImageStore] = None,
                 process_env: Optional[Mapping[str, str]] = None,
                 probe: Probe = local_probe,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initializes the orchestrator.

        :param topology: The stack to run.
        :param base_dir: Project directory; override files are relative to it.
        :param settings: Project settings.
        :param store: Image store holding locally built images.
        :param process_env: Highest-precedence configuration, ``os.environ`` by default.
        :param probe: Readiness check, ``probe(address, port) -> bool``.
        :param sleep: Sleep used between readiness attempts.
        """
        self.topology = topology
        self.base_dir = os.path.abspath(base_dir)
        self.settings = settings or Settings.load(base_dir)
        state_dir = self.settings.state_dir
        self.run_dir = os.path.join(state_dir, "run")
        self.log_dir = os.path.join(state_dir, "logs")
        self.state_file = os.path.join(self.run_dir, "state.json")

        self.store = store or ImageStore(os.path.join(state_dir, "images"))
        self.network_manager = NetworkManager(self.settings.default_subnet)
        self.volume_manager = VolumeManager(self.base_dir, os.path.join(state_dir, "volumes"))
        self.env_manager = EnvironmentManager(self.base_dir, self.settings.db_vars)
        self.resolver = DependencyResolver()
        self.process_env = dict(os.environ) if process_env is None else dict(process_env)
        self.probe = probe
        self.sleep = sleep

        self.managers: Dict[str, ProcessManager] = {}
        self.configs: Dict[str, ConfigurationSet] = {}
        self.supervisor: Optional[Supervisor] = None
        self._images: Dict[str, Optional[Image]] = {}

    # Preparation

    def _image_for(self, name: str) -> Optional[Image]:
        if name not in self._images:
            image_name = self.topology.services[name].image_name
            try:
                self._images[name] = self.store.get(image_name) if image_name else None
            except ValueError:
                self._images[name] = None
        return self._images[name]

    def _database_peer(self, name: str) -> Optional[str]:
        """
        The database service sharing a network with ``name``, judged by its
        image. Declared dependencies are preferred.
        """
        own_networks = set(self.topology.networks_of(name))
        svc = self.topology.services[name]
        candidates = list(svc.depends_on) + sorted(n for n in self.topology.services if n not in svc.depends_on)
        for other in candidates:
            if other == name or other not in self.topology.services:
                continue
            if not recommended_mount_path(self.topology.services[other].image_name):
                continue
            if own_networks & set(self.topology.networks_of(other)):
                return other
        return None

    def resolve_config(self, name: str) -> ConfigurationSet:
        """
        Resolves and validates one service's configuration: image defaults and
        declared environment, then its override files, then the process environment.

        :raises ConfigurationError: If its database target points back at itself.
        """
        svc = self.topology.services[name]
        image = self._image_for(name)
        defaults = dict(image.env) if image else {}
        defaults.update(svc.environment)

        config = self.env_manager.resolve_many(defaults, svc.environment_files,
                                               process_env=self.process_env,
                                               restrict_to_declared=True)
        database = self._database_peer(name)
        if database:
            self.env_manager.check_database_target(config, name, database, self_names=svc.aliases)
        self.configs[name] = config
        return config

    def _create_networks(self) -> None:
        for name in self.topology.services:
            for net in self.topology.networks_of(name):
                self.network_manager.create_network(net)

    def _declared_volumes(self) -> List[str]:
        declared = set(self.topology.volumes)
        for svc in self.topology.services.values():
            declared.update(m.source for m in svc.volumes if m.is_named)
        return sorted(declared)

    def _create_volumes(self) -> None:
        for name in self._declared_volumes():
            self.volume_manager.create_volume(name, labels={"stackship.stack": self.topology.name})

    # Lifecycle

    def up(self, supervise: bool = False) -> List[str]:
        """
        Starts all instances in dependency order. Configuration of every
        service is validated and host ports are reserved before anything starts.
        A failure stops whatever was already started; volumes are kept.

        :param supervise: Also start restart supervision.
        :return: Instance names in start order.
        """
        order = self.resolver.resolve_order(self.topology)
        logger.info("Starting services in order: %s", ", ".join(order))

        for name in order:
            self.resolve_config(name)
        self._create_networks()
        self._create_volumes()

        started = []
        current = None
        try:
            for name in order:
                self.network_manager.allocate_ports(self.topology.services[name])
            for name in order:
                current = name
                self._start_instance(name)
                started.append(name)
        except (StackshipError, OSError):
            logger.error("Start-up failed after %s; stopping started instances",
                         ", ".join(started) or "no instances")
            if current is not None and current not in started:
                # Attached with volumes bound, possibly without a process
                self._stop_instance(current)
            for name in reversed(started):
                self._stop_instance(name)
            for name in order:
                self.network_manager.release_ports(name)
            self._save_state()
            raise

        if supervise:
            self.supervisor = Supervisor(self.managers, on_restart=self._on_restart)
            self.supervisor.start()
        return order

    def _instance_dir(self, name: str) -> str:
        return os.path.join(self.run_dir, name)

    def _start_instance(self, name: str) -> int:
        svc = self.topology.services[name]

        for net in self.topology.networks_of(name):
            self.network_manager.attach(name, net, aliases=svc.aliases)

        for dep in svc.depends_on:
            port = self.topology.services[dep].service_port
            if not port:
                continue
            reachable = self.network_manager.get_host_port(dep, port) or port
            wait_until_ready(
                self.network_manager, name, dep, reachable,
                attempts=self.settings.readiness_attempts,
                wait=self.settings.readiness_backoff,
                max_wait=self.settings.readiness_max_wait,
                probe=self.probe,
                sleep=self.sleep,
            )

        image = self._image_for(name)
        rootfs = os.path.join(self._instance_dir(name), "rootfs")
        if image is not None:
            self.store.extract(image, rootfs)
        else:
            os.makedirs(rootfs, exist_ok=True)

        expected = recommended_mount_path(svc.image_name)
        for mount in svc.volumes:
            if mount.is_named:
                if expected and mount.target != expected:
                    logger.warning("%s mounts %s at %s; %s keeps its data in %s",
                                   name, mount.source, mount.target, svc.image_name, expected)
                self.volume_manager.bind(mount.source, name, mount.target)
                self.volume_manager.mount(mount.source, rootfs, mount.target)
            else:
                self.volume_manager.mount_host_path(mount.source, rootfs, mount.target)
        for path in svc.tmpfs:
            os.makedirs(os.path.join(rootfs, path.split(":")[0].lstrip("/")), exist_ok=True)

        self._write_hosts_files()

        config = self.configs.get(name) or self.resolve_config(name)
        env = {k: self.process_env[k] for k in PASSTHROUGH_ENV if k in self.process_env}
        env.update(config.as_env())
        peers = {n: s.service_port for n, s in self.topology.services.items()}
        env.update(self.network_manager.get_service_discovery_env(name, peers))
        env["HOSTNAME"] = name
        env["STACKSHIP_HOSTS_FILE"] = os.path.join(self._instance_dir(name), "hosts")
        env["STACKSHIP_ROOTFS"] = rootfs

        manager = ProcessManager(name, svc, rootfs, os.path.join(self.log_dir, f"{name}.log"), image)
        pid = manager.start(env)
        self.managers[name] = manager
        self.volume_manager.set_pid(name, pid)
        self._save_state()
        logger.info("Started %s (pid %d)", name, pid)
        return pid

    def _write_hosts_files(self) -> None:
        for network in self.network_manager.networks.values():
            for member in network.members:
                path = os.path.join(self._instance_dir(member), "hosts")
                os.makedirs(os.path.dirname(path), exist_ok=True)
                with open(path, 'w') as f:
                    f.write(self.network_manager.generate_hosts_file_content(member))

    def _stop_instance(self, name: str) -> None:
        manager = self.managers.pop(name, None)
        if manager is not None:
            manager.stop()
        self.network_manager.detach(name)
        self.network_manager.release_ports(name)
        released = self.volume_manager.unbind(name)
        if released:
            logger.info("Released volumes of %s: %s (data kept)", name, ", ".join(released))

    def _adopt_from_state(self) -> None:
        """Takes over instances a previous invocation started."""
        for name, entry in self._load_state().get("instances", {}).items():
            if name in self.managers or name not in self.topology.services:
                continue
            manager = ProcessManager(name, self.topology.services[name], entry.get("rootfs", ""),
                                     os.path.join(self.log_dir, f"{name}.log"))
            if entry.get("pid") and manager.adopt(entry["pid"]):
                self.managers[name] = manager

    def down(self, purge_volumes: bool = False) -> List[str]:
        """
        Stops all instances in reverse dependency order. Volumes are unbound
        and kept unless ``purge_volumes`` is set.

        :param purge_volumes: Also delete the stack's named volumes.
        :return: Names of the instances stopped.
        """
        if self.supervisor:
            self.supervisor.stop()
            self.supervisor = None
        self._adopt_from_state()

        stopped = []
        for name in self.resolver.shutdown_order(self.topology):
            if name in self.managers:
                logger.info("Stopping service: %s", name)
                stopped.append(name)
            self._stop_instance(name)

        for net in list(self.network_manager.networks):
            self.network_manager.remove_network(net)
        self.clean_run_dir()
        self._save_state()

        if purge_volumes:
            for vol in self._declared_volumes():
                self.volume_manager.delete_volume(vol, confirm=True)
        return stopped

    def recreate(self, name: str) -> int:
        """
        Replaces one instance, keeping its logical name and volumes. Peers
        resolve the name afresh and reach the new instance.

        :return: The new process id.
        """
        if name not in self.topology.services:
            raise KeyError(f"Unknown service {name}")
        self._adopt_from_state()
        self._stop_instance(name)
        self._create_networks()
        self._images.pop(name, None)
        self.resolve_config(name)
        self.network_manager.allocate_ports(self.topology.services[name])
        pid = self._start_instance(name)
        if self.supervisor:
            self.supervisor.reset(name)
        return pid

    def ps(self) -> Dict[str, str]:
        """
        Returns the status of every instance, including ones a previous invocation started.

        :return: Instance names and their statuses.
        """
        self._adopt_from_state()
        status = {}
        for name in self.topology.services:
            manager = self.managers.get(name)
            status[name] = manager.status() if manager else "stopped"
        return status

    def _on_restart(self, name: str, pid: int) -> None:
        self.volume_manager.set_pid(name, pid)
        self._save_state()

    # State

    def _load_state(self) -> Dict:
        if not os.path.exists(self.state_file):
            return {}
        with open(self.state_file, 'r') as f:
            return json.load(f)

    def _save_state(self) -> None:
        os.makedirs(self.run_dir, exist_ok=True)
        instances = {}
        for name, manager in self.managers.items():
            instances[name] = {
                "pid": manager.pid,
                "rootfs": manager.rootfs,
                "ports": {str(c): h for c, h in self.network_manager.service_ports.get(name, {}).items()},
                "addresses": {n.name: n.members[name] for n in self.network_manager.networks_of(name)},
                "updated": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            }
        tmp = self.state_file + ".tmp"
        with open(tmp, 'w') as f:
            json.dump({"stack": self.topology.name, "instances": instances}, f, indent=2)
        os.replace(tmp, self.state_file)

    def clean_run_dir(self) -> None:
        """Removes per-instance runtime directories of stopped instances."""
        for name in self.topology.services:
            if name not in self.managers:
                shutil.rmtree(self._instance_dir(name), ignore_errors=True)
