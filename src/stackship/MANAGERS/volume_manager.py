"""
Volume management: named volumes whose lifecycle is independent of the
instances that mount them.

Stopping or removing an instance only unbinds its volumes. Data is removed by
``delete_volume`` alone, which needs explicit confirmation and refuses while a
running instance still has the volume bound.
"""
import json
import logging
import os
import re
import shutil
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Union

import psutil

from ..MODELS.named_volume import NamedVolume, VolumeBinding
from ..REGISTRY.image_reference import ImageReference
from ..errors import (
    ConfigurationError, ConfirmationRequiredError, MountPathChangedError, VolumeInUseError,
)

logger = logging.getLogger(__name__)

VOLUME_NAME = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')

# (repository, first major version, data path); later rows win for higher versions
DATA_PATHS = [
    ("postgres", 0, "/var/lib/postgresql/data"),
    ("postgres", 18, "/var/lib/postgresql"),
    ("mysql", 0, "/var/lib/mysql"),
    ("mariadb", 0, "/var/lib/mysql"),
    ("mongo", 0, "/data/db"),
    ("redis", 0, "/data"),
]
CURRENT_MAJOR = {"postgres": 18}


def recommended_mount_path(image_name: str) -> Optional[str]:
    """
    The data path a database image expects its volume at, by engine and major version.
    ``latest`` and untagged references count as the current major version.

    :return: The path, or None for images this table does not know.
    """
    try:
        ref = ImageReference.parse(image_name)
    except ValueError:
        return None
    repo = ref.repository.split("/")[-1]
    match = re.match(r'^(\d+)', ref.tag)
    major = int(match.group(1)) if match else CURRENT_MAJOR.get(repo, 0)

    path = None
    for name, first_major, data_path in DATA_PATHS:
        if name == repo and major >= first_major:
            path = data_path
    return path


class VolumeManager:
    """
    Creates, binds and deletes named volumes under a volumes root, with the
    registry persisted in ``index.json``.
    """
    def __init__(self, base_dir: str = ".", volumes_root: str = ".stackship/volumes"):
        """
        Initializes the volume manager.

        :param base_dir: The base directory for resolving relative paths.
        :param volumes_root: The root directory for volume storage.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.volumes_root = os.path.abspath(os.path.join(base_dir, volumes_root))
        self.index_file = os.path.join(self.volumes_root, "index.json")
        os.makedirs(self.volumes_root, exist_ok=True)
        self._lock = threading.RLock()
        self._volumes: Dict[str, NamedVolume] = self._load_index()
        # Instances bound by this manager whose process has not started yet
        self._starting: Set[str] = set()

    def _load_index(self) -> Dict[str, NamedVolume]:
        if not os.path.exists(self.index_file):
            return {}
        with open(self.index_file, 'r') as f:
            data = json.load(f)
        return {name: NamedVolume(**v) for name, v in data.get("volumes", {}).items()}

    def _save_index(self) -> None:
        tmp = self.index_file + ".tmp"
        with open(tmp, 'w') as f:
            json.dump({"volumes": {n: v.model_dump() for n, v in self._volumes.items()}}, f, indent=2)
        os.replace(tmp, self.index_file)

    def _name(self, volume: Union[str, NamedVolume]) -> str:
        return volume.name if isinstance(volume, NamedVolume) else volume

    def create_volume(self, name: str, labels: Optional[Dict[str, str]] = None) -> NamedVolume:
        """
        Creates a named volume. Creating an existing name returns it unchanged.

        :param name: Volume name.
        :param labels: Metadata recorded on first creation.
        """
        if not VOLUME_NAME.match(name):
            raise ConfigurationError(f"invalid volume name '{name}'", step="volume")
        with self._lock:
            existing = self._volumes.get(name)
            if existing is not None:
                return existing
            path = os.path.join(self.volumes_root, name, "_data")
            os.makedirs(path, exist_ok=True)
            volume = NamedVolume(
                name=name,
                path=path,
                created_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                labels=dict(labels or {}),
            )
            self._volumes[name] = volume
            self._save_index()
            logger.info("Created volume %s", name)
            return volume

    def get_volume(self, name: str) -> Optional[NamedVolume]:
        with self._lock:
            return self._volumes.get(name)

    def list_volumes(self) -> List[NamedVolume]:
        with self._lock:
            return sorted(self._volumes.values(), key=lambda v: v.name)

    def _running_binding(self, volume: NamedVolume) -> Optional[VolumeBinding]:
        """
        The volume's binding if its instance is still alive. Bindings left by
        a process that has since exited, or by a start that never produced a
        process, are cleared.
        """
        binding = volume.binding
        if binding is None:
            return None
        if binding.pid is None:
            if binding.instance in self._starting:
                return binding
            alive = False
        else:
            alive = self._pid_alive(binding.pid)
        if alive:
            return binding
        logger.info("Clearing stale binding of %s to %s", volume.name, binding.instance)
        volume.binding = None
        self._save_index()
        return None

    @staticmethod
    def _pid_alive(pid: int) -> bool:
        try:
            return psutil.pid_exists(pid) and psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False

    def bind(self, volume: Union[str, NamedVolume], instance: str, mount_path: str,
             pid: Optional[int] = None) -> NamedVolume:
        """
        Binds a volume to an instance at ``mount_path``.

        :param volume: Volume or volume name; it must already exist.
        :param instance: Name of the instance mounting it.
        :param mount_path: Path inside the instance.
        :param pid: Process id of the instance, once known.
        :raises MountPathChangedError: If the volume was last mounted at a different path.
        :raises VolumeInUseError: If another running instance has it bound.
        """
        name = self._name(volume)
        with self._lock:
            vol = self._volumes.get(name)
            if vol is None:
                raise ConfigurationError(f"volume '{name}' does not exist; create it first", step=f"volume:{name}")
            current = self._running_binding(vol)
            if current is not None and current.instance != instance:
                raise VolumeInUseError(name, current.instance)
            if vol.mount_path and vol.mount_path != mount_path:
                raise MountPathChangedError(
                    f"volume '{name}' holds data laid out for {vol.mount_path}, not {mount_path}; "
                    f"run an explicit migration before remounting it",
                    step=f"volume:{name}",
                )
            vol.mount_path = mount_path
            vol.binding = VolumeBinding(instance=instance, mount_path=mount_path, pid=pid)
            if pid is None:
                self._starting.add(instance)
            else:
                self._starting.discard(instance)
            self._save_index()
            return vol

    def set_pid(self, instance: str, pid: int) -> None:
        """Records the process id of an instance on every volume it has bound."""
        with self._lock:
            self._starting.discard(instance)
            for vol in self._volumes.values():
                if vol.binding and vol.binding.instance == instance:
                    vol.binding.pid = pid
            self._save_index()

    def unbind(self, instance: str) -> List[str]:
        """
        Releases every volume bound to ``instance``. The data stays.

        :return: Names of the volumes released.
        """
        released = []
        with self._lock:
            self._starting.discard(instance)
            for vol in self._volumes.values():
                if vol.binding and vol.binding.instance == instance:
                    vol.binding = None
                    released.append(vol.name)
            if released:
                self._save_index()
        return released

    def delete_volume(self, name: str, confirm: bool = False) -> bool:
        """
        Deletes a volume and its data.

        :param name: Volume name.
        :param confirm: Must be True; deletion is irreversible.
        :return: True if the volume existed.
        :raises ConfirmationRequiredError: Without ``confirm``.
        :raises VolumeInUseError: While a running instance has it bound.
        """
        if not confirm:
            raise ConfirmationRequiredError(
                f"deleting volume '{name}' destroys its data; confirm explicitly",
                step=f"volume:{name}",
            )
        with self._lock:
            vol = self._volumes.get(name)
            if vol is None:
                return False
            binding = self._running_binding(vol)
            if binding is not None:
                raise VolumeInUseError(name, binding.instance)
            shutil.rmtree(os.path.dirname(vol.path), ignore_errors=True)
            del self._volumes[name]
            self._save_index()
        logger.warning("Deleted volume %s", name)
        return True

    def migrate_mount_path(self, name: str, new_path: str) -> NamedVolume:
        """
        Explicitly moves a volume to a new data path, e.g. across a database major version.
        The volume must not be bound.
        """
        with self._lock:
            vol = self._volumes.get(name)
            if vol is None:
                raise ConfigurationError(f"volume '{name}' does not exist", step=f"volume:{name}")
            binding = self._running_binding(vol)
            if binding is not None:
                raise VolumeInUseError(name, binding.instance)
            logger.info("Volume %s: mount path %s -> %s", name, vol.mount_path, new_path)
            vol.mount_path = new_path
            self._save_index()
            return vol

    def mount(self, volume: Union[str, NamedVolume], rootfs: str, mount_path: str) -> str:
        """
        Exposes a volume's data inside an instance root by linking
        ``<rootfs>/<mount_path>`` to it.

        :return: The path of the link.
        """
        vol = self.get_volume(self._name(volume))
        if vol is None:
            raise ConfigurationError(f"volume '{self._name(volume)}' does not exist", step="mount")
        return self._link(vol.path, rootfs, mount_path)

    def mount_host_path(self, source: str, rootfs: str, mount_path: str) -> str:
        """Links a host directory into an instance root."""
        path = self.resolve_source(source)
        os.makedirs(path, exist_ok=True)
        return self._link(path, rootfs, mount_path)

    def _link(self, path: str, rootfs: str, mount_path: str) -> str:
        target = os.path.join(rootfs, mount_path.lstrip("/"))
        os.makedirs(os.path.dirname(target), exist_ok=True)
        if os.path.islink(target):
            if os.path.realpath(target) == os.path.realpath(path):
                return target
            os.unlink(target)
        elif os.path.isdir(target):
            # Content the image shipped at the mount point is shadowed by the mount
            shutil.rmtree(target)
        elif os.path.exists(target):
            os.remove(target)
        os.symlink(path, target, target_is_directory=True)
        return target

    def resolve_source(self, source: str) -> str:
        """
        Resolves a mount source: a bare name is a named volume, anything else a host path.

        :param source: The source path or volume name.
        :return: The absolute path to the source.
        """
        if not os.path.isabs(source) and not source.startswith('.'):
            return os.path.join(self.volumes_root, source, "_data")
        return os.path.abspath(os.path.join(self.base_dir, source))

    def get_volume_size(self, name: str) -> int:
        """Bytes stored in a volume."""
        vol = self.get_volume(name)
        if vol is None:
            return 0
        total = 0
        for root, _, files in os.walk(vol.path):
            for f in files:
                fp = os.path.join(root, f)
                if not os.path.islink(fp):
                    total += os.path.getsize(fp)
        return total
