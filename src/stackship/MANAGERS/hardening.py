"""
Hardening overlays: additive runtime restrictions applied to a topology at
assembly time, without rebuilding images.

Applying a profile only ever tightens a service. Capabilities are dropped as a
union, a read-only root stays read-only, ``no-new-privileges`` is sticky, and a
service already running as a non-root user keeps its user. The restart policy
is the one setting a profile replaces outright.
"""
import logging
from typing import Any, Dict, List, Optional

import yaml

from ..MODELS.container_image import is_root_user
from ..MODELS.hardening_profile import HardeningProfile
from ..MODELS.service_definition import RestartPolicy, RestartPolicyCondition, ServiceDefinition
from ..MODELS.topology import Topology
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

NO_NEW_PRIVILEGES = "no-new-privileges:true"
DEFAULT_READ_ONLY_TMPFS = ["/tmp"]


def _union(base: List[str], extra: List[str]) -> List[str]:
    merged = list(base)
    for item in extra:
        if item not in merged:
            merged.append(item)
    return merged


def _runs_as_root(user: Optional[str]) -> bool:
    return user is None or is_root_user(user)


def _covered(path: str, mounts: List[str]) -> bool:
    path = path.rstrip("/") or "/"
    return any(path == m or path.startswith(m.rstrip("/") + "/") for m in mounts)


def harden_service(service: ServiceDefinition, profile: HardeningProfile) -> ServiceDefinition:
    """
    Returns a hardened copy of one service definition.

    :raises ConfigurationError: If a read-only root leaves a declared writable path unmounted.
    """
    hardened = service.model_copy(deep=True)

    hardened.cap_drop = _union(service.cap_drop, profile.drop_capabilities)
    hardened.read_only = service.read_only or profile.read_only_root

    if profile.no_new_privileges and not service.no_new_privileges:
        hardened.security_opt = service.security_opt + [NO_NEW_PRIVILEGES]

    if profile.user and _runs_as_root(service.user):
        if is_root_user(profile.user):
            raise ConfigurationError(f"hardening profile '{profile.name}' cannot set a root user",
                                     step=f"harden:{service.name}")
        hardened.user = profile.user

    tmpfs = _union(service.tmpfs, profile.tmpfs)
    if hardened.read_only:
        tmpfs = _union(tmpfs, DEFAULT_READ_ONLY_TMPFS)
    hardened.tmpfs = tmpfs

    if profile.restart_policy is not None:
        hardened.restart_policy = profile.restart_policy.model_copy()

    if hardened.read_only:
        writable = [v.target for v in hardened.volumes if not v.read_only] + hardened.tmpfs
        uncovered = [p for p in hardened.writable_paths if not _covered(p, writable)]
        if uncovered:
            raise ConfigurationError(
                f"service '{service.name}' has a read-only root but writes to {', '.join(uncovered)}; "
                f"mount a volume or tmpfs there",
                step=f"harden:{service.name}",
            )
    return hardened


def apply(topology: Topology, profile: HardeningProfile) -> Topology:
    """
    Layers ``profile`` over a topology. The input is not modified and an
    empty profile returns an equal topology.

    :param topology: Base topology.
    :param profile: Restrictions to add.
    :return: A new, hardened topology.
    """
    result = topology.model_copy(deep=True)
    if profile.is_empty:
        return result

    unknown = [s for s in profile.services if s not in topology.services]
    if unknown:
        raise ConfigurationError(f"hardening profile '{profile.name}' names unknown service(s): "
                                 f"{', '.join(unknown)}", step="harden")

    for name, service in topology.services.items():
        if profile.services and name not in profile.services:
            continue
        result.services[name] = harden_service(service, profile)
        logger.debug("Applied profile %s to %s", profile.name, name)
    return result


def _parse_restart(value: Any) -> Optional[RestartPolicy]:
    if value is None:
        return None
    if isinstance(value, dict):
        return RestartPolicy(
            condition=RestartPolicyCondition.parse(value.get("condition")),
            max_retries=int(value.get("max_retries", 0)),
            delay=float(value.get("delay", 0.0)),
        )
    return RestartPolicy(condition=RestartPolicyCondition.parse(value))


def profile_from_dict(data: Dict[str, Any], default_name: str = "hardened") -> HardeningProfile:
    """
    Builds a profile from its YAML form. Keys follow compose naming
    (``cap_drop``, ``read_only``, ``restart``) with the model field names accepted too.
    """
    def pick(*keys, default=None):
        for key in keys:
            if key in data:
                return data[key]
        return default

    try:
        return HardeningProfile(
            name=str(data.get("name") or default_name),
            drop_capabilities=[str(c).upper() for c in pick("cap_drop", "drop_capabilities", default=[])],
            read_only_root=bool(pick("read_only", "read_only_root", default=False)),
            no_new_privileges=bool(pick("no_new_privileges", default=False)),
            restart_policy=_parse_restart(pick("restart", "restart_policy")),
            user=str(data["user"]) if data.get("user") is not None else None,
            tmpfs=[str(t) for t in pick("tmpfs", default=[])],
            services=[str(s) for s in pick("services", default=[])],
        )
    except ValueError as e:
        raise ConfigurationError(f"invalid hardening profile: {e}", step="harden") from e


def load_profile(path: str) -> HardeningProfile:
    """
    Reads a hardening profile from a YAML file.

    :param path: Profile path.
    """
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: a hardening profile must be a mapping", step="harden")
    return profile_from_dict(data)


def _service_to_compose(service: ServiceDefinition) -> Dict[str, Any]:
    out: Dict[str, Any] = {"image": service.image_name}
    if service.entrypoint:
        out["entrypoint"] = service.entrypoint
    if service.cmd:
        out["command"] = service.cmd
    if service.working_dir:
        out["working_dir"] = service.working_dir
    if service.user:
        out["user"] = service.user
    if service.environment:
        out["environment"] = dict(service.environment)
    if service.environment_files:
        out["env_file"] = list(service.environment_files)
    if service.ports:
        out["ports"] = [f"{h}:{c}" if h else str(c) for c, h in service.ports.items()]
    if service.expose_ports:
        out["expose"] = list(service.expose_ports)
    if service.networks:
        if service.aliases:
            out["networks"] = {n: {"aliases": list(service.aliases)} for n in service.networks}
        else:
            out["networks"] = list(service.networks)
    if service.volumes:
        out["volumes"] = [f"{v.source}:{v.target}" + (":ro" if v.read_only else "") for v in service.volumes]
    if service.tmpfs:
        out["tmpfs"] = list(service.tmpfs)
    if service.depends_on:
        out["depends_on"] = list(service.depends_on)
    if service.restart_policy.condition != RestartPolicyCondition.NO:
        out["restart"] = service.restart_policy.condition.value
    if service.cap_drop:
        out["cap_drop"] = list(service.cap_drop)
    if service.read_only:
        out["read_only"] = True
    if service.security_opt:
        out["security_opt"] = list(service.security_opt)
    if service.readiness_port:
        out["x-readiness-port"] = service.readiness_port
    if service.writable_paths:
        out["x-writable-paths"] = list(service.writable_paths)
    if service.labels:
        out["labels"] = dict(service.labels)
    return out


def render_compose(topology: Topology) -> str:
    """
    Writes the effective topology back out in compose syntax.
    """
    doc: Dict[str, Any] = {
        "name": topology.name,
        "services": {name: _service_to_compose(s) for name, s in topology.services.items()},
    }
    if topology.networks:
        doc["networks"] = {n: {} for n in topology.networks}
    if topology.volumes:
        doc["volumes"] = {v: {} for v in topology.volumes}
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)
