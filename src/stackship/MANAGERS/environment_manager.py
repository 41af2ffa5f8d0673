"""
Managers for resolving runtime configuration from defaults, override files and
the process environment, and for validating the database target it yields.
"""
import ipaddress
import logging
import os
from typing import Dict, Iterable, List, Mapping, Optional
from urllib.parse import urlsplit

from dotenv import dotenv_values

from ..MODELS.configuration_set import ConfigurationSet, ConfigurationSource
from ..errors import ConfigurationError
from ..settings import DatabaseVariables

logger = logging.getLogger(__name__)

LOOPBACK_NAMES = ("localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback")


def parse_connection_host(url: str) -> Optional[str]:
    """
    Extracts the host from a connection string: a URL (``jdbc:`` included)
    or a bare ``host[:port][/database]``. Key-value DSNs are not parsed.
    """
    url = url.strip()
    if url.startswith("jdbc:"):
        url = url[len("jdbc:"):]
    if "://" not in url:
        if not url or any(c in url for c in "=; "):
            return None
        url = "//" + url
    try:
        return urlsplit(url).hostname
    except ValueError:
        return None


def is_self_address(host: str, self_names: Iterable[str] = ()) -> bool:
    """
    True when ``host`` addresses the calling instance: a loopback or
    unspecified literal, a localhost name, or one of the caller's own names.
    """
    host = host.strip("[]").lower()
    if host in LOOPBACK_NAMES or host in {n.lower() for n in self_names}:
        return True
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return False
    return addr.is_loopback or addr.is_unspecified


class EnvironmentManager:
    """
    Manages the merging and resolution of configuration from multiple sources.
    """
    def __init__(self, base_dir: str = ".", db_vars: Optional[DatabaseVariables] = None):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to override files.
        :param db_vars: Names of the database variables the application reads.
        """
        self.base_dir = base_dir
        self.db_vars = db_vars or DatabaseVariables()

    def load_override_file(self, path: str, required: bool = False) -> Dict[str, str]:
        """
        Reads an override file in ``.env`` syntax.

        :param path: File path, relative to the base directory.
        :param required: Raise when the file does not exist instead of treating it as empty.
        """
        file_path = os.path.join(self.base_dir, path)
        if not os.path.exists(file_path):
            if required:
                raise ConfigurationError(f"override file {file_path} not found", step="environment")
            logger.debug("Override file %s not present, skipping", file_path)
            return {}
        return {k: ("" if v is None else v) for k, v in dotenv_values(file_path).items()}

    def resolve(self,
                base_defaults: Mapping[str, str],
                override_file: Optional[str] = None,
                process_env: Optional[Mapping[str, str]] = None,
                restrict_to_declared: bool = False,
                override_required: bool = False) -> ConfigurationSet:
        """
        Merges configuration key by key: process environment over override
        file over base defaults. A key set in a higher source replaces the
        lower value whole.

        :param base_defaults: Lowest-precedence values.
        :param override_file: Optional ``.env`` style file.
        :param process_env: Highest-precedence values, usually ``os.environ``.
        :param restrict_to_declared: Only take process variables for keys the lower sources declare.
        :param override_required: Fail when ``override_file`` is missing.
        :return: The merged configuration with per-key provenance.
        """
        sources = [ConfigurationSource(name="defaults", values=dict(base_defaults))]
        if override_file:
            sources.append(ConfigurationSource(
                name="override",
                path=override_file,
                values=self.load_override_file(override_file, required=override_required),
            ))

        return self._with_environment(sources, process_env, restrict_to_declared)

    def resolve_many(self, base_defaults: Mapping[str, str], override_files: List[str],
                     process_env: Optional[Mapping[str, str]] = None,
                     restrict_to_declared: bool = False) -> ConfigurationSet:
        """
        Like ``resolve`` with several override files; later files win over earlier ones.
        """
        sources = [ConfigurationSource(name="defaults", values=dict(base_defaults))]
        for path in override_files:
            sources.append(ConfigurationSource(name=f"override:{path}", path=path,
                                               values=self.load_override_file(path)))
        return self._with_environment(sources, process_env, restrict_to_declared)

    def _with_environment(self, sources: List[ConfigurationSource],
                          process_env: Optional[Mapping[str, str]],
                          restrict_to_declared: bool) -> ConfigurationSet:
        env = dict(process_env or {})
        if restrict_to_declared:
            declared = {k for s in sources for k in s.values}
            env = {k: v for k, v in env.items() if k in declared}
        sources.append(ConfigurationSource(name="environment", values=env))
        return self.merge(sources)

    def merge(self, sources: List[ConfigurationSource]) -> ConfigurationSet:
        """
        Merges sources given lowest precedence first.
        """
        values: Dict[str, str] = {}
        provenance: Dict[str, str] = {}
        for source in sources:
            for key, value in source.values.items():
                values[key] = value
                provenance[key] = source.name
        return ConfigurationSet(sources=sources, values=values, provenance=provenance)

    def check_database_target(self,
                              config: ConfigurationSet,
                              service_name: str,
                              database_service: str,
                              same_network: bool = True,
                              self_names: Iterable[str] = ()) -> Optional[str]:
        """
        Verifies neither the connection string nor the host variable points
        the caller at itself.

        Inside a shared network a loopback target reaches the calling
        instance, never the database, so it is rejected before any
        connection is attempted.

        :param config: Resolved configuration of the calling service.
        :param service_name: Name of the calling service.
        :param database_service: Logical name of the database service.
        :param same_network: Whether caller and database share a network.
        :param self_names: Other names (aliases) the caller answers to.
        :return: The database host found, if any.
        :raises ConfigurationError: If a host addresses the caller.
        """
        found = None
        url = config.get(self.db_vars.url)
        host_value = config.get(self.db_vars.host)
        targets = []
        if url:
            targets.append((self.db_vars.url, parse_connection_host(url)))
        if host_value:
            targets.append((self.db_vars.host, host_value.strip().strip("[]") or None))

        for variable, host in targets:
            if host is None:
                continue
            found = found or host
            if same_network and is_self_address(host, [service_name, *self_names]):
                raise ConfigurationError(
                    f"{variable} for service '{service_name}' points at '{host}', which is the "
                    f"'{service_name}' instance itself; use the database's logical service name "
                    f"'{database_service}' as the host instead",
                    step=f"environment:{service_name}",
                )
        return found

    def secret_keys(self) -> List[str]:
        return [self.db_vars.password]
