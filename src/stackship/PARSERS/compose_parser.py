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
Parsers for topology files (Docker Compose YAML syntax).
"""
import logging
import os
import shlex
import yaml
from typing import Dict, Any, List, Optional
from ..MODELS.topology import Topology
from ..MODELS.service_definition import (
    ServiceDefinition, RestartPolicy, RestartPolicyCondition, VolumeMount,
)
from ..UTILS.string_interpolation import EnvironmentInterpolator

logger = logging.getLogger(__name__)


class ComposeParser:
    """
    Parser for docker-compose.yml style topology files.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: A dictionary of environment variables for interpolation.
        """
        self.context = dict(os.environ) if context is None else context

    def parse(self, compose_path: str) -> Topology:
        """
        Parses a topology file from a path. The stack is named after the
        file's directory unless the file sets ``name``.

        :param compose_path: Path to the compose file.
        :return: Parsed topology.
        """
        with open(compose_path, 'r') as f:
            content = f.read()
        default_name = os.path.basename(os.path.dirname(os.path.abspath(compose_path)))
        return self.parse_from_string(content, default_name=default_name)

    def parse_from_string(self, content: str, default_name: str = "stack") -> Topology:
        """
        Parses a topology file from a string.

        :param content: YAML content of the compose file.
        :param default_name: Stack name when the file does not set one.
        :return: Parsed topology.
        """
        try:
            content = EnvironmentInterpolator.interpolate(content, self.context, strict=True)
        except KeyError as e:
            # Unset ${VAR} resolves to an empty string, as compose does
            logger.warning("Interpolation: %s, substituting empty values", e)
            content = EnvironmentInterpolator.interpolate(content, self.context, strict=False)

        data = yaml.safe_load(content) or {}
        if not isinstance(data, dict):
            raise ValueError("a topology file must be a mapping with a 'services' section")
        if not isinstance(data.get('services') or {}, dict):
            raise ValueError("'services' must map service names to definitions")

        services = {}
        for name, spec in (data.get('services') or {}).items():
            if spec is not None and not isinstance(spec, dict):
                raise ValueError(f"Service {name}: definition must be a mapping")
            services[str(name)] = self._parse_service(str(name), spec or {})

        return Topology(
            name=self._normalize_name(str(data.get('name') or default_name)),
            services=services,
            networks=self._to_list(data.get('networks') or []),
            volumes=self._to_list(data.get('volumes') or []),
        )

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> ServiceDefinition:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceDefinition instance.
        """
        restart_policy = RestartPolicy(condition=RestartPolicyCondition.parse(spec.get('restart')))

        # Volumes
        volumes = []
        for v in spec.get('volumes', []):
            if isinstance(v, str):
                parts = v.split(':')
                if len(parts) == 2:
                    volumes.append(VolumeMount(source=parts[0], target=parts[1]))
                elif len(parts) == 3:
                    volumes.append(VolumeMount(source=parts[0], target=parts[1], read_only=(parts[2] == 'ro')))
                else:
                    raise ValueError(f"Service {name}: anonymous volume '{v}' is not supported")
            elif isinstance(v, dict):
                volumes.append(VolumeMount(source=v['source'], target=v['target'],
                                           read_only=v.get('read_only', False)))

        # Ports
        ports = {}
        for p in spec.get('ports', []):
            if isinstance(p, int):
                ports[p] = None
            elif isinstance(p, str):
                parts = p.split(':')
                if len(parts) == 2:
                    ports[int(parts[1])] = int(parts[0])
                elif len(parts) == 3:
                    # ip:host:container, the bind ip is not modelled
                    ports[int(parts[2])] = int(parts[1])
                else:
                    ports[int(parts[0])] = None
            elif isinstance(p, dict):
                ports[int(p['target'])] = p.get('published')

        # Environment
        environment = {}
        env_spec = spec.get('environment', [])
        if isinstance(env_spec, list):
            for e in env_spec:
                if '=' in e:
                    k, v = e.split('=', 1)
                    environment[k] = v
        elif isinstance(env_spec, dict):
            environment = {k: ("" if v is None else str(v)) for k, v in env_spec.items()}

        # Networks, either a list or a mapping carrying aliases
        networks: List[str] = []
        aliases: List[str] = []
        net_spec = spec.get('networks', [])
        if isinstance(net_spec, dict):
            for net, opts in net_spec.items():
                networks.append(net)
                aliases.extend((opts or {}).get('aliases', []))
        else:
            networks = list(net_spec)

        depends_on = spec.get('depends_on', [])
        if isinstance(depends_on, dict):
            depends_on = list(depends_on.keys())

        return ServiceDefinition(
            name=name,
            image_name=spec.get('image', ''),
            cmd=self._to_argv(spec.get('command')),
            entrypoint=self._to_argv(spec.get('entrypoint')),
            working_dir=spec.get('working_dir'),
            environment=environment,
            environment_files=self._to_list(spec.get('env_file', [])),
            ports=ports,
            expose_ports=[int(p) for p in spec.get('expose', [])],
            networks=networks,
            aliases=aliases,
            volumes=volumes,
            tmpfs=self._to_list(spec.get('tmpfs', [])),
            writable_paths=self._to_list(spec.get('x-writable-paths', [])),
            restart_policy=restart_policy,
            depends_on=list(depends_on),
            readiness_port=spec.get('x-readiness-port'),
            user=str(spec['user']) if spec.get('user') is not None else None,
            cap_drop=self._to_list(spec.get('cap_drop', [])),
            read_only=bool(spec.get('read_only', False)),
            security_opt=self._to_list(spec.get('security_opt', [])),
            labels=spec.get('labels', {}) if isinstance(spec.get('labels'), dict) else {},
        )

    def _normalize_name(self, name: str) -> str:
        return "".join(c for c in name.lower() if c.isalnum() or c in "-_") or "stack"

    def _to_argv(self, val: Any) -> List[str]:
        """Commands in shell form are split the way a shell would."""
        if isinstance(val, str):
            return shlex.split(val)
        return self._to_list(val)

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return [str(v) for v in val]
