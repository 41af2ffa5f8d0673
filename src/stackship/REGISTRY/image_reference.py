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
Image reference parsing for tags and aliases.
Parses references like 'api', 'api:1.4' or 'registry.local:5000/team/api:1.4'.
"""

import re
from typing import Optional
from dataclasses import dataclass, replace

TAG_PATTERN = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')
REPOSITORY_PATTERN = re.compile(r'^[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*$')


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference.

    Examples:
        - api -> api:latest
        - api:1.4 -> api:1.4
        - localhost:5000/team/api:1.4 -> registry localhost:5000, repository team/api
    """

    repository: str
    tag: str = "latest"
    registry: Optional[str] = None

    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string.

        Args:
            reference: Image reference string (e.g., 'api:1.4', 'team/api')

        Returns:
            Parsed ImageReference object.

        Raises:
            ValueError: On empty or malformed references.
        """
        if not reference:
            raise ValueError("Empty image reference")
        if "@" in reference:
            raise ValueError(f"Digest references are not taggable: {reference}")

        tag = cls.DEFAULT_TAG
        last_colon = reference.rfind(":")
        if last_colon != -1:
            after_colon = reference[last_colon + 1:]
            # A colon followed by a slash belongs to a registry port, not a tag
            if "/" not in after_colon:
                tag = after_colon
                reference = reference[:last_colon]

        registry = None
        parts = reference.split("/")
        if len(parts) > 1 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
            registry = parts[0]
            reference = "/".join(parts[1:])

        if not REPOSITORY_PATTERN.match(reference):
            raise ValueError(f"Invalid repository name: {reference}")
        if not TAG_PATTERN.match(tag):
            raise ValueError(f"Invalid tag: {tag}")

        return cls(repository=reference, tag=tag, registry=registry)

    def with_tag(self, tag: str) -> "ImageReference":
        """The same repository under another tag, e.g. a ``latest`` alias."""
        if not TAG_PATTERN.match(tag):
            raise ValueError(f"Invalid tag: {tag}")
        return replace(self, tag=tag)

    @property
    def full_name(self) -> str:
        name = f"{self.registry}/{self.repository}" if self.registry else self.repository
        return f"{name}:{self.tag}"

    def __str__(self) -> str:
        return self.full_name
