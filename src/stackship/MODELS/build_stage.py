"""
Models for build stages and the results of running them.
"""
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel

from .container_image import Image


class StageKind(str, Enum):
    """
    What a stage does to the workspace.
    """
    COPY = "copy"
    RUN = "run"


class BuildStage(BaseModel):
    """
    An ordered step of a build. Its output is a snapshot of the workspace
    once the step has run, stored under ``cache_key``.
    """
    index: int
    kind: StageKind
    raw: str
    phase: str = "0"

    # COPY: context-relative sources and the destination inside the workspace
    inputs: List[str] = []
    destination: Optional[str] = None

    # RUN: argv to execute
    command: List[str] = []

    workdir: str = "/"
    env: Dict[str, str] = {}

    cache_key: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.phase}/{self.index}: {self.raw}"


class StageResult(BaseModel):
    """
    Outcome of one stage within a build.
    """
    index: int
    name: str
    cache_key: str
    cache_hit: bool
    duration: float = 0.0


class BuildResult(BaseModel):
    """
    Outcome of a complete build: per-stage results, the assembled image and
    the references it was tagged with.
    """
    stages: List[StageResult] = []
    image: Optional[Image] = None
    tags: List[str] = []

    @property
    def hits(self) -> int:
        return sum(1 for s in self.stages if s.cache_hit)

    @property
    def misses(self) -> int:
        return sum(1 for s in self.stages if not s.cache_hit)
