"""
Models for the build descriptor syntax tree.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel


class Instruction(BaseModel):
    """
    Represents a single instruction in a build descriptor.
    """
    instruction: str
    arguments: List[str]
    raw: str
    flags: Dict[str, str] = {}


class BuildPhase(BaseModel):
    """
    One ``FROM`` block of a multi-stage descriptor.
    """
    index: int
    base_image: str
    name: Optional[str] = None
    instructions: List[Instruction] = []

    @property
    def label(self) -> str:
        return self.name or str(self.index)


class DockerfileAST(BaseModel):
    """
    Represents the complete syntax tree of a build descriptor, split into phases.
    """
    phases: List[BuildPhase] = []

    @property
    def build_phases(self) -> List[BuildPhase]:
        """All phases except the last one, which is the runtime phase."""
        return self.phases[:-1]

    @property
    def runtime_phase(self) -> Optional[BuildPhase]:
        return self.phases[-1] if self.phases else None

    def phase(self, ref: str) -> Optional[BuildPhase]:
        """Looks a phase up by its ``AS`` name or its numeric index."""
        for p in self.phases:
            if p.name == ref or str(p.index) == ref:
                return p
        return None
