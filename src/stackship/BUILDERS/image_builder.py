"""
Builders for turning a build descriptor and a source tree into a tagged runtime image.
"""
import logging
import os
import shutil
import tempfile
from typing import Dict, List, Optional

from ..PARSERS.dockerfile_parser import DockerfileParser
from ..MODELS.build_stage import BuildResult, BuildStage
from ..MODELS.container_image import RunIdentity
from ..REGISTRY.image_store import ImageStore
from ..errors import AssemblyError, BuildError
from .build_orchestrator import (
    BuildOrchestrator, StageExecutor, check_dependency_ordering, plan_invalidation, plan_stages,
)
from .dependency_cache import DependencyCache
from .image_assembler import ImageAssembler

logger = logging.getLogger(__name__)


class ImageBuilder:
    """
    Runs the build phases of a descriptor through the build orchestrator,
    assembles the runtime phase into an image and tags it.
    """
    def __init__(self,
                 store: ImageStore,
                 cache: Optional[DependencyCache] = None,
                 executor: Optional[StageExecutor] = None,
                 identity: Optional[RunIdentity] = None,
                 strict_ordering: bool = True):
        """
        Initializes the ImageBuilder.

        :param store: Where finished images are kept and tagged.
        :param cache: Stage output cache shared across builds.
        :param executor: Stage executor, replaceable in tests.
        :param identity: Default run-as account for images without ``USER``.
        :param strict_ordering: Fail builds whose manifest is copied with or after the sources.
        """
        self.store = store
        self.parser = DockerfileParser()
        self.orchestrator = BuildOrchestrator(cache=cache, executor=executor)
        self.assembler = ImageAssembler(identity)
        self.strict_ordering = strict_ordering

    def plan(self, dockerfile_path: str, context_dir: str) -> Dict[str, List[BuildStage]]:
        """
        Parses the descriptor and fingerprints every build stage without running anything.

        :return: Stages per build phase, with ``cache_key`` filled in.
        """
        ast = self.parser.parse(dockerfile_path)
        plan = {}
        for phase in ast.build_phases:
            stages = plan_stages(phase)
            self.orchestrator.fingerprint(stages, context_dir, root_key=phase.base_image)
            plan[phase.label] = stages
        return plan

    def predict_hits(self, dockerfile_path: str, context_dir: str) -> Dict[str, List[bool]]:
        """Which stages the next build would reuse, per build phase."""
        return {
            label: plan_invalidation([s.cache_key for s in stages], self.orchestrator.cache.has)
            for label, stages in self.plan(dockerfile_path, context_dir).items()
        }

    def build(self,
              dockerfile_path: str,
              context_dir: str,
              reference: str,
              aliases: Optional[List[str]] = None) -> BuildResult:
        """
        Builds and tags an image.

        :param dockerfile_path: Path to the build descriptor.
        :param context_dir: Directory the descriptor's COPY sources are relative to.
        :param reference: Primary tag, e.g. ``api:1.4``.
        :param aliases: Extra tags, e.g. ``["latest"]``.
        :return: Per-stage results, the image and its tags.
        :raises BuildError: If any stage fails. Nothing is tagged.
        :raises AssemblyError: If the runtime phase cannot be assembled. Nothing is tagged.
        """
        ast = self.parser.parse(dockerfile_path)
        runtime = ast.runtime_phase
        if runtime is None:
            raise AssemblyError("descriptor has no FROM", step="parse")

        result = BuildResult()
        scratch = tempfile.mkdtemp(prefix="stackship-build-")
        try:
            workspaces: Dict[str, str] = {}
            offset = 0
            for phase in ast.build_phases:
                try:
                    stages = plan_stages(phase)
                except ValueError as e:
                    raise BuildError(offset, f"{phase.label}/plan", e) from e
                check_dependency_ordering(stages, strict=self.strict_ordering)

                workspace = os.path.join(scratch, f"phase-{phase.index}")
                logger.info("Building phase %s from %s (%d stages)", phase.label, phase.base_image, len(stages))
                stage_results, _ = self.orchestrator.run(
                    stages, context_dir, workspace, root_key=phase.base_image,
                )
                for r in stage_results:
                    r.index += offset
                result.stages.extend(stage_results)
                offset += len(stages)

                workspaces[str(phase.index)] = workspace
                if phase.name:
                    workspaces[phase.name] = workspace

            rootfs = os.path.join(scratch, "rootfs")
            image, layer = self.assembler.assemble(
                runtime, rootfs, context_dir, workspaces,
                labels={"stackship.source": os.path.abspath(context_dir)},
            )
            self.store.add(image, {image.layers[0]: layer})
            result.image = image
            result.tags = self.store.tag(image, reference, aliases=aliases)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        logger.info("Built %s: %d cached, %d executed", ", ".join(result.tags), result.hits, result.misses)
        return result
