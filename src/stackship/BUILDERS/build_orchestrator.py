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
Sequencing of build stages with fingerprint-based reuse.

A build phase is turned into an ordered chain of stages (one per COPY/ADD or
RUN). Each stage's fingerprint covers its parent's fingerprint, its own
instruction and the content of its declared inputs. Stages run in order; a
stage whose fingerprint is cached is restored instead of executed, until the
first miss, after which every later stage is executed again.
"""

import fnmatch
import glob
import hashlib
import io
import logging
import os
import shlex
import shutil
import subprocess
import tarfile
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ..MODELS.build_stage import BuildStage, StageKind, StageResult
from ..MODELS.dockerfile_ast import BuildPhase
from ..errors import BuildError, BuildOrderError
from .dependency_cache import DependencyCache, InMemoryDependencyCache

logger = logging.getLogger(__name__)

# Files that declare dependencies, and the wrapper tooling copied alongside them
MANIFEST_FILES = (
    "pom.xml", "build.gradle", "build.gradle.kts", "settings.gradle",
    "package.json", "package-lock.json", "yarn.lock", "pnpm-lock.yaml",
    "requirements.txt", "pyproject.toml", "poetry.lock", "Pipfile", "Pipfile.lock",
    "go.mod", "go.sum", "Cargo.toml", "Cargo.lock", "Gemfile", "Gemfile.lock",
    "composer.json", "composer.lock",
)
BUILD_WRAPPERS = (".mvn", "mvnw", "gradlew", "gradle")


def plan_stages(phase: BuildPhase) -> List[BuildStage]:
    """
    Turns the instructions of one build phase into an ordered list of stages.

    ``WORKDIR``, ``ENV`` and ``ARG`` do not produce stages; they change the
    metadata of every stage after them.

    :param phase: The parsed phase.
    :return: Stages in execution order.
    :raises ValueError: On instructions a build phase cannot carry.
    """
    stages: List[BuildStage] = []
    workdir = "/"
    env: Dict[str, str] = {}

    for inst in phase.instructions:
        cmd = inst.instruction
        args = inst.arguments

        if cmd == "WORKDIR":
            workdir = os.path.normpath(os.path.join(workdir, args[0]))
        elif cmd in ("ENV", "ARG"):
            for arg in args:
                if '=' in arg:
                    k, v = arg.split('=', 1)
                    env[k] = v.strip('"')
                elif cmd == "ENV" and len(args) == 2:
                    env[args[0]] = args[1]
                    break
        elif cmd in ("COPY", "ADD"):
            if "from" in inst.flags:
                raise ValueError(f"COPY --from is only supported in the runtime phase: {inst.raw}")
            if len(args) < 2:
                raise ValueError(f"{cmd} needs at least one source and a destination: {inst.raw}")
            stages.append(BuildStage(
                index=len(stages), kind=StageKind.COPY, raw=inst.raw, phase=phase.label,
                inputs=args[:-1], destination=args[-1], workdir=workdir, env=dict(env),
            ))
        elif cmd == "RUN":
            if len(args) == 1:
                command = ["/bin/sh", "-c", args[0]]
            else:
                command = list(args)
            stages.append(BuildStage(
                index=len(stages), kind=StageKind.RUN, raw=inst.raw, phase=phase.label,
                command=command, workdir=workdir, env=dict(env),
            ))
        else:
            logger.debug("Ignoring %s in build phase %s", cmd, phase.label)

    return stages


def expand_inputs(inputs: Iterable[str], context_dir: str) -> List[str]:
    """
    Expands globs in declared inputs into context-relative paths.
    Inputs may not escape the build context.
    """
    context = os.path.abspath(context_dir)
    paths = []
    for pattern in inputs:
        full = os.path.abspath(os.path.join(context, pattern))
        if full != context and not full.startswith(context + os.sep):
            raise ValueError(f"Input {pattern} is outside the build context")
        matches = sorted(glob.glob(full)) if glob.has_magic(pattern) else [full]
        if not matches or not all(os.path.exists(m) for m in matches):
            raise FileNotFoundError(f"Input {pattern} not found in {context_dir}")
        paths.extend(os.path.relpath(m, context) for m in matches)
    return paths


def _hash_path(digest, context: str, rel: str) -> None:
    full = os.path.join(context, rel)
    if os.path.isdir(full):
        for root, dirs, files in os.walk(full):
            dirs.sort()
            for name in sorted(files):
                _hash_path(digest, context, os.path.relpath(os.path.join(root, name), context))
        return
    digest.update(rel.replace(os.sep, "/").encode())
    digest.update(b"x" if os.access(full, os.X_OK) else b"-")
    with open(full, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)


def compute_cache_key(stage: BuildStage, parent_key: str, context_dir: str) -> str:
    """
    Fingerprints a stage from its parent, its instruction and, for COPY,
    the content of its inputs.

    :param stage: The stage.
    :param parent_key: Fingerprint of the previous stage (or the base image for the first one).
    :param context_dir: Build context the inputs are read from.
    :return: A ``sha256:`` digest.
    """
    digest = hashlib.sha256()
    digest.update(parent_key.encode())
    digest.update(stage.kind.value.encode())
    digest.update(stage.workdir.encode())
    for k in sorted(stage.env):
        digest.update(f"{k}={stage.env[k]}".encode())

    if stage.kind == StageKind.COPY:
        digest.update((stage.destination or "").encode())
        for rel in expand_inputs(stage.inputs, context_dir):
            _hash_path(digest, os.path.abspath(context_dir), rel)
    else:
        digest.update("\0".join(stage.command).encode())

    return f"sha256:{digest.hexdigest()}"


def plan_invalidation(keys: Sequence[str], is_cached: Union[Callable[[str], bool], Iterable[str]]) -> List[bool]:
    """
    Decides which stages are reused. Pure: no execution, no I/O beyond ``is_cached``.

    :param keys: Stage fingerprints in build order.
    :param is_cached: Predicate (or collection) telling whether a fingerprint is stored.
    :return: Per stage, True for a cache hit. After the first miss every stage misses.
    """
    if not callable(is_cached):
        cached = set(is_cached)
        is_cached = cached.__contains__
    hits = []
    invalidated = False
    for key in keys:
        hit = not invalidated and is_cached(key)
        if not hit:
            invalidated = True
        hits.append(hit)
    return hits


def _covers(pattern: str, path: str) -> bool:
    pattern = os.path.normpath(pattern)
    path = os.path.normpath(path)
    if pattern == ".":
        return True
    if fnmatch.fnmatch(path, pattern):
        return True
    return path.startswith(pattern.rstrip(os.sep) + os.sep)


def invalidated_stages(stages: Sequence[BuildStage], changed_paths: Iterable[str]) -> List[int]:
    """
    Indices of the stages that must rerun when ``changed_paths`` (context-relative)
    change: the first COPY stage whose inputs cover a changed path, and every stage after it.
    """
    changed = list(changed_paths)
    for stage in stages:
        if stage.kind != StageKind.COPY:
            continue
        if any(_covers(inp, path) for inp in stage.inputs for path in changed):
            return [s.index for s in stages if s.index >= stage.index]
    return []


def _is_manifest_side(path: str) -> bool:
    first = os.path.normpath(path).split(os.sep)[0]
    return os.path.basename(path) in MANIFEST_FILES or first in BUILD_WRAPPERS


def check_dependency_ordering(stages: Sequence[BuildStage], strict: bool = True) -> List[str]:
    """
    Verifies that dependency manifests are copied, and dependencies resolved by
    a RUN stage, strictly before the stage that copies the rest of the source.
    Otherwise a source-only change would invalidate the dependency fetch.

    :param stages: Stages of one build phase.
    :param strict: Raise instead of returning the problems.
    :return: Problems found (empty when the ordering is sound).
    :raises BuildOrderError: When strict and a problem is found.
    """
    problems: List[str] = []
    copies = [s for s in stages if s.kind == StageKind.COPY]
    manifest_stage = next((s for s in copies if any(_is_manifest_side(i) for i in s.inputs)), None)
    source_stage = next((s for s in copies if any(not _is_manifest_side(i) for i in s.inputs)), None)

    if source_stage is not None and manifest_stage is None:
        # Manifests only reach the workspace through a whole-tree copy
        if any(os.path.normpath(i) == "." for i in source_stage.inputs):
            problems.append(
                f"stage {source_stage.index} copies the whole context before any dependency "
                f"manifest is copied on its own; copy the manifest and resolve dependencies first"
            )
    elif manifest_stage is not None and source_stage is not None:
        if manifest_stage.index >= source_stage.index or manifest_stage is source_stage:
            problems.append(
                f"stage {manifest_stage.index} copies the dependency manifest together with or after "
                f"the source tree; move it into an earlier stage"
            )
        elif not any(s.kind == StageKind.RUN and manifest_stage.index < s.index < source_stage.index
                     for s in stages):
            problems.append(
                f"no dependency resolution (RUN) between the manifest copy at stage "
                f"{manifest_stage.index} and the source copy at stage {source_stage.index}"
            )

    if problems and strict:
        raise BuildOrderError("; ".join(problems), step="dependency-ordering")
    for problem in problems:
        logger.warning("Build ordering: %s", problem)
    return problems


class StageExecutor(ABC):
    """
    Runs one stage against a workspace directory.
    """

    @abstractmethod
    def execute(self, stage: BuildStage, workspace: str, context_dir: str) -> None:
        """Apply the stage to ``workspace``. Raise on failure."""


class SubprocessStageExecutor(StageExecutor):
    """
    Copies COPY inputs into the workspace and runs RUN commands as child processes.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    def _target_dir(self, stage: BuildStage, workspace: str) -> str:
        return os.path.join(workspace, stage.workdir.lstrip("/"))

    def execute(self, stage: BuildStage, workspace: str, context_dir: str) -> None:
        cwd = self._target_dir(stage, workspace)
        os.makedirs(cwd, exist_ok=True)
        if stage.kind == StageKind.COPY:
            self._copy(stage, workspace, cwd, context_dir)
        else:
            self._run(stage, workspace, cwd)

    def _copy(self, stage: BuildStage, workspace: str, cwd: str, context_dir: str) -> None:
        sources = expand_inputs(stage.inputs, context_dir)
        dest = stage.destination or "."
        base = workspace if dest.startswith("/") else cwd
        dest_path = os.path.join(base, dest.lstrip("/"))
        into_dir = dest.endswith("/") or dest == "." or len(sources) > 1

        for rel in sources:
            src = os.path.join(context_dir, rel)
            if os.path.isdir(src):
                # Directory sources copy their contents
                shutil.copytree(src, dest_path, dirs_exist_ok=True)
            else:
                target = os.path.join(dest_path, os.path.basename(rel)) if into_dir else dest_path
                os.makedirs(os.path.dirname(target) or ".", exist_ok=True)
                shutil.copy2(src, target)

    def _run(self, stage: BuildStage, workspace: str, cwd: str) -> None:
        env = dict(os.environ)
        env.update(stage.env)
        env["STACKSHIP_WORKSPACE"] = workspace
        logger.info("RUN %s", shlex.join(stage.command))
        result = subprocess.run(
            stage.command,
            cwd=cwd,
            env=env,
            capture_output=True,
            text=True,
            timeout=self.timeout,
            shell=False,
        )
        if result.stdout:
            logger.debug(result.stdout.rstrip())
        if result.returncode != 0:
            tail = (result.stderr or result.stdout or "").strip().splitlines()[-20:]
            raise subprocess.CalledProcessError(result.returncode, stage.command,
                                                output=result.stdout, stderr="\n".join(tail))


def snapshot(workspace: str) -> bytes:
    """Archive a workspace directory."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name in sorted(os.listdir(workspace)):
            tar.add(os.path.join(workspace, name), arcname=name)
    return buf.getvalue()


def restore(data: bytes, workspace: str) -> None:
    """Replace a workspace directory's content with an archived snapshot."""
    if os.path.exists(workspace):
        shutil.rmtree(workspace)
    os.makedirs(workspace)
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        tar.extractall(workspace, filter="data")


class BuildOrchestrator:
    """
    Executes a chain of stages, reusing cached outputs where the fingerprint
    allows and recomputing everything downstream of the first miss.
    """

    def __init__(self,
                 cache: Optional[DependencyCache] = None,
                 executor: Optional[StageExecutor] = None):
        """
        :param cache: Stage output store; defaults to an empty in-memory cache.
        :param executor: Runs stages; defaults to local subprocess execution.
        """
        self.cache = cache if cache is not None else InMemoryDependencyCache()
        self.executor = executor or SubprocessStageExecutor()

    def fingerprint(self, stages: Sequence[BuildStage], context_dir: str, root_key: str) -> List[str]:
        """
        Computes (and records on each stage) the chained fingerprints of ``stages``.

        :raises BuildError: When a stage's inputs cannot be read.
        """
        keys = []
        parent = root_key
        for stage in stages:
            try:
                key = compute_cache_key(stage, parent, context_dir)
            except (OSError, ValueError) as e:
                raise BuildError(stage.index, stage.name, e) from e
            stage.cache_key = key
            keys.append(key)
            parent = key
        return keys

    def run(self,
            stages: Sequence[BuildStage],
            context_dir: str,
            workspace: str,
            root_key: str = "") -> Tuple[List[StageResult], str]:
        """
        Runs the stages in order against ``workspace``.

        :param stages: Stages in build order.
        :param context_dir: Build context holding the inputs.
        :param workspace: Directory the phase's filesystem is built in; replaced on cache restores.
        :param root_key: Fingerprint seed, usually the phase's base image.
        :return: Per-stage results and the final fingerprint.
        :raises BuildError: When a stage fails; later stages are not run.
        """
        os.makedirs(workspace, exist_ok=True)
        keys = self.fingerprint(stages, context_dir, root_key)
        results: List[StageResult] = []
        last_key = root_key
        pending_restore: Optional[str] = None
        invalidated = False

        for stage, key in zip(stages, keys):
            started = time.monotonic()
            hit = not invalidated and self.cache.has(key)

            if hit:
                logger.info("Stage %s: cache hit", stage.name)
                pending_restore = key
            else:
                if pending_restore:
                    restore(self.cache.get(pending_restore), workspace)
                    pending_restore = None
                logger.info("Stage %s: executing", stage.name)

                produced = []

                def produce(stage=stage):
                    try:
                        self.executor.execute(stage, workspace, context_dir)
                    except (subprocess.SubprocessError, OSError, ValueError) as e:
                        detail = getattr(e, "stderr", None)
                        cause = RuntimeError(f"{e}\n{detail}") if detail else e
                        raise BuildError(stage.index, stage.name, cause) from e
                    produced.append(stage.index)
                    return snapshot(workspace)

                if invalidated:
                    self.cache.store(key, produce)
                else:
                    data = self.cache.get_or_create(key, produce)
                    if not produced:
                        # A concurrent build stored this fingerprint while we waited
                        restore(data, workspace)
                        hit = True
                invalidated = invalidated or not hit

            results.append(StageResult(
                index=stage.index,
                name=stage.name,
                cache_key=key,
                cache_hit=hit,
                duration=time.monotonic() - started,
            ))
            last_key = key

        if pending_restore:
            restore(self.cache.get(pending_restore), workspace)

        return results, last_key
