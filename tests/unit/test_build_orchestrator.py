"""
Unit tests for stage planning, fingerprinting and cache reuse.
"""
import os

import pytest
from stackship.BUILDERS.build_orchestrator import (
    BuildOrchestrator, StageExecutor, SubprocessStageExecutor, check_dependency_ordering,
    compute_cache_key, expand_inputs, invalidated_stages, plan_invalidation, plan_stages,
)
from stackship.BUILDERS.dependency_cache import InMemoryDependencyCache
from stackship.MODELS.build_stage import StageKind
from stackship.PARSERS.dockerfile_parser import DockerfileParser
from stackship.errors import BuildError, BuildOrderError

MAVEN_BUILD = """
FROM maven:3.9-eclipse-temurin-17 AS build
WORKDIR /workspace
COPY .mvn/ .mvn/
COPY mvnw pom.xml ./
RUN ./mvnw dependency:go-offline
COPY src src
RUN ./mvnw package
"""


def make_project(root):
    (root / ".mvn" / "wrapper").mkdir(parents=True)
    (root / ".mvn" / "wrapper" / "maven-wrapper.properties").write_text("distributionUrl=x\n")
    (root / "mvnw").write_text("#!/bin/sh\n")
    (root / "pom.xml").write_text("<project><artifactId>api</artifactId></project>\n")
    (root / "src" / "main").mkdir(parents=True)
    (root / "src" / "main" / "App.java").write_text("class App {}\n")
    return root


def phase_of(content, index=0):
    return DockerfileParser().parse_from_string(content).phases[index]


class RecordingExecutor(SubprocessStageExecutor):
    """Copies for real, records RUN stages instead of executing them."""

    def __init__(self, fail_on=None):
        super().__init__()
        self.ran = []
        self.fail_on = fail_on

    def _run(self, stage, workspace, cwd):
        self.ran.append(stage.index)
        if self.fail_on is not None and self.fail_on in " ".join(stage.command):
            raise OSError(f"{stage.command} exited 1")
        with open(os.path.join(cwd, f"run-{stage.index}.out"), "w") as f:
            f.write(" ".join(stage.command))


class TestPlanStages:
    """Tests for turning a phase into stages."""

    def test_stage_kinds(self):
        """One stage per COPY and RUN; WORKDIR only changes metadata."""
        stages = plan_stages(phase_of(MAVEN_BUILD))
        assert [s.kind for s in stages] == [
            StageKind.COPY, StageKind.COPY, StageKind.RUN, StageKind.COPY, StageKind.RUN,
        ]
        assert all(s.workdir == "/workspace" for s in stages)
        assert stages[1].inputs == ["mvnw", "pom.xml"]
        assert stages[1].destination == "./"

    def test_shell_form_run(self):
        """Shell-form RUN goes through /bin/sh -c."""
        stages = plan_stages(phase_of(MAVEN_BUILD))
        assert stages[2].command == ["/bin/sh", "-c", "./mvnw dependency:go-offline"]

    def test_env_recorded_on_later_stages(self):
        """ENV applies to the stages after it."""
        stages = plan_stages(phase_of("FROM x\nRUN a\nENV MODE=ci\nRUN b\n"))
        assert stages[0].env == {}
        assert stages[1].env == {"MODE": "ci"}

    def test_copy_from_rejected_in_build_phase(self):
        """Build phases cannot copy from other phases."""
        with pytest.raises(ValueError):
            plan_stages(phase_of("FROM x\nCOPY --from=other /a /b\n"))


class TestCacheKeys:
    """Tests for chained fingerprints."""

    def test_deterministic(self, tmp_path):
        """The same inputs give the same key."""
        make_project(tmp_path)
        stage = plan_stages(phase_of(MAVEN_BUILD))[1]
        assert compute_cache_key(stage, "root", str(tmp_path)) == compute_cache_key(stage, "root", str(tmp_path))

    def test_content_change_changes_key(self, tmp_path):
        """Editing a declared input changes the key."""
        make_project(tmp_path)
        stage = plan_stages(phase_of(MAVEN_BUILD))[1]
        before = compute_cache_key(stage, "root", str(tmp_path))
        (tmp_path / "pom.xml").write_text("<project><artifactId>api2</artifactId></project>\n")
        assert compute_cache_key(stage, "root", str(tmp_path)) != before

    def test_unrelated_change_keeps_key(self, tmp_path):
        """Files outside the declared inputs do not affect the key."""
        make_project(tmp_path)
        stage = plan_stages(phase_of(MAVEN_BUILD))[1]
        before = compute_cache_key(stage, "root", str(tmp_path))
        (tmp_path / "src" / "main" / "App.java").write_text("class App { int x; }\n")
        assert compute_cache_key(stage, "root", str(tmp_path)) == before

    def test_parent_key_is_chained(self, tmp_path):
        """A different parent gives a different key."""
        make_project(tmp_path)
        stage = plan_stages(phase_of(MAVEN_BUILD))[2]
        assert compute_cache_key(stage, "a", str(tmp_path)) != compute_cache_key(stage, "b", str(tmp_path))

    def test_missing_input(self, tmp_path):
        """A declared input that does not exist is an error."""
        stage = plan_stages(phase_of(MAVEN_BUILD))[1]
        with pytest.raises(FileNotFoundError):
            compute_cache_key(stage, "root", str(tmp_path))

    def test_inputs_cannot_escape_context(self, tmp_path):
        """Inputs outside the build context are refused."""
        with pytest.raises(ValueError):
            expand_inputs(["../secret"], str(tmp_path))


class TestPlanInvalidation:
    """Tests for the pure hit/miss decision."""

    def test_all_cached(self):
        assert plan_invalidation(["a", "b", "c"], {"a", "b", "c"}) == [True, True, True]

    def test_first_miss_invalidates_downstream(self):
        """After the first miss every stage misses, even if cached."""
        assert plan_invalidation(["a", "b", "c", "d"], {"a", "c", "d"}) == [True, False, False, False]

    def test_predicate(self):
        assert plan_invalidation(["a", "b"], lambda k: k == "a") == [True, False]

    def test_empty(self):
        assert plan_invalidation([], set()) == []


class TestInvalidatedStages:
    """Tests for mapping changed paths to stages."""

    def test_source_change(self):
        """A source edit reruns the source copy and the compile only."""
        stages = plan_stages(phase_of(MAVEN_BUILD))
        assert invalidated_stages(stages, ["src/main/App.java"]) == [3, 4]

    def test_manifest_change(self):
        """A manifest edit reruns the dependency fetch and everything after."""
        stages = plan_stages(phase_of(MAVEN_BUILD))
        assert invalidated_stages(stages, ["pom.xml"]) == [1, 2, 3, 4]

    def test_untracked_change(self):
        stages = plan_stages(phase_of(MAVEN_BUILD))
        assert invalidated_stages(stages, ["README.md"]) == []


class TestDependencyOrdering:
    """Tests for the manifest-before-source rule."""

    def test_sound_ordering(self):
        assert check_dependency_ordering(plan_stages(phase_of(MAVEN_BUILD))) == []

    def test_manifest_with_sources(self):
        """Copying the manifest together with the sources fails."""
        content = "FROM x\nCOPY pom.xml src ./\nRUN mvn package\n"
        with pytest.raises(BuildOrderError):
            check_dependency_ordering(plan_stages(phase_of(content)))

    def test_whole_context_copy(self):
        """Copying the whole context before any manifest fails."""
        content = "FROM x\nCOPY . .\nRUN mvn package\n"
        with pytest.raises(BuildOrderError):
            check_dependency_ordering(plan_stages(phase_of(content)))

    def test_missing_resolution_step(self):
        """A manifest copy with no RUN before the sources is reported."""
        content = "FROM x\nCOPY pom.xml ./\nCOPY src src\nRUN mvn package\n"
        problems = check_dependency_ordering(plan_stages(phase_of(content)), strict=False)
        assert len(problems) == 1
        assert "RUN" in problems[0]


class TestBuildOrchestrator:
    """Tests for running stages with reuse."""

    def test_first_build_runs_everything(self, tmp_path):
        context = make_project(tmp_path / "ctx")
        executor = RecordingExecutor()
        orch = BuildOrchestrator(cache=InMemoryDependencyCache(), executor=executor)
        stages = plan_stages(phase_of(MAVEN_BUILD))

        results, _ = orch.run(stages, str(context), str(tmp_path / "ws"), root_key="maven")

        assert [r.cache_hit for r in results] == [False] * 5
        assert executor.ran == [2, 4]
        assert (tmp_path / "ws" / "workspace" / "pom.xml").exists()

    def test_unchanged_rebuild_is_all_hits(self, tmp_path):
        """Nothing executes when no input changed."""
        context = make_project(tmp_path / "ctx")
        cache = InMemoryDependencyCache()
        BuildOrchestrator(cache=cache, executor=RecordingExecutor()).run(
            plan_stages(phase_of(MAVEN_BUILD)), str(context), str(tmp_path / "ws1"), root_key="maven")

        executor = RecordingExecutor()
        results, _ = BuildOrchestrator(cache=cache, executor=executor).run(
            plan_stages(phase_of(MAVEN_BUILD)), str(context), str(tmp_path / "ws2"), root_key="maven")

        assert all(r.cache_hit for r in results)
        assert executor.ran == []
        # The last hit is restored into the workspace
        assert (tmp_path / "ws2" / "workspace" / "run-4.out").exists()

    def test_source_change_reuses_dependency_stage(self, tmp_path):
        """A source-only edit keeps the dependency fetch cached and recompiles."""
        context = make_project(tmp_path / "ctx")
        cache = InMemoryDependencyCache()
        BuildOrchestrator(cache=cache, executor=RecordingExecutor()).run(
            plan_stages(phase_of(MAVEN_BUILD)), str(context), str(tmp_path / "ws1"), root_key="maven")

        (context / "src" / "main" / "App.java").write_text("class App { void run() {} }\n")
        executor = RecordingExecutor()
        results, _ = BuildOrchestrator(cache=cache, executor=executor).run(
            plan_stages(phase_of(MAVEN_BUILD)), str(context), str(tmp_path / "ws2"), root_key="maven")

        assert [r.cache_hit for r in results] == [True, True, True, False, False]
        assert executor.ran == [4]
        # Output of the cached dependency stage was restored before the source copy
        assert (tmp_path / "ws2" / "workspace" / "run-2.out").exists()

    def test_manifest_change_reruns_dependency_stage(self, tmp_path):
        """Editing the manifest refetches dependencies."""
        context = make_project(tmp_path / "ctx")
        cache = InMemoryDependencyCache()
        BuildOrchestrator(cache=cache, executor=RecordingExecutor()).run(
            plan_stages(phase_of(MAVEN_BUILD)), str(context), str(tmp_path / "ws1"), root_key="maven")

        (context / "pom.xml").write_text("<project><artifactId>api</artifactId><v>2</v></project>\n")
        executor = RecordingExecutor()
        results, _ = BuildOrchestrator(cache=cache, executor=executor).run(
            plan_stages(phase_of(MAVEN_BUILD)), str(context), str(tmp_path / "ws2"), root_key="maven")

        assert [r.cache_hit for r in results] == [True, False, False, False, False]
        assert executor.ran == [2, 4]

    def test_failing_stage_raises_build_error(self, tmp_path):
        """A failing stage aborts the build and names the stage."""
        context = make_project(tmp_path / "ctx")
        executor = RecordingExecutor(fail_on="package")
        orch = BuildOrchestrator(cache=InMemoryDependencyCache(), executor=executor)

        with pytest.raises(BuildError) as exc:
            orch.run(plan_stages(phase_of(MAVEN_BUILD)), str(context), str(tmp_path / "ws"), root_key="maven")

        assert exc.value.stage_index == 4
        assert exc.value.exit_code == 2
        assert "stage 4" in str(exc.value)

    def test_failed_stage_is_not_cached(self, tmp_path):
        """Only successful stage outputs are stored."""
        context = make_project(tmp_path / "ctx")
        cache = InMemoryDependencyCache()
        stages = plan_stages(phase_of(MAVEN_BUILD))
        orch = BuildOrchestrator(cache=cache, executor=RecordingExecutor(fail_on="package"))
        with pytest.raises(BuildError):
            orch.run(stages, str(context), str(tmp_path / "ws"), root_key="maven")

        assert cache.has(stages[3].cache_key)
        assert not cache.has(stages[4].cache_key)

    def test_custom_executor(self, tmp_path):
        """Any StageExecutor can be plugged in."""
        class NullExecutor(StageExecutor):
            def __init__(self):
                self.seen = []

            def execute(self, stage, workspace, context_dir):
                self.seen.append(stage.index)

        (tmp_path / "ctx").mkdir()
        executor = NullExecutor()
        stages = plan_stages(phase_of("FROM x\nRUN a\nRUN b\n"))
        BuildOrchestrator(executor=executor).run(stages, str(tmp_path / "ctx"), str(tmp_path / "ws"))
        assert executor.seen == [0, 1]
