"""
Unit tests for runtime image assembly.
"""
import io
import tarfile

import pytest
from stackship.BUILDERS.image_assembler import ImageAssembler
from stackship.MODELS.container_image import RunIdentity
from stackship.PARSERS.dockerfile_parser import DockerfileParser
from stackship.errors import AssemblyError

RUNTIME = """
FROM eclipse-temurin:17-jre
WORKDIR /app
COPY --from=build /workspace/target/*.jar app.jar
EXPOSE 8081
ENTRYPOINT ["java", "-jar", "/app/app.jar"]
"""


def runtime_phase(content):
    return DockerfileParser().parse_from_string("FROM maven AS build\n" + content).runtime_phase


def build_workspace(tmp_path, jars=("api-0.0.1.jar",)):
    target = tmp_path / "build-ws" / "workspace" / "target"
    target.mkdir(parents=True)
    for jar in jars:
        (target / jar).write_bytes(b"PK\x03\x04jar")
    (tmp_path / "build-ws" / "workspace" / "pom.xml").write_text("<project/>")
    return {"build": str(tmp_path / "build-ws"), "0": str(tmp_path / "build-ws")}


def layer_members(layer):
    with tarfile.open(fileobj=io.BytesIO(layer), mode="r:gz") as tar:
        return {m.name: m for m in tar.getmembers()}


class TestImageAssembler:
    """Tests for ImageAssembler."""

    def test_assembles_single_artifact(self, tmp_path):
        """Only the copied artifact reaches the image."""
        image, layer = ImageAssembler().assemble(
            runtime_phase(RUNTIME), str(tmp_path / "rootfs"), str(tmp_path), build_workspace(tmp_path))

        assert image.artifacts == ["/app/app.jar"]
        assert image.entry_command == ["java", "-jar", "/app/app.jar"]
        assert image.exposed_port == 8081
        assert image.working_dir == "/app"
        members = layer_members(layer)
        assert "app/app.jar" in members
        assert not any(name.endswith("pom.xml") for name in members)

    def test_runs_as_non_root(self, tmp_path):
        """Without USER the image runs as the unprivileged default account."""
        image, layer = ImageAssembler().assemble(
            runtime_phase(RUNTIME), str(tmp_path / "rootfs"), str(tmp_path), build_workspace(tmp_path))

        identity = image.run_as_identity
        assert identity.uid != 0
        assert identity.shell == "/usr/sbin/nologin"
        passwd = (tmp_path / "rootfs" / "etc" / "passwd").read_text()
        assert identity.passwd_entry() in passwd

    def test_artifact_owned_by_run_identity(self, tmp_path):
        """The artifact belongs to the run-as account; system files to root."""
        identity = RunIdentity(name="svc", uid=10042, gid=10042)
        _, layer = ImageAssembler(identity).assemble(
            runtime_phase(RUNTIME), str(tmp_path / "rootfs"), str(tmp_path), build_workspace(tmp_path))

        members = layer_members(layer)
        assert members["app/app.jar"].uid == 10042
        assert members["etc/passwd"].uid == 0

    def test_user_root_rejected(self, tmp_path):
        """An image may not run as root."""
        content = RUNTIME + "USER root\n"
        with pytest.raises(AssemblyError):
            ImageAssembler().assemble(
                runtime_phase(content), str(tmp_path / "rootfs"), str(tmp_path), build_workspace(tmp_path))

    def test_numeric_user(self, tmp_path):
        """A numeric USER sets the uid."""
        image, _ = ImageAssembler().assemble(
            runtime_phase(RUNTIME + "USER 12000\n"), str(tmp_path / "rootfs"), str(tmp_path),
            build_workspace(tmp_path))
        assert image.run_as_identity.uid == 12000

    def test_no_artifact(self, tmp_path):
        """A runtime phase that copies nothing is an error."""
        with pytest.raises(AssemblyError):
            ImageAssembler().assemble(
                runtime_phase("FROM eclipse-temurin:17-jre\nEXPOSE 8081\n"),
                str(tmp_path / "rootfs"), str(tmp_path), {})

    def test_ambiguous_artifact(self, tmp_path):
        """Two jars matching a single-file destination is an error."""
        workspaces = build_workspace(tmp_path, jars=("api.jar", "api-plain.jar"))
        with pytest.raises(AssemblyError, match="exactly one"):
            ImageAssembler().assemble(runtime_phase(RUNTIME), str(tmp_path / "rootfs"), str(tmp_path), workspaces)

    def test_missing_artifact(self, tmp_path):
        """No match for the COPY source is an error."""
        workspaces = build_workspace(tmp_path, jars=())
        with pytest.raises(AssemblyError, match="no build output"):
            ImageAssembler().assemble(runtime_phase(RUNTIME), str(tmp_path / "rootfs"), str(tmp_path), workspaces)

    def test_unknown_phase(self, tmp_path):
        """COPY --from must name a built phase."""
        content = RUNTIME.replace("--from=build", "--from=compile")
        with pytest.raises(AssemblyError, match="unknown build phase"):
            ImageAssembler().assemble(runtime_phase(content), str(tmp_path / "rootfs"), str(tmp_path),
                                      build_workspace(tmp_path))

    def test_source_cannot_escape_workspace(self, tmp_path):
        """COPY sources stay inside their phase's workspace."""
        content = "FROM eclipse-temurin:17-jre\nCOPY --from=build ../../etc/passwd /app/x\n"
        with pytest.raises(AssemblyError, match="outside"):
            ImageAssembler().assemble(runtime_phase(content), str(tmp_path / "rootfs"), str(tmp_path),
                                      build_workspace(tmp_path))

    def test_run_in_runtime_phase_is_skipped(self, tmp_path):
        """Build tooling does not run in the runtime phase."""
        content = RUNTIME + "RUN apt-get install -y curl\n"
        image, _ = ImageAssembler().assemble(
            runtime_phase(content), str(tmp_path / "rootfs"), str(tmp_path), build_workspace(tmp_path))
        assert image.artifacts == ["/app/app.jar"]
