import io
import os
import tarfile
import time

import pytest
from stackship.BUILDERS.build_orchestrator import expand_inputs
from stackship.BUILDERS.image_assembler import ImageAssembler
from stackship.MANAGERS.hardening import apply
from stackship.MODELS.hardening_profile import HardeningProfile
from stackship.MODELS.service_definition import ServiceDefinition
from stackship.MODELS.topology import Topology
from stackship.PARSERS.dockerfile_parser import DockerfileParser
from stackship.RUNNERS.process_runner import ProcessRunner
from stackship.errors import AssemblyError, ConfigurationError


def test_command_injection_attempt(tmp_path):
    """
    Shell operators in an argv are passed through literally, never interpreted.
    """
    runner = ProcessRunner(name="test_injection", log_file=str(tmp_path / "out.log"))
    injected_file = tmp_path / "injected.txt"

    runner.start(command=["echo", "hello", ";", "touch", str(injected_file)], env={}, working_dir=str(tmp_path))
    deadline = time.monotonic() + 5
    while runner.is_running() and time.monotonic() < deadline:
        time.sleep(0.05)
    runner.stop()

    assert not injected_file.exists(), "Command injection successful! Security vulnerability found."
    assert "; touch" in (tmp_path / "out.log").read_text()


def test_build_inputs_cannot_escape_context(tmp_path):
    (tmp_path / "ctx").mkdir()
    with pytest.raises(ValueError):
        expand_inputs(["../secret"], str(tmp_path / "ctx"))


def test_runtime_copy_cannot_escape_build_output(tmp_path):
    workspace = tmp_path / "ws"
    workspace.mkdir()
    phase = DockerfileParser().parse_from_string(
        "FROM maven AS build\nFROM eclipse-temurin:17-jre\nCOPY --from=build ../../etc/passwd /app/passwd\n"
    ).runtime_phase
    with pytest.raises(AssemblyError):
        ImageAssembler().assemble(phase, str(tmp_path / "rootfs"), str(tmp_path), {"build": str(workspace)})


@pytest.mark.parametrize("user", ["0", "00", "000:0", "root", "root:root"])
def test_runtime_image_never_runs_as_root(tmp_path, user):
    workspace = tmp_path / "ws"
    (workspace / "target").mkdir(parents=True)
    (workspace / "target" / "app.jar").write_bytes(b"jar")
    phase = DockerfileParser().parse_from_string(
        "FROM maven AS build\nFROM eclipse-temurin:17-jre\nCOPY --from=build /target/app.jar /app/app.jar\nUSER " + user + "\n"
    ).runtime_phase
    with pytest.raises(AssemblyError):
        ImageAssembler().assemble(phase, str(tmp_path / "rootfs"), str(tmp_path), {"build": str(workspace)})


def test_artifacts_owned_by_run_as_account(tmp_path):
    workspace = tmp_path / "ws"
    (workspace / "target").mkdir(parents=True)
    (workspace / "target" / "app.jar").write_bytes(b"jar")
    phase = DockerfileParser().parse_from_string(
        "FROM maven AS build\nFROM eclipse-temurin:17-jre\nCOPY --from=build /target/app.jar /app/app.jar\n"
    ).runtime_phase
    image, layer = ImageAssembler().assemble(phase, str(tmp_path / "rootfs"), str(tmp_path), {"build": str(workspace)})

    with tarfile.open(fileobj=io.BytesIO(layer), mode="r:gz") as tar:
        members = {m.name: m for m in tar.getmembers()}
    assert members["app/app.jar"].uid == image.run_as_identity.uid != 0
    assert members["etc/passwd"].uid == 0


def test_hardening_cannot_loosen():
    """Applying a profile never re-adds capabilities or makes a read-only root writable."""
    base = Topology(services={"api": ServiceDefinition(
        name="api", image_name="api", cap_drop=["ALL"], read_only=True, user="10001",
        security_opt=["no-new-privileges:true"],
    )})
    result = apply(base, HardeningProfile(drop_capabilities=["NET_RAW"], user="20002"))
    api = result.services["api"]
    assert set(api.cap_drop) >= {"ALL", "NET_RAW"}
    assert api.read_only
    assert api.no_new_privileges
    assert api.user == "10001"


@pytest.mark.parametrize("user", ["root", "0", "00", "000:0"])
def test_hardening_rejects_root_user(user):
    base = Topology(services={"api": ServiceDefinition(name="api", image_name="api")})
    with pytest.raises(ConfigurationError):
        apply(base, HardeningProfile(user=user))


def test_missing_descriptor():
    with pytest.raises(FileNotFoundError):
        DockerfileParser().parse(os.path.join("non_existent_dir_12345", "Dockerfile"))
