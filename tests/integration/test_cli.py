import pytest
from click.testing import CliRunner
from stackship.CLI.main import cli
from stackship.MANAGERS.volume_manager import VolumeManager

COMPOSE = """
name: shop
services:
  api:
    image: api:1.4
    depends_on: [db]
    ports: ["8081:8081"]
  db:
    image: postgres:16
    user: postgres
    volumes: [db_data:/var/lib/postgresql/data]
volumes:
  db_data: {}
"""


@pytest.fixture
def project(tmp_path):
    (tmp_path / "docker-compose.yml").write_text(COMPOSE)
    return tmp_path


def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    for command in ('build', 'start-stack', 'stop-stack', 'list-running', 'show-logs', 'delete-volume'):
        assert command in result.output


def test_cli_missing_topology(tmp_path):
    runner = CliRunner()
    result = runner.invoke(cli, ['-C', str(tmp_path), '-f', 'non_existent.yml', 'list-running'])
    assert result.exit_code == 3
    assert 'non_existent.yml not found' in result.output


def test_cli_list_running(project):
    result = CliRunner().invoke(cli, ['-C', str(project), 'list-running'])
    assert result.exit_code == 0
    assert 'api' in result.output
    assert 'stopped' in result.output


def test_cli_render_with_profile(project):
    profile = project / "hardened.yml"
    profile.write_text("cap_drop: [ALL]\nread_only: true\nno_new_privileges: true\nuser: '10001'\n")
    result = CliRunner().invoke(cli, ['-C', str(project), 'render', '--profile', str(profile)])
    assert result.exit_code == 0
    assert 'cap_drop:' in result.output
    assert 'no-new-privileges:true' in result.output
    assert "user: '10001'" in result.output
    assert 'user: postgres' in result.output


def test_cli_delete_volume_needs_yes(project):
    """Deleting a volume without confirmation is refused with the guarded-operation status."""
    VolumeManager(str(project), ".stackship/volumes").create_volume("db_data")
    runner = CliRunner()

    result = runner.invoke(cli, ['-C', str(project), 'delete-volume', 'db_data'])
    assert result.exit_code == 5
    assert VolumeManager(str(project), ".stackship/volumes").get_volume("db_data") is not None

    result = runner.invoke(cli, ['-C', str(project), 'delete-volume', 'db_data', '--yes'])
    assert result.exit_code == 0
    assert 'Deleted volume db_data' in result.output


def test_cli_volumes(project):
    VolumeManager(str(project), ".stackship/volumes").create_volume("db_data")
    result = CliRunner().invoke(cli, ['-C', str(project), 'volumes'])
    assert result.exit_code == 0
    assert 'db_data' in result.output


def test_cli_show_logs(project):
    logs = project / ".stackship" / "logs"
    logs.mkdir(parents=True)
    (logs / "api.log").write_text("one\ntwo\nthree\n")
    runner = CliRunner()

    result = runner.invoke(cli, ['-C', str(project), 'show-logs', 'api', '-n', '2'])
    assert result.exit_code == 0
    assert result.output.splitlines() == ['two', 'three']

    result = runner.invoke(cli, ['-C', str(project), 'show-logs', 'web'])
    assert result.exit_code == 3


def test_cli_build_and_images(tmp_path):
    (tmp_path / "app.txt").write_text("hello\n")
    (tmp_path / "Dockerfile").write_text(
        "FROM alpine AS build\n"
        "WORKDIR /workspace\n"
        "COPY app.txt ./\n"
        "RUN mkdir -p out && cp app.txt out/app.txt\n"
        "FROM alpine\n"
        "COPY --from=build /workspace/out/app.txt /app/app.txt\n"
        "CMD [\"cat\", \"/app/app.txt\"]\n"
    )
    runner = CliRunner()

    result = runner.invoke(cli, ['-C', str(tmp_path), 'build', str(tmp_path), '-t', 'demo:1', '-a', 'latest'])
    assert result.exit_code == 0, result.output
    assert 'demo:1, demo:latest' in result.output

    result = runner.invoke(cli, ['-C', str(tmp_path), 'build', str(tmp_path), '-t', 'demo:1', '--plan'])
    assert result.exit_code == 0
    assert 'build stage 0: CACHED' in result.output
    assert 'build stage 1: CACHED' in result.output

    result = runner.invoke(cli, ['-C', str(tmp_path), 'images'])
    assert 'demo:1' in result.output
