import os
import socket
import sys
import time

import pytest
import yaml
from stackship.MANAGERS.service_orchestrator import ServiceOrchestrator
from stackship.PARSERS.compose_parser import ComposeParser
from stackship.settings import Settings
from stackship.errors import ConfigurationError, DependencyUnreadyError, PortConflictError

DUMMY = os.path.join(os.path.dirname(os.path.abspath(__file__)), "dummy_service.py")


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.1)
    return False


def service(**extra):
    spec = {'image': 'dummy', 'command': [sys.executable, DUMMY], 'environment': {'APP_ENV': 'prod'}}
    spec.update(extra)
    return spec


def write_compose(tmp_path, services, volumes=None):
    content = {'name': 'shop', 'services': services}
    if volumes:
        content['volumes'] = {v: {} for v in volumes}
    with open(tmp_path / "docker-compose.yml", 'w') as f:
        yaml.dump(content, f)
    return ComposeParser(context={}).parse(str(tmp_path / "docker-compose.yml"))


@pytest.fixture
def orchestrators(tmp_path):
    created = []

    def make(topology, probe=lambda address, port: True, **settings):
        settings.setdefault("state_dir", str(tmp_path / ".stackship"))
        orch = ServiceOrchestrator(topology, base_dir=str(tmp_path), settings=Settings(**settings),
                                   process_env={}, probe=probe, sleep=lambda s: None)
        created.append(orch)
        return orch

    yield make
    for orch in created:
        for manager in list(orch.managers.values()):
            manager.stop()


def test_multi_service_up_down(tmp_path, orchestrators):
    topology = write_compose(tmp_path, {
        'db': service(expose=[5432]),
        'web': service(depends_on=['db']),
    })
    orchestrator = orchestrators(topology)

    # Up
    assert orchestrator.up() == ['db', 'web']
    status = orchestrator.ps()
    assert status['db'] == 'running'
    assert status['web'] == 'running'

    web_log = tmp_path / ".stackship" / "logs" / "web.log"
    assert wait_for(lambda: web_log.exists() and "HOSTNAME: web" in web_log.read_text())
    content = web_log.read_text()
    assert "DB_HOST: db" in content
    assert "APP_ENV: prod" in content

    # Down
    assert orchestrator.down() == ['web', 'db']
    status = orchestrator.ps()
    assert status == {'db': 'stopped', 'web': 'stopped'}
    assert (tmp_path / ".stackship" / "logs" / "db.log").exists()


def test_hosts_file_lists_peers(tmp_path, orchestrators):
    topology = write_compose(tmp_path, {'db': service(), 'web': service(depends_on=['db'])})
    orchestrator = orchestrators(topology)
    orchestrator.up()

    hosts = (tmp_path / ".stackship" / "run" / "web" / "hosts").read_text()
    db_addr = orchestrator.network_manager.resolve('web', 'db')
    assert f"{db_addr}\tdb" in hosts
    orchestrator.down()


def test_volume_outlives_instances(tmp_path, orchestrators):
    """Stopping the stack keeps volume data; only an explicit purge removes it."""
    data_path = '/var/lib/postgresql/data'
    topology = write_compose(tmp_path, {
        'db': service(image='postgres:16', volumes=[f'db_data:{data_path}'],
                      environment={'MARKER_FILE': f'{data_path}/marker'}),
    }, volumes=['db_data'])

    first = orchestrators(topology)
    first.up()
    volume = first.volume_manager.get_volume('db_data')
    marker = os.path.join(volume.path, 'marker')
    assert wait_for(lambda: os.path.exists(marker))
    first.down()

    assert os.path.exists(marker)
    assert first.volume_manager.get_volume('db_data').binding is None

    second = orchestrators(topology)
    second.up()
    assert wait_for(lambda: open(marker).read().count("started") == 2)
    second.down(purge_volumes=True)

    assert second.volume_manager.get_volume('db_data') is None
    assert not os.path.exists(marker)


def test_volume_survives_recreate(tmp_path, orchestrators):
    data_path = '/data'
    topology = write_compose(tmp_path, {
        'cache': service(image='redis:7', volumes=[f'cache_data:{data_path}'],
                         environment={'MARKER_FILE': f'{data_path}/marker'}),
        'web': service(depends_on=['cache']),
    })
    orchestrator = orchestrators(topology)
    orchestrator.up()
    old_pid = orchestrator.managers['cache'].pid

    new_pid = orchestrator.recreate('cache')

    assert new_pid != old_pid
    assert orchestrator.ps()['cache'] == 'running'
    assert orchestrator.network_manager.resolve('web', 'cache')
    marker = os.path.join(orchestrator.volume_manager.get_volume('cache_data').path, 'marker')
    assert wait_for(lambda: os.path.exists(marker) and open(marker).read().count("started") == 2)
    orchestrator.down()


def test_loopback_database_target_rejected_before_start(tmp_path, orchestrators):
    """A dependent pointed at localhost for its database fails before anything runs."""
    topology = write_compose(tmp_path, {
        'db': service(image='postgres:16'),
        'api': service(depends_on=['db'],
                       environment={'DATABASE_URL': 'jdbc:postgresql://localhost:5432/app'}),
    })
    orchestrator = orchestrators(topology)

    with pytest.raises(ConfigurationError) as exc:
        orchestrator.up()
    assert "'db'" in str(exc.value)
    assert orchestrator.managers == {}
    assert not (tmp_path / ".stackship" / "logs" / "db.log").exists()


def test_port_conflict_starts_nothing(tmp_path, orchestrators):
    with socket.socket() as held:
        held.bind(("", 0))
        held.listen()
        port = held.getsockname()[1]
        topology = write_compose(tmp_path, {
            'db': service(),
            'web': service(depends_on=['db'], ports=[f'{port}:8080']),
        })
        orchestrator = orchestrators(topology)

        with pytest.raises(PortConflictError) as exc:
            orchestrator.up()

    assert exc.value.port == port
    assert orchestrator.managers == {}


def test_unready_dependency_rolls_back(tmp_path, orchestrators):
    """A dependency that never accepts connections stops the start-up and what was started."""
    topology = write_compose(tmp_path, {
        'db': service(expose=[5432]),
        'web': service(depends_on=['db']),
    })
    orchestrator = orchestrators(topology, probe=lambda address, port: False, readiness_attempts=2)

    with pytest.raises(DependencyUnreadyError) as exc:
        orchestrator.up()

    assert exc.value.target == 'db'
    assert orchestrator.managers == {}
    assert orchestrator.ps() == {'db': 'stopped', 'web': 'stopped'}


def test_failed_start_releases_volume(tmp_path, orchestrators):
    """An instance whose process never started leaves its volume deletable."""
    topology = write_compose(tmp_path, {
        'db': service(image='postgres:16', command=['/nonexistent/postgres'],
                      volumes=['dbdata:/var/lib/postgresql/data']),
    }, volumes=['dbdata'])
    orchestrator = orchestrators(topology)

    with pytest.raises(OSError):
        orchestrator.up()

    assert orchestrator.ps() == {'db': 'stopped'}
    assert orchestrator.volume_manager.get_volume('dbdata').binding is None
    assert orchestrator.network_manager.networks_of('db') == []
    assert orchestrator.volume_manager.delete_volume('dbdata', confirm=True)


def test_database_target_checked_without_depends_on(tmp_path, orchestrators):
    """Sharing a network with the database is enough to have the target checked."""
    topology = write_compose(tmp_path, {
        'db': service(image='postgres:16'),
        'api': service(environment={'DATABASE_URL': 'postgresql://localhost:5432/app'}),
    })
    orchestrator = orchestrators(topology)

    with pytest.raises(ConfigurationError) as exc:
        orchestrator.resolve_config('api')
    assert "'db'" in str(exc.value)


def test_database_on_another_network_is_not_a_peer(tmp_path, orchestrators):
    topology = write_compose(tmp_path, {
        'db': service(image='postgres:16', networks=['data']),
        'api': service(networks=['front'],
                       environment={'DATABASE_URL': 'postgresql://localhost:5432/app'}),
    })
    orchestrator = orchestrators(topology)
    assert orchestrator.resolve_config('api').get('DATABASE_URL') == 'postgresql://localhost:5432/app'
