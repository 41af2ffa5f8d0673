import sys
import threading
import time

from stackship.BUILDERS.dependency_cache import DiskDependencyCache
from stackship.MANAGERS.service_orchestrator import ServiceOrchestrator
from stackship.MODELS.service_definition import ServiceDefinition
from stackship.MODELS.topology import Topology
from stackship.PARSERS.compose_parser import ComposeParser
from stackship.settings import Settings


def test_stress_orchestration(tmp_path):
    """
    Stress test by orchestrating 50 services simultaneously, each depending on the one before.
    """
    services = {}
    for i in range(50):
        name = f"service_{i}"
        services[name] = ServiceDefinition(
            name=name,
            image_name="dummy",
            cmd=[sys.executable, "-c", "import time; time.sleep(30)"],
            depends_on=[f"service_{i - 1}"] if i else [],
        )

    topology = Topology(name="load", services=services)
    orchestrator = ServiceOrchestrator(topology, base_dir=str(tmp_path),
                                       settings=Settings(state_dir=str(tmp_path / ".stackship")),
                                       process_env={}, probe=lambda address, port: True)

    start_time = time.time()
    try:
        order = orchestrator.up()
        end_time = time.time()
        print(f"Started 50 services in {end_time - start_time:.2f}s")

        assert order == [f"service_{i}" for i in range(50)]
        status = orchestrator.ps()
        assert len(status) == 50
        for s in status.values():
            assert s == "running" or "exited" in s
    finally:
        orchestrator.down()

    assert all(s == "stopped" for s in orchestrator.ps().values())


def test_large_config_parsing():
    parser = ComposeParser(context={})

    # Generate a large compose file
    content = "services:\n"
    for i in range(1000):
        content += f"  service_{i}:\n"
        content += f"    image: image_{i}\n"
        content += f"    environment:\n"
        content += f"      - VAR_{i}=VALUE_{i}\n"

    start_time = time.time()
    topology = parser.parse_from_string(content)
    end_time = time.time()

    assert len(topology.services) == 1000
    assert end_time - start_time < 2.0  # Should parse 1000 services in less than 2 seconds


def test_concurrent_builds_share_one_writer(tmp_path):
    """Many builders asking for the same fingerprint produce it once."""
    cache = DiskDependencyCache(str(tmp_path / "cache"))
    produced = []
    lock = threading.Lock()

    def factory():
        with lock:
            produced.append(1)
        time.sleep(0.05)
        return b"layer"

    results = []
    threads = [threading.Thread(target=lambda: results.append(cache.get_or_create("sha256:abc", factory)))
               for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert produced == [1]
    assert results == [b"layer"] * 20
