import os
import sys
import time

from stackship.MODELS.service_definition import ServiceDefinition
from stackship.MANAGERS.process_manager import ProcessManager

DUMMY = os.path.join(os.path.dirname(os.path.abspath(__file__)), "dummy_service.py")


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.1)
    return False


def test_single_service_lifecycle(tmp_path):
    # Setup
    service_def = ServiceDefinition(
        name="test-service",
        image_name="python:3.12",
        cmd=[sys.executable, DUMMY],
        environment={"APP_ENV": "test"},
    )
    log_file = tmp_path / "logs" / "test-service.log"
    manager = ProcessManager("test-service", service_def, str(tmp_path / "rootfs"), str(log_file))

    # Start
    pid = manager.start({"APP_ENV": "test", "LIFETIME": "30"})
    assert pid > 0
    assert manager.status() == "running"
    assert wait_for(lambda: log_file.exists() and "Dummy service starting..." in log_file.read_text())

    # Stop
    manager.stop()
    assert manager.status() in ["stopped", "exited(-15)", "exited(0)"]

    content = log_file.read_text()
    assert "APP_ENV: test" in content


def test_exit_code_reported(tmp_path):
    service_def = ServiceDefinition(name="job", image_name="x", cmd=[sys.executable, DUMMY])
    manager = ProcessManager("job", service_def, str(tmp_path / "rootfs"), str(tmp_path / "job.log"))
    manager.start({"LIFETIME": "0", "EXIT_CODE": "3"})
    assert wait_for(lambda: manager.status() != "running")
    assert manager.status() == "exited(3)"
