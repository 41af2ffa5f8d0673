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
Restart supervision for running instances, applying each service's restart
policy with exponential backoff.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from ..MODELS.service_definition import RestartPolicy, RestartPolicyCondition
from .process_manager import ProcessManager

logger = logging.getLogger(__name__)


@dataclass
class RestartState:
    """Restart bookkeeping for one instance."""

    restart_count: int = 0
    next_delay: float = 0.0
    due_at: Optional[float] = None
    last_restart: Optional[str] = None
    gave_up: bool = False


def should_restart(policy: RestartPolicy, exit_code: Optional[int]) -> bool:
    """
    Whether an exited instance is restarted under ``policy``.

    Args:
        policy: The service's restart policy.
        exit_code: Exit status, None when unknown.
    """
    if policy.condition == RestartPolicyCondition.ALWAYS:
        return True
    if policy.condition == RestartPolicyCondition.ON_FAILURE:
        return exit_code is not None and exit_code != 0
    return False


class Supervisor:
    """
    Watches instances and restarts the ones whose policy asks for it.
    """

    def __init__(
        self,
        managers: Dict[str, ProcessManager],
        interval: float = 1.0,
        default_max_restarts: int = 10,
        max_delay: float = 300.0,
        on_restart: Optional[Callable[[str, int], None]] = None,
        on_give_up: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initializes the supervisor.

        :param managers: Managers of the instances to watch.
        :param interval: Seconds between checks.
        :param default_max_restarts: Retry cap for policies that set none.
        :param max_delay: Cap on the backoff between restarts.
        :param on_restart: Called with the instance name and its new pid.
        :param on_give_up: Called when an instance exhausted its retries or its policy is ``no``.
        :param clock: Time source for backoff deadlines.
        """
        self.managers = managers
        self.interval = interval
        self.default_max_restarts = default_max_restarts
        self.max_delay = max_delay
        self.on_restart = on_restart
        self.on_give_up = on_give_up
        self.clock = clock
        self.running = False
        self.thread = None
        self._state: Dict[str, RestartState] = {}
        self._lock = threading.Lock()

    def start(self):
        """
        Starts the supervision thread.
        """
        self.running = True
        self.thread = threading.Thread(target=self._monitor_loop, daemon=True)
        self.thread.start()

    def stop(self):
        """
        Stops the supervision thread.
        """
        self.running = False
        if self.thread:
            self.thread.join(timeout=self.interval + 1)

    def state(self, name: str) -> RestartState:
        return self._state.setdefault(name, RestartState())

    def _monitor_loop(self):
        while self.running:
            self.check_once()
            time.sleep(self.interval)

    def check_once(self) -> None:
        """
        One supervision pass: schedules restarts for newly exited instances
        and performs the ones whose backoff has elapsed.
        """
        with self._lock:
            now = self.clock()
            for name, manager in list(self.managers.items()):
                if manager.stopped or manager.runner.is_running():
                    continue
                state = self.state(name)
                if state.gave_up:
                    continue

                if state.due_at is None:
                    self._schedule(name, manager, state, now)
                elif now >= state.due_at:
                    self._restart(name, manager, state)

    def _schedule(self, name: str, manager: ProcessManager, state: RestartState, now: float) -> None:
        policy = manager.service_def.restart_policy
        exit_code = manager.runner.get_exit_code()
        cap = policy.max_retries or self.default_max_restarts

        if not should_restart(policy, exit_code):
            logger.info("%s exited (%s); restart policy '%s' does not restart it",
                        name, exit_code, policy.condition.value)
            self._give_up(name, state)
            return
        if state.restart_count >= cap:
            logger.error("%s exceeded max restart attempts (%d)", name, cap)
            self._give_up(name, state)
            return

        base_delay = policy.delay if policy.delay > 0 else 1.0
        delay = state.next_delay or base_delay
        state.due_at = now + delay
        state.next_delay = min(delay * 2, self.max_delay)
        logger.warning("%s exited (%s); restarting in %.1fs", name, exit_code, delay)

    def _restart(self, name: str, manager: ProcessManager, state: RestartState) -> None:
        state.due_at = None
        state.restart_count += 1
        state.last_restart = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        logger.info("Restarting %s (attempt %d)", name, state.restart_count)
        try:
            pid = manager.restart()
        except OSError as e:
            logger.error("Failed to restart %s: %s", name, e)
            return
        if self.on_restart:
            self.on_restart(name, pid)

    def _give_up(self, name: str, state: RestartState) -> None:
        state.gave_up = True
        if self.on_give_up:
            self.on_give_up(name)

    def reset(self, name: str) -> None:
        """
        Clears restart tracking for an instance, e.g. after it was recreated.
        """
        with self._lock:
            self._state[name] = RestartState()
