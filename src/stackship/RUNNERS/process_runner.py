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
Execution of system processes with log redirection and lifecycle management.
"""
import logging
import os
import subprocess
from typing import List, Dict, Optional

import psutil

logger = logging.getLogger(__name__)


class ProcessRunner:
    """
    Manages the execution of a single system process.
    """
    def __init__(self, name: str, log_file: Optional[str] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Identifier for the process.
            log_file (Optional[str]): Path to a file where stdout/stderr will be redirected.
        """
        self.name = name
        self.log_file = log_file
        self.process: Optional[subprocess.Popen] = None
        self.adopted: Optional[psutil.Process] = None
        self.log_handle = None

    def start(self,
              command: List[str],
              env: Dict[str, str],
              working_dir: Optional[str] = None,
              uid: Optional[int] = None,
              gid: Optional[int] = None) -> int:
        """
        Starts the process.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Environment variables for the process.
            working_dir (Optional[str]): Directory to start the process in.
            uid (Optional[int]): Account to switch to; honoured only when running as root.
            gid (Optional[int]): Group to switch to, with ``uid``.

        Returns:
            int: The process id.
        """
        if working_dir and not os.path.exists(working_dir):
            os.makedirs(working_dir, exist_ok=True)

        stdout = subprocess.DEVNULL
        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            self.log_handle = open(self.log_file, 'a')
            stdout = self.log_handle

        kwargs = {}
        if uid is not None and hasattr(os, "geteuid") and os.geteuid() == 0:
            kwargs = {"user": uid, "group": gid if gid is not None else uid, "extra_groups": []}

        logger.info("[%s] Starting command: %s", self.name, " ".join(command))
        try:
            self.process = subprocess.Popen(
                command,
                env=env,
                cwd=working_dir,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                shell=False,
                start_new_session=True,
                **kwargs,
            )
        except OSError as e:
            logger.error("[%s] Failed to start: %s", self.name, e)
            self._close_log()
            raise
        self.adopted = None
        return self.process.pid

    def adopt(self, pid: int) -> bool:
        """
        Takes over a process started by an earlier invocation.

        Returns:
            bool: False if no such process is alive.
        """
        try:
            proc = psutil.Process(pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                return False
        except psutil.NoSuchProcess:
            return False
        self.adopted = proc
        self.process = None
        return True

    @property
    def pid(self) -> Optional[int]:
        if self.process is not None:
            return self.process.pid
        if self.adopted is not None:
            return self.adopted.pid
        return None

    def stop(self, timeout: int = 10):
        """
        Stops the process by sending SIGTERM, followed by SIGKILL if it doesn't stop.

        Args:
            timeout (int): Seconds to wait for termination before killing.
        """
        if self.process is not None and self.process.poll() is None:
            logger.info("[%s] Stopping process...", self.name)
            self.process.terminate()
            try:
                self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("[%s] Process did not terminate, killing...", self.name)
                self.process.kill()
                self.process.wait()
        elif self.adopted is not None:
            logger.info("[%s] Stopping process %d...", self.name, self.adopted.pid)
            try:
                self.adopted.terminate()
                self.adopted.wait(timeout=timeout)
            except psutil.TimeoutExpired:
                logger.warning("[%s] Process did not terminate, killing...", self.name)
                self.adopted.kill()
            except psutil.NoSuchProcess:
                pass
        self._close_log()

    def _close_log(self):
        if self.log_handle is not None:
            self.log_handle.close()
            self.log_handle = None

    def is_running(self) -> bool:
        """
        Checks if the process is currently running.

        Returns:
            bool: True if running, False otherwise.
        """
        if self.process is not None:
            return self.process.poll() is None
        if self.adopted is not None:
            try:
                return self.adopted.is_running() and self.adopted.status() != psutil.STATUS_ZOMBIE
            except psutil.NoSuchProcess:
                return False
        return False

    def get_exit_code(self) -> Optional[int]:
        """
        Gets the exit code of the process.

        Returns:
            Optional[int]: Exit code if process finished, None otherwise.
        """
        if self.process:
            return self.process.poll()
        return None
