"""
Log reading and tailing for instances.
"""
import os
import time
from collections import deque
from typing import Callable, Iterator, List, Optional


class LogAggregator:
    """
    Reads and tails the per-instance log files.
    """
    def __init__(self, log_dir: str):
        """
        Initializes the log aggregator.

        :param log_dir: The directory where log files are stored.
        """
        self.log_dir = log_dir

    def path_for(self, instance: str) -> str:
        return os.path.join(self.log_dir, f"{instance}.log")

    def read_logs(self, instance: str, tail: Optional[int] = None) -> List[str]:
        """
        Returns an instance's log lines.

        :param instance: Instance name.
        :param tail: Only the last ``tail`` lines.
        :raises FileNotFoundError: If the instance never wrote a log.
        """
        with open(self.path_for(instance), 'r', errors='replace') as f:
            if tail is None:
                return [line.rstrip("\n") for line in f]
            return [line.rstrip("\n") for line in deque(f, maxlen=tail)]

    def follow(self, instances: List[str],
               keep_going: Callable[[], bool] = lambda: True,
               interval: float = 0.1) -> Iterator[str]:
        """
        Yields new lines from the given instances' logs, prefixed with the instance name.

        :param instances: Names of the instances to tail.
        :param keep_going: Polled between reads; tailing ends when it returns False.
        """
        files = {}
        try:
            while keep_going():
                for name in instances:
                    if name not in files:
                        path = self.path_for(name)
                        if os.path.exists(path):
                            f = open(path, 'r', errors='replace')
                            f.seek(0, os.SEEK_END)
                            files[name] = f

                    if name in files:
                        line = files[name].readline()
                        if line:
                            yield f"{name:15} | {line.rstrip()}"
                time.sleep(interval)
        finally:
            for f in files.values():
                f.close()
