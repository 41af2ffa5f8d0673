"""
Readiness waits between dependent services.

Being attached to a network only makes a name resolvable. A dependent waits
here until its dependency actually accepts connections, and the two ways of
giving up are reported differently: a name that never resolved is
unreachable, a name that resolved but never answered is unready.
"""
import logging
import time
from typing import Callable

from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..UTILS.port_finder import accepts_connections
from ..errors import DependencyUnreachableError, DependencyUnreadyError, NameResolutionError
from .network_manager import NetworkManager

logger = logging.getLogger(__name__)

Probe = Callable[[str, int], bool]


class PortNotAccepting(Exception):
    """Raised inside the retry loop while the target refuses connections."""

    def __init__(self, address: str, port: int):
        super().__init__(f"{address}:{port} refused the connection")
        self.address = address
        self.port = port


def wait_until_ready(network: NetworkManager,
                     caller: str,
                     target: str,
                     port: int,
                     attempts: int = 10,
                     wait: float = 0.5,
                     max_wait: float = 10.0,
                     probe: Probe = accepts_connections,
                     sleep: Callable[[float], None] = time.sleep) -> str:
    """
    Blocks until ``target`` resolves from ``caller`` and accepts connections on ``port``.

    The name is resolved again on every attempt, so an instance recreated
    mid-wait is found at its new address.

    :param network: Network manager holding both instances.
    :param caller: Instance doing the waiting.
    :param target: Logical name of the dependency.
    :param port: Port the dependency serves on.
    :param attempts: Attempts before giving up.
    :param wait: Initial backoff in seconds, doubled per attempt.
    :param max_wait: Cap on a single backoff.
    :param probe: Connection check, ``probe(address, port) -> bool``.
    :param sleep: Sleep function used between attempts.
    :return: The address the dependency answered on.
    :raises DependencyUnreachableError: If the name never resolved.
    :raises DependencyUnreadyError: If the name resolved but the port never accepted.
    """
    retrying = Retrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=wait, max=max_wait),
        retry=retry_if_exception_type((NameResolutionError, PortNotAccepting)),
        sleep=sleep,
        before_sleep=lambda state: logger.debug(
            "%s waiting for %s (attempt %d): %s", caller, target,
            state.attempt_number, state.outcome.exception()),
    )

    try:
        for attempt in retrying:
            with attempt:
                address = network.resolve(caller, target)
                if not probe(address, port):
                    raise PortNotAccepting(address, port)
    except RetryError as e:
        last = e.last_attempt.exception()
        if isinstance(last, PortNotAccepting):
            raise DependencyUnreadyError(target, last.address, port, attempts) from last
        raise DependencyUnreachableError(
            f"'{target}' never became resolvable from '{caller}' after {attempts} attempts: {last}",
            step=f"readiness:{target}",
        ) from last

    logger.info("%s: dependency %s ready at %s:%d", caller, target, address, port)
    return address
