"""
Utilities for finding and checking availability of host ports.
"""
import socket


def get_free_port() -> int:
    """
    Lets the OS pick an unused port.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('', 0))
        return s.getsockname()[1]


def is_port_free(port: int) -> bool:
    """
    Checks if a port can be bound on all interfaces.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(('', port))
            return True
        except OSError:
            return False


def suggest_port(requested: int, span: int = 100) -> int:
    """
    The first free port above ``requested`` (5432 -> 5433, ...), so a remapped
    port stays recognisable. Falls back to an OS-assigned port.
    """
    for candidate in range(requested + 1, min(requested + span, 65535) + 1):
        if is_port_free(candidate):
            return candidate
    return get_free_port()


def accepts_connections(address: str, port: int, timeout: float = 1.0) -> bool:
    """
    True if a TCP connection to ``address:port`` succeeds within ``timeout``.
    """
    try:
        with socket.create_connection((address, port), timeout=timeout):
            return True
    except OSError:
        return False
