"""Master address/port selection shared by every worker of a job."""

from __future__ import annotations

import logging
import socket
import time
from collections.abc import Callable
from dataclasses import dataclass

from ssllaunch.errors import RendezvousUnavailable

__all__ = [
    "LOOPBACK_HOST",
    "RendezvousCoordinator",
    "RendezvousEndpoint",
    "find_free_port",
    "short_hostname",
    "wait_until_ready",
]

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"


@dataclass(frozen=True)
class RendezvousEndpoint:
    """Address all ranks of one job use to find the coordinating process."""

    host: str
    port: int
    backend: str

    @property
    def url(self) -> str:
        return f"tcp://{self.host}:{self.port}"

    def as_env(self) -> dict[str, str]:
        return {"MASTER_ADDR": self.host, "MASTER_PORT": str(self.port)}


def short_hostname() -> str:
    """Hostname of this node without its domain part."""
    return socket.gethostname().split(".", 1)[0]


def find_free_port(host: str = "", port: int = 0) -> int:
    """Bind *host*:*port* (0 = ephemeral) and return the bound port.

    Raises :class:`OSError` if the bind fails.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        return sock.getsockname()[1]


class RendezvousCoordinator:
    """Pick the master endpoint once per job.

    The launcher runs on the first node of the allocation, so for multi-node
    jobs that node is the master and the port is probed locally.
    """

    def __init__(
        self,
        *,
        backend: str = "nccl",
        master_port: int | None = None,
        hostname: Callable[[], str] = short_hostname,
    ) -> None:
        self._backend = backend
        self._master_port = master_port
        self._hostname = hostname

    def establish(self, num_nodes: int) -> RendezvousEndpoint:
        if num_nodes < 1:
            raise ValueError("num_nodes must be >= 1")

        if num_nodes == 1:
            host = bind_host = LOOPBACK_HOST
        else:
            host = self._hostname()
            bind_host = ""

        try:
            port = find_free_port(bind_host, self._master_port or 0)
        except OSError as exc:
            wanted = self._master_port if self._master_port else "any ephemeral port"
            raise RendezvousUnavailable(
                f"could not bind {wanted} on {host} for rendezvous: {exc}"
            ) from exc

        endpoint = RendezvousEndpoint(host=host, port=port, backend=self._backend)
        logger.info(
            "rendezvous: master=%s backend=%s nodes=%d", endpoint.url, endpoint.backend, num_nodes
        )
        return endpoint


def wait_until_ready(
    endpoint: RendezvousEndpoint,
    *,
    timeout_sec: float,
    interval_sec: float = 2.0,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Block until the master accepts TCP connections on the endpoint."""
    deadline = clock() + timeout_sec
    while True:
        try:
            with socket.create_connection((endpoint.host, endpoint.port), timeout=interval_sec):
                logger.info("rendezvous: master %s is accepting connections", endpoint.url)
                return
        except OSError as exc:
            if clock() >= deadline:
                raise RendezvousUnavailable(
                    f"master {endpoint.url} not reachable after {timeout_sec:.0f}s: {exc}"
                ) from exc
        sleep(interval_sec)
