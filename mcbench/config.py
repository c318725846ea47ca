import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from mcbench.protocol import MAX_DATAGRAM_SIZE


class Protocol(str, Enum):
    UDP = "udp"
    TCP = "tcp"

    def __str__(self):
        return self.value


DEFAULT_SERVER = os.getenv("MCBENCH_SERVER", "127.0.0.1")
DEFAULT_PORT = int(os.getenv("MCBENCH_PORT", 11211))


@dataclass(frozen=True)
class BenchmarkConfig:
    """
    Run configuration.
    Built once from the command line and handed to every task at spawn time.
    """
    server_address: str = DEFAULT_SERVER
    port: int = DEFAULT_PORT
    key_size: int = 8
    value_size: int = 32
    nums: int = 100000
    # GET requests issued by each worker; None means one per corpus entry
    requests: Optional[int] = None
    validate: bool = False
    workers: int = 1
    producers_per_worker: int = 1
    protocol: Protocol = Protocol.UDP
    timeout: float = 0.5
    channel_capacity: int = 128
    max_datagram_size: int = MAX_DATAGRAM_SIZE
    rounds: int = 2
    smoke_test: bool = False

    def __post_init__(self):
        if self.requests is None:
            object.__setattr__(self, "requests", self.nums)
        for name in ("key_size", "value_size", "nums", "requests"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        for name in ("workers", "producers_per_worker", "channel_capacity", "rounds"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.max_datagram_size < 1:
            raise ValueError("max_datagram_size must be at least 1")

    @property
    def target(self) -> str:
        return f"{self.server_address}:{self.port}"
