from typing import Any, Dict, Optional

from pymemcache.client.base import Client
from pymemcache.exceptions import MemcacheError

from mcbench.corpus import Corpus


class SetupError(Exception):
    """Raised when the server cannot be prepared for a benchmark run."""
    pass


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return str(value)


class AdminClient:
    """
    Administrative access to the cache server over its TCP text protocol.
    Used for flush/set before a run, stats after it, and the admin GET path.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 11211,
                 connect_timeout: float = 1, timeout: Optional[float] = 5,
                 client: Optional[Client] = None):
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.timeout = timeout
        self.client = client or Client(
            (host, port),
            connect_timeout=connect_timeout,
            timeout=timeout,
            default_noreply=False,
            encoding='utf-8',
        )

    def clone(self) -> "AdminClient":
        """A new client with its own connection, for use from another thread."""
        return AdminClient(self.host, self.port, self.connect_timeout, self.timeout)

    def flush(self) -> None:
        self.client.flush_all(noreply=False)

    def set(self, key: str, value: str, expiry: int = 0) -> None:
        self.client.set(key, value, expire=expiry, noreply=False)

    def get(self, key: str) -> Optional[str]:
        value = self.client.get(key)
        if value is None:
            return None
        return _text(value)

    def stats(self) -> Dict[str, str]:
        return {_text(k): _text(v) for k, v in self.client.stats().items()}

    def close(self) -> None:
        self.client.close()

    def populate(self, corpus: Corpus) -> None:
        """Flush the server and store every corpus entry."""
        try:
            self.flush()
            for key, value in corpus:
                self.set(key, value, 0)
        except (MemcacheError, OSError) as e:
            raise SetupError(f"Could not populate {self.host}:{self.port}: {e}") from e

    def smoke_test(self) -> None:
        """Exercise the basic command set before trusting the server with a run."""
        try:
            self.flush()

            self.set("foo", "bar")
            value = self.get("foo")
            if value != "bar":
                raise SetupError(f"get after set returned {value!r}, expected 'bar'")

            self.client.prepend("foo", "foo", noreply=False)
            self.client.append("foo", "baz", noreply=False)
            value = self.get("foo")
            if value != "foobarbaz":
                raise SetupError(f"prepend/append produced {value!r}, expected 'foobarbaz'")

            self.client.delete("foo", noreply=False)
            if self.get("foo") is not None:
                raise SetupError("key still present after delete")

            self.set("counter", "40")
            answer = self.client.incr("counter", 2)
            if answer != 42:
                raise SetupError(f"incr returned {answer!r}, expected 42")
        except (MemcacheError, OSError) as e:
            raise SetupError(f"Smoke test against {self.host}:{self.port} failed: {e}") from e

        print(f"memcached server at {self.host}:{self.port} works!")
