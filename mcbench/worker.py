import asyncio
import socket
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union

from mcbench.corpus import Corpus
from mcbench.dispatch import DispatchChannel, RequestEnvelope
from mcbench.protocol import (FRAME_HEADER_SIZE, MAX_DATAGRAM_SIZE, ProtocolError,
                              decode_header, extract_value)


class WorkerState(str, Enum):
    RUNNING = "RUNNING"
    DRAINING = "DRAINING"
    STOPPED = "STOPPED"


class Outcome(str, Enum):
    RESPONDED = "RESPONDED"
    TIMED_OUT = "TIMED_OUT"
    FAILED = "FAILED"


@dataclass
class WorkerStats:
    sent: int = 0
    responded: int = 0
    timed_out: int = 0
    send_errors: int = 0
    receive_errors: int = 0
    stale: int = 0
    oversized: int = 0
    validated: int = 0
    mismatches: int = 0
    inconclusive: int = 0
    latencies: List[float] = field(default_factory=list)

    @property
    def completed(self) -> int:
        return self.responded + self.timed_out + self.send_errors + self.receive_errors

    def merge(self, other: "WorkerStats") -> None:
        for name in ("sent", "responded", "timed_out", "send_errors", "receive_errors",
                     "stale", "oversized", "validated", "mismatches", "inconclusive"):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.latencies.extend(other.latencies)


def report_mismatch(name: str, key: str, received: Optional[str], expected: Optional[str]) -> None:
    print(f"[{name}] MISMATCH key={key} received={received!r} expected={expected!r}")


class _DatagramInbox(asyncio.DatagramProtocol):
    """Queues every received datagram, and every socket error, for the worker."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data: bytes, addr) -> None:
        self.queue.put_nowait(data)

    def error_received(self, exc: Exception) -> None:
        self.queue.put_nowait(exc)


class SocketWorker:
    """
    Owns one UDP socket and drains one dispatch channel.
    One request is in flight at a time: send, then wait for the matching
    response or the timeout, then take the next envelope.
    """

    def __init__(self, name: str, channel: DispatchChannel, corpus: Corpus,
                 family: int = socket.AF_INET, timeout: float = 0.5,
                 max_datagram_size: int = MAX_DATAGRAM_SIZE):
        self.name = name
        self.channel = channel
        self.corpus = corpus
        self.family = family
        self.timeout = timeout
        self.max_datagram_size = max_datagram_size
        self.state = WorkerState.RUNNING
        self.stats = WorkerStats()
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.inbox: Optional[asyncio.Queue] = None
        self._errors_reported = 0

    async def open(self) -> None:
        """Create the socket. OSError here is a setup failure."""
        loop = asyncio.get_running_loop()
        self.transport, protocol = await loop.create_datagram_endpoint(
            _DatagramInbox, family=self.family)
        self.inbox = protocol.queue

    def close(self) -> None:
        if self.transport and not self.transport.is_closing():
            self.transport.close()

    async def run(self) -> WorkerStats:
        if self.transport is None:
            await self.open()
        try:
            while True:
                if self.channel.closed and self.state == WorkerState.RUNNING:
                    self.state = WorkerState.DRAINING
                envelope = await self.channel.get()
                if envelope is None:
                    break
                await self.handle(envelope)
        finally:
            self.close()
            self.state = WorkerState.STOPPED
        return self.stats

    async def handle(self, envelope: RequestEnvelope) -> Outcome:
        self._discard_stale()
        started = time.perf_counter()
        try:
            self.transport.sendto(envelope.frame, envelope.destination)
        except OSError as e:
            self.stats.send_errors += 1
            self._report_error("send", e)
            return Outcome.FAILED
        self.stats.sent += 1

        try:
            async with asyncio.timeout(self.timeout):
                response = await self._await_response(envelope.sequence_id)
        except TimeoutError:
            self.stats.timed_out += 1
            return Outcome.TIMED_OUT
        except OSError as e:
            self.stats.receive_errors += 1
            self._report_error("receive", e)
            return Outcome.FAILED

        self.stats.responded += 1
        self.stats.latencies.append(time.perf_counter() - started)

        if len(response) > self.max_datagram_size:
            self.stats.oversized += 1
            if envelope.validate:
                self.stats.inconclusive += 1
        elif envelope.validate:
            self.validate(envelope, response)
        return Outcome.RESPONDED

    async def _await_response(self, sequence_id: int) -> bytes:
        while True:
            item: Union[bytes, Exception] = await self.inbox.get()
            if isinstance(item, Exception):
                raise item
            try:
                header = decode_header(item)
            except ProtocolError:
                self.stats.stale += 1
                continue
            if header.request_id != sequence_id:
                # Late answer to a request that already timed out
                self.stats.stale += 1
                continue
            return item

    def _discard_stale(self) -> None:
        while not self.inbox.empty():
            item = self.inbox.get_nowait()
            if isinstance(item, Exception):
                self._report_error("receive", item)
            self.stats.stale += 1

    def validate(self, envelope: RequestEnvelope, response: bytes) -> bool:
        """Compare the returned value with the corpus. Returns False only on a mismatch."""
        expected = self.corpus.expected(envelope.key)
        value = extract_value(response[FRAME_HEADER_SIZE:],
                              envelope.expected_key_size, envelope.expected_value_size)
        if value is None:
            self.stats.inconclusive += 1
            return True

        self.stats.validated += 1
        if value != expected:
            self.stats.mismatches += 1
            report_mismatch(self.name, envelope.key, value, expected)
            return False
        return True

    def _report_error(self, op: str, exc: Exception) -> None:
        # Unreachable servers fail every request; only the first one is printed
        self._errors_reported += 1
        if self._errors_reported == 1:
            print(f"[{self.name}] Socket {op} error: {exc} (further errors are only counted)")
