import asyncio
import random
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from mcbench.corpus import Corpus
from mcbench.protocol import encode_get

Address = Tuple[Any, ...]


class ChannelClosedError(Exception):
    """Raised when a producer pushes onto a closed channel."""
    pass


class SequenceCounter:
    """Per-producer u16 request id. Wraps silently at 65536."""

    def __init__(self, start: int = 0):
        self.value = start & 0xFFFF

    def next(self) -> int:
        current = self.value
        self.value = (self.value + 1) & 0xFFFF
        return current


@dataclass(frozen=True)
class RequestEnvelope:
    sequence_id: int
    key: str
    destination: Address
    validate: bool
    expected_key_size: int
    expected_value_size: int
    frame: bytes


class DispatchChannel:
    """
    Bounded queue between request sources and one socket worker.
    Closes itself once every registered producer has released it.
    """

    def __init__(self, capacity: int = 128):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self.closed = False
        self.producers = 0

    def register_producer(self) -> None:
        if self.closed:
            raise ChannelClosedError("Channel already closed")
        self.producers += 1

    async def release_producer(self) -> None:
        self.producers -= 1
        if self.producers <= 0:
            await self.close()

    async def put(self, envelope: RequestEnvelope) -> None:
        """Suspends while the channel is full."""
        if self.closed:
            raise ChannelClosedError("Channel already closed")
        await self.queue.put(envelope)

    async def get(self) -> Optional[RequestEnvelope]:
        """Next envelope, or None once the channel is closed and drained."""
        envelope = await self.queue.get()
        if envelope is None:
            # Keep the sentinel for anyone else waiting
            self.queue.put_nowait(None)
        return envelope

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.queue.put(None)  # Sentinel to unblock get()


class RequestSource:
    """Produces `count` GET envelopes for keys sampled from the corpus."""

    def __init__(self, corpus: Corpus, channel: DispatchChannel, destination: Address,
                 count: int, validate: bool = False, key_size: int = 0,
                 value_size: int = 0, rng: Optional[random.Random] = None,
                 first_sequence: int = 0):
        self.corpus = corpus
        self.channel = channel
        self.destination = destination
        self.count = count
        self.validate = validate
        self.key_size = key_size
        self.value_size = value_size
        self.rng = rng
        self.counter = SequenceCounter(first_sequence)
        self.produced = 0
        channel.register_producer()

    def next_envelope(self) -> RequestEnvelope:
        key = self.corpus.sample_key(self.rng)
        sequence_id = self.counter.next()
        return RequestEnvelope(
            sequence_id=sequence_id,
            key=key,
            destination=self.destination,
            validate=self.validate,
            expected_key_size=self.key_size,
            expected_value_size=self.value_size,
            frame=encode_get(key, sequence_id),
        )

    async def run(self) -> int:
        try:
            if len(self.corpus) > 0:
                for _ in range(self.count):
                    await self.channel.put(self.next_envelope())
                    self.produced += 1
        finally:
            await self.channel.release_producer()
        return self.produced
