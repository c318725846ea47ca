import asyncio
import io
import unittest
from contextlib import redirect_stdout
from unittest.mock import MagicMock

from fake_memcached import start_fake_server
from mcbench.corpus import Corpus
from mcbench.dispatch import DispatchChannel, RequestEnvelope, RequestSource
from mcbench.protocol import encode_get
from mcbench.worker import Outcome, SocketWorker, WorkerState, WorkerStats

STORE = {"abc123": "xyzvalue"}


class WorkerTestCase(unittest.IsolatedAsyncioTestCase):
    async def start_server(self, store=STORE, **kwargs):
        transport, self.server, port = await start_fake_server(store, **kwargs)
        self.addCleanup(transport.close)
        return ("127.0.0.1", port)

    async def run_worker(self, destination, requests=1, store=STORE, validate=True,
                         timeout=0.5, **worker_kwargs):
        corpus = Corpus(store)
        channel = DispatchChannel(4)
        worker = SocketWorker("worker-0", channel, corpus, timeout=timeout, **worker_kwargs)
        source = RequestSource(corpus, channel, destination, requests,
                               validate=validate, key_size=6, value_size=8)
        output = io.StringIO()
        with redirect_stdout(output):
            await asyncio.gather(worker.run(), source.run())
        return worker, output.getvalue()


class TestSocketWorker(WorkerTestCase):
    async def test_matching_value(self):
        destination = await self.start_server()
        worker, output = await self.run_worker(destination)

        self.assertEqual(worker.state, WorkerState.STOPPED)
        self.assertEqual(worker.stats.sent, 1)
        self.assertEqual(worker.stats.responded, 1)
        self.assertEqual(worker.stats.validated, 1)
        self.assertEqual(worker.stats.mismatches, 0)
        self.assertEqual(len(worker.stats.latencies), 1)
        self.assertNotIn("MISMATCH", output)

    async def test_timeout_is_not_fatal(self):
        destination = await self.start_server(silent=True)
        worker, output = await self.run_worker(destination, requests=2, timeout=0.1)

        self.assertEqual(self.server.requests, 2)
        self.assertEqual(worker.stats.timed_out, 2)
        self.assertEqual(worker.stats.responded, 0)
        self.assertEqual(worker.stats.validated, 0)
        self.assertEqual(worker.state, WorkerState.STOPPED)
        self.assertNotIn("MISMATCH", output)

    async def test_mismatch_is_reported(self):
        destination = await self.start_server(overrides={"abc123": "WRONGVAL"})
        worker, output = await self.run_worker(destination, requests=3)

        self.assertEqual(worker.stats.responded, 3)
        self.assertEqual(worker.stats.mismatches, 3)
        self.assertIn("[worker-0] MISMATCH key=abc123 received='WRONGVAL' expected='xyzvalue'",
                      output)

    async def test_miss_is_inconclusive(self):
        destination = await self.start_server(store={})
        worker, output = await self.run_worker(destination, requests=2)

        self.assertEqual(worker.stats.responded, 2)
        self.assertEqual(worker.stats.inconclusive, 2)
        self.assertEqual(worker.stats.mismatches, 0)
        self.assertNotIn("MISMATCH", output)

    async def test_no_validation(self):
        destination = await self.start_server(overrides={"abc123": "WRONGVAL"})
        worker, output = await self.run_worker(destination, requests=2, validate=False)

        self.assertEqual(worker.stats.responded, 2)
        self.assertEqual(worker.stats.validated, 0)
        self.assertNotIn("MISMATCH", output)

    async def test_stale_responses_are_discarded(self):
        destination = await self.start_server(stale_first=True)
        worker, output = await self.run_worker(destination, requests=5)

        self.assertEqual(worker.stats.responded, 5)
        self.assertEqual(worker.stats.validated, 5)
        self.assertEqual(worker.stats.mismatches, 0)
        self.assertEqual(worker.stats.stale, 5)

    async def test_oversized_datagram_is_rejected(self):
        destination = await self.start_server(padding=200)
        worker, output = await self.run_worker(destination, requests=1, max_datagram_size=64)

        self.assertEqual(worker.stats.responded, 1)
        self.assertEqual(worker.stats.oversized, 1)
        self.assertEqual(worker.stats.inconclusive, 1)
        self.assertEqual(worker.stats.validated, 0)


class TestSocketErrors(unittest.IsolatedAsyncioTestCase):
    def make_worker(self):
        worker = SocketWorker("worker-0", DispatchChannel(4), Corpus(STORE), timeout=0.1)
        worker.inbox = asyncio.Queue()
        worker.transport = MagicMock()
        worker.transport.is_closing.return_value = False
        return worker

    def envelope(self, sequence_id=1):
        return RequestEnvelope(sequence_id, "abc123", ("127.0.0.1", 11211), True, 6, 8,
                               encode_get("abc123", sequence_id))

    async def test_send_error_continues(self):
        worker = self.make_worker()
        worker.transport.sendto.side_effect = OSError("network unreachable")

        with redirect_stdout(io.StringIO()) as output:
            self.assertEqual(await worker.handle(self.envelope(1)), Outcome.FAILED)
            self.assertEqual(await worker.handle(self.envelope(2)), Outcome.FAILED)

        self.assertEqual(worker.stats.send_errors, 2)
        self.assertEqual(worker.stats.sent, 0)
        # Only the first error is printed
        self.assertEqual(output.getvalue().count("Socket send error"), 1)

    async def test_receive_error_continues(self):
        worker = self.make_worker()
        worker.transport.sendto.side_effect = (
            lambda frame, addr: worker.inbox.put_nowait(ConnectionRefusedError("refused")))

        with redirect_stdout(io.StringIO()):
            outcome = await worker.handle(self.envelope())

        self.assertEqual(outcome, Outcome.FAILED)
        self.assertEqual(worker.stats.sent, 1)
        self.assertEqual(worker.stats.receive_errors, 1)

    async def test_draining_state(self):
        """Envelopes queued before the close are still handled."""
        worker = self.make_worker()
        states = []

        async def handle(envelope):
            states.append(worker.state)
            return Outcome.RESPONDED

        worker.handle = handle
        worker.channel.register_producer()
        await worker.channel.put(self.envelope(1))
        await worker.channel.put(self.envelope(2))
        await worker.channel.release_producer()

        await worker.run()
        self.assertEqual(states, [WorkerState.DRAINING, WorkerState.DRAINING])
        self.assertEqual(worker.state, WorkerState.STOPPED)
        worker.transport.close.assert_called_once()


class TestWorkerStats(unittest.TestCase):
    def test_merge(self):
        a = WorkerStats(sent=2, responded=1, timed_out=1, latencies=[0.1])
        b = WorkerStats(sent=3, responded=2, send_errors=1, mismatches=1, latencies=[0.2, 0.3])
        a.merge(b)
        self.assertEqual(a.sent, 5)
        self.assertEqual(a.responded, 3)
        self.assertEqual(a.mismatches, 1)
        self.assertEqual(a.completed, 5)
        self.assertEqual(a.latencies, [0.1, 0.2, 0.3])


if __name__ == '__main__':
    unittest.main()
