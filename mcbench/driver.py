import asyncio
import random
import socket
import statistics
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pymemcache.exceptions import MemcacheError

from mcbench.admin import AdminClient, SetupError
from mcbench.config import BenchmarkConfig, Protocol
from mcbench.corpus import Corpus
from mcbench.dispatch import DispatchChannel, RequestSource
from mcbench.worker import SocketWorker, WorkerStats, report_mismatch


def resolve_destination(host: str, port: int) -> Tuple[int, Tuple[Any, ...]]:
    """Resolve the UDP target once. Returns (family, sockaddr)."""
    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
    except socket.gaierror as e:
        raise SetupError(f"Cannot resolve {host}:{port}: {e}") from e
    family, _, _, _, sockaddr = infos[0]
    return family, sockaddr


def split_requests(total: int, parts: int) -> List[int]:
    """Spread `total` requests over `parts` producers as evenly as possible."""
    base, extra = divmod(total, parts)
    return [base + (1 if i < extra else 0) for i in range(parts)]


@dataclass
class BenchmarkResult:
    protocol: Protocol
    round: int
    workers: int
    requests: int
    duration: float
    stats: WorkerStats

    @property
    def throughput(self) -> float:
        if self.duration <= 0:
            return 0.0
        return self.stats.responded / self.duration

    def latency_percentiles(self) -> Dict[str, float]:
        """p50/p95/p99 of responded requests, in seconds."""
        latencies = self.stats.latencies
        if not latencies:
            return {}
        if len(latencies) == 1:
            return {"p50": latencies[0], "p95": latencies[0], "p99": latencies[0]}
        q = statistics.quantiles(latencies, n=100)
        return {"p50": q[49], "p95": q[94], "p99": q[98]}


class BenchmarkDriver:
    """
    Sequences a run: populate the server, time the GET rounds, then
    print a stats snapshot. Holds no benchmarking logic of its own.
    """

    def __init__(self, config: BenchmarkConfig, admin: Optional[AdminClient] = None,
                 corpus: Optional[Corpus] = None):
        self.config = config
        self.admin = admin or AdminClient(config.server_address, config.port)
        self.corpus = corpus

    def prepare(self) -> Corpus:
        """Build the corpus and load it into the server. Failures raise SetupError."""
        config = self.config
        if config.smoke_test:
            self.admin.smoke_test()

        if self.corpus is None:
            try:
                self.corpus = Corpus.generate(config.key_size, config.value_size, config.nums)
            except ValueError as e:
                raise SetupError(str(e)) from e

        print(f"Populating {config.target} with {len(self.corpus)} entries "
              f"(key size {config.key_size}, value size {config.value_size})...")
        self.admin.populate(self.corpus)
        return self.corpus

    def run(self) -> List[BenchmarkResult]:
        self.prepare()

        results = []
        for round_no in range(1, self.config.rounds + 1):
            if self.config.protocol == Protocol.UDP:
                result = asyncio.run(self.run_udp(round_no))
            else:
                result = self.run_admin(round_no)
            self.report(result)
            results.append(result)

        self.report_stats()
        return results

    def _empty_result(self, round_no: int) -> BenchmarkResult:
        return BenchmarkResult(self.config.protocol, round_no, self.config.workers,
                               0, 0.0, WorkerStats())

    # ==================== UDP path ====================

    async def run_udp(self, round_no: int = 1) -> BenchmarkResult:
        config = self.config
        corpus = self.corpus
        if not corpus or config.requests == 0:
            return self._empty_result(round_no)

        family, destination = resolve_destination(config.server_address, config.port)

        workers: List[SocketWorker] = []
        sources: List[RequestSource] = []
        stride = 0x10000 // config.producers_per_worker
        for i in range(config.workers):
            channel = DispatchChannel(config.channel_capacity)
            workers.append(SocketWorker(
                f"worker-{i}", channel, corpus, family=family,
                timeout=config.timeout, max_datagram_size=config.max_datagram_size))
            counts = split_requests(config.requests, config.producers_per_worker)
            for j, count in enumerate(counts):
                sources.append(RequestSource(
                    corpus, channel, destination, count,
                    validate=config.validate,
                    key_size=config.key_size,
                    value_size=config.value_size,
                    first_sequence=j * stride,
                ))

        opened = await asyncio.gather(*(worker.open() for worker in workers),
                                      return_exceptions=True)
        failures = [e for e in opened if isinstance(e, BaseException)]
        if failures:
            for worker in workers:
                worker.close()
            e = failures[0]
            if not isinstance(e, OSError):
                raise e
            raise SetupError(f"Cannot open UDP socket: {e}") from e

        start = time.perf_counter()
        await asyncio.gather(
            *(worker.run() for worker in workers),
            *(source.run() for source in sources),
        )
        duration = time.perf_counter() - start

        stats = WorkerStats()
        for worker in workers:
            stats.merge(worker.stats)
        return BenchmarkResult(Protocol.UDP, round_no, config.workers,
                               config.requests * config.workers, duration, stats)

    # ==================== Admin client path ====================

    def run_admin(self, round_no: int = 1) -> BenchmarkResult:
        config = self.config
        if not self.corpus or config.requests == 0:
            return self._empty_result(round_no)

        start = time.perf_counter()
        with ThreadPoolExecutor(max_workers=config.workers) as executor:
            futures = [executor.submit(self._admin_worker, f"worker-{i}", config.requests)
                       for i in range(config.workers)]
            per_worker = [f.result() for f in futures]
        duration = time.perf_counter() - start

        stats = WorkerStats()
        for worker_stats in per_worker:
            stats.merge(worker_stats)
        return BenchmarkResult(Protocol.TCP, round_no, config.workers,
                               config.requests * config.workers, duration, stats)

    def _admin_worker(self, name: str, count: int) -> WorkerStats:
        """Blocking GET loop over a dedicated admin connection."""
        stats = WorkerStats()
        rng = random.Random()
        client = self.admin.clone()
        errors = 0
        try:
            for _ in range(count):
                key = self.corpus.sample_key(rng)
                started = time.perf_counter()
                stats.sent += 1
                try:
                    value = client.get(key)
                except (MemcacheError, OSError) as e:
                    stats.receive_errors += 1
                    errors += 1
                    if errors == 1:
                        print(f"[{name}] GET error: {e} (further errors are only counted)")
                    continue
                stats.responded += 1
                stats.latencies.append(time.perf_counter() - started)

                if self.config.validate:
                    expected = self.corpus.expected(key)
                    stats.validated += 1
                    if value != expected:
                        stats.mismatches += 1
                        report_mismatch(name, key, value, expected)
        finally:
            client.close()
        return stats

    # ==================== Reporting ====================

    def report(self, result: BenchmarkResult) -> None:
        stats = result.stats
        print(f"--- GET benchmark ({result.protocol.value}, round {result.round}) ---")
        print(f"Workers: {result.workers}, Requests: {result.requests}")
        print(f"Time elapsed: {result.duration:.4f} seconds")
        print(f"Throughput: {result.throughput:.2f} ops/sec")
        print(f"Responded: {stats.responded}, Timed out: {stats.timed_out}, "
              f"Errors: {stats.send_errors + stats.receive_errors}, Stale: {stats.stale}")
        percentiles = result.latency_percentiles()
        if percentiles:
            print("Latency: " + ", ".join(
                f"{name}={value * 1000:.3f}ms" for name, value in percentiles.items()))
        if self.config.validate:
            print(f"Validated: {stats.validated}, Mismatches: {stats.mismatches}, "
                  f"Inconclusive: {stats.inconclusive}")
        print("-" * 30)

    def report_stats(self) -> Dict[str, str]:
        try:
            stats = self.admin.stats()
        except (MemcacheError, OSError) as e:
            print(f"Could not fetch server stats: {e}")
            return {}
        print("--- Server stats ---")
        for key in sorted(stats):
            print(f"{key}: {stats[key]}")
        return stats
