import argparse
import sys
from typing import List, Optional

from mcbench.admin import AdminClient, SetupError
from mcbench.config import DEFAULT_PORT, DEFAULT_SERVER, BenchmarkConfig, Protocol
from mcbench.driver import BenchmarkDriver
from mcbench.protocol import MAX_DATAGRAM_SIZE


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Populate a memcached server, then benchmark GET over raw UDP frames.")
    parser.add_argument("-s", "--server-address", default=DEFAULT_SERVER)
    parser.add_argument("-p", "--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("-k", "--key-size", type=int, default=8,
                        help="key size to generate random memcached key")
    parser.add_argument("-v", "--value-size", type=int, default=32,
                        help="value size to generate random memcached value")
    parser.add_argument("-n", "--nums", type=int, default=100000,
                        help="number of test entries to generate")
    parser.add_argument("-t", "--protocol", type=Protocol, choices=list(Protocol),
                        default=Protocol.UDP,
                        help="udp: raw framed GETs, tcp: GETs through the admin client")
    parser.add_argument("-r", "--requests", type=int, default=None,
                        help="GET requests per worker (default: nums)")
    parser.add_argument("-w", "--workers", type=int, default=1,
                        help="concurrent workers, each with its own socket")
    parser.add_argument("--producers", type=int, default=1,
                        help="request sources feeding each worker")
    parser.add_argument("--validate", action="store_true",
                        help="compare every returned value with the generated one")
    parser.add_argument("--timeout", type=float, default=0.5,
                        help="per-request response timeout in seconds")
    parser.add_argument("--channel-capacity", type=int, default=128)
    parser.add_argument("--max-datagram-size", type=int, default=MAX_DATAGRAM_SIZE)
    parser.add_argument("--rounds", type=int, default=2,
                        help="how many times to repeat the GET benchmark")
    parser.add_argument("--smoke-test", action="store_true",
                        help="check basic server commands before populating")
    return parser


def parse_config(argv: Optional[List[str]] = None) -> BenchmarkConfig:
    args = build_parser().parse_args(argv)
    return BenchmarkConfig(
        server_address=args.server_address,
        port=args.port,
        key_size=args.key_size,
        value_size=args.value_size,
        nums=args.nums,
        requests=args.requests,
        validate=args.validate,
        workers=args.workers,
        producers_per_worker=args.producers,
        protocol=args.protocol,
        timeout=args.timeout,
        channel_capacity=args.channel_capacity,
        max_datagram_size=args.max_datagram_size,
        rounds=args.rounds,
        smoke_test=args.smoke_test,
    )


def main(argv: Optional[List[str]] = None) -> int:
    try:
        config = parse_config(argv)
    except ValueError as e:
        print(f"Error: {e}")
        return 2

    print(f"Targeting memcached at {config.target} over {config.protocol.value}")
    admin = AdminClient(config.server_address, config.port)
    try:
        BenchmarkDriver(config, admin).run()
    except SetupError as e:
        print(f"Error: {e}")
        return 1
    finally:
        admin.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
