from locust import User, task, between, events
import os
import random
import socket
import time

from mcbench.admin import AdminClient
from mcbench.corpus import Corpus
from mcbench.protocol import FRAME_HEADER_SIZE, MAX_DATAGRAM_SIZE, decode_header, extract_value, encode_get

HOST = os.getenv("MCBENCH_SERVER", "127.0.0.1")
PORT = int(os.getenv("MCBENCH_PORT", 11211))
KEY_SIZE = int(os.getenv("MCBENCH_KEY_SIZE", 8))
VALUE_SIZE = int(os.getenv("MCBENCH_VALUE_SIZE", 32))
NUMS = int(os.getenv("MCBENCH_NUMS", 1000))

# Populated once per locust process by `on_test_start`
CORPUS = None


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    """Generate and load the corpus the users will read back."""
    global CORPUS
    CORPUS = Corpus.generate(KEY_SIZE, VALUE_SIZE, NUMS)
    admin = AdminClient(HOST, PORT)
    try:
        admin.populate(CORPUS)
    finally:
        admin.close()


class UDPClient:
    def __init__(self, host, port, timeout=0.5):
        self.addr = (host, port)
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.settimeout(timeout)
        self.sequence = 0

    def get(self, key, expected):
        self.sequence = (self.sequence + 1) & 0xFFFF
        start_time = time.time()
        try:
            self.sock.sendto(encode_get(key, self.sequence), self.addr)
            while True:
                data, _ = self.sock.recvfrom(MAX_DATAGRAM_SIZE)
                if decode_header(data).request_id == self.sequence:
                    break

            total_time = int((time.time() - start_time) * 1000)
            value = extract_value(data[FRAME_HEADER_SIZE:], KEY_SIZE, VALUE_SIZE)
            exception = None
            if value != expected:
                exception = Exception(f"value mismatch for {key}: {value!r}")
            events.request.fire(
                request_type="UDP",
                name="GET",
                response_time=total_time,
                response_length=len(data),
                exception=exception,
            )
        except Exception as e:
            total_time = int((time.time() - start_time) * 1000)
            events.request.fire(
                request_type="UDP",
                name="GET",
                response_time=total_time,
                response_length=0,
                exception=e,
            )

    def close(self):
        self.sock.close()


class MemcachedUDPUser(User):
    wait_time = between(0.01, 0.05)

    def on_start(self):
        self.client = UDPClient(HOST, PORT)

    def on_stop(self):
        self.client.close()

    @task
    def get_key(self):
        key = CORPUS.sample_key(random)
        self.client.get(key, CORPUS.expected(key))
