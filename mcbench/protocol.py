import struct
from typing import NamedTuple, Optional

# memcached UDP frame header:
# request id, sequence number, total datagrams, reserved (all big-endian u16)
FRAME_HEADER = struct.Struct("!HHHH")
FRAME_HEADER_SIZE = FRAME_HEADER.size

# Largest UDP payload memcached sends in a single datagram
MAX_DATAGRAM_SIZE = 1400

VALUE_MARKER = b"VALUE "
LINE_END = b"\r\n"


class ProtocolError(Exception):
    """Raised when a response does not follow the memcached text grammar."""
    pass


class FrameHeader(NamedTuple):
    request_id: int
    sequence: int
    total_datagrams: int
    reserved: int


class ValueResponse(NamedTuple):
    key: str
    flags: int
    value: bytes
    cas: Optional[int] = None


def encode_get(key: str, sequence_id: int) -> bytes:
    """
    Frame a single-key GET as one UDP datagram.
    The key is not escaped; it must not contain whitespace or control characters.
    """
    header = FRAME_HEADER.pack(sequence_id & 0xFFFF, 0, 1, 0)
    return header + b"get " + key.encode('utf-8') + LINE_END


def decode_header(frame: bytes) -> FrameHeader:
    if len(frame) < FRAME_HEADER_SIZE:
        raise ProtocolError(
            f"Frame too short for header: {len(frame)} < {FRAME_HEADER_SIZE} bytes")
    return FrameHeader(*FRAME_HEADER.unpack_from(frame))


def parse_value_response(payload: bytes) -> ValueResponse:
    """
    Parse the first `VALUE <key> <flags> <bytes> [<cas>]\\r\\n<data>\\r\\n` block.

    The block may be preceded by anything (typically the frame header), and
    anything after it (`END\\r\\n`) is ignored.
    """
    start = payload.find(VALUE_MARKER)
    if start < 0:
        raise ProtocolError("No VALUE block in response")

    line_end = payload.find(LINE_END, start)
    if line_end < 0:
        raise ProtocolError("Unterminated VALUE line")

    tokens = payload[start:line_end].split()
    if len(tokens) not in (4, 5):
        raise ProtocolError(f"Malformed VALUE line: {payload[start:line_end]!r}")

    try:
        flags = int(tokens[2])
        length = int(tokens[3])
        cas = int(tokens[4]) if len(tokens) == 5 else None
    except ValueError:
        raise ProtocolError(f"Non-numeric field in VALUE line: {payload[start:line_end]!r}")
    if length < 0:
        raise ProtocolError(f"Negative data length: {length}")

    data_start = line_end + len(LINE_END)
    data_end = data_start + length
    data = payload[data_start:data_end]
    if len(data) < length:
        raise ProtocolError(f"Data block truncated: {len(data)} of {length} bytes")
    if payload[data_end:data_end + len(LINE_END)] != LINE_END:
        raise ProtocolError("Data block is not terminated by CRLF")

    try:
        key = tokens[1].decode('ascii')
    except UnicodeDecodeError:
        raise ProtocolError("Key is not ASCII")
    return ValueResponse(key, flags, data, cas)


def extract_value(response: bytes, key_size: int, value_size: int) -> Optional[str]:
    """
    Return the value carried by a GET response, or None when inconclusive.

    A miss, a malformed block, or a payload too short to hold a key of
    `key_size` and a value of `value_size` are all inconclusive.
    """
    if len(response) < len(VALUE_MARKER) + key_size + value_size + 1:
        return None
    try:
        parsed = parse_value_response(response)
        return parsed.value.decode('utf-8')
    except (ProtocolError, UnicodeDecodeError):
        return None
