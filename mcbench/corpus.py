import random
import string
from types import MappingProxyType
from typing import Dict, Iterator, Optional, Tuple

ALPHANUMERIC = string.ascii_letters + string.digits


def generate_random_str(length: int, rng: Optional[random.Random] = None) -> str:
    """Generate a random alphanumeric string of fixed length."""
    rng = rng or random
    return ''.join(rng.choices(ALPHANUMERIC, k=length))


class Corpus:
    """
    The key/value test set.
    Used to populate the server and as the oracle when validating responses.
    Read-only once built, so it can be shared by every worker.
    """

    def __init__(self, entries: Dict[str, str]):
        self._entries = MappingProxyType(dict(entries))
        self._keys: Tuple[str, ...] = tuple(self._entries)

    @classmethod
    def generate(cls, key_size: int, value_size: int, nums: int,
                 rng: Optional[random.Random] = None) -> "Corpus":
        """
        Generate `nums` entries with unique keys.

        Args:
            key_size: Length of every key.
            value_size: Length of every value.
            nums: Number of entries.
        """
        if nums < 0:
            raise ValueError("nums must not be negative")
        if nums > 0 and key_size < 1:
            raise ValueError("key_size must be at least 1")
        if nums > len(ALPHANUMERIC) ** key_size:
            raise ValueError(
                f"Cannot generate {nums} unique keys of length {key_size}")

        entries: Dict[str, str] = {}
        while len(entries) < nums:
            key = generate_random_str(key_size, rng)
            if key in entries:
                continue
            entries[key] = generate_random_str(value_size, rng)
        return cls(entries)

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(self._entries.items())

    def expected(self, key: str) -> Optional[str]:
        return self._entries.get(key)

    def sample_key(self, rng: Optional[random.Random] = None) -> str:
        """Pick a key uniformly at random."""
        if not self._keys:
            raise IndexError("Cannot sample from an empty corpus")
        rng = rng or random
        return self._keys[rng.randrange(len(self._keys))]
