"""
Bounded insertion-ordered dedup cache

Used for call keys ("{group_id}-{ts}") and transcript fingerprints so the same
radio traffic heard twice (two feeds, or a re-polled call log) is processed
once. Eviction is oldest-first; the cache never holds more than max_size keys.
"""
import re
from collections import OrderedDict
from typing import Hashable

_NON_ALNUM = re.compile(r'[^a-z0-9]')


def transcript_fingerprint(text: str, length: int = 50) -> str:
    """First N characters, lower-cased, with non-alphanumerics stripped."""
    return _NON_ALNUM.sub('', (text or '')[:length].lower())


class DedupCache:
    """Bounded set with oldest-first eviction"""

    def __init__(self, max_size: int):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._keys: "OrderedDict[Hashable, None]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._keys

    def seen(self, key: Hashable) -> bool:
        return key in self._keys

    def remember(self, key: Hashable) -> None:
        """Insert key; re-inserting an existing key does not refresh its age."""
        if key in self._keys:
            return
        self._keys[key] = None
        while len(self._keys) > self.max_size:
            self._keys.popitem(last=False)

    def check_and_remember(self, key: Hashable) -> bool:
        """
        Atomically test and insert.

        Returns:
            True if the key was already present (caller should skip),
            False if it is new (and has now been remembered).
        """
        if key in self._keys:
            return True
        self.remember(key)
        return False

    def clear(self) -> None:
        self._keys.clear()
