"""
DASVF Displacement Cache

Dense displacement fields keyed by (image domain, upper integration limit),
each tagged with the DOF version that produced it. A stale entry is discarded
on lookup; the owning transformation clears the cache whenever its DOFs are
written. At most max_entries fields are kept, the least recently used one is
evicted first.
"""

import threading
from collections import OrderedDict
from typing import Hashable, Optional, Tuple

import torch

from ..data.domain import ImageDomain
from ..utils.logging_config import get_logger

logger = get_logger("cache")


class DisplacementCache:
    """
    Per-domain displacement cache of one transformation

    Args:
        enabled: If False, lookups always miss and nothing is stored
        max_entries: Number of fields kept before evicting the least recently used
    """

    def __init__(self, enabled: bool = True, max_entries: int = 4):
        self.enabled = enabled
        self.max_entries = max(1, int(max_entries))
        self._entries: "OrderedDict[Tuple, Tuple[Hashable, torch.Tensor]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _key(domain: ImageDomain, T: float) -> Tuple:
        return domain.key(), float(T)

    def get(self, domain: ImageDomain, T: float, version: Hashable) -> Optional[torch.Tensor]:
        """Cached displacement (a copy) or None"""
        if not self.enabled:
            return None
        key = self._key(domain, T)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                cached_version, disp = entry
                if cached_version == version:
                    self._entries.move_to_end(key)
                    self.hits += 1
                    return disp.clone()
                del self._entries[key]
                logger.debug(f"Discarded stale displacement for {domain}")
            self.misses += 1
        return None

    def put(self, domain: ImageDomain, T: float, version: Hashable, disp: torch.Tensor):
        if not self.enabled:
            return
        key = self._key(domain, T)
        with self._lock:
            self._entries[key] = (version, disp.detach().clone())
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                (evicted, evicted_T), _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted displacement (T={evicted_T}) of domain {evicted[0]}")

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, domain: ImageDomain) -> bool:
        key = domain.key()
        return any(entry_key[0] == key for entry_key in self._entries)
