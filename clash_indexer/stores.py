import os
from typing import Any, Dict, List, Optional, Tuple

from .util import canonical_address, load_json, log, write_json_atomic


class CursorStore:
    """Highest fully-processed block for one scanner, as ``{"lastBlock": n}``."""

    def __init__(self, path: str):
        self.path = path
        self._last: Optional[int] = None

    def load(self) -> Optional[int]:
        if not os.path.exists(self.path):
            return self._last
        try:
            value = load_json(self.path).get("lastBlock")
        except (OSError, ValueError, AttributeError) as exc:
            log(f"WARN: unreadable cursor {self.path}: {exc}")
            return self._last
        if value is None:
            return self._last
        stored = int(value)
        if self._last is not None and stored < self._last:
            return self._last
        self._last = stored
        return stored

    def save(self, block: int) -> int:
        current = self.load()
        if current is not None and block < current:
            log(f"WARN: ignoring cursor rewind {current} -> {block} ({self.path})")
            return current
        write_json_atomic(self.path, {"lastBlock": int(block)})
        self._last = int(block)
        return self._last


class OwnershipCache:
    """Wallet -> collection -> owned asset descriptors.

    A missing entry means "not known", never "owns nothing". Every
    invalidation bumps a generation counter so a lookup that started before
    it cannot write its result back afterwards.
    """

    def __init__(self, path: str):
        self.path = path
        self._data: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}
        self._loaded = False
        self._wallet_gen: Dict[str, int] = {}
        self._entry_gen: Dict[Tuple[str, str], int] = {}

    def load(self) -> Dict[str, Dict[str, List[Dict[str, Any]]]]:
        self._loaded = True
        if not os.path.exists(self.path):
            self._data = {}
            return self._data
        try:
            raw = load_json(self.path)
        except (OSError, ValueError) as exc:
            log(f"WARN: unreadable ownership cache {self.path}: {exc}")
            self._data = {}
            return self._data
        data: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}
        for wallet, collections in (raw or {}).items():
            key = canonical_address(wallet)
            if key and isinstance(collections, dict):
                data.setdefault(key, {}).update(collections)
        self._data = data
        return self._data

    def save(self) -> None:
        write_json_atomic(self.path, self._data)

    def get(self, wallet: str, collection: str) -> Optional[List[Dict[str, Any]]]:
        self._ensure_loaded()
        key = canonical_address(wallet)
        if key is None:
            return None
        entry = self._data.get(key, {}).get(collection)
        return list(entry) if entry is not None else None

    def generation(self, wallet: str, collection: str) -> Tuple[int, int]:
        key = canonical_address(wallet) or ""
        return self._wallet_gen.get(key, 0), self._entry_gen.get((key, collection), 0)

    def put(
        self,
        wallet: str,
        collection: str,
        assets: List[Dict[str, Any]],
        generation: Optional[Tuple[int, int]] = None,
    ) -> bool:
        """Store ``assets``; with ``generation``, only if nothing was invalidated since."""
        self._ensure_loaded()
        key = canonical_address(wallet)
        if key is None:
            return False
        if generation is not None and generation != self.generation(key, collection):
            return False
        self._data.setdefault(key, {})[collection] = list(assets)
        return True

    def invalidate(self, wallet: str, collection: Optional[str] = None) -> bool:
        self._ensure_loaded()
        key = canonical_address(wallet)
        if key is None:
            return False
        if collection is None:
            self._wallet_gen[key] = self._wallet_gen.get(key, 0) + 1
        else:
            self._entry_gen[(key, collection)] = self._entry_gen.get((key, collection), 0) + 1
        if key not in self._data:
            return False
        if collection is None:
            del self._data[key]
            return True
        removed = self._data[key].pop(collection, None) is not None
        if not self._data[key]:
            del self._data[key]
        return removed

    def wallets(self) -> List[str]:
        self._ensure_loaded()
        return sorted(self._data)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()
