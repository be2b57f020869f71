"""API key storage and request rate limiting.

Keys are stored hashed (``sha256:<hex>``) in ``{data_root}/api-keys.json``::

    {"keys": [{"id": "k_1a2b", "name": "ci", "hash": "sha256:...", "createdAt": "..."}]}

Legacy files may still contain plaintext entries (``{"key": "..."}``); the
app lifespan runs ``ApiKeyStore.migrate`` once at startup, after which every
stored key is hashed.  Authentication itself never rewrites the file.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any

from anyio import to_thread
from loguru import logger

from codeflow.job_runtime.errors import RateLimitedError
from codeflow.job_runtime.models.workspace import utcnow
from codeflow.job_runtime.store.local import atomic_write

HASH_PREFIX = "sha256:"
KEY_PREFIX = "cf_"


def hash_api_key(key: str) -> str:
    return HASH_PREFIX + hashlib.sha256(key.encode()).hexdigest()


def key_fingerprint(key: str) -> str:
    """Short stable id for logs and rate-limit buckets.  Not reversible."""
    return hashlib.sha256(key.encode()).hexdigest()[:12]


# ---------------------------------------------------------------------------
# Key store
# ---------------------------------------------------------------------------


class ApiKeyStore:
    """Hashed-at-rest API keys plus keys supplied through settings."""

    def __init__(self, path: str | Path, *, extra_keys: Iterable[str] = ()) -> None:
        self._path = Path(path)
        self._hashes: set[str] = set()
        self._extra_hashes = {hash_api_key(k) for k in extra_keys if k}

    @property
    def path(self) -> Path:
        return self._path

    async def _read(self) -> list[dict[str, Any]]:
        try:
            raw = await to_thread.run_sync(partial(self._path.read_text, encoding="utf-8"))
        except FileNotFoundError:
            return []
        data = json.loads(raw)
        return list(data.get("keys", []))

    async def _write(self, entries: list[dict[str, Any]]) -> None:
        data = json.dumps({"keys": entries}, indent=2)
        await to_thread.run_sync(partial(atomic_write, self._path, data))

    async def migrate(self) -> int:
        """Hash any plaintext entries in place.  Returns how many were migrated."""
        entries = await self._read()
        migrated = 0
        for entry in entries:
            plaintext = entry.pop("key", None)
            if plaintext and not entry.get("hash"):
                entry["hash"] = hash_api_key(plaintext)
                entry.setdefault("id", f"k_{secrets.token_hex(4)}")
                entry.setdefault("createdAt", utcnow().isoformat())
                migrated += 1
        if migrated:
            await self._write(entries)
            logger.warning("API keys: migrated {} plaintext keys to hashed storage", migrated)
        return migrated

    async def load(self) -> int:
        """Load hashes into memory.  Plaintext leftovers are ignored."""
        entries = await self._read()
        self._hashes = {e["hash"] for e in entries if str(e.get("hash", "")).startswith(HASH_PREFIX)}
        return len(self._hashes)

    async def generate(self, name: str) -> str:
        """Create, store (hashed) and return a new key.  Shown only once."""
        key = KEY_PREFIX + secrets.token_urlsafe(32)
        entries = await self._read()
        entries.append(
            {
                "id": f"k_{secrets.token_hex(4)}",
                "name": name,
                "hash": hash_api_key(key),
                "createdAt": utcnow().isoformat(),
            }
        )
        await self._write(entries)
        await self.load()
        logger.info("API keys: generated key '{}'", name)
        return key

    def verify(self, key: str) -> bool:
        candidate = hash_api_key(key)
        return any(hmac.compare_digest(candidate, h) for h in (*self._hashes, *self._extra_hashes))


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


@dataclass
class _Window:
    started: float
    count: int


class RateLimiter:
    """Fixed-window request counter keyed by client id.

    ``clock`` returns seconds and defaults to ``time.monotonic``; tests pass a
    fake to move time forward.
    """

    def __init__(self, limit: int, window_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def hit(self, client_id: str) -> int:
        """Count one request.  Returns the remaining budget.

        Raises ``RateLimitedError`` once the client exceeded ``limit`` in the
        current window.
        """
        now = self._clock()
        window = self._windows.get(client_id)
        if window is None or now - window.started >= self._window:
            window = self._windows[client_id] = _Window(started=now, count=0)
            self._prune(now)
        if window.count >= self._limit:
            raise RateLimitedError(retry_after=self._window - (now - window.started))
        window.count += 1
        return self._limit - window.count

    def _prune(self, now: float) -> None:
        expired = [cid for cid, w in self._windows.items() if now - w.started >= self._window]
        for cid in expired:
            del self._windows[cid]
