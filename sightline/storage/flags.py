"""
Flag Storage - Per-token key/value persistence scoped to one namespace.

The host normally provides this (document flags that survive reload).
Two backends ship with the engine:
- InMemoryFlagStorage: dict-backed, for tests and ephemeral scenes
- JsonFileFlagStorage: one JSON file per token on local disk

Design decisions:
- Async interface, matching host flag APIs
- File names are hashes of the token id, so any id is safe on disk
- A corrupt file is dropped and treated as empty
"""

from __future__ import annotations
import hashlib
import json
from pathlib import Path
from typing import Any, Protocol

import structlog

from ..core.state import NAMESPACE


log = structlog.get_logger(__name__)


class FlagStorage(Protocol):
    namespace: str

    async def get_flag(self, token_id: str, key: str) -> Any: ...

    async def set_flag(self, token_id: str, key: str, value: Any) -> None: ...

    async def unset_flag(self, token_id: str, key: str) -> None: ...

    async def get_flags(self, token_id: str) -> dict[str, Any]: ...

    async def token_ids(self) -> list[str]: ...


class InMemoryFlagStorage:
    """Flags held in a nested dict: token id -> key -> value."""

    def __init__(self, namespace: str = NAMESPACE):
        self.namespace = namespace
        self._flags: dict[str, dict[str, Any]] = {}

    async def get_flag(self, token_id: str, key: str) -> Any:
        return self._flags.get(token_id, {}).get(key)

    async def set_flag(self, token_id: str, key: str, value: Any) -> None:
        self._flags.setdefault(token_id, {})[key] = value

    async def unset_flag(self, token_id: str, key: str) -> None:
        flags = self._flags.get(token_id)
        if flags is None:
            return
        flags.pop(key, None)
        if not flags:
            del self._flags[token_id]

    async def get_flags(self, token_id: str) -> dict[str, Any]:
        return dict(self._flags.get(token_id, {}))

    async def token_ids(self) -> list[str]:
        return list(self._flags.keys())


class JsonFileFlagStorage:
    """
    File-based flag storage.

    Usage:
        storage = JsonFileFlagStorage(base_dir="~/.sightline/flags")
        await storage.set_flag("token-1", "override-from-token-2", {...})

    Layout: <base_dir>/<namespace>/<hash(token_id)>.json holding
    {"token_id": ..., "flags": {...}}.
    """

    def __init__(
        self,
        base_dir: str | Path | None = None,
        namespace: str = NAMESPACE,
    ):
        if base_dir is None:
            base_dir = Path.home() / ".sightline" / "flags"
        self.namespace = namespace
        self.root = Path(base_dir).expanduser() / namespace

        self.root.mkdir(parents=True, exist_ok=True)

    async def get_flag(self, token_id: str, key: str) -> Any:
        return self._load(token_id).get(key)

    async def set_flag(self, token_id: str, key: str, value: Any) -> None:
        flags = self._load(token_id)
        flags[key] = value
        self._save(token_id, flags)

    async def unset_flag(self, token_id: str, key: str) -> None:
        flags = self._load(token_id)
        if key not in flags:
            return
        del flags[key]
        self._save(token_id, flags)

    async def get_flags(self, token_id: str) -> dict[str, Any]:
        return self._load(token_id)

    async def token_ids(self) -> list[str]:
        ids = []
        for path in self.root.glob("*.json"):
            try:
                with open(path) as f:
                    ids.append(json.load(f)["token_id"])
            except (OSError, ValueError, KeyError):
                continue
        return ids

    def clear(self):
        """Remove every stored flag in this namespace."""
        for path in self.root.glob("*.json"):
            path.unlink(missing_ok=True)

    def _path(self, token_id: str) -> Path:
        digest = hashlib.sha256(token_id.encode("utf-8")).hexdigest()[:24]
        return self.root / f"{digest}.json"

    def _load(self, token_id: str) -> dict[str, Any]:
        path = self._path(token_id)
        if not path.exists():
            return {}
        try:
            with open(path) as f:
                return dict(json.load(f).get("flags", {}))
        except (OSError, ValueError) as e:
            log.warning("flag_file_corrupt", token_id=token_id, path=str(path), error=str(e))
            path.unlink(missing_ok=True)
            return {}

    def _save(self, token_id: str, flags: dict[str, Any]):
        path = self._path(token_id)
        if not flags:
            path.unlink(missing_ok=True)
            return
        with open(path, "w") as f:
            json.dump({"token_id": token_id, "flags": flags}, f, indent=2)
