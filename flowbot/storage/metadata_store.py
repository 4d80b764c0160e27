"""
Durable metadata stores for serialized conversation state.

The conversation core treats durable storage as a key-value store keyed
by (session_id, tenant_id) that holds one opaque JSON blob per session.
No transactional guarantees are assumed.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional, Protocol
from urllib.parse import quote

logger = logging.getLogger(__name__)


class MetadataStore(Protocol):
    async def get(self, session_id: str, tenant_id: str) -> Optional[dict[str, Any]]: ...

    async def put(self, session_id: str, tenant_id: str, blob: dict[str, Any]) -> None: ...


class InMemoryMetadataStore:
    """Process-local store that keeps blobs as JSON text.

    Blobs are stored encoded, so a reload always goes through the same
    JSON decoding a remote store would.
    """

    def __init__(self) -> None:
        self._blobs: dict[tuple[str, str], str] = {}

    async def get(self, session_id: str, tenant_id: str) -> Optional[dict[str, Any]]:
        raw = self._blobs.get((tenant_id, session_id))
        if raw is None:
            return None
        return json.loads(raw)

    async def put(self, session_id: str, tenant_id: str, blob: dict[str, Any]) -> None:
        self._blobs[(tenant_id, session_id)] = json.dumps(blob, ensure_ascii=False)

    def raw(self, session_id: str, tenant_id: str) -> Optional[str]:
        """Return the stored JSON text, for diagnostics and tests."""
        return self._blobs.get((tenant_id, session_id))

    def clear(self) -> None:
        self._blobs.clear()


class JsonFileMetadataStore:
    """One JSON file per session under ``<root>/<tenant_id>/<session_id>.json``.

    Ids are percent-encoded (dots included), so distinct ids always map to
    distinct files and no id can name a parent directory.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    def _path(self, session_id: str, tenant_id: str) -> Path:
        return self._root / _encode_segment(tenant_id) / f"{_encode_segment(session_id)}.json"

    async def get(self, session_id: str, tenant_id: str) -> Optional[dict[str, Any]]:
        return await asyncio.to_thread(self._read, self._path(session_id, tenant_id))

    async def put(self, session_id: str, tenant_id: str, blob: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, self._path(session_id, tenant_id), blob)

    @staticmethod
    def _read(path: Path) -> Optional[dict[str, Any]]:
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    @staticmethod
    def _write(path: Path, blob: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(blob, f, ensure_ascii=False, indent=2)
        tmp.replace(path)
        logger.debug("Wrote session blob: %s", path.name)


def _encode_segment(value: str) -> str:
    if not value:
        raise ValueError("Session and tenant ids must be non-empty")
    return quote(value, safe="").replace(".", "%2E")
