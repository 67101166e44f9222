from __future__ import annotations

import json
import logging
import re
import threading
from pathlib import Path
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from solvency.errors import ArtifactNotFoundError, InputError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_EPOCH_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def check_epoch_id(epoch: str) -> str:
    if not epoch or not _EPOCH_RE.match(epoch) or ".." in epoch:
        raise InputError(f"invalid epoch id: {epoch!r}")
    return epoch


# --- Key/value (registry records) -----------------------------------------


class KeyValueStore(Protocol):
    def get(self, key: str) -> dict[str, Any] | None: ...

    def put(self, key: str, value: dict[str, Any]) -> bool: ...

    def exists(self, key: str) -> bool: ...


class MemoryKeyValueStore:
    """Write-once in-memory map. ``put`` on an existing key is refused."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            value = self._data.get(key)
            return dict(value) if value is not None else None

    def put(self, key: str, value: dict[str, Any]) -> bool:
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = dict(value)
            return True

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def update(self, key: str, **fields: Any) -> None:
        with self._lock:
            self._data[key].update(fields)

    def values(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(v) for v in self._data.values()]


# --- Epoch artifacts ------------------------------------------------------


class ArtifactStore:
    """One text blob per (epoch, artifact name).

    Subclasses provide the raw text operations; JSON and model helpers are
    shared.
    """

    def read_text(self, epoch: str, name: str) -> str:
        raise NotImplementedError

    def write_text(self, epoch: str, name: str, text: str) -> None:
        raise NotImplementedError

    def exists(self, epoch: str, name: str) -> bool:
        raise NotImplementedError

    def list_epochs(self) -> list[str]:
        raise NotImplementedError

    def list_names(self, epoch: str) -> list[str]:
        raise NotImplementedError

    def read_json(self, epoch: str, name: str) -> Any:
        text = self.read_text(epoch, name)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise InputError(f"artifact {name!r} of epoch {epoch!r} is not valid JSON: {exc}") from exc

    def write_json(self, epoch: str, name: str, data: Any) -> None:
        self.write_text(epoch, name, json.dumps(data, indent=2, ensure_ascii=False))

    def read_model(self, epoch: str, name: str, model: type[M]) -> M:
        text = self.read_text(epoch, name)
        try:
            return model.model_validate_json(text)
        except ValidationError as exc:
            raise InputError(f"artifact {name!r} of epoch {epoch!r} is malformed: {exc}") from exc

    def write_model(self, epoch: str, name: str, value: BaseModel) -> None:
        self.write_text(epoch, name, value.model_dump_json(indent=2))

    def read_shared(self, name: str) -> str | None:
        """Store-wide text blob outside any epoch, or None when absent."""
        raise NotImplementedError

    def write_shared(self, name: str, text: str) -> None:
        raise NotImplementedError

    def latest_epoch(self) -> str | None:
        epochs = sorted(self.list_epochs())
        return epochs[-1] if epochs else None


class MemoryArtifactStore(ArtifactStore):
    def __init__(self) -> None:
        self._blobs: dict[str, dict[str, str]] = {}
        self._shared: dict[str, str] = {}

    def read_text(self, epoch: str, name: str) -> str:
        try:
            return self._blobs[epoch][name]
        except KeyError:
            raise ArtifactNotFoundError(epoch, name) from None

    def write_text(self, epoch: str, name: str, text: str) -> None:
        self._blobs.setdefault(check_epoch_id(epoch), {})[name] = text

    def exists(self, epoch: str, name: str) -> bool:
        return name in self._blobs.get(epoch, {})

    def list_epochs(self) -> list[str]:
        return sorted(self._blobs)

    def list_names(self, epoch: str) -> list[str]:
        return sorted(self._blobs.get(epoch, {}))

    def read_shared(self, name: str) -> str | None:
        return self._shared.get(name)

    def write_shared(self, name: str, text: str) -> None:
        self._shared[name] = text


class FileArtifactStore(ArtifactStore):
    """Artifacts as files under ``<base_dir>/<epoch>/<name>``."""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)

    def _path(self, epoch: str, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name.startswith("."):
            raise InputError(f"invalid artifact name: {name!r}")
        return self.base_dir / check_epoch_id(epoch) / name

    def read_text(self, epoch: str, name: str) -> str:
        path = self._path(epoch, name)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ArtifactNotFoundError(epoch, name) from None

    def write_text(self, epoch: str, name: str, text: str) -> None:
        path = self._path(epoch, name)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(text, encoding="utf-8")
        tmp.replace(path)
        logger.debug("Wrote %s", path)

    def exists(self, epoch: str, name: str) -> bool:
        return self._path(epoch, name).is_file()

    def list_epochs(self) -> list[str]:
        if not self.base_dir.is_dir():
            return []
        return sorted(p.name for p in self.base_dir.iterdir() if p.is_dir() and not p.name.startswith("."))

    def list_names(self, epoch: str) -> list[str]:
        directory = self.base_dir / check_epoch_id(epoch)
        if not directory.is_dir():
            return []
        return sorted(p.name for p in directory.iterdir() if p.is_file() and not p.name.endswith(".tmp"))

    def read_shared(self, name: str) -> str | None:
        path = self.base_dir / name
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    def write_shared(self, name: str, text: str) -> None:
        if not name or "/" in name or "\\" in name or name.startswith("."):
            raise InputError(f"invalid artifact name: {name!r}")
        self.base_dir.mkdir(parents=True, exist_ok=True)
        path = self.base_dir / name
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(text, encoding="utf-8")
        tmp.replace(path)
