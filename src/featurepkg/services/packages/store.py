"""Package state store.

Owns the four persisted documents under the data directory:

- metadata.json: package name -> cached manifest
- state.json: package name -> install state
- sources.json: list of repository sources
- lock.json: {"locked": bool}, the advisory lock shared by every process

Every read or write of the first three fails with LockHeldError while another
execution context holds the lock. One StateStore instance is one execution
context.
"""

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Literal

from pydantic import ValidationError as PydanticValidationError

from featurepkg.exceptions import LockHeldError, OperationalError
from featurepkg.logger import get_logger
from featurepkg.models.manifest import PackageManifest
from featurepkg.models.state import LockDocument, LockStatus, PackageState, RepositorySource

logger = get_logger(__name__)

DocumentKind = Literal["metadata", "state", "sources"]

_EMPTY: dict[str, Any] = {
    "metadata": {},
    "state": {},
    "sources": [],
}


class StateStore:
    """Durable read/modify/write of package documents behind an advisory lock."""

    # Serializes lock read-check-write between stores living in the same process
    _lock_guard = threading.Lock()

    def __init__(self, data_dir: Path) -> None:
        """
        Initialize the store.

        Args:
            data_dir: Directory holding the JSON documents
        """
        self.data_dir = data_dir
        self._held = False

    def initialize(self, default_sources: list[RepositorySource] | None = None) -> None:
        """Create the data directory and any missing document."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

        if not self._path("lock").exists():
            self._dump("lock", LockDocument().model_dump())
        for kind in ("metadata", "state"):
            if not self._path(kind).exists():
                self._dump(kind, _EMPTY[kind])
        if not self._path("sources").exists():
            sources = default_sources or []
            self._dump("sources", [s.model_dump(by_alias=True) for s in sources])
            logger.info(f"Seeded sources.json with {len(sources)} source(s)")

    # ------------------------------------------------------------------
    # Lock
    # ------------------------------------------------------------------

    def get_lock(self) -> LockDocument:
        path = self._path("lock")
        if not path.exists():
            return LockDocument()
        with open(path, encoding="utf-8") as f:
            return LockDocument(**json.load(f))

    def lock_status(self) -> LockStatus:
        return LockStatus(persisted_locked=self.get_lock().locked, held_by_this_context=self._held)

    def acquire_lock(self) -> None:
        """
        Take the process-wide lock for this context.

        Raises:
            LockHeldError: If another context holds the lock
        """
        with self._lock_guard:
            if self.get_lock().locked and not self._held:
                raise LockHeldError()
            self._held = True
            self._dump("lock", LockDocument(locked=True).model_dump())
        logger.debug("Lock acquired", data_dir=str(self.data_dir))

    def release_lock(self) -> None:
        """Release the lock if this context holds it; otherwise do nothing."""
        with self._lock_guard:
            if not self._held:
                return
            self._dump("lock", LockDocument(locked=False).model_dump())
            self._held = False
        logger.debug("Lock released", data_dir=str(self.data_dir))

    # ------------------------------------------------------------------
    # Raw documents
    # ------------------------------------------------------------------

    def read(self, kind: DocumentKind) -> Any:  # noqa: ANN401
        self._check_access()
        path = self._path(kind)
        if not path.exists():
            return type(_EMPTY[kind])()
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def write(self, kind: DocumentKind, data: Any) -> None:  # noqa: ANN401
        self._check_access()
        self._dump(kind, data)

    # ------------------------------------------------------------------
    # Typed views
    # ------------------------------------------------------------------

    def get_metadata(self) -> dict[str, PackageManifest]:
        raw = self.read("metadata")
        try:
            return {name: PackageManifest(**data) for name, data in raw.items()}
        except PydanticValidationError as e:
            raise OperationalError("store.document.invalid", kind="metadata", error=str(e)) from e

    def get_states(self) -> dict[str, PackageState]:
        raw = self.read("state")
        try:
            return {name: PackageState(**data) for name, data in raw.items()}
        except PydanticValidationError as e:
            raise OperationalError("store.document.invalid", kind="state", error=str(e)) from e

    def get_sources(self) -> list[RepositorySource]:
        raw = self.read("sources")
        try:
            return [RepositorySource(**data) for data in raw]
        except PydanticValidationError as e:
            raise OperationalError("store.document.invalid", kind="sources", error=str(e)) from e

    def set_sources(self, sources: list[RepositorySource]) -> None:
        self.write("sources", [s.model_dump(by_alias=True) for s in sources])

    def set_package_state(self, name: str, state: PackageState | None) -> None:
        """
        Upsert or delete the state entry of one package.

        Args:
            name: Package name
            state: New state, or None to delete the entry
        """
        states = self.read("state")
        if state is None:
            states.pop(name, None)
        else:
            states[name] = state.model_dump(by_alias=True)
        self.write("state", states)

    def set_package_metadata(self, name: str, manifest: PackageManifest | None) -> None:
        """
        Upsert or delete the cached manifest of one package.

        Args:
            name: Package name
            manifest: Manifest to cache, or None to delete the entry
        """
        metadata = self.read("metadata")
        if manifest is None:
            metadata.pop(name, None)
        else:
            metadata[name] = manifest.model_dump(by_alias=True)
        self.write("metadata", metadata)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_access(self) -> None:
        if self.get_lock().locked and not self._held:
            raise LockHeldError()

    def _path(self, kind: str) -> Path:
        return self.data_dir / f"{kind}.json"

    def _dump(self, kind: str, data: Any) -> None:  # noqa: ANN401
        """Write a document atomically (temp file in the same dir, then replace)."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(kind)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{kind}.", suffix=".tmp", dir=self.data_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_name, path)
        except Exception as e:
            logger.error(f"Failed to save {path.name}: {e}")
            Path(tmp_name).unlink(missing_ok=True)
            raise
