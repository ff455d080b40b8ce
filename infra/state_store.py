"""
Liquidation Sentinel Infrastructure: State Store

Persistent JSON state with atomic writes (temp file + os.replace).

Single-writer invariant: every persisted document (daily stats, emergency
stop flag) is owned by the one bot process bound to the signing key. The
process enforces that with infra.instance_lock; no cross-process locking of
the state files is attempted here.
"""

import json
import logging
import os
import tempfile
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)


class JsonFileBackend:
    """One JSON document on disk."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def describe(self) -> str:
        return f"json:{self.path}"

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> Optional[Any]:
        """
        Read the document.

        Returns:
            Parsed JSON, or None when the file is missing, empty or unparsable
        """
        if not self.path.exists():
            return None
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to read {self.path}: {e}")
            raise
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unparsable state file {self.path}: {e}")
            return None

    def write(self, payload: Any) -> None:
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=f".{self.path.name}_",
            suffix=".tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def delete(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


class StateStore:
    """
    Dict-shaped state on top of a backend.

    load() merges persisted values over ``defaults``; save() replaces the
    document atomically.
    """

    def __init__(self, backend: Optional[JsonFileBackend] = None,
                 defaults: Optional[Dict[str, Any]] = None,
                 state_file: Optional[str] = None):
        if backend is None:
            backend = JsonFileBackend(state_file or os.getenv("STATE_FILE", "data/.state.json"))
        self._backend = backend
        self._defaults = dict(defaults or {})
        logger.debug(f"Initialized StateStore at {backend.describe()}")

    @property
    def backend(self) -> JsonFileBackend:
        return self._backend

    def exists(self) -> bool:
        return self._backend.exists()

    def load(self) -> Dict[str, Any]:
        data = self._backend.read()
        if data is None:
            return deepcopy(self._defaults)
        if not isinstance(data, dict):
            logger.warning(f"Invalid state format in {self._backend.describe()}, using defaults")
            return deepcopy(self._defaults)
        return {**deepcopy(self._defaults), **data}

    def save(self, state: Dict[str, Any]) -> None:
        try:
            self._backend.write(state)
        except Exception as e:
            logger.error(f"Failed to save state to {self._backend.describe()}: {e}")
            raise
        logger.debug(f"Saved state to {self._backend.describe()}")

    def reset(self) -> Dict[str, Any]:
        state = deepcopy(self._defaults)
        self.save(state)
        return state

    def delete(self) -> None:
        self._backend.delete()


def create_state_store(path: Union[str, Path], defaults: Optional[Dict[str, Any]] = None) -> StateStore:
    return StateStore(backend=JsonFileBackend(path), defaults=defaults)


__all__ = ["JsonFileBackend", "StateStore", "create_state_store"]
