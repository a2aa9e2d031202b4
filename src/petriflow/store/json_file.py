"""JSON-file backed store.

The whole store is rewritten after every mutation. This is intentionally
minimal: it suits a single process and small markings. Anything bigger should
sit behind a real database implementing the same protocols.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from petriflow.store.memory import InMemoryStore, StoreSnapshot

logger = logging.getLogger(__name__)


class JsonFileStore(InMemoryStore):
    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = path
        self.restore(self._load())

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> StoreSnapshot:
        if not self._path.exists():
            return StoreSnapshot()

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(
                "Store file is not valid JSON; treating as empty",
                extra={"path": str(self._path)},
            )
            return StoreSnapshot()

        if not isinstance(raw, dict):
            logger.warning(
                "Store file has unexpected shape; treating as empty",
                extra={"path": str(self._path)},
            )
            return StoreSnapshot()

        try:
            return StoreSnapshot.model_validate(raw)
        except ValidationError:
            logger.exception(
                "Store file failed validation; treating as empty",
                extra={"path": str(self._path)},
            )
            return StoreSnapshot()

    def _commit(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = self.snapshot().model_dump(mode="json")
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        tmp.replace(self._path)
