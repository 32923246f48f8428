"""JSON file snapshot store with write-then-replace semantics."""

from __future__ import annotations

import hashlib
import os
import re
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from ..errors import PersistenceError
from .schema import PlanSnapshot

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def snapshot_filename(plan_id: str) -> str:
    """Return a filesystem-safe, collision-resistant file name for ``plan_id``."""
    readable = _UNSAFE_CHARS.sub("-", plan_id).strip("-.")[:60] or "plan"
    digest = hashlib.sha256(plan_id.encode("utf-8")).hexdigest()[:10]
    return f"{readable}-{digest}.json"


class FileSnapshotStore:
    """Store one JSON document per plan under ``root``."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def path_for(self, plan_id: str) -> Path:
        return self.root / snapshot_filename(plan_id)

    def save(self, snapshot: PlanSnapshot) -> None:
        target = self.path_for(snapshot.plan_id)
        temp_path: Path | None = None
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.root,
                prefix=f".{target.stem}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                temp_path = Path(handle.name)
                handle.write(snapshot.model_dump_json(indent=2))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, target)
        except OSError as error:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)
            raise PersistenceError(f"Failed to write snapshot {target}: {error}") from error

    def load(self, plan_id: str) -> Optional[PlanSnapshot]:
        target = self.path_for(plan_id)
        try:
            text = target.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as error:
            raise PersistenceError(f"Failed to read snapshot {target}: {error}") from error
        try:
            return PlanSnapshot.model_validate_json(text)
        except ValidationError as error:
            raise PersistenceError(f"Snapshot {target} is corrupt: {error}") from error


__all__ = ["FileSnapshotStore", "snapshot_filename"]
