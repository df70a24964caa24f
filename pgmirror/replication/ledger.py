"""
Divergence Ledger

Durable JSON document listing writes that permanently failed. It is an
append/delete store, not a queue: entries stay until a reprocessing run
confirms the write went through.
"""

import fcntl
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from pgmirror.replication.models import DivergenceRecord

logger = logging.getLogger(__name__)


class DivergenceLedger:
    """
    File-backed ledger of DivergenceRecords.

    One entry is kept per (entity_type, entity_id); recording the same
    identity again replaces the older entry. Every mutation re-reads the file
    while holding an exclusive flock on a sidecar "<name>.lock" file, so an
    operator tool and the running service can share the ledger. Reads need
    no lock since the document is only ever swapped in with os.replace.
    """

    def __init__(self, path: str, on_change: Optional[Callable[[int], None]] = None):
        """
        Initialize the ledger.

        Args:
            path: JSON document location (created on first write)
            on_change: Optional callback receiving the entry count after each mutation
        """
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._lock = threading.Lock()
        self._on_change = on_change
        logger.debug(f"Divergence ledger at {self.path}")

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.lock_path, "a") as lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _load(self) -> Dict[Tuple[str, int], DivergenceRecord]:
        if not self.path.exists():
            return {}

        with open(self.path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        entries = {}
        for raw in data.get("divergences", []):
            record = DivergenceRecord.from_dict(raw)
            entries[record.key] = record
        return entries

    def _save(self, entries: Dict[Tuple[str, int], DivergenceRecord]) -> None:
        document = {"divergences": [record.to_dict() for record in entries.values()]}

        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".ledger-", suffix=".json")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(document, f, indent=2, default=str, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        if self._on_change:
            self._on_change(len(entries))

    def record(self, entry: DivergenceRecord) -> None:
        """Append an entry, replacing any older entry for the same identity."""
        with self._exclusive():
            entries = self._load()
            entries.pop(entry.key, None)
            entries[entry.key] = entry
            self._save(entries)

        logger.warning(
            f"Divergence recorded for {entry.entity_type} {entry.entity_id} "
            f"({entry.error_kind}): {entry.message}"
        )

    def list(self, entity_type: Optional[str] = None) -> List[DivergenceRecord]:
        """Entries in insertion order, optionally filtered by entity type."""
        entries = list(self._load().values())

        if entity_type is not None:
            entries = [e for e in entries if e.entity_type == entity_type]
        return entries

    def remove(self, entity_id: int, entity_type: Optional[str] = None) -> bool:
        """
        Delete entries for an identifier.

        Args:
            entity_id: Identifier to remove
            entity_type: Restrict removal to one entity type (None: any type)

        Returns:
            True if at least one entry was removed
        """
        with self._exclusive():
            entries = self._load()
            doomed = [
                key for key in entries
                if key[1] == entity_id and (entity_type is None or key[0] == entity_type)
            ]
            if not doomed:
                return False

            for key in doomed:
                del entries[key]
            self._save(entries)

        logger.info(f"Removed {len(doomed)} divergence entr{'y' if len(doomed) == 1 else 'ies'} for id {entity_id}")
        return True

    def __len__(self) -> int:
        return len(self._load())
