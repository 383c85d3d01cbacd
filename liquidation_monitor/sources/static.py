import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List

from liquidation_monitor.sources.base import Borrower, SnapshotSource
from liquidation_monitor.sources.http import SnapshotPayload

logger = logging.getLogger(__name__)


class StaticSnapshotSource(SnapshotSource):
    """Serves a fixed borrower list, e.g. a recorded snapshot or test fixtures."""

    def __init__(self, borrowers: Iterable[Borrower] = ()):
        self._borrowers: List[Borrower] = list(borrowers)

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticSnapshotSource":
        """Load a snapshot saved in the indexer's ``{"borrowers": [...]}`` format."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        payload = SnapshotPayload.model_validate(data)
        loaded_at = datetime.now(timezone.utc)
        borrowers = [b.to_borrower(loaded_at) for b in payload.borrowers]
        logger.info(f"Loaded {len(borrowers)} borrowers from {path}")
        return cls(borrowers)

    @property
    def name(self) -> str:
        return "static"

    def set_borrowers(self, borrowers: Iterable[Borrower]) -> None:
        self._borrowers = list(borrowers)

    async def get_borrowers(self) -> List[Borrower]:
        return list(self._borrowers)
