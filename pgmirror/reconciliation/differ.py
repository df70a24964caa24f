"""
Identifier Differ for Reconciliation

Compares the identifier sets read from the source window and from the
destination over the same bound.
"""

import logging
from typing import Iterable, List, Set

logger = logging.getLogger(__name__)


class IdentifierDiffer:
    """
    Detects gaps between source and destination identifier sets.

    Identifies:
    - Missing ids (in the source window but not at the destination)
    - Destination-only ids (at the destination but not in the source window)
    """

    def find_missing(self, source_ids: Iterable[int], destination_ids: Iterable[int]) -> List[int]:
        """
        Ids present in the source window and absent at the destination.

        Returns:
            Missing ids, newest (highest) first
        """
        missing = set(source_ids) - set(destination_ids)
        missing.discard(None)
        return sorted(missing, reverse=True)

    def find_destination_only(self, source_ids: Iterable[int], destination_ids: Iterable[int]) -> Set[int]:
        """
        Ids present at the destination and absent from the source window.

        These are reported and never acted upon.
        """
        extra = set(destination_ids) - set(source_ids)
        extra.discard(None)
        return extra

    def calculate_match_percentage(self, missing_count: int, total_source_ids: int) -> float:
        """
        Percentage of source ids already present at the destination (0-100).
        """
        if total_source_ids == 0:
            return 100.0

        percentage = ((total_source_ids - missing_count) / total_source_ids) * 100.0
        return round(percentage, 2)

    @staticmethod
    def batches(ids: List[int], size: int) -> Iterable[List[int]]:
        """Split ids into consecutive batches of at most size."""
        if size < 1:
            raise ValueError("Batch size must be positive")
        for start in range(0, len(ids), size):
            yield ids[start:start + size]
