"""
Segment Inventory — the boundary to partition metadata.

Segment metadata is owned and refreshed outside the kernel. The kernel only
asks for the candidate segments of a policy's target table and for a single
segment by id when it is about to act on it.
"""

from typing import Dict, Iterable, List, Optional, Protocol

from ilm_kernel.models.policy import Policy
from ilm_kernel.models.segment import Segment


class SegmentInventory(Protocol):
    def list_candidate_segments(self, policy: Policy) -> List[Segment]:
        """Segments of the table the policy targets."""

    def get_segment(self, segment_id: str) -> Optional[Segment]:
        """A single segment, or None if it no longer exists."""


class InMemorySegmentInventory:
    """Reference inventory keyed by segment id."""

    def __init__(self, segments: Optional[Iterable[Segment]] = None):
        self._segments: Dict[str, Segment] = {}
        for segment in segments or []:
            self.upsert(segment)

    def upsert(self, segment: Segment) -> None:
        self._segments[segment.id] = segment

    def remove(self, segment_id: str) -> None:
        self._segments.pop(segment_id, None)

    def list_candidate_segments(self, policy: Policy) -> List[Segment]:
        return sorted(
            (
                s for s in self._segments.values()
                if policy.target.matches(s.owner, s.table_name)
            ),
            key=lambda s: s.partition_name,
        )

    def get_segment(self, segment_id: str) -> Optional[Segment]:
        return self._segments.get(segment_id)

