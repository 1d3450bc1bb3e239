"""
goodflows.priority_queue — Process findings most-urgent first.

Findings are bucketed by type (or an explicit ``priority``) into four
levels and served lowest number first, FIFO within a level::

    [doc, bug, SECURITY, perf, bug]  ->  [SECURITY, bug, bug, perf, doc]

The queue is process-local and never persisted.  Failed items keep their
place until they succeed or run out of retries.
"""

from __future__ import annotations

import copy
import heapq
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from goodflows.core.errors import InvalidStateError, NotFoundError, ValidationError
from goodflows.core.types import now_iso

log = logging.getLogger("goodflows.queue")

# Lower number = served first.
PRIORITY = {
    "URGENT": 1,  # critical security
    "HIGH": 2,  # potential bugs
    "NORMAL": 3,  # refactoring, performance
    "LOW": 4,  # documentation
}

PRIORITY_NAMES = {1: "urgent", 2: "high", 3: "normal", 4: "low"}

TYPE_TO_PRIORITY = {
    "critical_security": PRIORITY["URGENT"],
    "potential_issue": PRIORITY["HIGH"],
    "refactor_suggestion": PRIORITY["NORMAL"],
    "performance": PRIORITY["NORMAL"],
    "documentation": PRIORITY["LOW"],
}

#: Bucket for finding types not listed above.
DEFAULT_PRIORITY = PRIORITY["HIGH"]

DEFAULT_MAX_RETRIES = 3


def priority_for(finding: Dict[str, Any]) -> int:
    """Priority level 1..4 of *finding*.

    An integer ``priority`` key wins over the type mapping.
    """
    if not isinstance(finding, dict):
        raise ValidationError("finding must be a mapping", [f"finding={finding!r}"])
    explicit = finding.get("priority")
    if explicit is not None:
        if isinstance(explicit, bool) or not isinstance(explicit, int) or explicit not in PRIORITY_NAMES:
            raise ValidationError("priority must be an integer from 1 to 4", [f"priority={explicit!r}"])
        return explicit
    return TYPE_TO_PRIORITY.get(finding.get("type"), DEFAULT_PRIORITY)


def sort_by_priority(findings: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Findings ordered most-urgent first; stable within a level."""
    return sorted(findings, key=priority_for)


def filter_by_priority(
    findings: Iterable[Dict[str, Any]],
    threshold: int = PRIORITY["LOW"],
) -> List[Dict[str, Any]]:
    """Findings whose priority is at or above *threshold* (numerically <=)."""
    return [f for f in findings if priority_for(f) <= threshold]


def group_by_priority(findings: Iterable[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    groups: Dict[str, List[Dict[str, Any]]] = {name: [] for name in PRIORITY_NAMES.values()}
    for finding in findings:
        groups[PRIORITY_NAMES[priority_for(finding)]].append(finding)
    return groups


@dataclass
class QueueItem:
    """A queued finding plus its scheduling state."""

    finding: Dict[str, Any]
    priority: int
    seq: int
    retries: int = 0
    enqueued_at: str = field(default_factory=now_iso)
    errors: List[str] = field(default_factory=list)

    @property
    def key(self) -> Tuple[int, int]:
        return (self.priority, self.seq)

    def __lt__(self, other: "QueueItem") -> bool:
        return self.key < other.key

    def to_dict(self) -> Dict[str, Any]:
        return {
            "finding": copy.deepcopy(self.finding),
            "priority": self.priority,
            "priority_name": PRIORITY_NAMES[self.priority],
            "retries": self.retries,
            "enqueued_at": self.enqueued_at,
            "seq": self.seq,
            "errors": list(self.errors),
        }


class PriorityQueue:
    """Binary-heap queue of findings keyed by ``(priority, seq)``.

    Parameters
    ----------
    priority_threshold : int, optional
        Findings with a priority number above this are excluded on
        enqueue.  ``None`` accepts every level.
    max_retries : int
        Failures allowed per item before it is dropped as exhausted.
    """

    def __init__(
        self,
        priority_threshold: Optional[int] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        if priority_threshold is not None and priority_threshold not in PRIORITY_NAMES:
            raise ValidationError(
                "priority_threshold must be 1..4 or None",
                [f"priority_threshold={priority_threshold!r}"],
            )
        if max_retries < 1:
            raise ValidationError("max_retries must be >= 1", [f"max_retries={max_retries!r}"])
        self.priority_threshold = priority_threshold
        self.max_retries = max_retries

        self._heap: List[QueueItem] = []
        self._seq = itertools.count()
        self._lock = threading.RLock()
        self._exhausted: List[QueueItem] = []
        self._skipped: List[Dict[str, Any]] = []
        self._enqueued = 0
        self._excluded = 0
        self._completed = 0

    @classmethod
    def from_findings(
        cls,
        findings: Iterable[Dict[str, Any]],
        priority_threshold: Optional[int] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> "PriorityQueue":
        queue = cls(priority_threshold=priority_threshold, max_retries=max_retries)
        queue.enqueue_all(findings)
        return queue

    # ------------------------------------------------------------------
    # Insertion
    # ------------------------------------------------------------------

    def enqueue(self, finding: Dict[str, Any]) -> bool:
        """Queue *finding*; ``False`` if its priority is below the threshold."""
        priority = priority_for(finding)
        with self._lock:
            if self.priority_threshold is not None and priority > self.priority_threshold:
                self._excluded += 1
                log.debug("Excluded %s finding (priority %d)", finding.get("type"), priority)
                return False
            item = QueueItem(finding=copy.deepcopy(finding), priority=priority, seq=next(self._seq))
            heapq.heappush(self._heap, item)
            self._enqueued += 1
            return True

    def enqueue_all(self, findings: Iterable[Dict[str, Any]]) -> Dict[str, int]:
        added = excluded = 0
        for finding in findings:
            if self.enqueue(finding):
                added += 1
            else:
                excluded += 1
        return {"added": added, "excluded": excluded}

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def peek(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._heap[0].to_dict() if self._heap else None

    def dequeue(self) -> Optional[Dict[str, Any]]:
        """Remove and return the head item, or ``None`` when empty."""
        with self._lock:
            if not self._heap:
                return None
            return heapq.heappop(self._heap).to_dict()

    def mark_completed(self, result: Any = None, seq: Optional[int] = None) -> Dict[str, Any]:
        """Remove an item as successfully processed.

        *seq* names the item (as returned by ``peek``); without it the
        current head is used.
        """
        with self._lock:
            item = self._remove(self._locate(seq))
            self._completed += 1
            entry = item.to_dict()
            entry["result"] = copy.deepcopy(result)
            return entry

    def mark_failed(self, error: Any = None, seq: Optional[int] = None) -> Dict[str, Any]:
        """Record a failed attempt on an item (the head unless *seq* is given).

        The item keeps its place for another attempt until it has
        failed ``max_retries`` times; then it is removed and reported
        with ``exhausted: True``.
        """
        with self._lock:
            index = self._locate(seq)
            item = self._heap[index]
            item.retries += 1
            if error is not None:
                item.errors.append(str(error))
            exhausted = item.retries >= self.max_retries
            if exhausted:
                self._remove(index)
                self._exhausted.append(item)
                log.info(
                    "Dropping %s finding after %d failed attempts",
                    item.finding.get("type"),
                    item.retries,
                )
            return {"exhausted": exhausted, **item.to_dict()}

    def mark_skipped(self, reason: Any = None, seq: Optional[int] = None) -> Dict[str, Any]:
        """Remove an item without processing it (the head unless *seq* is given)."""
        with self._lock:
            item = self._remove(self._locate(seq))
            entry = item.to_dict()
            entry["reason"] = None if reason is None else str(reason)
            self._skipped.append(entry)
            log.debug("Skipped %s finding: %s", item.finding.get("type"), entry["reason"])
            return copy.deepcopy(entry)

    def process_all(self, handler: Callable[[Dict[str, Any]], Any]) -> List[Dict[str, Any]]:
        """Drain the queue through *handler*, most-urgent first.

        An exception from *handler* counts as a failed attempt on that
        item; it is retried until exhausted.  Outcomes are recorded
        against the item the handler saw, even if the handler queues
        more urgent findings.  Returns one outcome dict per attempt.
        """
        outcomes: List[Dict[str, Any]] = []
        while True:
            item = self.peek()
            if item is None:
                return outcomes
            try:
                result = handler(item)
            except Exception as exc:
                log.debug("Handler failed on %s finding: %s", item["finding"].get("type"), exc)
                failed = self.mark_failed(exc, seq=item["seq"])
                outcomes.append({"status": "failed", "error": str(exc), "item": failed})
            else:
                done = self.mark_completed(result, seq=item["seq"])
                outcomes.append({"status": "completed", "result": result, "item": done})

    def retry_exhausted(self) -> int:
        """Put every exhausted item back in the queue with retries reset."""
        with self._lock:
            revived = self._exhausted
            self._exhausted = []
            for item in revived:
                item.retries = 0
                item.errors = []
                heapq.heappush(self._heap, item)
            return len(revived)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def size(self) -> int:
        with self._lock:
            return len(self._heap)

    def __len__(self) -> int:
        return self.size()

    def is_empty(self) -> bool:
        return self.size() == 0

    def clear(self) -> int:
        """Drop every pending item; returns how many were removed."""
        with self._lock:
            dropped = len(self._heap)
            self._heap = []
            return dropped

    def items(self) -> List[Dict[str, Any]]:
        """Pending items in service order."""
        with self._lock:
            return [item.to_dict() for item in sorted(self._heap)]

    def exhausted_items(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [item.to_dict() for item in self._exhausted]

    def skipped_items(self) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._skipped)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            by_priority = {name: 0 for name in PRIORITY_NAMES.values()}
            for item in self._heap:
                by_priority[PRIORITY_NAMES[item.priority]] += 1
            return {
                "pending": len(self._heap),
                "by_priority": by_priority,
                "enqueued": self._enqueued,
                "excluded": self._excluded,
                "completed": self._completed,
                "exhausted": len(self._exhausted),
                "skipped": len(self._skipped),
            }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _locate(self, seq: Optional[int]) -> int:
        """Heap index of the item with *seq*, or of the head when ``None``."""
        if seq is None:
            if not self._heap:
                raise InvalidStateError("Queue is empty")
            return 0
        if isinstance(seq, bool) or not isinstance(seq, int):
            raise ValidationError("seq must be an integer", [f"seq={seq!r}"])
        for index, item in enumerate(self._heap):
            if item.seq == seq:
                return index
        raise NotFoundError("Queue item", str(seq))

    def _remove(self, index: int) -> QueueItem:
        item = self._heap.pop(index)
        heapq.heapify(self._heap)
        return item
