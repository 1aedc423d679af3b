"""
SukiStudy - Reactive Queries

Derived views over the local store that stay current. A query runs as soon
as it is activated, re-runs in full whenever a collection it reads changes,
and stops listening when deactivated. Results are tuples of StudyItem, so
consumers cannot mutate them.

Assignments whose subject is not in the store yet (sync order is not
guaranteed) are left out rather than reported as errors.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from .models import Assignment, Subject, utc_now
from .store import ChangeEvent, EntityCollection, LocalStore

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's bound-parameter limit
_ID_CHUNK_SIZE = 500


@dataclass(frozen=True)
class StudyItem:
    """A subject joined with the user's progress on it."""
    subject: Subject
    assignment: Assignment
    is_reviewable: bool = False


Results = tuple[StudyItem, ...]
ResultsListener = Callable[[Results], None]


class LiveQuery:
    """Base class for auto-refreshing derived result sets."""

    def __init__(self, store: LocalStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self._clock = clock
        self._results: Results = ()
        self._active = False
        self._listeners: list[ResultsListener] = []

    def __enter__(self) -> "LiveQuery":
        self.activate()
        return self

    def __exit__(self, *exc_info) -> None:
        self.deactivate()

    @property
    def sources(self) -> tuple[EntityCollection, ...]:
        """Collections this query reads."""
        return (self.store.assignments, self.store.subjects)

    @property
    def results(self) -> Results:
        return self._results

    @property
    def active(self) -> bool:
        return self._active

    def run(self) -> list[StudyItem]:
        raise NotImplementedError

    def subscribe(self, listener: ResultsListener) -> None:
        """Call ``listener`` with the new results after every refresh."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: ResultsListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def activate(self) -> Results:
        if not self._active:
            self._active = True
            for collection in self.sources:
                collection.subscribe(self._on_change)
            self.refresh()
        return self._results

    def deactivate(self) -> None:
        for collection in self.sources:
            collection.unsubscribe(self._on_change)
        self._active = False

    def refresh(self) -> Results:
        self._results = tuple(self.run())
        for listener in list(self._listeners):
            try:
                listener(self._results)
            except Exception as e:
                logger.error(f"{type(self).__name__} listener failed: {e}")
        return self._results

    def _on_change(self, event: ChangeEvent) -> None:
        logger.debug(f"{type(self).__name__}: {event.collection} {event.action}, refreshing")
        self.refresh()

    # === Helpers ===

    def _subjects_by_id(self, subject_ids: Iterable[int], **filters: Any) -> dict[int, Subject]:
        ids = list(dict.fromkeys(subject_ids))
        subjects: dict[int, Subject] = {}
        for start in range(0, len(ids), _ID_CHUNK_SIZE):
            chunk = ids[start:start + _ID_CHUNK_SIZE]
            for subject in self.store.subjects.find(id__in=chunk, **filters):
                subjects[subject.id] = subject
        return subjects

    def _join(
        self,
        assignments: list[Assignment],
        now: Optional[datetime],
        **subject_filters: Any,
    ) -> list[StudyItem]:
        if not assignments:
            return []

        subjects = self._subjects_by_id((a.subject_id for a in assignments), **subject_filters)
        items = []
        for assignment in assignments:
            subject = subjects.get(assignment.subject_id)
            if subject is None:
                continue
            items.append(StudyItem(
                subject=subject,
                assignment=assignment,
                is_reviewable=assignment.is_available(now) if now else False,
            ))
        return items


class AllSubjectsQuery(LiveQuery):
    """Every assignment joined with its subject."""

    def run(self) -> list[StudyItem]:
        return self._join(self.store.assignments.find(), self._clock())


class LearnedSubjectsQuery(LiveQuery):
    """
    Subjects past their lesson (SRS stage above 0).

    Ordered by ``available_at`` (missing last), then reviewable items are
    moved ahead of the rest without disturbing that order.
    """

    def __init__(
        self,
        store: LocalStore,
        subject_types: Optional[Iterable[str]] = None,
        min_level: Optional[int] = None,
        max_level: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(store, clock)
        self.subject_types = list(subject_types) if subject_types is not None else None
        self.min_level = min_level
        self.max_level = max_level

    def _subject_filters(self) -> dict[str, Any]:
        filters: dict[str, Any] = {}
        if self.subject_types is not None:
            filters["object__in"] = self.subject_types
        if self.min_level is not None:
            filters["level__gte"] = self.min_level
        if self.max_level is not None:
            filters["level__lte"] = self.max_level
        return filters

    def run(self) -> list[StudyItem]:
        assignments = self.store.assignments.find(srs_stage__gt=0, order_by="available_at")
        items = self._join(assignments, self._clock(), **self._subject_filters())
        items.sort(key=lambda item: not item.is_reviewable)
        return items


class LessonsQuery(LiveQuery):
    """Unlocked subjects whose lesson has not been started (SRS stage 0)."""

    def __init__(
        self,
        store: LocalStore,
        subject_types: Optional[Iterable[str]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(store, clock)
        self.subject_types = list(subject_types) if subject_types is not None else None

    def run(self) -> list[StudyItem]:
        assignments = self.store.assignments.find(
            srs_stage=0,
            unlocked_at__lt=self._clock(),
            order_by="unlocked_at",
        )
        if self.subject_types is None:
            return self._join(assignments, None)
        return self._join(assignments, None, object__in=self.subject_types)
