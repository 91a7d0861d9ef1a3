"""Stamp activity records with the goals they count toward."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from healthsync.sync.base import ActivityRecord, Goal

logger = logging.getLogger("healthsync.sync.assigner")


class ChallengeAssigner:
    """Matches records against the user's active goals.

    A record matches every goal of the same category whose window contains
    ``recorded_at`` (both bounds inclusive).  Matches are ordered by the
    soonest-ending window, so ``record.challenge_id`` is the goal closest to
    closing.  Records with no match are left unassigned and still uploaded.

    The goal list is taken once per pass; the assigner does no I/O.
    """

    def __init__(self, goals: Iterable[Goal]) -> None:
        self._goals = sorted(goals, key=lambda g: (g.end_date, g.goal_id))

    @property
    def goals(self) -> list[Goal]:
        return list(self._goals)

    def matching_goals(self, record: ActivityRecord) -> list[Goal]:
        return [g for g in self._goals if g.covers(record)]

    def assign(self, records: Iterable[ActivityRecord]) -> list[ActivityRecord]:
        """Set ``challenge_ids`` on each record in place and return them."""
        assigned = 0
        result = []
        for record in records:
            record.challenge_ids = [g.goal_id for g in self.matching_goals(record)]
            if record.challenge_ids:
                assigned += 1
            result.append(record)
        logger.debug(
            "Assigned %d/%d records across %d active goals",
            assigned, len(result), len(self._goals),
        )
        return result
