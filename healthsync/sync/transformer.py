"""Raw provider samples → canonical ActivityRecords.

The transform is one-to-one: every sample becomes exactly one record, keyed
by ``sample_external_id(provider, sample.id)``.  Validation helpers live here
too, but the orchestrator does not drop anything itself; the backend is the
authority that rejects out-of-window or non-positive values per record.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import date

from healthsync.sync.base import (
    ActivityCategory,
    ActivityRecord,
    HealthSample,
    ProviderId,
)
from healthsync.sync.config_loader import SyncConfig, get_sync_config
from healthsync.sync.dedup import sample_external_id

logger = logging.getLogger("healthsync.sync.transformer")


def round_half_up(value: float) -> int:
    """Round to the nearest whole unit, halves away from zero."""
    if value < 0:
        return -math.floor(-value + 0.5)
    return math.floor(value + 0.5)


class SampleTransformer:
    """Converts provider samples into backend-bound ``ActivityRecord`` objects."""

    def __init__(self, provider: ProviderId, config: SyncConfig | None = None) -> None:
        self._provider = provider
        self._config = config or get_sync_config()

    @property
    def provider(self) -> ProviderId:
        return self._provider

    def transform_sample(self, sample: HealthSample) -> ActivityRecord:
        return ActivityRecord(
            activity_type=sample.category,
            value=round_half_up(sample.value),
            unit=sample.unit or self._config.default_unit(sample.category),
            source=self._provider,
            source_external_id=sample_external_id(self._provider, sample.id),
            recorded_at=sample.start_date,
        )

    def transform_samples(self, samples: Iterable[HealthSample]) -> list[ActivityRecord]:
        records = [self.transform_sample(s) for s in samples]
        logger.debug("Transformed %d %s samples", len(records), self._provider.value)
        return records


# ---------------------------------------------------------------------------
# Validation / aggregation helpers
# ---------------------------------------------------------------------------


def is_valid_sample(sample: HealthSample) -> bool:
    """True if the sample has an id, a non-negative value and an ordered interval."""
    return (
        bool(sample.id)
        and isinstance(sample.category, ActivityCategory)
        and sample.value is not None
        and sample.value >= 0
        and sample.start_date is not None
        and sample.end_date is not None
        and sample.start_date <= sample.end_date
    )


def filter_valid_samples(samples: Iterable[HealthSample]) -> list[HealthSample]:
    valid = []
    for sample in samples:
        if is_valid_sample(sample):
            valid.append(sample)
        else:
            logger.debug("Dropping invalid sample %r", sample.id)
    return valid


def aggregate_by_day_and_type(
    samples: Iterable[HealthSample],
) -> dict[date, dict[ActivityCategory, float]]:
    """Sum sample values per UTC day (of ``start_date``) and category."""
    result: dict[date, dict[ActivityCategory, float]] = defaultdict(
        lambda: defaultdict(float)
    )
    for sample in samples:
        result[sample.start_date.date()][sample.category] += sample.value
    return {day: dict(totals) for day, totals in result.items()}


def calculate_total(samples: Sequence[HealthSample], category: ActivityCategory) -> float:
    return sum(s.value for s in samples if s.category == category)
