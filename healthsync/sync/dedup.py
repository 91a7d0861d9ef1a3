"""Deduplication keys for health sync.

Two idempotency contracts meet here:

    - Provider samples:  ``source_external_id`` = sha256(provider | sample id).
      The backend enforces UNIQUE (user_id, source, source_external_id) on
      activity_logs, so re-uploading a batch only bumps ``deduplicated``.
    - Manual activity:   ``client_event_id`` is a UUID generated once at the
      point of user intent and reused verbatim on every retry.  The backend
      enforces UNIQUE (user_id, client_event_id).

Both keys must be fixed before the first attempt; regenerating them per
attempt double-counts on retry.
"""

from __future__ import annotations

import hashlib
import uuid

from healthsync.sync.base import ProviderId


def sample_external_id(provider: ProviderId | str, sample_id: str) -> str:
    """Return the deterministic external id for a provider sample.

    Only the provider tag and the provider's own sample id go into the hash,
    so a sample whose value is later revised by the provider keeps its key.

    Args:
        provider:  Provider tag (e.g. 'healthkit').
        sample_id: Provider-local sample identifier.

    Returns:
        Lower-case SHA-256 hex digest.
    """
    tag = provider.value if isinstance(provider, ProviderId) else str(provider)
    return hashlib.sha256(f"{tag}|{sample_id}".encode("utf-8")).hexdigest()


def new_client_event_id() -> str:
    """Generate an idempotency key for one manual user action.

    Call this once, where the user acts (button press, form submit), and
    carry the value through every retry of that action.
    """
    return str(uuid.uuid4())
