"""Idempotent create-or-patch of fully specified resource intents."""

from __future__ import annotations

import logging
from typing import Any

from .errors import NotFoundError
from .keyed_lock import KeyedLock
from .models import PostgresCluster
from .store import identity

logger = logging.getLogger(__name__)


def is_subset(desired: Any, live: Any) -> bool:
    """True when every field declared in ``desired`` already holds in ``live``.

    Fields the server adds (defaults, status, bookkeeping metadata) are
    ignored; lists must match element by element. An empty map or list
    matches an omitted field.
    """
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(
            is_subset(value, live[key]) if key in live else value in ({}, [])
            for key, value in desired.items()
        )
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(d, l) for d, l in zip(desired, live))
    return desired == live


def set_controller_reference(cluster: PostgresCluster, resource: dict[str, Any]) -> None:
    """Mark ``cluster`` as the controlling owner of ``resource``."""
    metadata = resource.setdefault("metadata", {})
    refs = [
        ref for ref in metadata.get("ownerReferences") or []
        if not ref.get("controller")
    ]
    refs.append(cluster.owner_reference())
    metadata["ownerReferences"] = refs


class IntentApplier:
    """Create the desired object if absent, otherwise patch it when it drifted.

    Calls for the same (kind, namespace, name) are serialized. Store errors
    are returned to the caller uninterpreted.
    """

    def __init__(self, store):
        self.store = store
        self._locks = KeyedLock()

    def apply(self, cluster: PostgresCluster, desired: dict[str, Any]) -> dict[str, Any]:
        """Converge one resource to ``desired`` and return the live object.

        Raises:
            StoreError: If the store call fails (including conflicts)
            ValidationError: If the server rejects the object
        """
        set_controller_reference(cluster, desired)
        key = identity(desired)
        kind, namespace, name = key

        with self._locks.hold(key):
            try:
                live = self.store.get(kind, namespace, name)
            except NotFoundError:
                logger.info(f"Creating {kind} {namespace}/{name}")
                return self.store.create(desired)

            if is_subset(desired, live):
                return live

            logger.info(f"Patching {kind} {namespace}/{name}")
            return self.store.patch(desired)
