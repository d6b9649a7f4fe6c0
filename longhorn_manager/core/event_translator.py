"""
Translate informer events into replica work queue keys.

Replica events map straight to the replica key. Pod and cleanup job events
are mapped to their controlling replica through the owner reference, which
must match both the Replica kind and the live replica's uid.
"""
from typing import Callable, Optional, Protocol

import structlog

from longhorn_manager.core.events import (
    CleanupJobUpdated,
    ReplicaAdded,
    ReplicaDeleted,
    ReplicaUpdated,
    ResourceEvent,
    WorkloadAdded,
    WorkloadDeleted,
    WorkloadUpdated,
)
from longhorn_manager.models.meta import ObjectMeta, OwnerReference, controller_of
from longhorn_manager.models.replica import REPLICA_KIND, Replica
from longhorn_manager.models.workload import Pod

logger = structlog.get_logger(__name__)


class ReplicaLister(Protocol):
    def get(self, namespace: str, name: str) -> Optional[Replica]:
        ...


class EventTranslator:
    """Single entry point for every informer event."""

    def __init__(self, replica_lister: ReplicaLister, enqueue: Callable[[Replica], None]):
        self.replica_lister = replica_lister
        self.enqueue = enqueue

    def translate(self, event: ResourceEvent) -> None:
        if isinstance(event, ReplicaAdded):
            logger.debug("replica_added", replica=event.replica.name)
            self.enqueue(event.replica)
        elif isinstance(event, ReplicaUpdated):
            logger.debug("replica_updated", replica=event.new.name)
            self.enqueue(event.new)
        elif isinstance(event, ReplicaDeleted):
            logger.debug("replica_deleted", replica=event.replica.name)
            self.enqueue(event.replica)
        elif isinstance(event, WorkloadAdded):
            self._enqueue_owner(event.pod.metadata)
        elif isinstance(event, WorkloadUpdated):
            self._pod_updated(event.old, event.new)
        elif isinstance(event, WorkloadDeleted):
            self._enqueue_owner(event.pod.metadata)
        elif isinstance(event, CleanupJobUpdated):
            if event.old.metadata.resource_version == event.new.metadata.resource_version:
                return
            self._enqueue_owner(event.new.metadata)
        else:
            logger.error("unexpected_event_type", event_type=type(event).__name__)

    def _pod_updated(self, old: Pod, cur: Pod) -> None:
        if cur.metadata.resource_version == old.metadata.resource_version:
            # Resyncs deliver updates for every known pod; two versions of
            # the same pod always have different resource versions.
            return
        if cur.metadata.deletion_timestamp:
            # A gracefully deleted pod first gets its deletion timestamp set
            # and is only removed after the grace period. React now.
            self.translate(WorkloadDeleted(pod=cur))
            return
        self._enqueue_owner(cur.metadata)

    def _enqueue_owner(self, metadata: ObjectMeta) -> None:
        ref = controller_of(metadata)
        if ref is None:
            # Orphans are not ours
            return
        replica = self.resolve_controller_ref(metadata.namespace, ref)
        if replica is None:
            return
        self.enqueue(replica)

    def resolve_controller_ref(self, namespace: str, ref: OwnerReference) -> Optional[Replica]:
        """
        Return the replica a controller reference points to, or None if the
        reference is of the wrong kind or belongs to a previous incarnation.
        """
        if ref.kind != REPLICA_KIND:
            return None
        replica = self.replica_lister.get(namespace, ref.name)
        if replica is None:
            return None
        if replica.metadata.uid != ref.uid:
            logger.debug(
                "stale_controller_ref",
                replica=ref.name,
                ref_uid=ref.uid,
                replica_uid=replica.metadata.uid,
            )
            return None
        return replica
