"""
Data models for the controller.
"""
from longhorn_manager.models.meta import ObjectMeta, OwnerReference
from longhorn_manager.models.replica import InstanceState, Replica, ReplicaSpec, ReplicaStatus
from longhorn_manager.models.workload import Job, Pod, PodPhase

__all__ = [
    "ObjectMeta",
    "OwnerReference",
    "InstanceState",
    "Replica",
    "ReplicaSpec",
    "ReplicaStatus",
    "Job",
    "Pod",
    "PodPhase",
]
