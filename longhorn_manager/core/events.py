"""
Typed change notifications delivered by the informers.

Each informer builds one of these variants per add/update/delete, after the
raw object has been validated into its model.
"""
from dataclasses import dataclass
from typing import Union

from longhorn_manager.models.replica import Replica
from longhorn_manager.models.workload import Job, Pod


@dataclass(frozen=True)
class ReplicaAdded:
    replica: Replica


@dataclass(frozen=True)
class ReplicaUpdated:
    old: Replica
    new: Replica


@dataclass(frozen=True)
class ReplicaDeleted:
    replica: Replica


@dataclass(frozen=True)
class WorkloadAdded:
    pod: Pod


@dataclass(frozen=True)
class WorkloadUpdated:
    old: Pod
    new: Pod


@dataclass(frozen=True)
class WorkloadDeleted:
    pod: Pod


@dataclass(frozen=True)
class CleanupJobUpdated:
    old: Job
    new: Job


ResourceEvent = Union[
    ReplicaAdded,
    ReplicaUpdated,
    ReplicaDeleted,
    WorkloadAdded,
    WorkloadUpdated,
    WorkloadDeleted,
    CleanupJobUpdated,
]
