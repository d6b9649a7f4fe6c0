"""
Pydantic models for the replica pod and its cleanup job.
"""
from enum import Enum
from typing import List, Optional

from pydantic import Field

from longhorn_manager.models.meta import KubeModel, ObjectMeta, object_key


class PodPhase(str, Enum):
    """Pod phases reported by the kubelet."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


class PodStatus(KubeModel):
    phase: Optional[str] = None


class Pod(KubeModel):
    """Replica pod; spec is carried through as extra data."""

    api_version: str = Field(default="v1", alias="apiVersion")
    kind: str = "Pod"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    status: PodStatus = Field(default_factory=PodStatus)

    @property
    def key(self) -> str:
        return object_key(self.metadata)


class JobCondition(KubeModel):
    type: str = ""
    status: str = ""


class JobStatus(KubeModel):
    completion_time: Optional[str] = Field(default=None, alias="completionTime")
    succeeded: Optional[int] = None
    failed: Optional[int] = None
    conditions: List[JobCondition] = Field(default_factory=list)


class Job(KubeModel):
    """Cleanup job."""

    api_version: str = Field(default="batch/v1", alias="apiVersion")
    kind: str = "Job"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    status: JobStatus = Field(default_factory=JobStatus)

    @property
    def key(self) -> str:
        return object_key(self.metadata)

    @property
    def is_finished(self) -> bool:
        # A failed job never gets a completionTime, only a Failed condition
        if self.status.completion_time:
            return True
        return any(
            c.type in ("Complete", "Failed") and c.status == "True"
            for c in self.status.conditions
        )

    @property
    def succeeded(self) -> bool:
        return bool(self.status.succeeded)
