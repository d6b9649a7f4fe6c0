"""
Pydantic models for the Longhorn Replica custom resource.
"""
from enum import Enum
from typing import Optional

from pydantic import Field

from longhorn_manager.models.meta import KubeModel, ObjectMeta, object_key

REPLICA_GROUP = "longhorn.rancher.io"
REPLICA_VERSION = "v1alpha1"
REPLICA_PLURAL = "replicas"
REPLICA_KIND = "Replica"
REPLICA_API_VERSION = f"{REPLICA_GROUP}/{REPLICA_VERSION}"


class InstanceState(str, Enum):
    """Replica instance lifecycle states (desired and observed)."""

    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"
    DELETED = "deleted"


class ReplicaSpec(KubeModel):
    """Desired state, written by the volume controller."""

    desire_state: Optional[InstanceState] = Field(default=None, alias="desireState")
    volume_name: str = Field(default="", alias="volumeName")
    volume_size: str = Field(default="", alias="volumeSize")
    engine_image: str = Field(default="", alias="engineImage")
    node_id: str = Field(default="", alias="nodeID")
    restore_from: str = Field(default="", alias="restoreFrom")
    restore_name: str = Field(default="", alias="restoreName")
    failed_at: str = Field(default="", alias="failedAt")


class ReplicaStatus(KubeModel):
    """Observed state, owned by this controller."""

    state: Optional[InstanceState] = None


class Replica(KubeModel):
    """A Longhorn replica resource."""

    api_version: str = Field(default=REPLICA_API_VERSION, alias="apiVersion")
    kind: str = REPLICA_KIND
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: ReplicaSpec = Field(default_factory=ReplicaSpec)
    status: ReplicaStatus = Field(default_factory=ReplicaStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return object_key(self.metadata)

    def controller_ref(self) -> dict:
        """Owner reference that makes this replica the controller of a child."""
        return {
            "apiVersion": REPLICA_API_VERSION,
            "kind": REPLICA_KIND,
            "name": self.metadata.name,
            "uid": self.metadata.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def object_reference(self) -> dict:
        """Reference used as involvedObject when recording events."""
        return {
            "apiVersion": REPLICA_API_VERSION,
            "kind": REPLICA_KIND,
            "name": self.metadata.name,
            "namespace": self.metadata.namespace,
            "uid": self.metadata.uid,
            "resourceVersion": self.metadata.resource_version,
        }
