"""
Pydantic models for the Kubernetes object metadata the controller reads.

Objects arrive from the API server as camelCase JSON. Only the fields the
controller uses are declared; everything else is kept as extra data so an
object can be written back without losing fields.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class KubeModel(BaseModel):
    """Base model for Kubernetes wire objects."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_body(self) -> dict:
        """Serialize back to the camelCase dict the API server expects."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class OwnerReference(KubeModel):
    """Link from a child object to the object managing it."""

    api_version: str = Field(default="", alias="apiVersion")
    kind: str = ""
    name: str = ""
    uid: str = ""
    controller: Optional[bool] = None
    block_owner_deletion: Optional[bool] = Field(default=None, alias="blockOwnerDeletion")


class ObjectMeta(KubeModel):
    """Standard object metadata."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    resource_version: str = Field(default="", alias="resourceVersion")
    labels: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    owner_references: List[OwnerReference] = Field(default_factory=list, alias="ownerReferences")
    deletion_timestamp: Optional[str] = Field(default=None, alias="deletionTimestamp")


def controller_of(metadata: ObjectMeta) -> Optional[OwnerReference]:
    """Return the owner reference flagged as controller, if any."""
    for ref in metadata.owner_references:
        if ref.controller:
            return ref
    return None


def object_key(metadata: ObjectMeta) -> str:
    """Build the namespace/name key used by caches and the work queue."""
    if metadata.namespace:
        return f"{metadata.namespace}/{metadata.name}"
    return metadata.name


def split_key(key: str) -> tuple[str, str]:
    """
    Split a namespace/name key.

    Returns:
        (namespace, name); namespace is empty for cluster scoped keys

    Raises:
        ValueError: If the key has more than one separator or an empty name
    """
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return "", parts[0]
    if len(parts) == 2 and parts[1]:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")
