"""
Replica workload lifecycle: the pod that runs a replica and the job that
wipes its data after deletion.

Handles:
- Pod template (launch command, host path data directory, placement)
- Start / stop of the replica pod
- Cleanup job creation, polling and removal
"""
import posixpath
from typing import Awaitable, Callable, Dict, Any

from kubernetes_asyncio.client import ApiException

from longhorn_manager.config.logging import get_logger
from longhorn_manager.models.replica import InstanceState, Replica
from longhorn_manager.services.event_recorder import EVENT_TYPE_NORMAL, EVENT_TYPE_WARNING
from longhorn_manager.utils.retry import is_not_found

logger = get_logger(__name__)

# Label identifying which volume a replica pod belongs to, for scheduling
REPLICA_LABEL_KEY = "longhorn-volume-replica"

DATA_VOLUME_NAME = "volume"
DATA_MOUNT_PATH = "/volume"
HOSTNAME_TOPOLOGY_KEY = "kubernetes.io/hostname"

# The volume is not always mounted the instant the container starts
CLEANUP_COMMAND = ["/bin/bash", "-c"]
CLEANUP_ARGS = [f"sleep 1 && rm -rf {DATA_MOUNT_PATH}/*"]


def replica_volume_directory(longhorn_directory: str, replica_name: str) -> str:
    """Host directory holding the data of one replica."""
    return posixpath.join(longhorn_directory, "replicas", replica_name)


class ReplicaWorkloadManager:
    """
    Creates and removes the Kubernetes objects that embody a replica.

    update_replica and enqueue_replica are the controller's handlers; they
    are called when cleanup completes so the state change is persisted and
    the replica is reconciled again. get_replica reads the replica straight
    from the API server.
    """

    def __init__(
        self,
        namespace: str,
        pod_control,
        job_client,
        recorder,
        update_replica: Callable[[Replica], Awaitable[Replica]],
        enqueue_replica: Callable[[Replica], None],
        get_replica: Callable[[str], Awaitable[Replica]],
        longhorn_directory: str = "/var/lib/rancher/longhorn/",
        listen_address: str = "0.0.0.0:9502",
        cleanup_backoff_limit: int = 1,
    ):
        self.namespace = namespace
        self.pod_control = pod_control
        self.job_client = job_client
        self.recorder = recorder
        self.update_replica = update_replica
        self.enqueue_replica = enqueue_replica
        self.get_replica = get_replica
        self.longhorn_directory = longhorn_directory
        self.listen_address = listen_address
        self.cleanup_backoff_limit = cleanup_backoff_limit

    def _data_volume(self, replica: Replica) -> Dict[str, Any]:
        return {
            "name": DATA_VOLUME_NAME,
            "hostPath": {
                "path": replica_volume_directory(self.longhorn_directory, replica.name),
            },
        }

    def create_pod_spec(self, replica: Replica) -> Dict[str, Any]:
        """Build the pod body for a replica."""
        spec = replica.spec
        cmd = [
            "launch", "replica",
            "--listen", self.listen_address,
            "--size", spec.volume_size,
        ]
        if spec.restore_from and spec.restore_name:
            cmd += ["--restore-from", spec.restore_from, "--restore-name", spec.restore_name]
        cmd.append(DATA_MOUNT_PATH)

        pod_spec: Dict[str, Any] = {
            "restartPolicy": "Never",
            "containers": [
                {
                    "name": replica.name,
                    "image": spec.engine_image,
                    "command": cmd,
                    "securityContext": {"privileged": True},
                    "volumeMounts": [
                        {"name": DATA_VOLUME_NAME, "mountPath": DATA_MOUNT_PATH},
                    ],
                },
            ],
            "volumes": [self._data_volume(replica)],
        }

        # The first placement is left to the scheduler; after that the
        # replica is pinned to the node holding its data.
        if spec.node_id:
            pod_spec["nodeName"] = spec.node_id
        else:
            pod_spec["affinity"] = {
                "podAntiAffinity": {
                    "preferredDuringSchedulingIgnoredDuringExecution": [
                        {
                            "weight": 100,
                            "podAffinityTerm": {
                                "labelSelector": {
                                    "matchLabels": {REPLICA_LABEL_KEY: spec.volume_name},
                                },
                                "topologyKey": HOSTNAME_TOPOLOGY_KEY,
                            },
                        },
                    ],
                },
            }

        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {
                "name": replica.name,
                "labels": {REPLICA_LABEL_KEY: spec.volume_name},
            },
            "spec": pod_spec,
        }

    def create_cleanup_job_spec(self, replica: Replica) -> Dict[str, Any]:
        """Build the job body that wipes a replica's data directory."""
        cleanup_name = f"cleanup-{replica.name}"
        return {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {
                "name": replica.name,
                "namespace": replica.namespace,
                "ownerReferences": [replica.controller_ref()],
            },
            "spec": {
                "backoffLimit": self.cleanup_backoff_limit,
                "template": {
                    "metadata": {"name": cleanup_name},
                    "spec": {
                        "nodeName": replica.spec.node_id,
                        "restartPolicy": "Never",
                        "containers": [
                            {
                                "name": cleanup_name,
                                "image": replica.spec.engine_image,
                                "command": list(CLEANUP_COMMAND),
                                "args": list(CLEANUP_ARGS),
                                "volumeMounts": [
                                    {"name": DATA_VOLUME_NAME, "mountPath": DATA_MOUNT_PATH},
                                ],
                            },
                        ],
                        "volumes": [self._data_volume(replica)],
                    },
                },
            },
        }

    async def start_replica_instance(self, replica: Replica) -> None:
        logger.debug("starting_replica", replica=replica.name, volume=replica.spec.volume_name)
        body = self.create_pod_spec(replica)
        await self.pod_control.create_pod_with_controller_ref(self.namespace, body, replica)

    async def stop_replica_instance(self, replica: Replica) -> None:
        logger.debug("stopping_replica", replica=replica.name, volume=replica.spec.volume_name)
        await self.pod_control.delete_pod(self.namespace, replica.name, replica)

    async def cleanup_replica_instance(self, replica: Replica) -> None:
        """
        Drive the cleanup job for a stopped replica that is being deleted.

        A replica that was never placed on a node has no data and is marked
        deleted straight away. Otherwise the job is created, left alone while
        running, and removed once finished. Only a successful job marks the
        replica deleted; a failed one is reported and left for a later pass.
        """
        if not replica.spec.node_id:
            logger.info(
                "replica_never_scheduled_skipping_cleanup",
                replica=replica.name,
                volume=replica.spec.volume_name,
            )
            await self._mark_deleted(replica)
            return

        job = await self.job_client.get(replica.name)
        if job is None:
            # The cache can lag behind our own mark-deleted write
            try:
                current = await self.get_replica(replica.name)
            except ApiException as e:
                if is_not_found(e):
                    return
                raise
            if current.status.state == InstanceState.DELETED:
                logger.debug("replica_already_cleaned_up", replica=replica.name)
                self.enqueue_replica(current)
                return

            await self.job_client.create(self.create_cleanup_job_spec(replica))
            logger.info(
                "replica_cleanup_job_created",
                replica=replica.name,
                volume=replica.spec.volume_name,
                node=replica.spec.node_id,
            )
            return

        if not job.is_finished:
            logger.debug("replica_cleanup_job_running", replica=replica.name)
            return

        try:
            if job.succeeded:
                logger.info(
                    "replica_cleanup_succeeded",
                    replica=replica.name,
                    volume=replica.spec.volume_name,
                )
                self.recorder.event(
                    replica, EVENT_TYPE_NORMAL, "CleanupSucceeded",
                    f"Removed data of replica {replica.name}",
                )
                await self._mark_deleted(replica)
            else:
                logger.warning(
                    "replica_cleanup_failed",
                    replica=replica.name,
                    volume=replica.spec.volume_name,
                    node=replica.spec.node_id,
                )
                self.recorder.event(
                    replica, EVENT_TYPE_WARNING, "CleanupFailed",
                    f"Cleanup job for replica {replica.name} failed",
                )
        finally:
            try:
                await self.job_client.delete(replica.name)
            except ApiException as e:
                logger.warning(
                    "replica_cleanup_job_delete_failed",
                    replica=replica.name,
                    error=e.reason,
                    status=e.status,
                )

    async def _mark_deleted(self, replica: Replica) -> None:
        replica.status.state = InstanceState.DELETED
        await self.update_replica(replica)
        self.enqueue_replica(replica)
