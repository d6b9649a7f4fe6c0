"""
Kubernetes API access for the replica controller.

Wraps the kubernetes_asyncio clients the controller needs:
- Replica custom resources (get / replace / delete)
- Replica pods (create with controller reference / delete)
- Cleanup jobs (get / create / delete)

Transient failures are retried in place; every other ApiException is
propagated unchanged so the reconciler can decide what it means.
"""
from typing import Optional

from kubernetes_asyncio import client, config
from kubernetes_asyncio.client import ApiException
from kubernetes_asyncio.config import ConfigException

from longhorn_manager.config.logging import get_logger
from longhorn_manager.exceptions import KubernetesError
from longhorn_manager.models.replica import (
    REPLICA_GROUP,
    REPLICA_PLURAL,
    REPLICA_VERSION,
    Replica,
)
from longhorn_manager.models.workload import Job
from longhorn_manager.services.event_recorder import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    EventRecorder,
)
from longhorn_manager.utils.retry import is_not_found, retry_on_k8s_error

logger = get_logger(__name__)


class KubernetesClientSet:
    """Container for Kubernetes API clients."""

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.custom_api = client.CustomObjectsApi(api_client)
        self.core_api = client.CoreV1Api(api_client)
        self.batch_api = client.BatchV1Api(api_client)

    @classmethod
    async def load(
        cls,
        kubeconfig_path: Optional[str] = None,
        in_cluster: bool = False,
    ) -> "KubernetesClientSet":
        """
        Build a client set from in-cluster service account credentials or a
        kubeconfig file.

        Raises:
            KubernetesError: If no usable configuration is found
        """
        configuration = client.Configuration()
        try:
            if in_cluster:
                config.load_incluster_config(client_configuration=configuration)
            else:
                await config.load_kube_config(
                    config_file=kubeconfig_path,
                    client_configuration=configuration,
                )
        except ConfigException as e:
            raise KubernetesError(
                f"Failed to load Kubernetes configuration: {e}",
                details={"in_cluster": in_cluster, "kubeconfig_path": kubeconfig_path},
            )

        logger.info(
            "kubernetes_configuration_loaded",
            host=configuration.host,
            in_cluster=in_cluster,
            verify_ssl=configuration.verify_ssl,
        )
        return cls(client.ApiClient(configuration))

    def to_dict(self, obj) -> dict:
        """Convert a generated model (V1Pod, V1Job, ...) to its wire dict."""
        return self.api_client.sanitize_for_serialization(obj)

    async def close(self) -> None:
        """Close all API clients."""
        if self.api_client:
            await self.api_client.close()


class ReplicaClient:
    """Replica custom resources in one namespace."""

    def __init__(self, custom_api: client.CustomObjectsApi, namespace: str):
        self.custom_api = custom_api
        self.namespace = namespace

    @retry_on_k8s_error()
    async def get(self, name: str) -> Replica:
        """Read a replica straight from the API server, bypassing the cache."""
        result = await self.custom_api.get_namespaced_custom_object(
            group=REPLICA_GROUP,
            version=REPLICA_VERSION,
            namespace=self.namespace,
            plural=REPLICA_PLURAL,
            name=name,
        )
        return Replica.model_validate(result)

    @retry_on_k8s_error()
    async def update(self, replica: Replica) -> Replica:
        """
        Replace the replica. The body carries resourceVersion, so a stale
        copy is rejected with 409 Conflict.
        """
        result = await self.custom_api.replace_namespaced_custom_object(
            group=REPLICA_GROUP,
            version=REPLICA_VERSION,
            namespace=self.namespace,
            plural=REPLICA_PLURAL,
            name=replica.name,
            body=replica.to_body(),
        )
        return Replica.model_validate(result)

    @retry_on_k8s_error()
    async def delete(self, name: str) -> None:
        await self.custom_api.delete_namespaced_custom_object(
            group=REPLICA_GROUP,
            version=REPLICA_VERSION,
            namespace=self.namespace,
            plural=REPLICA_PLURAL,
            name=name,
        )


class PodControl:
    """Creates and deletes replica pods, recording an event for each attempt."""

    def __init__(self, core_api: client.CoreV1Api, recorder: EventRecorder):
        self.core_api = core_api
        self.recorder = recorder

    async def create_pod_with_controller_ref(
        self, namespace: str, body: dict, replica: Replica
    ) -> None:
        metadata = body.setdefault("metadata", {})
        metadata["namespace"] = namespace
        metadata["ownerReferences"] = [replica.controller_ref()]
        name = metadata.get("name")

        try:
            await self._create(namespace, body)
        except ApiException as e:
            self.recorder.event(
                replica, EVENT_TYPE_WARNING, "FailedCreate",
                f"Error creating pod {name}: {e.reason}",
            )
            raise

        logger.info("replica_pod_created", replica=replica.name, pod=name, namespace=namespace)
        self.recorder.event(replica, EVENT_TYPE_NORMAL, "SuccessfulCreate", f"Created pod: {name}")

    async def delete_pod(self, namespace: str, name: str, replica: Replica) -> None:
        """Delete a replica pod; a pod that is already gone counts as deleted."""
        try:
            await self._delete(namespace, name)
        except ApiException as e:
            if is_not_found(e):
                logger.info("replica_pod_already_deleted", replica=replica.name, pod=name)
                return
            self.recorder.event(
                replica, EVENT_TYPE_WARNING, "FailedDelete",
                f"Error deleting pod {name}: {e.reason}",
            )
            raise

        logger.info("replica_pod_deleted", replica=replica.name, pod=name, namespace=namespace)
        self.recorder.event(replica, EVENT_TYPE_NORMAL, "SuccessfulDelete", f"Deleted pod: {name}")

    @retry_on_k8s_error()
    async def _create(self, namespace: str, body: dict) -> None:
        await self.core_api.create_namespaced_pod(namespace=namespace, body=body)

    @retry_on_k8s_error()
    async def _delete(self, namespace: str, name: str) -> None:
        await self.core_api.delete_namespaced_pod(name=name, namespace=namespace)


class JobClient:
    """Cleanup jobs in one namespace."""

    def __init__(self, client_set: KubernetesClientSet, namespace: str):
        self.client_set = client_set
        self.batch_api = client_set.batch_api
        self.namespace = namespace

    @retry_on_k8s_error()
    async def get(self, name: str) -> Optional[Job]:
        """Return the job, or None if it does not exist."""
        try:
            result = await self.batch_api.read_namespaced_job(name=name, namespace=self.namespace)
        except ApiException as e:
            if is_not_found(e):
                return None
            raise
        return Job.model_validate(self.client_set.to_dict(result))

    @retry_on_k8s_error()
    async def create(self, body: dict) -> None:
        await self.batch_api.create_namespaced_job(namespace=self.namespace, body=body)

    @retry_on_k8s_error()
    async def delete(self, name: str) -> None:
        """Delete the job and its pods; a job that is already gone is fine."""
        try:
            await self.batch_api.delete_namespaced_job(
                name=name,
                namespace=self.namespace,
                propagation_policy="Background",
            )
        except ApiException as e:
            if is_not_found(e):
                return
            raise
