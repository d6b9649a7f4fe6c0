"""
Pytest configuration and fixtures.

FakeCluster stands in for the API server and the informer caches: the
listers read straight from its stores, and the clients mutate them with the
same not-found and conflict behaviour as the real API.
"""
from typing import AsyncGenerator, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from kubernetes_asyncio.client import ApiException

from longhorn_manager.core.workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue
from longhorn_manager.models.replica import InstanceState, Replica
from longhorn_manager.models.workload import Job, JobCondition, Pod
from longhorn_manager.workers.replica_controller import ReplicaController

NAMESPACE = "longhorn-system"


def api_error(status: int, reason: str = "") -> ApiException:
    return ApiException(status=status, reason=reason)


def make_replica(
    name: str = "vol-1-replica-a",
    desire_state: Optional[InstanceState] = InstanceState.RUNNING,
    state: Optional[InstanceState] = None,
    node_id: str = "node-1",
    failed_at: str = "",
    deletion_timestamp: Optional[str] = None,
    finalizers: Optional[List[str]] = None,
    uid: str = "uid-1",
    namespace: str = NAMESPACE,
) -> Replica:
    return Replica.model_validate(
        {
            "apiVersion": "longhorn.rancher.io/v1alpha1",
            "kind": "Replica",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "uid": uid,
                "resourceVersion": "1",
                "finalizers": finalizers if finalizers is not None else ["longhorn.rancher.io"],
                "deletionTimestamp": deletion_timestamp,
            },
            "spec": {
                "desireState": desire_state.value if desire_state else None,
                "volumeName": "vol-1",
                "volumeSize": "10737418240",
                "engineImage": "rancher/longhorn-engine:v0.2",
                "nodeID": node_id,
                "failedAt": failed_at,
            },
            "status": {"state": state.value if state else None},
        }
    )


def make_pod(replica: Replica, phase: str = "Running", resource_version: str = "1") -> Pod:
    return Pod.model_validate(
        {
            "metadata": {
                "name": replica.name,
                "namespace": replica.namespace,
                "resourceVersion": resource_version,
                "ownerReferences": [replica.controller_ref()],
            },
            "status": {"phase": phase},
        }
    )


class FakeCluster:
    """In-memory replicas, pods and jobs, plus a log of every mutation."""

    def __init__(self):
        self.replicas: Dict[Tuple[str, str], Replica] = {}
        self.pods: Dict[Tuple[str, str], Pod] = {}
        self.jobs: Dict[Tuple[str, str], Job] = {}
        self.mutations: List[Tuple[str, str]] = []
        self._version = 100

    def next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def add_replica(self, replica: Replica) -> Replica:
        self.replicas[(replica.namespace, replica.name)] = replica
        return replica

    def add_pod(self, pod: Pod) -> Pod:
        self.pods[(pod.metadata.namespace, pod.metadata.name)] = pod
        return pod

    def replica(self, name: str, namespace: str = NAMESPACE) -> Optional[Replica]:
        return self.replicas.get((namespace, name))

    def pod(self, name: str, namespace: str = NAMESPACE) -> Optional[Pod]:
        return self.pods.get((namespace, name))

    def job(self, name: str, namespace: str = NAMESPACE) -> Optional[Job]:
        return self.jobs.get((namespace, name))

    def finish_job(self, name: str, succeeded: bool = True, namespace: str = NAMESPACE) -> None:
        job = self.jobs[(namespace, name)]
        if succeeded:
            job.status.succeeded = 1
            job.status.completion_time = "2024-01-01T00:00:00Z"
        else:
            job.status.failed = 1
            job.status.conditions = [JobCondition(type="Failed", status="True")]


class FakeLister:
    """Informer cache view over one of the cluster stores."""

    def __init__(self, store: Dict[Tuple[str, str], object]):
        self.store = store

    def get(self, namespace: str, name: str):
        return self.store.get((namespace, name))

    def has_synced(self) -> bool:
        return True

    async def wait_synced(self) -> None:
        return None


class FakeReplicaClient:
    def __init__(self, cluster: FakeCluster, namespace: str = NAMESPACE):
        self.cluster = cluster
        self.namespace = namespace
        self.fail_update: Optional[ApiException] = None

    async def get(self, name: str) -> Replica:
        stored = self.cluster.replica(name, self.namespace)
        if stored is None:
            raise api_error(404, "Not Found")
        return stored.model_copy(deep=True)

    async def update(self, replica: Replica) -> Replica:
        if self.fail_update is not None:
            raise self.fail_update
        key = (self.namespace, replica.name)
        stored = self.cluster.replicas.get(key)
        if stored is None:
            raise api_error(404, "Not Found")
        if stored.metadata.resource_version != replica.metadata.resource_version:
            raise api_error(409, "Conflict")

        updated = replica.model_copy(deep=True)
        updated.metadata.resource_version = self.cluster.next_version()
        self.cluster.mutations.append(("update_replica", replica.name))
        if updated.metadata.deletion_timestamp and not updated.metadata.finalizers:
            del self.cluster.replicas[key]
        else:
            self.cluster.replicas[key] = updated
        return updated.model_copy(deep=True)

    async def delete(self, name: str) -> None:
        key = (self.namespace, name)
        stored = self.cluster.replicas.get(key)
        if stored is None:
            raise api_error(404, "Not Found")
        self.cluster.mutations.append(("delete_replica", name))
        if stored.metadata.finalizers:
            stored.metadata.deletion_timestamp = "2024-01-01T00:00:00Z"
            stored.metadata.resource_version = self.cluster.next_version()
        else:
            del self.cluster.replicas[key]


class FakePodControl:
    def __init__(self, cluster: FakeCluster):
        self.cluster = cluster
        self.created_bodies: List[dict] = []
        self.fail_create: Optional[ApiException] = None

    async def create_pod_with_controller_ref(self, namespace: str, body: dict, replica: Replica) -> None:
        if self.fail_create is not None:
            raise self.fail_create
        name = body["metadata"]["name"]
        if (namespace, name) in self.cluster.pods:
            raise api_error(409, "AlreadyExists")
        body["metadata"]["namespace"] = namespace
        body["metadata"]["ownerReferences"] = [replica.controller_ref()]
        self.created_bodies.append(body)
        self.cluster.mutations.append(("create_pod", name))
        pod = Pod.model_validate({**body, "status": {"phase": "Pending"}})
        pod.metadata.resource_version = self.cluster.next_version()
        self.cluster.pods[(namespace, name)] = pod

    async def delete_pod(self, namespace: str, name: str, replica: Replica) -> None:
        self.cluster.mutations.append(("delete_pod", name))
        self.cluster.pods.pop((namespace, name), None)


class FakeJobClient:
    def __init__(self, cluster: FakeCluster, namespace: str = NAMESPACE):
        self.cluster = cluster
        self.namespace = namespace
        self.created_bodies: List[dict] = []
        self.fail_delete: Optional[ApiException] = None

    async def get(self, name: str) -> Optional[Job]:
        job = self.cluster.job(name, self.namespace)
        return job.model_copy(deep=True) if job else None

    async def create(self, body: dict) -> None:
        name = body["metadata"]["name"]
        if (self.namespace, name) in self.cluster.jobs:
            raise api_error(409, "AlreadyExists")
        self.created_bodies.append(body)
        self.cluster.mutations.append(("create_job", name))
        self.cluster.jobs[(self.namespace, name)] = Job.model_validate(body)

    async def delete(self, name: str) -> None:
        if self.fail_delete is not None:
            raise self.fail_delete
        self.cluster.mutations.append(("delete_job", name))
        self.cluster.jobs.pop((self.namespace, name), None)


class FakeRecorder:
    def __init__(self):
        self.events: List[Tuple[str, str, str, str]] = []

    def event(self, replica: Replica, event_type: str, reason: str, message: str) -> None:
        self.events.append((replica.name, event_type, reason, message))

    def reasons(self) -> List[str]:
        return [reason for _, _, reason, _ in self.events]

    async def flush(self, timeout: float = 5.0) -> None:
        return None


class ErrorSink:
    """Records what the controller reports instead of logging to Sentry."""

    def __init__(self):
        self.reported: List[Tuple[BaseException, Optional[str]]] = []

    def __call__(self, error: BaseException, key: Optional[str] = None) -> None:
        self.reported.append((error, key))


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def recorder() -> FakeRecorder:
    return FakeRecorder()


@pytest.fixture
def error_sink() -> ErrorSink:
    return ErrorSink()


@pytest.fixture
def fast_queue() -> RateLimitingQueue:
    """Queue whose retry backoff is short enough to run in tests."""
    return RateLimitingQueue(
        ItemExponentialFailureRateLimiter(base_delay=0.001, max_delay=0.01),
        name="test",
    )


@pytest.fixture
def controller(cluster, recorder, error_sink, fast_queue) -> ReplicaController:
    return ReplicaController(
        namespace=NAMESPACE,
        replica_informer=FakeLister(cluster.replicas),
        pod_informer=FakeLister(cluster.pods),
        replica_client=FakeReplicaClient(cluster),
        pod_control=FakePodControl(cluster),
        job_client=FakeJobClient(cluster),
        recorder=recorder,
        queue=fast_queue,
        error_reporter=error_sink,
    )


@pytest_asyncio.fixture
async def test_client() -> AsyncGenerator[AsyncClient, None]:
    """Create test client; the lifespan (and so the Kubernetes connection) is not run."""
    from longhorn_manager.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.state.controller = None
