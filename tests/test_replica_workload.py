"""
Tests for replica pod and cleanup job templates.
"""
import pytest

from longhorn_manager.models.replica import InstanceState
from longhorn_manager.services.replica_workload import (
    REPLICA_LABEL_KEY,
    ReplicaWorkloadManager,
    replica_volume_directory,
)

from tests.conftest import (
    FakeCluster,
    FakeJobClient,
    FakePodControl,
    FakeRecorder,
    FakeReplicaClient,
    make_replica,
)


@pytest.fixture
def manager():
    cluster = FakeCluster()

    async def update(replica):
        return replica

    return ReplicaWorkloadManager(
        namespace="longhorn-system",
        pod_control=FakePodControl(cluster),
        job_client=FakeJobClient(cluster),
        recorder=FakeRecorder(),
        update_replica=update,
        enqueue_replica=lambda replica: None,
        get_replica=FakeReplicaClient(cluster).get,
        longhorn_directory="/var/lib/rancher/longhorn/",
        listen_address="0.0.0.0:9502",
        cleanup_backoff_limit=1,
    )


def test_volume_directory():
    assert replica_volume_directory("/var/lib/rancher/longhorn/", "r1") == "/var/lib/rancher/longhorn/replicas/r1"
    assert replica_volume_directory("/data", "r1") == "/data/replicas/r1"


def test_pod_spec_pins_scheduled_replica_to_its_node(manager):
    replica = make_replica(node_id="node-2")
    body = manager.create_pod_spec(replica)

    assert body["metadata"]["name"] == replica.name
    assert body["metadata"]["labels"] == {REPLICA_LABEL_KEY: "vol-1"}
    spec = body["spec"]
    assert spec["nodeName"] == "node-2"
    assert "affinity" not in spec
    assert spec["restartPolicy"] == "Never"

    container = spec["containers"][0]
    assert container["image"] == "rancher/longhorn-engine:v0.2"
    assert container["securityContext"] == {"privileged": True}
    assert container["command"] == [
        "launch", "replica",
        "--listen", "0.0.0.0:9502",
        "--size", "10737418240",
        "/volume",
    ]
    assert container["volumeMounts"] == [{"name": "volume", "mountPath": "/volume"}]
    assert spec["volumes"][0]["hostPath"]["path"] == f"/var/lib/rancher/longhorn/replicas/{replica.name}"


def test_pod_spec_spreads_unscheduled_replicas(manager):
    body = manager.create_pod_spec(make_replica(node_id=""))

    spec = body["spec"]
    assert "nodeName" not in spec
    terms = spec["affinity"]["podAntiAffinity"]["preferredDuringSchedulingIgnoredDuringExecution"]
    assert terms[0]["weight"] == 100
    assert terms[0]["podAffinityTerm"]["labelSelector"]["matchLabels"] == {REPLICA_LABEL_KEY: "vol-1"}
    assert terms[0]["podAffinityTerm"]["topologyKey"] == "kubernetes.io/hostname"


def test_pod_spec_restore_flags(manager):
    replica = make_replica()
    replica.spec.restore_from = "s3://backups@us-east-1/"
    replica.spec.restore_name = "backup-1"

    command = manager.create_pod_spec(replica)["spec"]["containers"][0]["command"]

    assert command[-5:] == [
        "--restore-from", "s3://backups@us-east-1/",
        "--restore-name", "backup-1",
        "/volume",
    ]


def test_restore_flags_need_both_fields(manager):
    replica = make_replica()
    replica.spec.restore_from = "s3://backups@us-east-1/"

    command = manager.create_pod_spec(replica)["spec"]["containers"][0]["command"]

    assert "--restore-from" not in command


def test_cleanup_job_spec(manager):
    replica = make_replica(node_id="node-3")
    body = manager.create_cleanup_job_spec(replica)

    assert body["metadata"]["name"] == replica.name
    assert body["metadata"]["ownerReferences"][0]["kind"] == "Replica"
    assert body["metadata"]["ownerReferences"][0]["controller"] is True
    assert body["spec"]["backoffLimit"] == 1

    template = body["spec"]["template"]
    assert template["metadata"]["name"] == f"cleanup-{replica.name}"
    assert template["spec"]["nodeName"] == "node-3"
    assert template["spec"]["restartPolicy"] == "Never"
    container = template["spec"]["containers"][0]
    assert container["command"] == ["/bin/bash", "-c"]
    assert container["args"] == ["sleep 1 && rm -rf /volume/*"]
    assert template["spec"]["volumes"][0]["hostPath"]["path"].endswith(f"/replicas/{replica.name}")


@pytest.mark.asyncio
async def test_cleanup_of_unscheduled_replica_marks_deleted(manager):
    replica = make_replica(desire_state=InstanceState.DELETED, node_id="")

    await manager.cleanup_replica_instance(replica)

    assert replica.status.state == InstanceState.DELETED
    assert manager.job_client.created_bodies == []
