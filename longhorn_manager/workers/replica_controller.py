"""
Replica controller: keeps every replica's pod and data in line with the
replica's desired state.

Informer events are turned into replica keys on a rate limited work queue.
A fixed pool of workers pulls keys and runs one reconcile pass per key:

1. Derive the observed state from the replica pod
2. Turn a failure or a deletion request into a new desired state
3. Start, stop or clean up the replica, or drop its finalizer once the
   data is gone

A failed pass is retried with per-key backoff up to max_retries times,
then reported and dropped until the next event for that replica.
"""
import asyncio
import time
from typing import Awaitable, Callable, List, Optional

import structlog
from kubernetes_asyncio.client import ApiException

from longhorn_manager.config.logging import get_logger
from longhorn_manager.core.event_translator import EventTranslator
from longhorn_manager.core.events import ResourceEvent
from longhorn_manager.core.state_machine import ReplicaAction, ReplicaStateMachine
from longhorn_manager.core.workqueue import RateLimitingQueue, default_controller_rate_limiter
from longhorn_manager.exceptions import InvalidKeyError, ReplicaOperationError
from longhorn_manager.models.meta import split_key
from longhorn_manager.models.replica import InstanceState, Replica
from longhorn_manager.services import metrics
from longhorn_manager.services.informer import wait_for_cache_sync
from longhorn_manager.services.replica_workload import ReplicaWorkloadManager
from longhorn_manager.utils.errors import handle_error
from longhorn_manager.utils.retry import is_not_found

logger = get_logger(__name__)

# Failed syncs per key before it is dropped out of the queue
MAX_RETRIES = 3

SyncHandler = Callable[[str], Awaitable[None]]
EnqueueHandler = Callable[[Replica], None]
UpdateHandler = Callable[[Replica], Awaitable[Replica]]
ErrorReporter = Callable[[BaseException, Optional[str]], None]


class ReplicaController:
    """
    Reconciles Replica resources in one namespace.

    The sync, enqueue and update handlers default to this class's own
    methods and can be swapped out, which is how tests observe or stub the
    controller's effects.
    """

    def __init__(
        self,
        namespace: str,
        replica_informer,
        pod_informer,
        replica_client,
        pod_control,
        job_client,
        recorder,
        queue: Optional[RateLimitingQueue] = None,
        max_retries: int = MAX_RETRIES,
        sync_handler: Optional[SyncHandler] = None,
        enqueue_handler: Optional[EnqueueHandler] = None,
        update_handler: Optional[UpdateHandler] = None,
        error_reporter: ErrorReporter = handle_error,
        longhorn_directory: str = "/var/lib/rancher/longhorn/",
        listen_address: str = "0.0.0.0:9502",
        cleanup_backoff_limit: int = 1,
    ):
        """
        Args:
            namespace: The only namespace this controller acts on
            replica_informer: Replica cache (get / wait_synced)
            pod_informer: Replica pod cache (get / wait_synced)
            replica_client: Direct replica API access (get / update / delete)
            pod_control: Creates and deletes replica pods
            job_client: Cleanup job API access
            recorder: Kubernetes event recorder
            queue: Work queue, a default rate limited queue if omitted
            max_retries: Failed syncs per key before it is dropped
            error_reporter: Called once for every dropped key
        """
        self.namespace = namespace
        self.replica_lister = replica_informer
        self.pod_lister = pod_informer
        self.replica_client = replica_client
        self.pod_control = pod_control
        self.job_client = job_client
        self.recorder = recorder
        self.queue = queue or RateLimitingQueue(default_controller_rate_limiter(), name="replicas")
        self.max_retries = max_retries
        self.error_reporter = error_reporter

        self.sync_handler: SyncHandler = sync_handler or self.sync_replica
        self.enqueue_handler: EnqueueHandler = enqueue_handler or self.enqueue_replica
        self.update_handler: UpdateHandler = update_handler or self.update_replica

        # Go through the attributes so swapped handlers are honoured
        self.workload = ReplicaWorkloadManager(
            namespace=namespace,
            pod_control=pod_control,
            job_client=job_client,
            recorder=recorder,
            update_replica=lambda replica: self.update_handler(replica),
            enqueue_replica=lambda replica: self.enqueue_handler(replica),
            get_replica=replica_client.get,
            longhorn_directory=longhorn_directory,
            listen_address=listen_address,
            cleanup_backoff_limit=cleanup_backoff_limit,
        )
        self.translator = EventTranslator(
            self.replica_lister, lambda replica: self.enqueue_handler(replica)
        )

        self.running = False
        self.synced = False
        self._worker_tasks: List[asyncio.Task] = []

    # -- event intake ---------------------------------------------------------

    def handle_event(self, event: ResourceEvent) -> None:
        """Informer handler; registered on every informer."""
        self.translator.translate(event)

    def enqueue_replica(self, replica: Replica) -> None:
        self.queue.add(replica.key)

    async def update_replica(self, replica: Replica) -> Replica:
        return await self.replica_client.update(replica)

    # -- worker pool ----------------------------------------------------------

    async def run(self, workers: int, stop_event: asyncio.Event) -> None:
        """
        Wait for the caches, run the workers until stop_event is set, then
        shut the queue down and wait for in-flight keys to finish.
        """
        self.running = True
        logger.info("replica_controller_starting", namespace=self.namespace, workers=workers)

        try:
            if not await wait_for_cache_sync(stop_event, self.replica_lister, self.pod_lister):
                logger.info("replica_controller_cache_sync_aborted")
                return
            self.synced = True
            logger.info("replica_controller_caches_synced")

            self._worker_tasks = [
                asyncio.create_task(self.worker(worker_id))
                for worker_id in range(1, workers + 1)
            ]
            logger.info("replica_workers_started", count=workers)

            await stop_event.wait()
        finally:
            logger.info("stopping_replica_controller")
            self.queue.shut_down()
            if self._worker_tasks:
                await asyncio.gather(*self._worker_tasks, return_exceptions=True)
                self._worker_tasks = []
            self.running = False
            logger.info("replica_controller_stopped")

    async def worker(self, worker_id: int) -> None:
        """Process keys until the queue shuts down."""
        logger.debug("replica_worker_started", worker_id=worker_id)
        while await self.process_next_work_item():
            pass
        logger.debug("replica_worker_stopped", worker_id=worker_id)

    async def process_next_work_item(self) -> bool:
        """
        Reconcile one key.

        Returns:
            False once the queue has shut down, True otherwise
        """
        key, shutdown = await self.queue.get()
        if shutdown:
            return False

        metrics.workers_busy.inc()
        start = time.monotonic()
        try:
            error: Optional[Exception] = None
            try:
                with structlog.contextvars.bound_contextvars(replica_key=key):
                    await self.sync_handler(key)
            except Exception as e:
                error = e
            metrics.record_sync(time.monotonic() - start, success=error is None)
            self.handle_err(error, key)
        finally:
            self.queue.done(key)
            metrics.workers_busy.dec()
        return True

    def handle_err(self, error: Optional[Exception], key: str) -> None:
        """Apply the retry policy to the outcome of one sync."""
        if error is None:
            self.queue.forget(key)
            return

        retries = self.queue.num_requeues(key)
        if retries < self.max_retries:
            logger.warning(
                "replica_sync_failed_retrying",
                key=key,
                retries=retries,
                error_type=type(error).__name__,
                error=str(error),
            )
            metrics.queue_retries_total.inc()
            self.queue.add_rate_limited(key)
            return

        self.error_reporter(error, key)
        logger.warning("dropping_replica_out_of_queue", key=key, error=str(error))
        metrics.queue_drops_total.inc()
        self.queue.forget(key)

    # -- reconcile ------------------------------------------------------------

    async def sync_replica(self, key: str) -> None:
        """One reconcile pass for the replica behind key."""
        try:
            namespace, name = split_key(key)
        except ValueError:
            raise InvalidKeyError(key)
        if namespace != self.namespace:
            # Not ours
            return

        cached = self.replica_lister.get(namespace, name)
        if cached is None:
            logger.info("replica_has_been_deleted", key=key)
            return
        # The cache is shared with the informer; never mutate it
        replica = cached.model_copy(deep=True)

        pod = self.pod_lister.get(self.namespace, replica.name)
        replica.status.state = ReplicaStateMachine.observed_state(pod, cached.status.state)
        if replica.status.state == InstanceState.UNKNOWN:
            logger.warning(
                "replica_instance_state_unknown",
                replica=replica.name,
                volume=replica.spec.volume_name,
                pod_phase=pod.status.phase if pod else None,
            )

        if replica.spec.failed_at and replica.spec.desire_state != InstanceState.STOPPED:
            logger.info(
                "replica_failed_stopping",
                replica=replica.name,
                volume=replica.spec.volume_name,
                failed_at=replica.spec.failed_at,
            )
            replica.spec.desire_state = InstanceState.STOPPED
            await self.update_handler(replica)
            self.enqueue_handler(replica)
            return

        if (
            replica.metadata.deletion_timestamp
            and replica.spec.desire_state != InstanceState.DELETED
        ):
            logger.info("replica_deletion_requested", replica=replica.name, volume=replica.spec.volume_name)
            replica.spec.desire_state = InstanceState.DELETED
            await self.update_handler(replica)
            self.enqueue_handler(replica)
            return

        action = ReplicaStateMachine.next_action(
            replica.status.state, replica.spec.desire_state, replica.name
        )
        if action == ReplicaAction.NONE:
            return

        logger.info(
            "reconciling_replica",
            replica=replica.name,
            volume=replica.spec.volume_name,
            current=replica.status.state.value,
            desired=replica.spec.desire_state.value,
            action=action.value,
        )

        if action == ReplicaAction.START:
            if pod is not None:
                # Pending pod; creation already went through
                logger.debug("replica_pod_pending", replica=replica.name)
                return
            await self.workload.start_replica_instance(replica)
        elif action == ReplicaAction.STOP:
            await self.workload.stop_replica_instance(replica)
        elif action == ReplicaAction.CLEANUP:
            await self.workload.cleanup_replica_instance(replica)
        elif action == ReplicaAction.FINALIZE:
            await self.delete_replica(replica)

    async def delete_replica(self, replica: Replica) -> None:
        """
        Drop the replica's finalizers so the API server can remove it.

        Works on a fresh copy from the API server rather than the cache. If
        the replica was not already being deleted, it is deleted explicitly.

        Raises:
            ReplicaOperationError: If any API call fails for a reason other
                than the replica being gone
        """
        name = replica.name
        try:
            current = await self.replica_client.get(name)
        except ApiException as e:
            if is_not_found(e):
                return
            raise ReplicaOperationError("finalize", name, f"unable to get replica: {e.reason}") from e

        current.metadata.finalizers = []
        try:
            result = await self.update_handler(current)
        except ApiException as e:
            if is_not_found(e):
                return
            raise ReplicaOperationError(
                "finalize", name, f"unable to clear finalizers: {e.reason}"
            ) from e

        if result.metadata.deletion_timestamp:
            logger.info("replica_finalizer_removed", replica=name)
            return

        try:
            await self.replica_client.delete(name)
        except ApiException as e:
            if is_not_found(e):
                return
            raise ReplicaOperationError("finalize", name, f"unable to delete replica: {e.reason}") from e
        logger.info("replica_deleted", replica=name)
