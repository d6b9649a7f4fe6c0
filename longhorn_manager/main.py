"""
Main FastAPI application entry point.
Longhorn replica controller: reconciles Replica resources into pods and
cleanup jobs, with health probes and Prometheus metrics served alongside.
"""
import asyncio
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Tuple

import sentry_sdk
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from longhorn_manager.api.v1 import health
from longhorn_manager.config.logging import configure_logging, get_logger
from longhorn_manager.config.settings import Settings, settings
from longhorn_manager.core.events import (
    CleanupJobUpdated,
    ReplicaAdded,
    ReplicaDeleted,
    ReplicaUpdated,
    WorkloadAdded,
    WorkloadDeleted,
    WorkloadUpdated,
)
from longhorn_manager.models.replica import REPLICA_GROUP, REPLICA_PLURAL, REPLICA_VERSION, Replica
from longhorn_manager.models.workload import Job, Pod
from longhorn_manager.services.event_recorder import EventRecorder
from longhorn_manager.services.informer import Informer
from longhorn_manager.services.kube_client import (
    JobClient,
    KubernetesClientSet,
    PodControl,
    ReplicaClient,
)
from longhorn_manager.core.workqueue import RateLimitingQueue, default_controller_rate_limiter
from longhorn_manager.utils.shutdown import shutdown_handler
from longhorn_manager.workers.replica_controller import ReplicaController

# Configure logging
configure_logging()
logger = get_logger(__name__)

# Initialize Sentry for error tracking (production)
if settings.sentry_dsn and settings.is_production:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        environment=settings.environment,
        release=settings.app_version,
    )


def build_controller(
    client_set: KubernetesClientSet,
    config: Settings,
) -> Tuple[ReplicaController, List[Informer], EventRecorder]:
    """
    Wire the informers, API clients and controller for one namespace.

    Returns:
        (controller, informers, recorder); informers still need to be run
    """
    namespace = config.k8s_namespace

    replica_informer = Informer(
        "replicas",
        client_set.custom_api.list_namespaced_custom_object,
        namespace,
        Replica,
        (ReplicaAdded, ReplicaUpdated, ReplicaDeleted),
        list_kwargs={"group": REPLICA_GROUP, "version": REPLICA_VERSION, "plural": REPLICA_PLURAL},
        resync_period=config.resync_period,
        watch_timeout=config.watch_timeout,
    )
    pod_informer = Informer(
        "pods",
        client_set.core_api.list_namespaced_pod,
        namespace,
        Pod,
        (WorkloadAdded, WorkloadUpdated, WorkloadDeleted),
        to_dict=client_set.to_dict,
        resync_period=config.resync_period,
        watch_timeout=config.watch_timeout,
    )
    # Only job updates matter: a finished job re-triggers its replica
    job_informer = Informer(
        "jobs",
        client_set.batch_api.list_namespaced_job,
        namespace,
        Job,
        (None, CleanupJobUpdated, None),
        to_dict=client_set.to_dict,
        resync_period=config.resync_period,
        watch_timeout=config.watch_timeout,
    )

    recorder = EventRecorder(client_set.core_api)
    queue = RateLimitingQueue(
        default_controller_rate_limiter(
            base_delay=config.queue_base_delay,
            max_delay=config.queue_max_delay,
            qps=config.queue_qps,
            burst=config.queue_burst,
        ),
        name="replicas",
    )
    controller = ReplicaController(
        namespace=namespace,
        replica_informer=replica_informer,
        pod_informer=pod_informer,
        replica_client=ReplicaClient(client_set.custom_api, namespace),
        pod_control=PodControl(client_set.core_api, recorder),
        job_client=JobClient(client_set, namespace),
        recorder=recorder,
        queue=queue,
        max_retries=config.max_retries,
        longhorn_directory=config.longhorn_directory,
        listen_address=config.replica_listen_address,
        cleanup_backoff_limit=config.cleanup_backoff_limit,
    )

    informers = [replica_informer, pod_informer, job_informer]
    for informer in informers:
        informer.add_handler(controller.handle_event)
    return controller, informers, recorder


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.
    Handles startup and shutdown events.

    Starts in ONE process:
    1. Probe and metrics server (FastAPI)
    2. Replica, pod and job informers
    3. Replica controller with its worker pool
    """
    # Startup
    logger.info(
        "application_starting",
        version=settings.app_version,
        environment=settings.environment,
        namespace=settings.k8s_namespace,
    )

    background_tasks: List[asyncio.Task] = []
    stop_event = shutdown_handler.setup()

    try:
        logger.info("initializing_kubernetes_clients")
        client_set = await KubernetesClientSet.load(
            kubeconfig_path=settings.kubeconfig_path,
            in_cluster=settings.k8s_in_cluster,
        )

        controller, informers, recorder = build_controller(client_set, settings)
        app.state.controller = controller

        for informer in informers:
            background_tasks.append(asyncio.create_task(informer.run(stop_event)))
        background_tasks.append(
            asyncio.create_task(controller.run(settings.replica_workers, stop_event))
        )

        logger.info(
            "application_started",
            version=settings.app_version,
            workers=settings.replica_workers,
            background_tasks=len(background_tasks),
        )

    except KeyboardInterrupt:
        logger.info("application_startup_interrupted")
        raise
    except Exception as e:
        logger.error("application_startup_failed", error=str(e))
        raise

    yield

    # Shutdown
    logger.info("application_shutting_down")
    shutdown_handler.request_shutdown("application_shutdown")

    if background_tasks:
        logger.info("stopping_background_tasks", count=len(background_tasks))
        try:
            await asyncio.wait_for(
                asyncio.gather(*background_tasks, return_exceptions=True),
                timeout=30.0,
            )
            logger.info("background_tasks_stopped")
        except asyncio.TimeoutError:
            logger.warning("background_tasks_shutdown_timeout")

    await recorder.flush()

    try:
        await client_set.close()
        logger.info("kubernetes_client_closed")
    except Exception as e:
        logger.error("kubernetes_client_close_error", error=str(e))

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Longhorn replica controller",
    docs_url="/docs" if not settings.is_production else None,
    redoc_url=None,
    openapi_url="/openapi.json" if not settings.is_production else None,
    lifespan=lifespan,
)


# Initialize Prometheus metrics
if settings.prometheus_enabled:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")


# Include routers
app.include_router(health.router, prefix="/health", tags=["Health"])


@app.get("/", include_in_schema=False)
async def root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "namespace": settings.k8s_namespace,
        "status": "running",
    }


if __name__ == "__main__":
    import uvicorn

    try:
        uvicorn.run(
            "longhorn_manager.main:app",
            host=settings.host,
            port=settings.port,
            reload=settings.reload,
            log_level=settings.log_level.lower(),
        )
    except (KeyboardInterrupt, SystemExit):
        logger.info("application_stopped")
    finally:
        sys.exit(0)
