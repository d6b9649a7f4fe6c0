"""
Best-effort Kubernetes Event recording.

Events are operational breadcrumbs for `kubectl describe replica`. Recording
never blocks the caller and a failure to deliver is only logged.
"""
import asyncio
from datetime import datetime, timezone
from typing import Set

from kubernetes_asyncio import client

from longhorn_manager.config.logging import get_logger
from longhorn_manager.models.replica import Replica

logger = get_logger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

COMPONENT = "longhorn-replica-controller"


class EventRecorder:
    """Fire-and-forget writer of core/v1 Events about replicas."""

    def __init__(self, core_api: client.CoreV1Api, component: str = COMPONENT):
        self.core_api = core_api
        self.component = component
        self._pending: Set[asyncio.Task] = set()

    def event(self, replica: Replica, event_type: str, reason: str, message: str) -> None:
        """Schedule an event for the replica and return immediately."""
        logger.debug(
            "recording_event",
            replica=replica.name,
            event_type=event_type,
            reason=reason,
            message=message,
        )
        body = self._build_event(replica, event_type, reason, message)
        task = asyncio.get_running_loop().create_task(self._emit(replica.namespace, body))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _build_event(self, replica: Replica, event_type: str, reason: str, message: str) -> dict:
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        return {
            "metadata": {
                "generateName": f"{replica.name}.",
                "namespace": replica.namespace,
            },
            "involvedObject": replica.object_reference(),
            "reason": reason,
            "message": message,
            "type": event_type,
            "source": {"component": self.component},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }

    async def _emit(self, namespace: str, body: dict) -> None:
        try:
            await self.core_api.create_namespaced_event(namespace=namespace, body=body)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "event_recording_failed",
                reason=body.get("reason"),
                object=body["involvedObject"].get("name"),
                error=str(e),
            )

    async def flush(self, timeout: float = 5.0) -> None:
        """Wait for in-flight events, used on shutdown."""
        if not self._pending:
            return
        done, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in pending:
            task.cancel()
