"""
List+watch informers backing the controller's local cache.

One Informer per resource kind keeps an eventually consistent, namespace
scoped cache of validated models and turns every change into a typed event
(see longhorn_manager.core.events) for the registered handlers.

Features:
- Initial list marks the cache as synced
- Watch resumes from the last seen resourceVersion
- Relist on expired resourceVersion (410 Gone) or stream errors
- Periodic resync re-delivers every cached object as an update
"""
import asyncio
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, Type, TypeVar

from kubernetes_asyncio import watch
from kubernetes_asyncio.client import ApiException
from pydantic import ValidationError

from longhorn_manager.config.logging import get_logger
from longhorn_manager.core.events import ResourceEvent
from longhorn_manager.models.meta import KubeModel

logger = get_logger(__name__)

M = TypeVar("M", bound=KubeModel)

# (added, updated, deleted) event classes; None means "not delivered"
EventVariants = Tuple[Optional[type], Optional[type], Optional[type]]

RELIST_BACKOFF_SECONDS = 1.0
MAX_RELIST_BACKOFF_SECONDS = 30.0


class Informer(Generic[M]):
    """Cache and event source for one resource kind in one namespace."""

    def __init__(
        self,
        name: str,
        list_func: Callable[..., Any],
        namespace: str,
        model: Type[M],
        variants: EventVariants,
        to_dict: Optional[Callable[[Any], dict]] = None,
        resync_period: float = 30.0,
        watch_timeout: int = 300,
        list_kwargs: Optional[Dict[str, Any]] = None,
    ):
        """
        Args:
            name: Name used in logs
            list_func: Namespaced list call, also used for watching
            namespace: Namespace to cache
            model: Model each raw object is validated into
            variants: Event classes for add / update / delete
            to_dict: Converts generated client models to wire dicts
            resync_period: Seconds between resyncs, 0 to disable
            watch_timeout: Server side watch timeout in seconds
            list_kwargs: Extra arguments for list_func (group, version, plural)
        """
        self.name = name
        self.list_func = list_func
        self.namespace = namespace
        self.model = model
        self.added, self.updated, self.deleted = variants
        self.to_dict = to_dict
        self.resync_period = resync_period
        self.watch_timeout = watch_timeout
        self.list_kwargs = list_kwargs or {}

        self._cache: Dict[str, M] = {}
        self._handlers: List[Callable[[ResourceEvent], None]] = []
        self._synced = asyncio.Event()
        self._resource_version: Optional[str] = None

    def add_handler(self, handler: Callable[[ResourceEvent], None]) -> None:
        self._handlers.append(handler)

    def get(self, namespace: str, name: str) -> Optional[M]:
        """Point lookup in the cache. Callers must copy before mutating."""
        return self._cache.get(f"{namespace}/{name}")

    def has_synced(self) -> bool:
        return self._synced.is_set()

    async def wait_synced(self) -> None:
        await self._synced.wait()

    async def run(self, stop_event: asyncio.Event) -> None:
        """List and watch until stop_event is set."""
        logger.info("informer_started", informer=self.name, namespace=self.namespace)
        resync_task = None
        if self.resync_period > 0:
            resync_task = asyncio.create_task(self._resync_loop(stop_event))
        stop_task = asyncio.create_task(stop_event.wait())
        backoff = RELIST_BACKOFF_SECONDS

        try:
            while not stop_event.is_set():
                loop_task = asyncio.create_task(self._list_and_watch())
                done, _ = await asyncio.wait(
                    {loop_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if stop_task in done:
                    loop_task.cancel()
                    await asyncio.gather(loop_task, return_exceptions=True)
                    break

                error = loop_task.exception()
                if error is None:
                    # Server closed the watch at its timeout; resume from last version
                    backoff = RELIST_BACKOFF_SECONDS
                    continue

                if isinstance(error, ApiException) and error.status == 410:
                    logger.info("informer_resource_version_expired", informer=self.name)
                    self._resource_version = None
                    continue

                logger.warning(
                    "informer_watch_failed",
                    informer=self.name,
                    error_type=type(error).__name__,
                    error=str(error),
                    retry_in_seconds=backoff,
                )
                self._resource_version = None
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=backoff)
                except asyncio.TimeoutError:
                    pass
                backoff = min(backoff * 2, MAX_RELIST_BACKOFF_SECONDS)
        finally:
            stop_task.cancel()
            if resync_task:
                resync_task.cancel()
            logger.info("informer_stopped", informer=self.name)

    async def _list_and_watch(self) -> None:
        if self._resource_version is None:
            self._resource_version = await self._list()
            self._synced.set()
        await self._watch()

    async def _list(self) -> str:
        response = await self.list_func(namespace=self.namespace, **self.list_kwargs)
        raw = self._raw(response)

        fresh: Dict[str, M] = {}
        for item in raw.get("items") or []:
            obj = self._validate(item)
            if obj is not None:
                fresh[self._key(obj)] = obj

        old_cache = self._cache
        self._cache = fresh
        for key, obj in fresh.items():
            previous = old_cache.get(key)
            if previous is None:
                self._emit_added(obj)
            else:
                self._emit_updated(previous, obj)
        for key, obj in old_cache.items():
            if key not in fresh:
                self._emit_deleted(obj)

        resource_version = (raw.get("metadata") or {}).get("resourceVersion", "")
        logger.info(
            "informer_listed",
            informer=self.name,
            count=len(fresh),
            resource_version=resource_version,
        )
        return resource_version

    async def _watch(self) -> None:
        w = watch.Watch()
        async with w.stream(
            self.list_func,
            namespace=self.namespace,
            resource_version=self._resource_version,
            timeout_seconds=self.watch_timeout,
            **self.list_kwargs,
        ) as stream:
            async for event in stream:
                self._handle_watch_event(event)

    def _handle_watch_event(self, event: dict) -> None:
        event_type = event.get("type")
        raw = event.get("raw_object") or {}

        if event_type == "ERROR":
            raise ApiException(status=raw.get("code"), reason=raw.get("message"))

        version = (raw.get("metadata") or {}).get("resourceVersion")
        if version:
            self._resource_version = version
        if event_type == "BOOKMARK":
            return

        obj = self._validate(raw)
        if obj is None:
            return
        key = self._key(obj)

        if event_type in ("ADDED", "MODIFIED"):
            previous = self._cache.get(key)
            self._cache[key] = obj
            if previous is None:
                self._emit_added(obj)
            else:
                self._emit_updated(previous, obj)
        elif event_type == "DELETED":
            previous = self._cache.pop(key, None)
            self._emit_deleted(previous or obj)

    async def _resync_loop(self, stop_event: asyncio.Event) -> None:
        await self._synced.wait()
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.resync_period)
                return
            except asyncio.TimeoutError:
                pass
            for obj in list(self._cache.values()):
                self._emit_updated(obj, obj)

    def _raw(self, response: Any) -> dict:
        if isinstance(response, dict):
            return response
        if self.to_dict is None:
            raise TypeError(f"informer {self.name} got {type(response).__name__} without to_dict")
        return self.to_dict(response)

    def _validate(self, raw: dict) -> Optional[M]:
        try:
            return self.model.model_validate(raw)
        except ValidationError as e:
            metadata = raw.get("metadata")
            name = metadata.get("name") if isinstance(metadata, dict) else None
            logger.warning("informer_invalid_object", informer=self.name, object=name, error=str(e))
            return None

    @staticmethod
    def _key(obj: M) -> str:
        return f"{obj.metadata.namespace}/{obj.metadata.name}"

    def _emit_added(self, obj: M) -> None:
        if self.added is not None:
            self._dispatch(self.added(obj))

    def _emit_updated(self, old: M, new: M) -> None:
        if self.updated is not None:
            self._dispatch(self.updated(old, new))

    def _emit_deleted(self, obj: M) -> None:
        if self.deleted is not None:
            self._dispatch(self.deleted(obj))

    def _dispatch(self, event: ResourceEvent) -> None:
        for handler in self._handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    "informer_handler_failed",
                    informer=self.name,
                    event_type=type(event).__name__,
                    error=str(e),
                    exc_info=True,
                )


async def wait_for_cache_sync(stop_event: asyncio.Event, *informers: Informer) -> bool:
    """
    Block until every informer has completed its initial list.

    Returns:
        True once synced, False if stop_event was set first
    """
    sync = asyncio.ensure_future(asyncio.gather(*(i.wait_synced() for i in informers)))
    stop = asyncio.ensure_future(stop_event.wait())
    try:
        await asyncio.wait({sync, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.cancel()
    if sync.done():
        return True
    sync.cancel()
    return False
