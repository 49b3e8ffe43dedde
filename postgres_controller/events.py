"""
Event source: turns watch notifications into work queue keys

Two watches feed the queue. Changes to a Postgres resource enqueue the
resource itself; changes to a Deployment enqueue the Postgres resource that
controls it, found through the Deployment's owner reference.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from kubernetes import watch
from kubernetes.client.rest import ApiException

from postgres_controller.models import OwnerRef, make_key
from postgres_controller.settings import Config

logger = logging.getLogger("postgres-controller.events")

DEPLOYMENT_KIND = "Deployment"


@dataclass(frozen=True)
class ObservedObject:
    """The parts of a watched object the event source routes on"""
    kind: str
    namespace: str
    name: str
    resource_version: str = ""
    owner: Optional[OwnerRef] = None

    @property
    def key(self) -> str:
        return make_key(self.namespace, self.name)


@dataclass(frozen=True)
class Added:
    obj: ObservedObject


@dataclass(frozen=True)
class Updated:
    old: ObservedObject
    new: ObservedObject


@dataclass(frozen=True)
class Deleted:
    obj: ObservedObject


WatchEvent = Union[Added, Updated, Deleted]


def controller_owner(namespace: str, owner_references) -> Optional[OwnerRef]:
    """
    Find the controlling owner among owner references

    Accepts both API model objects and plain dicts.
    """
    for ref in owner_references or []:
        if isinstance(ref, dict):
            is_controller, kind, name = ref.get("controller"), ref.get("kind"), ref.get("name")
        else:
            is_controller, kind, name = ref.controller, ref.kind, ref.name
        if is_controller:
            return OwnerRef(namespace=namespace, name=name, kind=kind)
    return None


def observe_custom_object(body: Dict[str, Any], kind: str = None) -> ObservedObject:
    metadata = body.get("metadata") or {}
    namespace = metadata.get("namespace") or ""
    return ObservedObject(
        kind=body.get("kind") or kind or Config.CRD_KIND,
        namespace=namespace,
        name=metadata.get("name") or "",
        resource_version=metadata.get("resourceVersion") or "",
        owner=controller_owner(namespace, metadata.get("ownerReferences")),
    )


def observe_deployment(deployment) -> ObservedObject:
    metadata = deployment.metadata
    return ObservedObject(
        kind=DEPLOYMENT_KIND,
        namespace=metadata.namespace or "",
        name=metadata.name,
        resource_version=metadata.resource_version or "",
        owner=controller_owner(metadata.namespace or "", metadata.owner_references),
    )


class EventSource:
    """Feeds the work queue from watch notifications"""

    def __init__(self, work_queue, lookup_owner: Callable[[OwnerRef], bool],
                 owner_kind: str = None):
        self.queue = work_queue
        self.lookup_owner = lookup_owner
        self.owner_kind = owner_kind or Config.CRD_KIND
        self._last_seen: Dict[tuple, ObservedObject] = {}
        self._lock = threading.Lock()
        self._threads: List[threading.Thread] = []

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def handle_event(self, event: WatchEvent):
        """Route a single event to the work queue"""
        if isinstance(event, Updated):
            obj = event.new
        else:
            obj = event.obj

        if obj.kind == self.owner_kind:
            self._handle_resource(event, obj)
        else:
            self._handle_owned(event, obj)

    def _handle_resource(self, event: WatchEvent, obj: ObservedObject):
        if isinstance(event, Deleted):
            # Owned objects are garbage collected through their owner references
            logger.debug(f"{self.owner_kind} {obj.key} deleted")
            return
        self.queue.add(obj.key)

    def _handle_owned(self, event: WatchEvent, obj: ObservedObject):
        if isinstance(event, Updated) and event.old.resource_version == event.new.resource_version:
            # Periodic resyncs replay objects that did not change
            return

        owner = obj.owner
        if owner is None or owner.kind != self.owner_kind:
            return
        if not self.lookup_owner(owner):
            logger.debug(f"Ignoring orphaned {obj.kind} {obj.key} of {owner.kind} '{owner.name}'")
            return
        logger.debug(f"Processing {obj.kind} {obj.key} owned by {owner.key}")
        self.queue.add(owner.key)

    def observe(self, event_type: str, obj: ObservedObject) -> Optional[WatchEvent]:
        """
        Turn a raw watch notification into a typed event

        Keeps the previous observation of every object so that
        notifications about known objects become Updated(old, new).
        """
        cache_key = (obj.kind, obj.namespace, obj.name)
        with self._lock:
            previous = self._last_seen.get(cache_key)
            if event_type == "DELETED":
                self._last_seen.pop(cache_key, None)
                return Deleted(obj)
            if event_type not in ("ADDED", "MODIFIED"):
                return None
            self._last_seen[cache_key] = obj
        if previous is None:
            return Added(obj)
        return Updated(previous, obj)

    def reset(self, kind: str):
        """Forget every observation of kind ahead of a relist"""
        with self._lock:
            for cache_key in [k for k in self._last_seen if k[0] == kind]:
                del self._last_seen[cache_key]

    # ------------------------------------------------------------------
    # Watches
    # ------------------------------------------------------------------

    def start(self, custom_api, apps_api, stop_event: threading.Event, namespace: str = None):
        """Start one watch thread for the resources and one for Deployments"""
        namespace = Config.NAMESPACE if namespace is None else namespace
        if namespace:
            resource_args = (custom_api.list_namespaced_custom_object,
                             Config.CRD_GROUP, Config.CRD_VERSION, namespace, Config.CRD_PLURAL)
            deployment_args = (apps_api.list_namespaced_deployment, namespace)
        else:
            resource_args = (custom_api.list_cluster_custom_object,
                             Config.CRD_GROUP, Config.CRD_VERSION, Config.CRD_PLURAL)
            deployment_args = (apps_api.list_deployment_for_all_namespaces,)

        targets = [
            (self.owner_kind, resource_args, observe_custom_object),
            (DEPLOYMENT_KIND, deployment_args, observe_deployment),
        ]
        for kind, args, translate in targets:
            thread = threading.Thread(
                target=self.run_watch,
                args=(kind, args, translate, stop_event),
                name=f"watch-{kind.lower()}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info(f"Watching {self.owner_kind} and {DEPLOYMENT_KIND} objects"
                    f" in {namespace or 'all namespaces'}")

    def run_watch(self, kind: str, list_args: tuple, translate: Callable, stop_event: threading.Event,
                  timeout_seconds: int = 300):
        """
        Stream one kind of object until stop_event is set

        An expired watch (HTTP 410) is restarted from a fresh list. Other
        failures are retried with exponential backoff.
        """
        list_func, args = list_args[0], list_args[1:]
        resource_version = None
        failures = 0
        while not stop_event.is_set():
            w = watch.Watch()
            kwargs = {"timeout_seconds": timeout_seconds}
            if resource_version:
                kwargs["resource_version"] = resource_version
            else:
                # A fresh list replays every live object; objects deleted meanwhile must not linger
                self.reset(kind)
            try:
                for raw in w.stream(list_func, *args, **kwargs):
                    if stop_event.is_set():
                        w.stop()
                        break
                    if raw["type"] == "ERROR":
                        logger.warning(f"{kind} watch returned an error: {raw.get('raw_object')}")
                        resource_version = None
                        break
                    obj = translate(raw["object"])
                    resource_version = obj.resource_version or resource_version
                    event = self.observe(raw["type"], obj)
                    if event is not None:
                        self.handle_event(event)
                failures = 0
            except ApiException as e:
                if e.status == 410:
                    logger.info(f"{kind} watch expired, relisting")
                    resource_version = None
                    continue
                failures += 1
                self._backoff(kind, failures, e, stop_event)
            except Exception as e:
                failures += 1
                self._backoff(kind, failures, e, stop_event)

    @staticmethod
    def _backoff(kind: str, failures: int, error: Exception, stop_event: threading.Event):
        sleep_time = min(2.0 ** min(failures, 6), 60.0)
        logger.warning(f"Error watching {kind} objects (attempt {failures}), "
                       f"retrying in {sleep_time:.1f}s: {error}")
        stop_event.wait(sleep_time)

    def join(self, timeout: float = None):
        for thread in self._threads:
            thread.join(timeout)
