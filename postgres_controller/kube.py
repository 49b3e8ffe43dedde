"""
Kubernetes collaborators of the reconcile loop

- KubernetesClient: API handles, loaded in-cluster or from kubeconfig
- StatusStore: reads Postgres resources and writes their status
- Provisioner: creates the Deployment and Service backing a resource
- EventRecorder: asynchronous Event emission
"""

import logging
import queue
import threading
import time
from datetime import datetime, timezone
from typing import Callable

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from postgres_controller.errors import ConflictError, NotFoundError, ProvisioningError
from postgres_controller.models import (
    Endpoint,
    OwnerRef,
    PostgresResource,
    ResourceStatus,
)
from postgres_controller.settings import Config, GREEN, RESET

logger = logging.getLogger("postgres-controller.kube")

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"


# ============================================================================
# KUBERNETES CLIENT
# ============================================================================

class KubernetesClient:
    """Handles Kubernetes API configuration"""

    def __init__(self):
        try:
            config.load_incluster_config()
        except config.ConfigException:
            logger.warning("Failed to load in-cluster config, trying local kubeconfig")
            config.load_kube_config()

        self.core_v1 = client.CoreV1Api()
        self.apps_v1 = client.AppsV1Api()
        self.custom = client.CustomObjectsApi()


# ============================================================================
# STATUS STORE
# ============================================================================

class StatusStore:
    """Reads Postgres resources and persists their status"""

    def __init__(self, custom_api, group: str = None, version: str = None, plural: str = None,
                 use_status_subresource: bool = None):
        self.custom = custom_api
        self.group = group or Config.CRD_GROUP
        self.version = version or Config.CRD_VERSION
        self.plural = plural or Config.CRD_PLURAL
        self.use_status_subresource = (
            Config.USE_STATUS_SUBRESOURCE if use_status_subresource is None else use_status_subresource
        )

    def get(self, namespace: str, name: str) -> PostgresResource:
        """
        Fetch a Postgres resource

        Raises:
            NotFoundError: if it does not exist
            ApiException: on any other API failure
        """
        try:
            body = self.custom.get_namespaced_custom_object(
                self.group, self.version, namespace, self.plural, name
            )
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(Config.CRD_KIND, namespace, name) from e
            raise
        return PostgresResource.from_dict(body)

    def exists(self, ref: OwnerRef) -> bool:
        """Owner lookup used to route events of provisioned objects"""
        try:
            self.get(ref.namespace, ref.name)
            return True
        except NotFoundError:
            return False

    def update_status(self, resource: PostgresResource, status: ResourceStatus) -> PostgresResource:
        """
        Replace the status of resource

        The update is made on a deep copy carrying the resourceVersion that
        was read, so a concurrent writer makes it fail instead of being
        overwritten.

        Args:
            resource: Resource as last read; not modified
            status: New status

        Returns:
            The resource as stored by the API server

        Raises:
            ConflictError: if the resource changed since it was read
            NotFoundError: if it was deleted
        """
        updated = resource.deep_copy()
        body = updated.body
        body.setdefault("metadata", {})
        if resource.resource_version:
            body["metadata"]["resourceVersion"] = resource.resource_version
        body["status"] = status.to_dict()

        replace = (
            self.custom.replace_namespaced_custom_object_status
            if self.use_status_subresource
            else self.custom.replace_namespaced_custom_object
        )
        try:
            stored = replace(
                self.group, self.version, resource.namespace, self.plural, resource.name, body
            )
        except ApiException as e:
            if e.status == 409:
                raise ConflictError(resource.namespace, resource.name, resource.resource_version) from e
            if e.status == 404:
                raise NotFoundError(Config.CRD_KIND, resource.namespace, resource.name) from e
            raise
        logger.debug(f"Status of {resource.key} is now {status.status}")
        return PostgresResource.from_dict(stored)


# ============================================================================
# PROVISIONER
# ============================================================================

def owner_reference(resource: PostgresResource) -> client.V1OwnerReference:
    return client.V1OwnerReference(
        api_version=f"{Config.CRD_GROUP}/{Config.CRD_VERSION}",
        kind=Config.CRD_KIND,
        name=resource.name,
        uid=resource.uid,
        controller=True,
        block_owner_deletion=True,
    )


class Provisioner:
    """Creates and watches over the workload running a Postgres resource"""

    def __init__(self, core_api, apps_api, sleep: Callable[[float], None] = time.sleep):
        self.core_v1 = core_api
        self.apps_v1 = apps_api
        self.sleep = sleep

    def workload_exists(self, namespace: str, deployment_name: str) -> bool:
        try:
            self.apps_v1.read_namespaced_deployment(deployment_name, namespace)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    def new_deployment(self, resource: PostgresResource) -> client.V1Deployment:
        name = resource.spec.deployment_name
        labels = {"app": name}
        container = client.V1Container(
            name=name,
            image=resource.spec.image,
            ports=[client.V1ContainerPort(container_port=Config.POSTGRES_PORT)],
            readiness_probe=client.V1Probe(
                tcp_socket=client.V1TCPSocketAction(port=Config.POSTGRES_PORT),
                initial_delay_seconds=5,
                timeout_seconds=60,
                period_seconds=2,
            ),
            env=[client.V1EnvVar(name="POSTGRES_PASSWORD", value=Config.DB_PASS)],
        )
        return client.V1Deployment(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=resource.namespace,
                labels=labels,
                owner_references=[owner_reference(resource)],
            ),
            spec=client.V1DeploymentSpec(
                replicas=resource.spec.replicas,
                selector=client.V1LabelSelector(match_labels=labels),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=labels),
                    spec=client.V1PodSpec(containers=[container]),
                ),
            ),
        )

    def new_service(self, resource: PostgresResource) -> client.V1Service:
        name = resource.spec.deployment_name
        return client.V1Service(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=resource.namespace,
                labels={"app": name},
                owner_references=[owner_reference(resource)],
            ),
            spec=client.V1ServiceSpec(
                ports=[client.V1ServicePort(
                    name="postgres",
                    port=Config.POSTGRES_PORT,
                    target_port=Config.POSTGRES_PORT,
                    protocol="TCP",
                )],
                selector={"app": name},
                type=Config.SERVICE_TYPE,
            ),
        )

    def create_workload(self, resource: PostgresResource) -> Endpoint:
        """
        Create the Deployment and Service of resource

        Objects that already exist are adopted, so a provisioning that
        failed half-way can be resumed by the next pass.

        Returns:
            Endpoint the database will be reachable at

        Raises:
            ProvisioningError: if either object cannot be created or read
        """
        namespace = resource.namespace
        name = resource.spec.deployment_name
        try:
            try:
                self.apps_v1.create_namespaced_deployment(namespace, self.new_deployment(resource))
                logger.info(f"Created deployment {namespace}/{name}")
            except ApiException as e:
                if e.status != 409:
                    raise
                logger.info(f"Deployment {namespace}/{name} already exists, adopting it")

            try:
                service = self.core_v1.create_namespaced_service(namespace, self.new_service(resource))
                logger.info(f"Created service {namespace}/{name}")
            except ApiException as e:
                if e.status != 409:
                    raise
                service = self.core_v1.read_namespaced_service(name, namespace)
        except ApiException as e:
            raise ProvisioningError(f"failed to provision workload {namespace}/{name}: {e.reason}") from e

        return self.service_endpoint(service)

    def service_endpoint(self, service) -> Endpoint:
        port = service.spec.ports[0]
        if service.spec.type == "NodePort":
            if not port.node_port:
                raise ProvisioningError(f"service {service.metadata.name} has no node port")
            return Endpoint(ip=Config.NODE_IP, port=int(port.node_port))
        return Endpoint(ip=service.spec.cluster_ip, port=int(port.port))

    def list_managed_pods(self, deployment_name: str, namespace: str) -> list:
        return self.core_v1.list_namespaced_pod(
            namespace, label_selector=f"app={deployment_name}"
        ).items

    @staticmethod
    def is_pod_ready(pod) -> bool:
        if not pod.status:
            return False
        for condition in pod.status.conditions or []:
            if condition.type == "Ready" and condition.status == "True":
                return True
        return False

    def wait_until_ready(self, deployment_name: str, namespace: str):
        """
        Block until every pod of the deployment reports Ready

        There is no overall timeout: a workload that never becomes ready
        keeps this call (and the worker running it) waiting.
        """
        self.sleep(Config.READINESS_INITIAL_DELAY)
        while True:
            try:
                pods = self.list_managed_pods(deployment_name, namespace)
            except ApiException as e:
                logger.warning(f"Error listing pods of {namespace}/{deployment_name}: {e.reason}")
                pods = []
            ready = sum(1 for pod in pods if self.is_pod_ready(pod))
            if pods and ready >= len(pods):
                break
            logger.info(f"Waiting for pods of {namespace}/{deployment_name} to get ready ({ready}/{len(pods)})")
            self.sleep(Config.READINESS_POLL_INTERVAL)

        # Give the server a moment past the readiness probe
        self.sleep(Config.READINESS_SETTLE_DELAY)
        logger.info(f"{GREEN}Workload {namespace}/{deployment_name} is ready{RESET}")


# ============================================================================
# EVENT RECORDER
# ============================================================================

class EventRecorder:
    """
    Records Kubernetes Events about Postgres resources

    record() never blocks and never raises; events are posted by a
    background thread and dropped (with a log line) when the buffer is full.
    """

    def __init__(self, core_api, component: str, buffer_size: int = 1000):
        self.core_v1 = core_api
        self.component = component
        self._events = queue.Queue(maxsize=buffer_size)
        self._thread = threading.Thread(target=self._run, name="event-recorder", daemon=True)

    def start(self):
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        try:
            self._events.put(None, timeout=timeout)
        except queue.Full:
            logger.warning("Event buffer full on shutdown, abandoning pending events")
            return
        self._thread.join(timeout)

    def record(self, resource: PostgresResource, event_type: str, reason: str, message: str):
        logger.info(f"Event({resource.key}): type: '{event_type}' reason: '{reason}' {message}")
        try:
            self._events.put_nowait((resource, event_type, reason, message))
        except queue.Full:
            logger.warning(f"Event buffer full, dropping event {reason} for {resource.key}")

    def _run(self):
        while True:
            item = self._events.get()
            if item is None:
                return
            try:
                self._post(*item)
            except ApiException as e:
                logger.warning(f"Failed to post event: {e.reason}")
            except Exception:
                logger.warning("Failed to post event", exc_info=True)

    def _post(self, resource: PostgresResource, event_type: str, reason: str, message: str):
        now = datetime.now(timezone.utc)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{resource.name}.", namespace=resource.namespace),
            involved_object=client.V1ObjectReference(
                api_version=f"{Config.CRD_GROUP}/{Config.CRD_VERSION}",
                kind=Config.CRD_KIND,
                name=resource.name,
                namespace=resource.namespace,
                uid=resource.uid,
                resource_version=resource.resource_version,
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=client.V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        self.core_v1.create_namespaced_event(resource.namespace, event)


def init_event_recorder(core_api, component: str = None) -> EventRecorder:
    """Create and start the process-wide event recorder"""
    recorder = EventRecorder(core_api, component or Config.COMPONENT_NAME)
    recorder.start()
    logger.debug("Started event recorder")
    return recorder
