"""
PostgreSQL Custom Resource Controller for Kubernetes

This controller provisions PostgreSQL instances declared as Postgres custom
resources and keeps their databases and users converged with the spec.

Features:
- Event-driven reconciliation through a deduplicating work queue
- Per-resource mutual exclusion across a pool of workers
- Diff-based convergence of databases and users
- Append-only action history in the resource status
- Exponential backoff retries for failed passes
- Kubernetes Events for every pass
- Prometheus metrics exposure
"""

import sys
import time
import signal
import logging
import threading
from dataclasses import replace
from datetime import datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Optional, Set

from postgres_controller.database import CommandExecutor
from postgres_controller.diff import canonicalize, is_connect_directive, plan
from postgres_controller.errors import InvalidKeyError, NotFoundError
from postgres_controller.events import EventSource
from postgres_controller.kube import (
    EVENT_NORMAL,
    EVENT_WARNING,
    KubernetesClient,
    Provisioner,
    StatusStore,
    init_event_recorder,
)
from postgres_controller.models import (
    STATUS_READY,
    STATUS_UPDATING,
    Endpoint,
    PostgresResource,
    ReconciliationStats,
    split_key,
)
from postgres_controller.settings import Config, configure_logging, BLUE, GREEN, RED, RESET, WHITE, YELLOW
from postgres_controller.workqueue import RetryPolicy, WorkQueue

logger = logging.getLogger("postgres-controller")

# Event reasons and messages
SUCCESS_SYNCED = "Synced"
ERR_SYNC_FAILED = "SyncFailed"
MESSAGE_RESOURCE_SYNCED = "Postgres synced successfully"


# ============================================================================
# METRICS (Prometheus-compatible)
# ============================================================================

class Metrics:
    """Simple in-memory metrics for Prometheus exposition"""

    def __init__(self, queue_depth: Callable[[], int] = None):
        self._lock = threading.Lock()
        self.queue_depth = queue_depth or (lambda: 0)
        self.reconciliation_count = 0
        self.last_reconciliation_timestamp = 0
        self.statements_applied = 0
        self.requeue_count = 0
        self.resources_managed: Set[str] = set()
        self.last_error_timestamp = 0
        self.error_count = 0

    def record_reconciliation(self, stats: ReconciliationStats):
        """Record metrics from a reconcile pass"""
        with self._lock:
            self.reconciliation_count += 1
            self.last_reconciliation_timestamp = time.time()
            self.statements_applied += stats.statements_applied
            self.error_count += stats.errors
            if stats.errors > 0:
                self.last_error_timestamp = time.time()
            else:
                self.resources_managed.add(stats.key)

    def forget_resource(self, key: str):
        with self._lock:
            self.resources_managed.discard(key)

    def record_requeue(self):
        with self._lock:
            self.requeue_count += 1

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format"""
        with self._lock:
            return f"""# HELP postgres_controller_reconciliations_total Total number of reconcile passes
# TYPE postgres_controller_reconciliations_total counter
postgres_controller_reconciliations_total {self.reconciliation_count}

# HELP postgres_controller_last_reconciliation_timestamp Timestamp of last reconcile pass
# TYPE postgres_controller_last_reconciliation_timestamp gauge
postgres_controller_last_reconciliation_timestamp {self.last_reconciliation_timestamp}

# HELP postgres_controller_statements_applied_total Total statements applied to databases
# TYPE postgres_controller_statements_applied_total counter
postgres_controller_statements_applied_total {self.statements_applied}

# HELP postgres_controller_requeues_total Total rate-limited requeues
# TYPE postgres_controller_requeues_total counter
postgres_controller_requeues_total {self.requeue_count}

# HELP postgres_controller_queue_depth Keys waiting in the work queue
# TYPE postgres_controller_queue_depth gauge
postgres_controller_queue_depth {self.queue_depth()}

# HELP postgres_controller_resources_managed Postgres resources synced at least once
# TYPE postgres_controller_resources_managed gauge
postgres_controller_resources_managed {len(self.resources_managed)}

# HELP postgres_controller_errors_total Total failed reconcile passes
# TYPE postgres_controller_errors_total counter
postgres_controller_errors_total {self.error_count}

# HELP postgres_controller_last_error_timestamp Timestamp of last error
# TYPE postgres_controller_last_error_timestamp gauge
postgres_controller_last_error_timestamp {self.last_error_timestamp}
"""


def start_metrics_server(metrics: Metrics, port: int) -> ThreadingHTTPServer:
    """Serve /metrics on port from a daemon thread"""

    class MetricsHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path.rstrip("/") != "/metrics":
                self.send_error(404)
                return
            payload = metrics.export_prometheus().encode()
            self.send_response(200)
            self.send_header("Content-Type", "text/plain; version=0.0.4")
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def log_message(self, format, *args):
            logger.debug("metrics: " + format % args)

    server = ThreadingHTTPServer(("", port), MetricsHandler)
    threading.Thread(target=server.serve_forever, name="metrics", daemon=True).start()
    logger.info(f"Serving metrics on :{port}/metrics")
    return server


# ============================================================================
# RECONCILIATION CONTROLLER
# ============================================================================

class PostgresController:
    """
    Main controller for reconciling Postgres resources

    Keys come off the work queue one at a time per resource; each pass
    reads the resource, provisions its workload when needed, applies the
    statements that converge databases and users, and records the outcome
    in the resource status.
    """

    def __init__(self, status_store: StatusStore, provisioner: Provisioner,
                 executor: CommandExecutor, recorder, work_queue: Optional[WorkQueue] = None,
                 metrics: Optional[Metrics] = None):
        self.status_store = status_store
        self.provisioner = provisioner
        self.executor = executor
        self.recorder = recorder
        if work_queue is None:
            work_queue = WorkQueue("Postgreses", RetryPolicy.from_config())
        self.queue = work_queue
        self.metrics = metrics or Metrics(queue_depth=lambda: len(self.queue))
        self._workers = []
        logger.info("Postgres controller initialized")

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def run(self, threadiness: int, stop_event: threading.Event):
        """
        Start workers and block until stop_event is set

        On stop the queue is shut down; workers finish the pass they are in
        and drain what is still queued before they exit.
        """
        logger.info(f"{GREEN}Starting Postgres controller{RESET}")
        for i in range(threadiness):
            worker = threading.Thread(target=self.run_worker, name=f"worker-{i}", daemon=True)
            worker.start()
            self._workers.append(worker)
        logger.info(f"Started {threadiness} workers")

        while not stop_event.wait(1.0):
            pass

        logger.info("Shutting down workers")
        self.queue.shut_down()
        for worker in self._workers:
            worker.join()
        logger.info("Workers stopped")

    def run_worker(self):
        while self.process_next_work_item():
            pass

    def process_next_work_item(self) -> bool:
        """
        Take one key off the queue and reconcile it

        Returns:
            False once the queue has shut down
        """
        key, shutdown = self.queue.get()
        if shutdown:
            return False

        try:
            self.sync_handler(key)
        except Exception as e:
            self.handle_error(key, e)
        else:
            self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def handle_error(self, key: str, error: Exception):
        """Requeue key with backoff, or give up once retries are exhausted"""
        retries = self.queue.num_requeues(key)
        if retries < self.queue.policy.max_retries:
            logger.warning(f"Error syncing '{key}' (retry {retries + 1}/{self.queue.policy.max_retries}): {error}")
            self.queue.add_rate_limited(key)
            self.metrics.record_requeue()
            return
        logger.error(f"{RED}Dropping '{key}' out of the queue after {retries} retries: {error}{RESET}", exc_info=error)
        self.queue.forget(key)

    # ------------------------------------------------------------------
    # Reconcile pass
    # ------------------------------------------------------------------

    def sync_handler(self, key: str):
        """
        Compare the actual state with the desired, and converge the two

        Malformed keys, deleted resources and resources without a
        deployment name end the pass without an error, so they are not
        retried. Every other failure propagates to the worker.
        """
        try:
            namespace, name = split_key(key)
        except InvalidKeyError as e:
            logger.error(str(e))
            return

        try:
            resource = self.status_store.get(namespace, name)
        except NotFoundError:
            logger.info(f"Postgres '{key}' in work queue no longer exists")
            self.metrics.forget_resource(key)
            return

        if not resource.spec.deployment_name:
            logger.error(f"{key}: deployment name must be specified")
            return

        stats = ReconciliationStats(key=key, start_time=datetime.now())
        try:
            exists = self.provisioner.workload_exists(namespace, resource.spec.deployment_name)
            if exists and resource.status.provisioned:
                stats.flow = "update"
                self.update_flow(resource, stats)
            else:
                stats.flow = "create"
                self.create_flow(resource, stats, resume=exists)
        except Exception as e:
            stats.errors += 1
            self.recorder.record(resource, EVENT_WARNING, ERR_SYNC_FAILED, str(e))
            raise
        finally:
            stats.end_time = datetime.now()
            self.metrics.record_reconciliation(stats)
            self.log_summary(stats)

        self.recorder.record(resource, EVENT_NORMAL, SUCCESS_SYNCED, MESSAGE_RESOURCE_SYNCED)
        logger.info(f"Successfully synced '{key}'")

    def create_flow(self, resource: PostgresResource, stats: ReconciliationStats, resume: bool = False):
        """Provision the workload, then set up databases, users and commands"""
        spec = resource.spec
        logger.info(f"Received request to create Postgres {resource.key} (deployment {spec.deployment_name})")

        endpoint = self.provisioner.create_workload(resource)
        self.provisioner.wait_until_ready(spec.deployment_name, resource.namespace)
        self.executor.ping(endpoint)

        # A new workload starts empty; a resumed one keeps what the interrupted pass applied
        current = resource.status
        if resume:
            command_plan = plan(spec.databases, current.databases, spec.users, current.users)
        else:
            command_plan = plan(spec.databases, [], spec.users, [])
        setup_commands = canonicalize(spec.commands)
        self._count(command_plan, stats)

        status = replace(
            current,
            service_ip=endpoint.ip,
            service_port=str(endpoint.port),
            available_replicas=spec.replicas,
        )
        if command_plan or setup_commands:
            resource = self.status_store.update_status(resource, replace(status, status=STATUS_UPDATING))

        applied = self.executor.apply(endpoint, command_plan.commands)
        status = replace(
            status,
            action_history=status.action_history + applied,
            databases=list(spec.databases),
            users=list(spec.users),
        )
        if applied and setup_commands:
            # Recorded before the setup commands run so a retry does not replay the statements above
            resource = self.status_store.update_status(resource, replace(status, status=STATUS_UPDATING))

        first_database = spec.databases[0] if spec.databases else None
        setup_applied = self.executor.apply(endpoint, setup_commands, database=first_database)
        stats.statements_applied = len(applied) + len(setup_applied)

        # Connection directives say nothing about the state of the database
        history = [c for c in setup_applied if not is_connect_directive(c)]
        status = replace(
            status,
            action_history=status.action_history + history,
            verify_cmd=self.verify_command(endpoint),
            status=STATUS_READY,
        )
        self.status_store.update_status(resource, status)
        logger.info(f"Verify using: {status.verify_cmd}")

    def update_flow(self, resource: PostgresResource, stats: ReconciliationStats):
        """Apply the difference between the desired and the last applied state"""
        spec = resource.spec
        current = resource.status
        logger.info(f"Current databases: {current.databases}, desired databases: {spec.databases}")
        logger.info(f"Current users: {[u.username for u in current.users]}, "
                    f"desired users: {[u.username for u in spec.users]}")

        command_plan = plan(spec.databases, current.databases, spec.users, current.users)
        self._count(command_plan, stats)
        if not command_plan:
            if current.status != STATUS_READY:
                self.status_store.update_status(resource, replace(current, status=STATUS_READY))
            logger.debug(f"{resource.key} is up to date")
            return

        logger.info(f"{YELLOW}Drift detected: {len(command_plan)} statement(s) to run{RESET}")
        endpoint = Endpoint(ip=current.service_ip, port=int(current.service_port))

        # Observers see UPDATING while statements are being applied
        resource = self.status_store.update_status(resource, replace(current, status=STATUS_UPDATING))
        applied = self.executor.apply(endpoint, command_plan.commands)
        stats.statements_applied = len(applied)

        status = replace(
            resource.status,
            action_history=resource.status.action_history + applied,
            databases=list(spec.databases),
            users=list(spec.users),
            status=STATUS_READY,
        )
        self.status_store.update_status(resource, status)

    @staticmethod
    def verify_command(endpoint: Endpoint) -> str:
        return f"{Config.VERIFY_CLIENT} -h {endpoint.ip} -p {endpoint.port} -U <user> -d <db-name>"

    @staticmethod
    def _count(command_plan, stats: ReconciliationStats):
        stats.databases_created = len(command_plan.create_databases)
        stats.databases_dropped = len(command_plan.drop_databases)
        stats.users_created = len(command_plan.create_users)
        stats.users_dropped = len(command_plan.drop_users)
        stats.users_altered = len(command_plan.alter_users)

    @staticmethod
    def log_summary(stats: ReconciliationStats):
        logger.info("=" * 60)
        logger.info(f"{WHITE}Reconciliation Summary for {stats.key} ({stats.flow}):{RESET}")
        logger.info(f"  • Databases created: {stats.databases_created}")
        logger.info(f"  • Databases dropped: {stats.databases_dropped}")
        logger.info(f"  • Users created: {stats.users_created}")
        logger.info(f"  • Users dropped: {stats.users_dropped}")
        logger.info(f"  • Users altered: {stats.users_altered}")
        logger.info(f"  • Statements applied: {stats.statements_applied}")
        logger.info(f"  • Errors: {stats.errors}")
        logger.info(f"  • Duration: {stats.duration_seconds():.2f}s")
        logger.info("=" * 60)


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Main entry point"""
    configure_logging()
    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"{BLUE}Received signal {signum}, shutting down gracefully...{RESET}")
        stop_event.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    recorder = None
    metrics_server = None
    source = None
    try:
        kube = KubernetesClient()
        recorder = init_event_recorder(kube.core_v1)
        status_store = StatusStore(kube.custom)
        controller = PostgresController(
            status_store,
            Provisioner(kube.core_v1, kube.apps_v1),
            CommandExecutor(),
            recorder,
        )
        if Config.METRICS_PORT:
            metrics_server = start_metrics_server(controller.metrics, Config.METRICS_PORT)

        source = EventSource(controller.queue, status_store.exists)
        source.start(kube.custom, kube.apps_v1, stop_event)
        controller.run(Config.WORKERS, stop_event)
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        stop_event.set()
        if metrics_server:
            metrics_server.shutdown()
        if source:
            source.join(timeout=5.0)
        if recorder:
            recorder.stop()


if __name__ == "__main__":
    main()
