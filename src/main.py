"""
Main entry point for the BigQueryTable operator.

Builds the store, event source, backend and controller from configuration.
Initialization errors propagate to the caller so the process can exit
before the reconciliation loop starts.
"""

import asyncio
import logging
import signal
from typing import Optional

from kubernetes import client
from kubernetes import config as kube_config

from backend import BigQueryTableBackend, TableBackend
from config import Config, get_config
from controller import Controller
from reconciler import Reconciler
from store import KubernetesDeclarationStore
from watcher import KubernetesEventSource

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class StartupError(RuntimeError):
    """The operator could not be initialized."""


def setup_logging(level: str = "INFO") -> None:
    """Configure process-wide logging."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


def load_kubernetes_client(cfg: Config) -> client.CustomObjectsApi:
    """
    Load cluster credentials and return a CustomObjectsApi.

    Raises:
        StartupError: If no usable configuration is found
    """
    kube = cfg.kubernetes
    try:
        if kube.in_cluster is True:
            kube_config.load_incluster_config()
        elif kube.in_cluster is False:
            kube_config.load_kube_config(config_file=kube.kubeconfig)
        else:
            try:
                kube_config.load_incluster_config()
            except kube_config.ConfigException:
                kube_config.load_kube_config(config_file=kube.kubeconfig)
    except (kube_config.ConfigException, OSError) as e:
        raise StartupError(f"Cannot load Kubernetes configuration: {e}") from e

    return client.CustomObjectsApi()


def build_store(cfg: Config, api: client.CustomObjectsApi) -> KubernetesDeclarationStore:
    kube = cfg.kubernetes
    return KubernetesDeclarationStore(
        api=api,
        group=kube.crd_group,
        version=kube.crd_version,
        plural=kube.crd_plural,
        namespace=kube.namespace,
    )


def build_reconciler(
    cfg: Config, store: KubernetesDeclarationStore, backend: TableBackend
) -> Reconciler:
    return Reconciler(
        store=store,
        backend=backend,
        finalizer=cfg.kubernetes.finalizer,
        default_project=cfg.bigquery.default_project,
        conflict_retries=cfg.controller.conflict_retries,
    )


class Application:
    """Main application that wires the controller together."""

    def __init__(self, cfg: Optional[Config] = None):
        self.config = cfg or get_config()
        self.api: Optional[client.CustomObjectsApi] = None
        self.backend: Optional[TableBackend] = None
        self.controller: Optional[Controller] = None
        self.running = False

    async def initialize(self):
        """
        Initialize all components.

        Raises:
            StartupError: If the cluster cannot be reached or configured
        """
        logger.info("Initializing BigQueryTable operator")
        kube = self.config.kubernetes

        self.api = load_kubernetes_client(self.config)
        store = build_store(self.config, self.api)

        # Fail fast when the API server or the CRD is unreachable.
        try:
            await store.list()
        except Exception as e:
            raise StartupError(
                f"Cannot list {kube.crd_plural}.{kube.crd_group}: {e}"
            ) from e

        if not self.config.bigquery.default_project:
            logger.warning(
                "GCP_PROJECT_ID is not set; declarations must set spec.project"
            )

        self.backend = BigQueryTableBackend(
            location=self.config.bigquery.location,
            request_timeout=self.config.bigquery.request_timeout,
        )
        reconciler = build_reconciler(self.config, store, self.backend)

        event_source = KubernetesEventSource(
            api=self.api,
            group=kube.crd_group,
            version=kube.crd_version,
            plural=kube.crd_plural,
            namespace=kube.namespace,
            watch_timeout=kube.watch_timeout,
            retry_delay=kube.watch_retry_delay,
        )

        self.controller = Controller(
            reconciler=reconciler,
            event_source=event_source,
            store=store,
            config=self.config.controller,
        )
        logger.info(
            f"Watching {kube.crd_plural}.{kube.crd_group}/{kube.crd_version} "
            f"in {kube.namespace or 'all namespaces'}"
        )

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting BigQueryTable operator")
        await self.controller.start()

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping BigQueryTable operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        if self.backend:
            self.backend.close()

        logger.info("BigQueryTable operator stopped")


async def main(cfg: Optional[Config] = None):
    """Initialize and run until SIGINT or SIGTERM."""
    app = Application(cfg)
    await app.initialize()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    finally:
        await app.stop()
