import logging
import threading
from dataclasses import dataclass, field
from functools import lru_cache

from provisioner.catalog import DEFAULT_CATALOG, Catalog
from provisioner.clients.azure import load_provider
from provisioner.clients.controller import ControllerClient
from provisioner.clients.http import retry_strategy
from provisioner.clients.provider import ProviderClient
from provisioner.clients.ssh import SSHSession
from provisioner.config import Settings, get_settings
from provisioner.deployment.builder import DeploymentTemplateBuilder
from provisioner.records import WorkerRegistry, registry
from provisioner.retry import FixedRetryStrategy
from provisioner.services.bootstrap import (
    AgentChannels,
    RemoteBootstrapLauncher,
    SessionFactory,
)
from provisioner.services.lifecycle import VMLifecycleOrchestrator
from provisioner.services.provisioning import ProvisioningService
from provisioner.services.template_health import TemplateHealth
from provisioner.services.validation import TemplateValidator
from provisioner.tasks import BackgroundTaskQueue
from provisioner.templates import ProviderProfile, WorkerTemplate, load_templates


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    catalog: Catalog
    profile: ProviderProfile
    templates: dict[str, WorkerTemplate]
    registry: WorkerRegistry
    orchestrator: VMLifecycleOrchestrator
    validator: TemplateValidator
    health: TemplateHealth
    launcher: RemoteBootstrapLauncher
    provisioning: ProvisioningService
    channels: AgentChannels
    queues: list[BackgroundTaskQueue] = field(default_factory=list)
    cancel: threading.Event = field(default_factory=threading.Event)

    def shutdown(self) -> None:
        self.cancel.set()
        for queue in self.queues:
            queue.shutdown(wait=False)


def profile_from_settings(settings: Settings) -> ProviderProfile:
    return ProviderProfile(
        subscription_id=settings.azure_subscription_id,
        tenant_id=settings.azure_tenant_id,
        client_id=settings.azure_client_id,
        client_secret=settings.azure_client_secret,
        cloud=settings.azure_cloud,
    )


def _ssh_session_factory(settings: Settings) -> SessionFactory:
    def connect(host: str, port: int, username: str, password: str) -> SSHSession:
        return SSHSession.connect(
            host,
            port,
            username,
            password,
            timeout=settings.ssh_connect_timeout_sec,
            keepalive=settings.ssh_keepalive_sec,
        )

    return connect


def build_runtime(
    settings: Settings,
    provider: ProviderClient | None = None,
    session_factory: SessionFactory | None = None,
    catalog: Catalog = DEFAULT_CATALOG,
) -> Runtime:
    profile = profile_from_settings(settings)
    if provider is None:
        provider = load_provider(profile)
    templates = load_templates(settings.templates_file) if settings.templates_file else {}
    cancel = threading.Event()

    cleanup_queue = BackgroundTaskQueue(settings.cleanup_workers, name="cleanup")
    provisioning_queue = BackgroundTaskQueue(
        settings.provisioning_workers, name="provisioning"
    )

    validator = TemplateValidator(
        provider_loader=lambda _profile: provider,
        catalog=catalog,
        timeout_sec=settings.validation_timeout_sec,
    )
    health = TemplateHealth(validator, lambda: profile, cleanup_queue)
    orchestrator = VMLifecycleOrchestrator(
        provider,
        DeploymentTemplateBuilder(catalog),
        cleanup_queue,
        failure_hook=health,
        start_strategy=FixedRetryStrategy(
            max_attempts=settings.start_retry_attempts,
            delay_sec=settings.start_retry_sleep_sec,
        ),
        cancel=cancel,
    )
    controller = ControllerClient(
        settings.controller_url,
        retry_strategy(settings.retry_attempts, settings.retry_sleep_sec),
        user=settings.controller_user,
        api_token=settings.controller_api_token,
        agent_payload_path=settings.agent_payload_path,
    )
    channels = AgentChannels()
    launcher = RemoteBootstrapLauncher(
        orchestrator,
        session_factory or _ssh_session_factory(settings),
        controller.agent_payload,
        channels.attach,
        failure_hook=health,
        connect_strategy=FixedRetryStrategy(
            max_attempts=settings.connect_retry_attempts,
            delay_sec=settings.connect_retry_sleep_sec,
        ),
        cancel=cancel,
    )
    provisioning = ProvisioningService(
        orchestrator,
        launcher,
        registry,
        provisioning_queue,
        failure_hook=health,
        provision_timeout_sec=settings.provision_timeout_sec,
        poll_interval_sec=settings.status_poll_interval_sec,
        cancel=cancel,
    )
    logger.info(
        "runtime ready templates=%s cloud=%s", sorted(templates), profile.cloud
    )
    return Runtime(
        settings=settings,
        catalog=catalog,
        profile=profile,
        templates=templates,
        registry=registry,
        orchestrator=orchestrator,
        validator=validator,
        health=health,
        launcher=launcher,
        provisioning=provisioning,
        channels=channels,
        queues=[cleanup_queue, provisioning_queue],
        cancel=cancel,
    )


@lru_cache(maxsize=1)
def get_runtime() -> Runtime:
    return build_runtime(get_settings())
