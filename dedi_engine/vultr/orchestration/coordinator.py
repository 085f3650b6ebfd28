"""
Orchestration coordinator for the Vultr orchestration system.

`Orchestrator` is the surface the chat front-end talks to. Long-running work
(status polls, destruction polls, renders) is handed to the task scheduler;
callers get an acknowledgment immediately and progress arrives through the
notifier.
"""

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ...types import ActionResult
from ..core.api import VultrClient, VultrProvider
from ..core.billing import format_cost, instance_cost, plan_prices
from ..core.notifications import (
    LoggingNotifier,
    Notification,
    NotificationKind,
    Notifier,
    deliver,
)
from ..core.panel_store import PanelStore
from ..core.state import (
    UNKNOWN_CREATOR,
    Creator,
    InstanceRegistry,
    InstanceStatus,
)
from ..instances.discovery import ExclusionPolicy, ReconcileResult, reconcile_registry
from ..instances.lifecycle import DestructionOutcome, DestructionPoller, PowerController
from ..instances.monitoring import PollResult, StatusPoller, connection_urls
from ..instances.provisioning import InstanceHandle, Provisioner
from ..instances.snapshots import SnapshotPoller, snapshot_description
from ..utils.clock import Clock
from ..utils.config import OrchestratorSettings
from ..utils.exceptions import (
    NoActiveTimer,
    NotFoundError,
    OperationInProgress,
    PermissionDeniedError,
    ProviderError,
    ProviderTransientError,
    ValidationError,
)
from ..utils.logging import get_logger, log_function_call
from .panel import (
    FilePanelPublisher,
    PanelPublisher,
    PanelRenderer,
    PanelService,
    RenderSerializer,
)
from .scheduler import Task, TaskScheduler, TaskType
from .timers import SelfDestructTimerEngine, format_remaining_time

logger = get_logger(__name__)


@dataclass
class Acknowledgment:
    """Immediate answer to a front-end request whose work continues in the background."""

    instance_id: str
    operation: str
    message: str
    task: Task | None = None


@dataclass
class StatusReport:
    """Provider and registry view of one instance."""

    instance_id: str
    name: str
    status: str
    power_status: str
    ip: str | None
    region: str
    registry_status: InstanceStatus | None = None
    creator: str | None = None
    remaining: str | None = None
    expires_at: datetime | None = None
    cost: str = "unavailable"
    connection: dict[str, str] = field(default_factory=dict)


@dataclass
class OrchestrationState:
    """Registry counts for status displays."""

    total_instances: int
    active_instances: int
    running_instances: int
    stopped_instances: int
    destroyed_instances: int
    timed_instances: int
    background_tasks: int


class Orchestrator:
    """Wires the pipeline, pollers, timer engine and panel together."""

    def __init__(
        self,
        provider: VultrProvider,
        settings: OrchestratorSettings,
        notifier: Notifier | None = None,
        publisher: PanelPublisher | None = None,
        store: PanelStore | None = None,
        registry: InstanceRegistry | None = None,
        clock: Clock | None = None,
        scheduler: TaskScheduler | None = None,
    ) -> None:
        self.provider = provider
        self.settings = settings
        self.clock = clock if clock is not None else Clock()
        self.registry = registry if registry is not None else InstanceRegistry(self.clock)
        self.notifier = notifier if notifier is not None else LoggingNotifier()
        self.scheduler = scheduler if scheduler is not None else TaskScheduler(self.clock)
        self._in_flight: dict[str, str] = {}
        self._stop_event = asyncio.Event()

        self.policy = ExclusionPolicy(
            provider, settings.exclude_instance_id, settings.exclude_snapshot_id
        )
        self.provisioner = Provisioner(provider, settings, self.clock)
        self.timers = SelfDestructTimerEngine(
            self.policy,
            self.registry,
            self.notifier,
            settings,
            self.clock,
            is_busy=self.is_busy,
            on_expired=lambda instance_id: self.schedule_render("expired"),
        )
        self.status_poller = StatusPoller(
            self.policy,
            self.registry,
            self.notifier,
            settings,
            self.clock,
            on_ready=self.timers.initialize_timer,
        )
        self.destroyer = DestructionPoller(provider, self.registry, settings, self.clock)
        self.snapshot_poller = SnapshotPoller(provider, self.notifier, settings, self.clock)
        self.power = PowerController(
            self.policy,
            self.registry,
            settings,
            self.clock,
            on_running=self.timers.initialize_timer,
        )
        self.panel = PanelService(
            PanelRenderer(self.policy, self.registry, self.clock),
            publisher if publisher is not None else FilePanelPublisher(settings.panel_output_file),
            store if store is not None else PanelStore(settings.panel_data_file),
            self.clock,
        )
        self.renderer = RenderSerializer(
            self.panel.refresh, self.scheduler, settings.timings.render_coalesce_delay
        )

    # --- Concurrency guard ---

    def is_busy(self, instance_id: str) -> bool:
        return instance_id in self._in_flight

    def _claim(self, instance_id: str, operation: str) -> None:
        current = self._in_flight.get(instance_id)
        if current is not None:
            raise OperationInProgress(instance_id, current)
        self._in_flight[instance_id] = operation

    def _release(self, instance_id: str) -> None:
        self._in_flight.pop(instance_id, None)

    @contextmanager
    def _single_flight(self, instance_id: str, operation: str) -> Iterator[None]:
        self._claim(instance_id, operation)
        try:
            yield
        finally:
            self._release(instance_id)

    # --- Helpers ---

    def schedule_render(self, trigger: str) -> Task:
        """Hand a render request to the scheduler."""
        return self.scheduler.spawn(TaskType.RENDER, self.renderer.request_render(trigger))

    async def _notify(
        self,
        kind: NotificationKind,
        instance_id: str | None,
        recipient_id: str | None,
        message: str,
    ) -> None:
        await deliver(self.notifier, Notification(kind, instance_id, recipient_id, message))

    async def _plan_prices(self) -> dict[str, float]:
        try:
            return plan_prices(await self.provider.list_plans())
        except ProviderError as e:
            logger.warning(f"Could not load plan prices: {e}")
            return {}

    # --- Front-end operations ---

    @log_function_call
    async def provision(
        self,
        image_ref: str | None,
        name: str,
        region: str | None = None,
        requester: Creator = UNKNOWN_CREATOR,
    ) -> Acknowledgment:
        """Create a hardened instance and start watching it become ready.

        The instance is tracked under the requester as soon as the provider
        creates it, so a sync during the firewall attach cannot claim it as
        recovered. Provisioning errors propagate to the caller and drop that
        record again.
        """
        created: list[str] = []

        def track(instance_id: str, instance_region: str, snapshot_id: str) -> None:
            created.append(instance_id)
            self.registry.upsert(
                instance_id,
                requester,
                InstanceStatus.CREATING,
                {"name": name, "region": instance_region, "snapshot_id": snapshot_id},
            )

        try:
            handle: InstanceHandle = await self.provisioner.provision(
                image_ref, name, region, on_created=track
            )
        except Exception:
            for instance_id in created:
                self.registry.remove(instance_id)
            raise

        metadata: dict[str, Any] = {
            "region": handle.region,
            "ip": handle.main_ip or None,
            "snapshot_id": handle.snapshot_id,
            "plan": handle.plan,
            "ddos_protection": handle.ddos_protection,
        }
        if name:
            metadata["name"] = name
        self.registry.upsert(handle.id, requester, InstanceStatus.CREATING, metadata)

        await self._notify(
            NotificationKind.PROGRESS,
            handle.id,
            requester.requester_id,
            f"🔒 Server {name!r} created with verified firewall, waiting for it to boot...",
        )
        task = self.scheduler.spawn(
            TaskType.STATUS_POLL, self._watch_status(handle.id), instance_id=handle.id
        )
        self.schedule_render("provisioned")
        return Acknowledgment(
            handle.id, "provision", f"Server {name!r} is being created.", task
        )

    async def _watch_status(self, instance_id: str) -> PollResult:
        try:
            return await self.status_poller.poll(instance_id)
        finally:
            self.schedule_render("status")

    @log_function_call
    async def request_status(self, instance_id: str) -> StatusReport:
        """Current provider state of one manageable instance."""
        instance = await self.policy.get_instance(instance_id)
        record = self.registry.get(instance_id)
        now = self.clock.now()

        timer = record.self_destruct_timer if record else None
        cost = instance_cost(instance.metadata, await self._plan_prices(), now)

        return StatusReport(
            instance_id=instance.id,
            name=instance.label or (record.name if record else instance.id),
            status=instance.status,
            power_status=instance.power_status,
            ip=instance.main_ip if instance.has_address else None,
            region=instance.region,
            registry_status=record.status if record else None,
            creator=record.creator.display_name if record else None,
            remaining=format_remaining_time(timer.remaining(now)) if timer else None,
            expires_at=timer.expires_at if timer else None,
            cost=format_cost(cost),
            connection=connection_urls(instance.main_ip) if instance.has_address else {},
        )

    @log_function_call
    async def request_destroy(
        self, instance_id: str, requester: Creator | None = None
    ) -> Acknowledgment:
        """Start deleting an instance; confirmation arrives as a notification.

        Raises OperationInProgress when another action holds the instance and
        InstanceExcludedError for protected instances.
        """
        self._claim(instance_id, "destroy")
        try:
            instance = await self.policy.get_instance(instance_id)
        except NotFoundError:
            self._release(instance_id)
            self.registry.set_status(instance_id, InstanceStatus.DESTROYED)
            self.schedule_render("destroyed")
            return Acknowledgment(instance_id, "destroy", "Server is already gone.")
        except BaseException:
            self._release(instance_id)
            raise

        cost = instance_cost(instance.metadata, await self._plan_prices(), self.clock.now())
        record = self.registry.get(instance_id)
        recipient_id = (
            requester.requester_id if requester
            else record.creator.requester_id if record
            else None
        )
        name = instance.label or (record.name if record else instance_id)

        logger.info(f"🗑️ Destroying instance {instance_id} ({name})")
        task = self.scheduler.spawn(
            TaskType.DESTRUCTION_POLL,
            self._destroy(instance_id, name, recipient_id, format_cost(cost)),
            instance_id=instance_id,
        )
        return Acknowledgment(
            instance_id, "destroy", f"Destroying server {name!r}...", task
        )

    async def _destroy(
        self, instance_id: str, name: str, recipient_id: str | None, cost: str
    ) -> DestructionOutcome | None:
        try:
            result = await self.destroyer.confirm_destruction(instance_id)
        except ProviderError as e:
            logger.error(f"❌ Destruction of {instance_id} failed: {e}")
            await self._notify(
                NotificationKind.FAILED,
                instance_id,
                recipient_id,
                f"❌ There was an error destroying server {name!r}: {e}",
            )
            return None
        finally:
            self._release(instance_id)
            self.schedule_render("destroyed")

        if result.outcome is DestructionOutcome.CONFIRMED:
            await self._notify(
                NotificationKind.DESTROYED,
                instance_id,
                recipient_id,
                f"🗑️ Server {name!r} has been destroyed. Total cost: {cost}",
            )
        else:
            await self._notify(
                NotificationKind.TIMEOUT,
                instance_id,
                recipient_id,
                f"⚠️ Could not confirm server {name!r} was destroyed. "
                "Please check the provider console.",
            )
        return result.outcome

    @log_function_call
    async def extend_timer(self, instance_id: str, requester: Creator | None = None) -> datetime:
        """Insert a coin: push the self-destruct deadline back."""
        expires_at = self.timers.extend(instance_id)
        record = self.registry.get(instance_id)
        if record is None or record.self_destruct_timer is None:
            raise NoActiveTimer(instance_id)

        remaining = format_remaining_time(record.self_destruct_timer.remaining(self.clock.now()))
        minutes = int(self.settings.self_destruct_extension.total_seconds() // 60)
        await self._notify(
            NotificationKind.EXTENDED,
            instance_id,
            requester.requester_id if requester else record.creator.requester_id,
            f"🪙 Added {minutes} minutes to {record.name!r}. Time remaining: {remaining}",
        )
        self.schedule_render("extended")
        return expires_at

    async def _power_action(self, instance_id: str, operation: str) -> ActionResult:
        with self._single_flight(instance_id, operation):
            action = getattr(self.power, operation)
            result = await action(instance_id)
        self.schedule_render(operation)
        return result

    async def start(self, instance_id: str) -> ActionResult:
        return await self._power_action(instance_id, "start")

    async def stop(self, instance_id: str) -> ActionResult:
        return await self._power_action(instance_id, "stop")

    async def restart(self, instance_id: str) -> ActionResult:
        return await self._power_action(instance_id, "restart")

    @log_function_call
    async def create_snapshot(
        self,
        instance_id: str,
        name: str,
        requester: Creator,
        description: str = "",
        public: bool = False,
    ) -> Acknowledgment:
        """Snapshot a running instance and follow the snapshot until it settles.

        Only requesters listed in ADMIN_USER_IDS may create snapshots.
        """
        if requester.requester_id not in self.settings.admin_user_ids:
            logger.warning(f"Snapshot of {instance_id} refused for {requester.requester_id}")
            raise PermissionDeniedError(requester.requester_id, "create snapshots")

        with self._single_flight(instance_id, "snapshot"):
            instance = await self.policy.get_instance(instance_id)
            if instance.power_status != "running":
                raise ValidationError(
                    "Server must be running to create a snapshot. "
                    f"Current status: {instance.power_status}"
                )

            snapshot = await self.provider.create_snapshot(
                instance_id, snapshot_description(name, description, public)
            )
            snapshot_id = snapshot.get("id")
            if not snapshot_id:
                raise ProviderTransientError(
                    f"Vultr API returned no snapshot for {instance_id}"
                )

        logger.info(f"📸 Snapshot {snapshot_id} of {instance_id} started ({name})")
        await self._notify(
            NotificationKind.PROGRESS,
            instance_id,
            requester.requester_id,
            f"📸 Snapshot {name!r} of {instance.label or instance_id} started, "
            "this typically takes 5-15 minutes.",
        )
        task = self.scheduler.spawn(
            TaskType.SNAPSHOT_POLL,
            self.snapshot_poller.poll(snapshot_id, name, requester.requester_id, instance_id),
            instance_id=instance_id,
            snapshot_id=snapshot_id,
        )
        return Acknowledgment(
            instance_id, "snapshot", f"Snapshot {name!r} is being created.", task
        )

    @log_function_call
    async def sync(self) -> ReconcileResult:
        """Reconcile the registry with the provider and time any newly running instances."""
        result = await reconcile_registry(self.policy, self.registry)

        for instance_id in result.added + result.updated:
            record = self.registry.get(instance_id)
            if record is None or record.status is not InstanceStatus.RUNNING:
                continue
            if record.recovered and not self.settings.timer_recovered_instances:
                continue
            self.timers.initialize_timer(instance_id)

        if result.added or result.terminated:
            self.schedule_render("sync")
        return result

    def get_orchestration_state(self) -> OrchestrationState:
        records = self.registry.list_all()
        active = [r for r in records if r.is_active]
        return OrchestrationState(
            total_instances=len(records),
            active_instances=len(active),
            running_instances=sum(1 for r in active if r.status is InstanceStatus.RUNNING),
            stopped_instances=sum(1 for r in active if r.status is InstanceStatus.STOPPED),
            destroyed_instances=len(self.registry.list_recently_destroyed()),
            timed_instances=sum(1 for r in active if r.self_destruct_timer is not None),
            background_tasks=len(self.scheduler),
        )

    # --- Main loop ---

    async def _panel_loop(self) -> None:
        while True:
            try:
                await self.sync()
            except Exception as e:
                logger.error(f"Error during periodic sync: {e}")
            await self.renderer.request_render("periodic")
            await self.clock.sleep(self.settings.panel_refresh_seconds)

    async def run(self) -> None:
        """Run the timer engine and panel refresh until shutdown() is called."""
        self._stop_event.clear()
        self.panel.restore()
        logger.info("🚀 Orchestrator started")

        loops = [
            asyncio.ensure_future(self.timers.run()),
            asyncio.ensure_future(self._panel_loop()),
        ]
        try:
            await self._stop_event.wait()
        finally:
            for loop in loops:
                loop.cancel()
            await asyncio.gather(*loops, return_exceptions=True)
            await self.scheduler.cancel_all()
            logger.info("Orchestrator stopped")

    def request_shutdown(self) -> None:
        """Ask a running main loop to stop; safe to call from a signal handler."""
        self._stop_event.set()

    async def shutdown(self) -> None:
        """Stop the main loop and cancel every background task."""
        self._stop_event.set()
        await self.scheduler.cancel_all()


def create_orchestrator(
    settings: OrchestratorSettings,
    notifier: Notifier | None = None,
    publisher: PanelPublisher | None = None,
) -> Orchestrator:
    """Build an orchestrator talking to the real Vultr API."""
    client = VultrClient(settings.api_key, settings.api_url, settings.metadata_url)
    return Orchestrator(client, settings, notifier=notifier, publisher=publisher)
