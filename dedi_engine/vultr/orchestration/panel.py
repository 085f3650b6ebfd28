"""
The shared server panel: content rendering, publishing and the render guard.

Only one render runs at a time. Requests arriving during a render are
collapsed into a single follow-up render.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path

from tabulate import tabulate

from ...types import ProviderInstance, ServerStats
from ..core.api import VultrProvider
from ..core.billing import format_cost, instance_cost, month_to_date_cost, plan_prices
from ..core.panel_store import PanelLocation, PanelState, PanelStore
from ..core.state import InstanceRecord, InstanceRegistry
from ..instances.discovery import ExclusionPolicy
from ..instances.monitoring import connection_urls
from ..utils.clock import Clock
from ..utils.exceptions import ProviderError
from ..utils.logging import get_logger, log_execution_time
from .scheduler import TaskScheduler, TaskType
from .timers import format_remaining_time

logger = get_logger(__name__)

PANEL_HEADERS = ["Server", "Connect", "Timer", "Cost", "Creator"]
DESTROYED_HEADERS = ["Server", "Creator", "Destroyed"]


def timer_label(record: InstanceRecord, now: datetime) -> str:
    timer = record.self_destruct_timer
    if timer is None:
        return "No timer"

    remaining = timer.remaining(now)
    minutes = remaining.total_seconds() / 60
    if minutes <= 0:
        return "EXPIRED"
    if minutes < 5:
        marker = "🔴💣"
    elif minutes < 10:
        marker = "⚠️💣"
    else:
        marker = "⏰💣"
    return f"{marker} {format_remaining_time(remaining)}"


def server_stats(instances: list[ProviderInstance]) -> ServerStats:
    running = sum(1 for i in instances if i.get("power_status") == "running")
    stopped = sum(1 for i in instances if i.get("power_status") == "stopped")
    return {"running": running, "stopped": stopped, "total": len(instances)}


class PanelPublisher:
    """Writes rendered content to the shared artifact."""

    async def publish(self, content: str, location: PanelLocation | None) -> PanelLocation:
        raise NotImplementedError


class FilePanelPublisher(PanelPublisher):
    """Publishes the panel as a text file."""

    def __init__(self, output_file: Path) -> None:
        self.output_file = output_file

    async def publish(self, content: str, location: PanelLocation | None) -> PanelLocation:
        tmp_file = self.output_file.with_suffix(self.output_file.suffix + ".tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            f.write(content)
        tmp_file.replace(self.output_file)
        return PanelLocation(
            channel_id=str(self.output_file.parent), message_id=self.output_file.name
        )


class PanelRenderer:
    """Builds the panel text from the registry and the provider listing."""

    def __init__(
        self,
        policy: ExclusionPolicy,
        registry: InstanceRegistry,
        clock: Clock | None = None,
    ) -> None:
        self.policy = policy
        self.registry = registry
        self.clock = clock or Clock()

    @property
    def provider(self) -> VultrProvider:
        return self.policy.provider

    async def _provider_view(self) -> tuple[list[ProviderInstance], dict[str, float]]:
        """Manageable provider instances and plan prices; empty when unavailable."""
        try:
            instances = await self.policy.filter(await self.provider.list_instances())
        except ProviderError as e:
            logger.warning(f"Panel rendering without provider instance list: {e}")
            return [], {}
        try:
            prices = plan_prices(await self.provider.list_plans())
        except ProviderError as e:
            logger.warning(f"Panel rendering without plan prices: {e}")
            prices = {}
        return instances, prices

    async def render(self) -> str:
        now = self.clock.now()
        instances, prices = await self._provider_view()
        by_id = {str(i.get("id")): i for i in instances}

        stats = server_stats(instances)
        mtd = month_to_date_cost(instances, prices, now)

        lines = [
            "🖥️ Server Control Panel",
            f"Running: {stats['running']} | Stopped: {stats['stopped']} | "
            f"Total: {stats['total']}",
            f"Month-to-date: {format_cost(mtd['total'])} across {mtd['count']} server(s)",
            f"Last updated: {now.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            "",
        ]

        active = sorted(self.registry.list_active(), key=lambda r: r.created_at)
        if active:
            rows = []
            for record in active:
                provider_instance = by_id.get(record.id)
                cost = instance_cost(provider_instance, prices, now) if provider_instance else None
                rows.append(
                    [
                        record.name,
                        connection_urls(record.ip)["web"] if record.ip else "pending",
                        timer_label(record, now),
                        format_cost(cost),
                        record.creator.display_name,
                    ]
                )
            lines.append(tabulate(rows, headers=PANEL_HEADERS, tablefmt="simple"))
        else:
            lines.append("No active servers.")

        destroyed = self.registry.list_recently_destroyed()
        if destroyed:
            rows = [
                [
                    record.name,
                    record.creator.display_name,
                    record.destroyed_at.strftime("%H:%M UTC") if record.destroyed_at else "",
                ]
                for record in destroyed
            ]
            lines.extend(
                ["", "Recently destroyed:", tabulate(rows, headers=DESTROYED_HEADERS)]
            )

        return "\n".join(lines)


class PanelService:
    """Renders, publishes and remembers where the panel lives."""

    def __init__(
        self,
        renderer: PanelRenderer,
        publisher: PanelPublisher,
        store: PanelStore,
        clock: Clock | None = None,
    ) -> None:
        self.renderer = renderer
        self.publisher = publisher
        self.store = store
        self.clock = clock or Clock()
        self.state = PanelState()

    def restore(self) -> PanelState:
        self.state = self.store.load()
        return self.state

    @log_execution_time
    async def refresh(self) -> None:
        content = await self.renderer.render()
        location = await self.publisher.publish(content, self.state.location)
        if location != self.state.location:
            logger.info(f"Panel relocated to {location}")
        self.state.location = location
        self.state.last_update = self.clock.now()
        self.store.save(self.state)


class RenderSerializer:
    """Single-flight, coalescing guard around one render function."""

    def __init__(
        self,
        render: Callable[[], Awaitable[None]],
        scheduler: TaskScheduler,
        coalesce_delay: float = 1.0,
    ) -> None:
        self._render = render
        self.scheduler = scheduler
        self.coalesce_delay = coalesce_delay
        self.in_progress = False
        self.pending = False
        self.render_count = 0

    async def request_render(self, trigger: str = "manual") -> None:
        """Render now, or mark a follow-up render if one is already running."""
        if self.in_progress:
            logger.debug(f"Render in progress, queueing request ({trigger})")
            self.pending = True
            return

        self.in_progress = True
        try:
            logger.debug(f"Rendering panel ({trigger})")
            await self._render()
            self.render_count += 1
        except Exception as e:
            logger.error(f"❌ Panel render failed ({trigger}): {e}")
        finally:
            self.in_progress = False
            if self.pending:
                self.pending = False
                self.scheduler.call_later(
                    self.coalesce_delay,
                    TaskType.RENDER,
                    lambda: self.request_render("coalesced"),
                )
