"""Shared test fixtures and in-memory fakes."""

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from dedi_engine.vultr.core.api import VultrProvider
from dedi_engine.vultr.core.notifications import Notification, NotificationKind, Notifier
from dedi_engine.vultr.core.panel_store import PanelLocation, PanelStore
from dedi_engine.vultr.core.state import Creator, InstanceRegistry
from dedi_engine.vultr.orchestration.coordinator import Orchestrator
from dedi_engine.vultr.orchestration.panel import PanelPublisher
from dedi_engine.vultr.utils.clock import Clock
from dedi_engine.vultr.utils.config import OrchestratorSettings
from dedi_engine.vultr.utils.exceptions import NotFoundError

FIREWALL_ID = "12345678-1234-4234-9234-123456789abc"
READY_IP = "192.0.2.10"
START = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)

ALICE = Creator("user-1", "Alice")
BOB = Creator("user-2", "Bob")


class FakeClock(Clock):
    """Simulated time: sleeping advances the clock instantly."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=max(0.0, seconds))
        await asyncio.sleep(0)

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


class FakeProvider(VultrProvider):
    """In-memory provider with scripted failures and a call log."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.instances: dict[str, dict[str, Any]] = {}
        self.snapshots: list[dict[str, Any]] = [{"id": "img-1", "description": "Test image"}]
        self.regions: list[dict[str, Any]] = [{"id": "dfw"}, {"id": "ewr"}]
        self.plans: list[dict[str, Any]] = [{"id": "vc2-1c-1gb", "monthly_cost": 7.3}]
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

        self.current_instance_id: str | None = None
        self.create_response: dict[str, Any] | None = None
        self.create_errors: list[Exception] = []
        self.get_errors: list[Exception] = []
        self.update_errors: list[Exception] = []
        self.delete_errors: list[Exception] = []
        self.list_errors: list[Exception] = []
        self.snapshot_errors: list[Exception] = []
        self.get_patches: dict[str, list[dict[str, Any]]] = {}
        self.snapshot_patches: dict[str, list[dict[str, Any]]] = {}

        self.auto_boot = True
        self.ignore_firewall_attaches = 0
        self.ddos_supported = True
        self.delete_removes = True
        self.power_actions_apply = True

        self._next_id = 1
        self._attaches: Counter[str] = Counter()

    def calls_to(self, method: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == method]

    def add_instance(self, instance_id: str, **fields: Any) -> dict[str, Any]:
        instance = {
            "id": instance_id,
            "label": fields.pop("label", f"server-{instance_id}"),
            "region": "dfw",
            "plan": "vc2-1c-1gb",
            "snapshot_id": "img-1",
            "status": "active",
            "power_status": "running",
            "main_ip": READY_IP,
            "firewall_group_id": FIREWALL_ID,
            "features": [],
            "date_created": self.clock.now().isoformat(),
        }
        instance.update(fields)
        self.instances[instance_id] = instance
        return instance

    def _lookup(self, instance_id: str) -> dict[str, Any]:
        if instance_id not in self.instances:
            raise NotFoundError(f"Instance {instance_id} not found", 404)
        return self.instances[instance_id]

    async def create_instance(
        self, snapshot_id: str, label: str, region: str, plan: str
    ) -> dict[str, Any]:
        self.calls.append(("create_instance", (snapshot_id, label, region, plan)))
        if self.create_errors:
            raise self.create_errors.pop(0)

        instance_id = f"inst-{self._next_id}"
        self._next_id += 1
        instance = self.add_instance(
            instance_id,
            label=label,
            region=region,
            plan=plan,
            snapshot_id=snapshot_id,
            status="pending",
            power_status="stopped",
            main_ip="0.0.0.0",
            firewall_group_id="",
        )
        if self.create_response is not None:
            return dict(self.create_response)
        return dict(instance)

    async def get_instance(self, instance_id: str) -> dict[str, Any]:
        self.calls.append(("get_instance", (instance_id,)))
        if self.get_errors:
            raise self.get_errors.pop(0)

        instance = self._lookup(instance_id)
        patches = self.get_patches.get(instance_id)
        if patches:
            instance.update(patches.pop(0))
        elif self.auto_boot and instance["status"] == "pending":
            instance.update(status="active", power_status="running", main_ip=READY_IP)
        return dict(instance, features=list(instance["features"]))

    async def update_instance(self, instance_id: str, **fields: Any) -> None:
        self.calls.append(("update_instance", (instance_id, fields)))
        if self.update_errors:
            raise self.update_errors.pop(0)

        instance = self._lookup(instance_id)
        if "firewall_group_id" in fields:
            self._attaches[instance_id] += 1
            if self._attaches[instance_id] > self.ignore_firewall_attaches:
                instance["firewall_group_id"] = fields["firewall_group_id"]
        if fields.get("ddos_protection") and self.ddos_supported:
            instance["features"].append("ddos_protection")

    async def delete_instance(self, instance_id: str) -> None:
        self.calls.append(("delete_instance", (instance_id,)))
        if self.delete_errors:
            raise self.delete_errors.pop(0)

        self._lookup(instance_id)
        if self.delete_removes:
            del self.instances[instance_id]

    async def _power(self, method: str, instance_id: str, power_status: str) -> None:
        self.calls.append((method, (instance_id,)))
        instance = self._lookup(instance_id)
        if self.power_actions_apply:
            instance["power_status"] = power_status

    async def start_instance(self, instance_id: str) -> None:
        await self._power("start_instance", instance_id, "running")

    async def halt_instance(self, instance_id: str) -> None:
        await self._power("halt_instance", instance_id, "stopped")

    async def reboot_instance(self, instance_id: str) -> None:
        await self._power("reboot_instance", instance_id, "running")

    async def list_instances(self) -> list[dict[str, Any]]:
        self.calls.append(("list_instances", ()))
        if self.list_errors:
            raise self.list_errors.pop(0)
        return [dict(i) for i in self.instances.values()]

    async def list_plans(self) -> list[dict[str, Any]]:
        return list(self.plans)

    async def list_snapshots(self) -> list[dict[str, Any]]:
        self.calls.append(("list_snapshots", ()))
        if self.snapshot_errors:
            raise self.snapshot_errors.pop(0)
        for snapshot in self.snapshots:
            patches = self.snapshot_patches.get(snapshot["id"])
            if patches:
                snapshot.update(patches.pop(0))
        return [dict(s) for s in self.snapshots]

    async def create_snapshot(self, instance_id: str, description: str) -> dict[str, Any]:
        self.calls.append(("create_snapshot", (instance_id, description)))
        self._lookup(instance_id)
        snapshot = {
            "id": f"snap-{self._next_id}",
            "description": description,
            "status": "pending",
            "size": 0,
            "date_created": self.clock.now().isoformat(),
        }
        self._next_id += 1
        self.snapshots.append(snapshot)
        return dict(snapshot)

    async def list_regions(self) -> list[dict[str, Any]]:
        return list(self.regions)

    async def get_current_instance_id(self) -> str | None:
        return self.current_instance_id


class RecordingNotifier(Notifier):
    """Keeps every notification it is given."""

    def __init__(self, fail: bool = False) -> None:
        self.notifications: list[Notification] = []
        self.fail = fail

    async def notify(self, notification: Notification) -> None:
        if self.fail:
            raise RuntimeError("chat front-end unavailable")
        self.notifications.append(notification)

    def of_kind(self, kind: NotificationKind) -> list[Notification]:
        return [n for n in self.notifications if n.kind is kind]

    @property
    def kinds(self) -> list[NotificationKind]:
        return [n.kind for n in self.notifications]


class RecordingPublisher(PanelPublisher):
    """Keeps every rendered panel instead of posting it."""

    def __init__(self) -> None:
        self.published: list[str] = []
        self.location = PanelLocation(channel_id="channel-1", message_id="message-1")

    async def publish(self, content: str, location: PanelLocation | None) -> PanelLocation:
        self.published.append(content)
        return self.location


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider(clock):
    return FakeProvider(clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def registry(clock):
    return InstanceRegistry(clock)


@pytest.fixture
def settings(tmp_path):
    return OrchestratorSettings(
        api_key="test-key",
        firewall_group_id=FIREWALL_ID,
        default_snapshot_id="img-1",
        metadata_url=None,
        panel_data_file=tmp_path / "panel_data.json",
        panel_output_file=tmp_path / "panel.txt",
    )


@pytest.fixture
def orchestrator(provider, settings, notifier, publisher, registry, clock):
    return Orchestrator(
        provider,
        settings,
        notifier=notifier,
        publisher=publisher,
        store=PanelStore(settings.panel_data_file),
        registry=registry,
        clock=clock,
    )
