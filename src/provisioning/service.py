"""Provisioning orchestrator.

ProvisioningService sequences the resource provisioners and owns the control
loop that keeps dashboards in sync:

1. Provision dashboards once
2. Start a polling epoch against the installed dashboard provisioner
3. Wait until the epoch ends (reconfiguration, or polling stopped on its own)
   or the service shuts down
4. Repeat

Reconfiguration (``provision_dashboards``) builds a new dashboard provisioner
outside the slot lock, then under the lock cancels the current epoch,
provisions with the new instance and installs it only if that succeeded. A
failed reconfiguration leaves the previous provisioner installed and the loop
resumes polling with it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path

from . import alert_rules, datasources, notifiers, plugins
from .config import (
    ALERTING_DIR,
    DASHBOARDS_DIR,
    DATASOURCES_DIR,
    NOTIFIERS_DIR,
    PLUGINS_DIR,
    Config,
)
from .dashboards import DashboardProvisioner, new_dashboard_provisioner
from .polling import DashboardSlot, PollingContext
from .provenance import ChangeSummary
from .services import ProvisionerDeps, ServiceHandles
from .store import Store

logger = logging.getLogger(__name__)

ResourceProvisioner = Callable[[Path, ProvisionerDeps], Awaitable[ChangeSummary]]
DashboardProvisionerFactory = Callable[[Path, Store], DashboardProvisioner]


class Stage(str, Enum):
    """Provisioning stages, labelled the way operators see them in errors."""

    DATASOURCES = "Datasource provisioning error"
    PLUGINS = "Plugin provisioning error"
    NOTIFIERS = "Alert notification provisioning error"
    ALERT_RULES = "Alert rule provisioning error"
    DASHBOARDS_CREATE = "Failed to create provisioner"
    DASHBOARDS = "Failed to provision dashboards"


class ProvisioningError(Exception):
    """A provisioning call failed; ``stage`` says which one."""

    def __init__(self, stage: Stage, cause: BaseException) -> None:
        super().__init__(f"{stage.value}: {cause}")
        self.stage = stage
        self.cause = cause


class ProvisioningService:
    """Reconciles provisioning files into the store and keeps dashboards polled.

    All ``provision_*`` methods are safe to call on demand while ``run`` is
    active. Concurrent ``provision_dashboards`` calls are serialized by the
    slot lock; the last one to succeed stays installed.
    """

    def __init__(
        self,
        config: Config,
        store: Store,
        services: ServiceHandles | None = None,
        *,
        dashboard_provisioner_factory: DashboardProvisionerFactory = new_dashboard_provisioner,
        provision_datasources: ResourceProvisioner = datasources.provision,
        provision_plugins: ResourceProvisioner = plugins.provision,
        provision_notifiers: ResourceProvisioner = notifiers.provision,
        provision_alert_rules: ResourceProvisioner = alert_rules.provision,
    ) -> None:
        self._config = config
        self._store = store
        self._services = services or ServiceHandles.from_config(config)
        self._deps = ProvisionerDeps(
            store=store,
            services=self._services,
            policy=config.atomicity_policy,
            alerting_base_interval_seconds=config.alerting_base_interval_seconds,
            alerting_default_rule_interval_seconds=config.alerting_default_rule_interval_seconds,
        )
        self._new_dashboard_provisioner = dashboard_provisioner_factory
        self._provision_datasources = provision_datasources
        self._provision_plugins = provision_plugins
        self._provision_notifiers = provision_notifiers
        self._provision_alert_rules = provision_alert_rules

        self._slot = DashboardSlot()
        self._shutdown_event = asyncio.Event()

    @property
    def config(self) -> Config:
        return self._config

    async def run_init_provisioners(self) -> None:
        """Provision datasources, plugins, notifiers and alert rules, in order.

        Stops at the first failing stage. Stages that already succeeded stay
        applied.

        Raises:
            ProvisioningError: From the first failing stage.
        """
        await self.provision_datasources()
        await self.provision_plugins()
        await self.provision_notifications()
        await self.provision_alert_rules()

    async def provision_datasources(self) -> ChangeSummary:
        return await self._run_stage(Stage.DATASOURCES, self._provision_datasources, DATASOURCES_DIR)

    async def provision_plugins(self) -> ChangeSummary:
        return await self._run_stage(Stage.PLUGINS, self._provision_plugins, PLUGINS_DIR)

    async def provision_notifications(self) -> ChangeSummary:
        return await self._run_stage(Stage.NOTIFIERS, self._provision_notifiers, NOTIFIERS_DIR)

    async def provision_alert_rules(self) -> ChangeSummary:
        return await self._run_stage(Stage.ALERT_RULES, self._provision_alert_rules, ALERTING_DIR)

    async def provision_dashboards(self) -> None:
        """Build a dashboard provisioner from current config and install it.

        Raises:
            ProvisioningError: If the new provisioner cannot be built or fails
                to provision. The previously installed provisioner stays.
        """
        dashboard_path = self._config.resource_path(DASHBOARDS_DIR)

        # Built outside the lock so a slow build never blocks polling or queries
        try:
            provisioner = await asyncio.to_thread(
                self._new_dashboard_provisioner, dashboard_path, self._store
            )
        except Exception as e:
            raise self._stage_failed(Stage.DASHBOARDS_CREATE, e) from e

        async with self._slot.lock:
            self._slot.cancel_polling()
            await provisioner.clean_up_orphaned_dashboards()
            try:
                await provisioner.provision()
            except Exception as e:
                # The old provisioner stays installed; the loop restarts polling with it
                raise self._stage_failed(Stage.DASHBOARDS, e) from e
            self._slot.install(provisioner)

        logger.info("Dashboard provisioner installed", extra={"path": str(dashboard_path)})

    async def run(self) -> None:
        """Run the dashboard polling loop until shutdown.

        Returns after ``shutdown()``. Cancelling the task running this
        coroutine also stops the current epoch and re-raises the cancellation.
        """
        try:
            await self.provision_dashboards()
        except ProvisioningError:
            # Keep running: a later reload can still install a provisioner
            logger.error("Initial dashboard provisioning failed, waiting for reload")
        else:
            provisioner = self._slot.current()
            if provisioner is not None and provisioner.has_dashboard_sources():
                self._services.search.trigger_reindex()

        polling: PollingContext | None = None
        try:
            while not self._shutdown_event.is_set():
                async with self._slot.lock:
                    polling = self._slot.start_polling()
                    provisioner = self._slot.current()
                    if provisioner is not None:
                        provisioner.poll_changes(polling)

                logger.debug("Polling for dashboard changes", extra={"epoch": polling.epoch})
                if await self._wait_for_epoch_end(polling):
                    break
        finally:
            if polling is not None:
                polling.cancel()

        logger.info("Provisioning service stopped")

    def shutdown(self) -> None:
        """Signal the run loop to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def reload(self) -> None:
        """Re-run every provisioning stage, as an operator-triggered reload.

        Raises:
            ProvisioningError: From the first failing stage.
        """
        await self.run_init_provisioners()
        await self.provision_dashboards()

    def get_dashboard_provisioner_resolved_path(self, name: str) -> str:
        provisioner = self._slot.current()
        if provisioner is None:
            return ""
        return provisioner.get_provisioner_resolved_path(name)

    def get_allow_ui_updates_from_config(self, name: str) -> bool:
        provisioner = self._slot.current()
        if provisioner is None:
            return False
        return provisioner.get_allow_ui_updates_from_config(name)

    async def _wait_for_epoch_end(self, polling: PollingContext) -> bool:
        """Wait for the epoch to end or shutdown; True means shutdown."""
        epoch_end = asyncio.create_task(polling.wait())
        shutdown = asyncio.create_task(self._shutdown_event.wait())
        try:
            await asyncio.wait({epoch_end, shutdown}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            epoch_end.cancel()
            shutdown.cancel()
        return self._shutdown_event.is_set()

    async def _run_stage(
        self, stage: Stage, provision: ResourceProvisioner, subdir: str
    ) -> ChangeSummary:
        path = self._config.resource_path(subdir)
        try:
            return await provision(path, self._deps)
        except Exception as e:
            raise self._stage_failed(stage, e) from e

    def _stage_failed(self, stage: Stage, cause: Exception) -> ProvisioningError:
        error = ProvisioningError(stage, cause)
        logger.error(
            "Provisioning failed",
            extra={"stage": stage.name.lower(), "error": str(error)},
        )
        return error
