"""Failover orchestrator.

One ``execute()`` cycle:
gate -> resolve previous task -> (recover | discover) -> checkpoint plan -> apply -> checkpoint result.

The state file is the only recovery anchor. A plan is checkpointed before it
is applied, so a cycle that dies mid-apply is finished by the next cycle
replaying that plan instead of rediscovering.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol

from cloudfailover import constants
from cloudfailover.config.declaration import Declaration
from cloudfailover.constants import DeviceStatus
from cloudfailover.errors import ConfigurationError, RecoveryImpossibleError, TaskInProgressError
from cloudfailover.providers import get_cloud_provider
from cloudfailover.providers.base import CloudProvider, ProviderOptions

from .addresses import classify_addresses, get_traffic_groups
from .models import DeviceSnapshot, FailoverState, TaskResolution, TaskState, TrafficGroup
from .retrier import TASK_WAIT_RETRY, RetryPolicy, retry

logger = logging.getLogger("cloudfailover.failover")


class DeviceFacts(Protocol):
    async def get_global_settings(self) -> dict[str, Any]: ...
    async def get_traffic_groups_stats(self) -> dict[str, Any]: ...
    async def get_self_addresses(self) -> list[dict[str, Any]]: ...
    async def get_virtual_addresses(self) -> list[dict[str, Any]]: ...
    async def get_snat_translation_addresses(self) -> list[dict[str, Any]]: ...
    async def get_nat_addresses(self) -> list[dict[str, Any]]: ...


class FailoverOrchestrator:
    """Crash-recoverable failover task state machine for one device."""

    def __init__(
        self,
        declaration: Declaration,
        device: DeviceFacts,
        cloud_provider: CloudProvider,
        task_wait: RetryPolicy = TASK_WAIT_RETRY,
        hostname: Optional[str] = None,
    ) -> None:
        self._declaration = declaration
        self._device = device
        self._cloud = cloud_provider
        self._task_wait = task_wait
        self.hostname = hostname
        self._address_operations: dict[str, Any] = {}
        self._route_operations: dict[str, Any] = {}

    @classmethod
    async def create(
        cls,
        declaration: Declaration,
        device: DeviceFacts,
        task_wait: RetryPolicy = TASK_WAIT_RETRY,
        **provider_kwargs: Any,
    ) -> FailoverOrchestrator:
        """Build the vendor provider for ``declaration.environment`` and initialise it."""
        if not declaration.environment:
            raise ConfigurationError("Environment information has not been provided")
        cloud = get_cloud_provider(declaration.environment, **provider_kwargs)
        await cloud.init(ProviderOptions.from_declaration(declaration))
        settings = await device.get_global_settings()
        logger.debug("Failover initialization complete")
        return cls(declaration, device, cloud, task_wait=task_wait, hostname=settings.get("hostname"))

    @property
    def addresses_enabled(self) -> bool:
        return self._declaration.failover_addresses.enabled

    @property
    def routes_enabled(self) -> bool:
        return self._declaration.failover_routes.enabled

    # -- public API -----------------------------------------------------------

    async def execute(self) -> None:
        """Run one failover cycle. Raises after recording FAILED if the cycle fails."""
        if not self.addresses_enabled and not self.routes_enabled:
            logger.info("failoverAddresses and failoverRoutes are not enabled, not performing failover")
            return

        logger.info("Performing failover - execute")
        self._address_operations = {}
        self._route_operations = {}

        task = await self._wait_for_task()
        # Recovery starts from an existing FAILED or stale RUNNING record
        checkpointed = task.recover_previous_task
        try:
            if task.recover_previous_task:
                await self._recover(task.state)
            else:
                await self._update_state(TaskState.RUNNING, "Failover running")
                checkpointed = True
                await self._run_fresh()
        except Exception as exc:
            logger.error("Failover failed: %s", exc, exc_info=True)
            if checkpointed:
                await self._record_failure(exc)
            raise
        logger.info("Failover Complete")

    async def reset_failover_state(self, body: Optional[dict[str, Any]] = None) -> dict[str, str]:
        if (body or {}).get("resetStateFile") is True:
            await self._update_state(TaskState.SUCCEEDED, constants.STATE_FILE_RESET_MESSAGE)
            logger.info("Failover state file was reset")
            return {"message": constants.STATE_FILE_RESET_MESSAGE}
        return {"message": constants.NO_ACTION_MESSAGE}

    async def get_failover_status_and_objects(self) -> dict[str, Any]:
        """Device HA status and the cloud objects currently associated with it. Read only."""
        logger.info("Fetching device info")
        settings, stats = await asyncio.gather(
            self._device.get_global_settings(),
            self._device.get_traffic_groups_stats(),
        )
        hostname = settings.get("hostname", "")
        await self._wait_for_task()
        result = await self._cloud.inspect()

        active = get_traffic_groups(stats, hostname, DeviceStatus.ACTIVE)
        result["hostName"] = hostname
        if active:
            result["deviceStatus"] = DeviceStatus.ACTIVE.value
            result["trafficGroup"] = [{"name": g.name} for g in active]
        else:
            standby = get_traffic_groups(stats, hostname, DeviceStatus.STANDBY)
            result["deviceStatus"] = DeviceStatus.STANDBY.value
            result["trafficGroup"] = [{"name": g.name} for g in standby]
        return result

    async def get_task_state_file(self) -> dict[str, Any]:
        data = await self._cloud.download_state(constants.STATE_FILE_NAME)
        if not data or not data.get("taskState"):
            state = await self._update_state(TaskState.NEVER_RUN, constants.NEVER_RUN_MESSAGE)
            return state.to_dict()
        return data

    # -- task resolution ------------------------------------------------------

    async def _check_task_state(self) -> TaskResolution:
        data = await self._cloud.download_state(constants.STATE_FILE_NAME)
        logger.debug("State file data: %s", data)
        if not data or not data.get("taskState"):
            return TaskResolution(recover_previous_task=False)

        state = FailoverState.from_dict(data)
        if state.task_state in (TaskState.NEVER_RUN, TaskState.SUCCEEDED):
            return TaskResolution(recover_previous_task=False, state=state)
        if state.task_state is TaskState.FAILED:
            return TaskResolution(recover_previous_task=True, state=state)

        age = state.age_seconds()
        if age is None or age > constants.RUNNING_TASK_MAX_S:
            logger.error("Running task from %s exceeded maximum run time (age: %s s)", state.instance, age)
            return TaskResolution(recover_previous_task=True, state=state)
        raise TaskInProgressError(f"Failover task is running on {state.instance} since {state.timestamp}")

    async def _wait_for_task(self) -> TaskResolution:
        return await retry(self._check_task_state, policy=self._task_wait)

    # -- cycle paths ----------------------------------------------------------

    async def _recover(self, state: FailoverState) -> None:
        logger.warning("Performing failover - recovery")
        self._address_operations = state.addresses
        self._route_operations = state.routes

        replayable = (self.addresses_enabled and self._address_operations) or \
            (self.routes_enabled and self._route_operations)
        if not replayable:
            raise RecoveryImpossibleError("Recovery operations are empty, advise reset via the API")

        await self._update_state(TaskState.RUNNING, "Failover running", with_operations=True)
        await self._apply()
        await self._update_state(TaskState.SUCCEEDED, "Failover Complete", with_operations=True)

    async def _run_fresh(self) -> None:
        snapshot = await self._get_device_snapshot()
        self.hostname = snapshot.hostname

        active = get_traffic_groups(snapshot.traffic_group_stats, snapshot.hostname, DeviceStatus.ACTIVE)
        if not active:
            logger.warning("This device is not active for any traffic groups")
            logger.debug("Check that the device hostname matches its cluster device name")
            await self._update_state(TaskState.SUCCEEDED, "Failover Complete")
            return

        await self._discover(snapshot, active)
        await self._update_state(TaskState.RUNNING, "Failover running", with_operations=True)
        await self._apply()
        await self._update_state(TaskState.SUCCEEDED, "Failover Complete", with_operations=True)

    async def _get_device_snapshot(self) -> DeviceSnapshot:
        (settings, stats, self_addresses, virtual_addresses,
         snat_addresses, nat_addresses) = await asyncio.gather(
            self._device.get_global_settings(),
            self._device.get_traffic_groups_stats(),
            self._device.get_self_addresses(),
            self._device.get_virtual_addresses(),
            self._device.get_snat_translation_addresses(),
            self._device.get_nat_addresses(),
        )
        return DeviceSnapshot(
            hostname=settings.get("hostname", ""),
            traffic_group_stats=stats,
            self_addresses=self_addresses,
            virtual_addresses=virtual_addresses,
            snat_addresses=snat_addresses,
            nat_addresses=nat_addresses,
        )

    async def _discover(self, snapshot: DeviceSnapshot, active: list[TrafficGroup]) -> None:
        logger.info("Performing failover - discovery")
        classification = classify_addresses(snapshot, active)

        discovery = []
        if self.addresses_enabled:
            discovery.append(self._cloud.update_addresses(
                local=classification.local, failover=classification.failover, discover_only=True,
            ))
        if self.routes_enabled:
            discovery.append(self._cloud.update_routes(local=classification.local, discover_only=True))
        results = list(await asyncio.gather(*discovery))

        if self.addresses_enabled:
            self._address_operations = results.pop(0) or {}
        if self.routes_enabled:
            self._route_operations = results.pop(0) or {}

    async def _apply(self) -> None:
        logger.info("Performing failover - update")
        updates = []
        if self.addresses_enabled:
            logger.debug("Address operations: %s", self._address_operations)
            updates.append(self._cloud.update_addresses(update_operations=self._address_operations))
        if self.routes_enabled:
            logger.debug("Route operations: %s", self._route_operations)
            updates.append(self._cloud.update_routes(update_operations=self._route_operations))
        await asyncio.gather(*updates)

    # -- checkpointing --------------------------------------------------------

    def _operations(self) -> dict[str, Any]:
        return {"addresses": self._address_operations, "routes": self._route_operations}

    async def _update_state(self, task_state: TaskState, message: str,
                            with_operations: bool = False) -> FailoverState:
        state = FailoverState(
            task_state=task_state,
            message=message,
            instance=self.hostname or "none",
            failover_operations=self._operations() if with_operations else {},
        )
        await self._cloud.upload_state(constants.STATE_FILE_NAME, state.to_dict())
        return state

    async def _record_failure(self, exc: BaseException) -> None:
        """Best-effort FAILED checkpoint. Never replaces the error being handled."""
        try:
            await self._update_state(TaskState.FAILED, f"Failover failed because {exc}", with_operations=True)
        except Exception as write_exc:
            logger.error("Could not record failed state: %s", write_exc)
