import re
from typing import ClassVar

from loguru import logger

from imbue.lvsnap.errors import CommandFailedError
from imbue.lvsnap.interfaces.runtime import InstanceRuntimeInterface
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.primitives import RunningState
from imbue.lvsnap.utils.commands import FinishedProcess

_STATUS_PATTERN = re.compile(r"^status:\s*(\S+)", re.MULTILINE)


class BaseInstanceRuntime(InstanceRuntimeInterface):
    """Shared implementation for the Proxmox qm/pct command line tools, which mirror each other."""

    tool: ClassVar[str]
    disk_key_pattern: ClassVar[re.Pattern[str]]

    def _run(self, *args: str) -> FinishedProcess:
        return self.node.run([self.tool, *args], timeout_seconds=self.timeout_seconds)

    def _run_action(self, action: str, instance_id: InstanceId, *extra: str) -> bool:
        result = self._run(action, str(instance_id), *extra)
        if not result.is_success:
            logger.debug("{} {} {} failed: {}", self.tool, action, instance_id, result.stderr.strip())
        return result.is_success

    def is_present(self, instance_id: InstanceId) -> bool:
        return self._run("status", str(instance_id)).is_success

    def get_status(self, instance_id: InstanceId) -> RunningState:
        result = self._run("status", str(instance_id))
        if not result.is_success:
            return RunningState.UNKNOWN
        match = _STATUS_PATTERN.search(result.stdout)
        if match is None:
            return RunningState.UNKNOWN
        match match.group(1):
            case "running":
                return RunningState.RUNNING
            case "stopped":
                return RunningState.STOPPED
            case _:
                # paused and suspended instances are not running but cannot be started either
                return RunningState.UNKNOWN

    def list_instances_text(self) -> str:
        result = self._run("list")
        return result.stdout if result.is_success else ""

    def list_instance_ids(self) -> list[InstanceId]:
        instance_ids: list[InstanceId] = []
        for line in self.list_instances_text().splitlines():
            fields = line.split()
            if fields and fields[0].isdigit():
                instance_ids.append(InstanceId(fields[0]))
        return instance_ids

    def get_config(self, instance_id: InstanceId) -> str:
        result = self._run("config", str(instance_id))
        if not result.is_success:
            raise CommandFailedError(
                f"Could not read configuration of {instance_id} with '{self.tool} config': {result.stderr.strip()}"
            )
        return result.stdout

    def is_disk_key(self, config_key: str) -> bool:
        return self.disk_key_pattern.fullmatch(config_key) is not None

    def start(self, instance_id: InstanceId) -> bool:
        return self._run_action("start", instance_id)

    def stop(self, instance_id: InstanceId) -> bool:
        return self._run_action("stop", instance_id)

    def force_stop(self, instance_id: InstanceId) -> bool:
        return self._run_action("stop", instance_id, "--skiplock", "1")

    def suspend(self, instance_id: InstanceId) -> bool:
        return self._run_action("suspend", instance_id)

    def resume(self, instance_id: InstanceId) -> bool:
        return self._run_action("resume", instance_id)
