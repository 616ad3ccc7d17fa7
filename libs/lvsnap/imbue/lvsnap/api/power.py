from loguru import logger

from imbue.lvsnap.config.data_types import WaitsConfig
from imbue.lvsnap.interfaces.runtime import InstanceRuntimeInterface
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.primitives import PollResult
from imbue.lvsnap.primitives import RunningState
from imbue.lvsnap.utils.polling import poll_until_result


def wait_for_state(
    runtime: InstanceRuntimeInterface,
    instance_id: InstanceId,
    state: RunningState,
    attempts: int,
    interval_seconds: float,
) -> PollResult:
    return poll_until_result(
        lambda: runtime.get_status(instance_id) == state,
        timeout=max(0, attempts - 1) * interval_seconds,
        poll_interval=interval_seconds,
    )


def stop_instance(runtime: InstanceRuntimeInterface, instance_id: InstanceId, waits: WaitsConfig) -> PollResult:
    """Stop an instance and wait for it to report stopped, escalating to a forced stop.

    A timeout is returned, not raised: the caller decides whether to continue.
    """
    if runtime.get_status(instance_id) == RunningState.STOPPED:
        return PollResult.COMPLETED
    logger.info("Stopping instance {}", instance_id)
    runtime.stop(instance_id)
    result = wait_for_state(
        runtime, instance_id, RunningState.STOPPED, waits.stop_poll_attempts, waits.state_poll_interval_seconds
    )
    if result == PollResult.COMPLETED:
        return result

    logger.warning("Instance {} did not stop, forcing it", instance_id)
    runtime.force_stop(instance_id)
    result = wait_for_state(
        runtime, instance_id, RunningState.STOPPED, waits.stop_poll_attempts, waits.state_poll_interval_seconds
    )
    if result == PollResult.TIMED_OUT:
        logger.warning("Instance {} still does not report stopped", instance_id)
    return result


def start_instance(runtime: InstanceRuntimeInterface, instance_id: InstanceId, waits: WaitsConfig) -> PollResult:
    """Start an instance and wait for it to report running. A timeout is a warning, not an error."""
    logger.info("Starting instance {}", instance_id)
    if not runtime.start(instance_id):
        logger.warning("Start command for instance {} failed", instance_id)
    result = wait_for_state(
        runtime, instance_id, RunningState.RUNNING, waits.start_poll_attempts, waits.state_poll_interval_seconds
    )
    if result == PollResult.TIMED_OUT:
        logger.warning("Instance {} did not report running in time", instance_id)
    return result
