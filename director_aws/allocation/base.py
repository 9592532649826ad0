"""Shared machinery for the instance allocators.

Every allocator works on one template, one set of virtual instance ids and a
minimum count. The helpers here wait for instances to start, tag them (and
their volumes), wait for private IPs and terminate leftovers on failure.
"""

from __future__ import annotations

import hashlib
import time
from collections.abc import Callable, Collection, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from botocore.exceptions import ClientError
from loguru import logger
from tenacity import RetryCallState, Retrying, retry_if_exception, retry_if_result, wait_fixed

from director_aws.aws_errors import INSTANCE_NOT_FOUND, classify, error_code, is_not_found
from director_aws.config import ProviderSettings, Timeouts
from director_aws.constants import (
    NOT_FOUND_RETRY_INTERVAL,
    PRIVATE_IP_POLL_INTERVAL,
    InstanceState,
    TimeoutKey,
)
from director_aws.devices import DeviceMapping, DeviceMappings
from director_aws.exceptions import (
    InvalidCredentialsError,
    ProviderError,
    TransientProviderError,
    UnrecoverableProviderError,
    attach_secondary,
)
from director_aws.finder import InstanceFinder, RawInstance
from director_aws.retry import RetryPolicy, on_not_found, only
from director_aws.tags import Tag, TagHelper
from director_aws.template import Instance, InstanceTemplate, instance_state, is_terminal

if TYPE_CHECKING:
    from mypy_boto3_ec2 import EC2Client

log = logger.bind(component="allocation")

LEAK_WARNING = "Check AWS console to avoid resource leak"


class InstanceAllocator(Protocol):
    """One allocation request, created per call and discarded afterwards."""

    def allocate(self) -> list[Instance]:
        """Create or reuse instances until at least ``min_count`` are running."""
        ...

    def delete(self) -> None:
        """Remove everything this allocation could have created."""
        ...


@dataclass(frozen=True, slots=True)
class AllocationContext:
    """Collaborators shared by every allocator of one provider."""

    ec2: EC2Client
    tags: TagHelper
    finder: InstanceFinder
    devices: DeviceMappings
    settings: ProviderSettings
    timeouts: Timeouts
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep


def client_token(virtual_id: str, discriminator: int) -> str:
    """Idempotency token for one request of one virtual instance.

    md5 keeps the token below the 64 character limit.
    """
    digest = hashlib.md5(usedforsecurity=False)
    digest.update(virtual_id.encode("utf-8"))
    digest.update(discriminator.to_bytes(8, "big", signed=True))
    return digest.hexdigest()


def network_interface(template: InstanceTemplate, settings: ProviderSettings) -> dict[str, Any]:
    return {
        "DeviceIndex": 0,
        "SubnetId": template.subnet_id,
        "Groups": list(template.security_group_ids),
        "DeleteOnTermination": True,
        "AssociatePublicIpAddress": settings.associate_public_ip_addresses,
    }


def placement(template: InstanceTemplate) -> dict[str, str]:
    result = {"Tenancy": template.tenancy}
    if template.availability_zone:
        result["AvailabilityZone"] = template.availability_zone
    if template.placement_group:
        result["GroupName"] = template.placement_group
    return result


def _last_state(state: RetryCallState) -> str | None:
    # Only not-found errors are retried; running out of time on one means
    # the instance never became visible.
    if state.outcome is None or state.outcome.failed:
        return None
    return state.outcome.result()


class BaseAllocator:
    """Common state and helpers for the direct (on-demand and spot) allocators."""

    def __init__(
        self,
        context: AllocationContext,
        template: InstanceTemplate,
        virtual_ids: Sequence[str],
        min_count: int,
    ) -> None:
        if min_count > len(virtual_ids):
            raise ValueError(f"min_count {min_count} exceeds the {len(virtual_ids)} requested instance(s)")
        self.context = context
        self.ec2 = context.ec2
        self.template = template
        self.virtual_ids = list(dict.fromkeys(virtual_ids))
        self.min_count = min_count
        self.started_timeout = context.timeouts.seconds(TimeoutKey.INSTANCE_WAIT_UNTIL_STARTED)
        self.findable_timeout = context.timeouts.seconds(TimeoutKey.INSTANCE_WAIT_UNTIL_FINDABLE)

    @property
    def _tags(self) -> TagHelper:
        return self.context.tags

    def _now(self) -> float:
        return self.context.clock()

    def _stop_at(self, deadline: float) -> Callable[[RetryCallState], bool]:
        def stop(_: RetryCallState) -> bool:
            return self._now() >= deadline

        return stop

    def block_device_mappings(self) -> list[DeviceMapping]:
        return self.context.devices.for_template(self.ec2, self.template)

    # -------------------------------------------------------------------------
    # Instance startup
    # -------------------------------------------------------------------------

    def _instance_status(self, instance_id: str) -> str | None:
        statuses = self.ec2.describe_instance_status(
            InstanceIds=[instance_id],
            IncludeAllInstances=True,
        ).get("InstanceStatuses", [])
        return statuses[0]["InstanceState"]["Name"] if statuses else None

    def wait_until_started(self, instance_id: str, deadline: float) -> bool:
        """Wait for ``instance_id`` to leave ``pending``.

        Returns False if the instance is shutting down or terminated, or if
        it is still pending when the deadline passes.
        """

        def pending(state: str | None) -> bool:
            if state in (None, InstanceState.PENDING):
                log.debug("Instance {id} is {state}, waiting", id=instance_id, state=state or "not visible yet")
                return True
            return False

        retrying = Retrying(
            stop=self._stop_at(deadline),
            wait=wait_fixed(NOT_FOUND_RETRY_INTERVAL),
            retry=retry_if_result(pending) | retry_if_exception(is_not_found),
            sleep=self.context.sleep,
            retry_error_callback=_last_state,
        )
        state = retrying(self._instance_status, instance_id)
        match state:
            case InstanceState.RUNNING:
                return True
            case InstanceState.SHUTTING_DOWN | InstanceState.TERMINATED:
                log.info("Instance {id} is {state}, not waiting for it", id=instance_id, state=state)
                return False
            case None | InstanceState.PENDING:
                log.warning("Timed out waiting for instance {id} to start", id=instance_id)
                return False
            case _:
                log.warning("Instance {id} is in unexpected state {state}", id=instance_id, state=state)
                return False

    # -------------------------------------------------------------------------
    # Tagging
    # -------------------------------------------------------------------------

    def tag_instance(
        self,
        virtual_id: str,
        instance_id: str,
        deadline: float,
        user_tags: list[Tag] | None = None,
    ) -> bool:
        """Tag a created instance, and its EBS volumes when configured.

        Returns False when the instance never started or could not be tagged
        before the deadline.
        """
        log.info("Tagging instance {id} / {vid}", id=instance_id, vid=virtual_id)
        if not self.wait_until_started(instance_id, deadline):
            return False

        tags = self._tags.instance_tags(self.template, virtual_id, user_tags)
        policy = RetryPolicy(
            deadline=deadline,
            backoff=NOT_FOUND_RETRY_INTERVAL,
            unrecoverable=only(on_not_found),
            clock=self.context.clock,
            sleep=self.context.sleep,
        )
        try:
            policy.call(self.ec2.create_tags, Resources=[instance_id], Tags=tags)
        except ClientError as e:
            if not is_not_found(e):
                raise
            log.warning("Timed out tagging instance {id}", id=instance_id)
            return False

        if self.context.settings.tag_ebs_volumes:
            self.tag_ebs_volumes(virtual_id, instance_id, tags, policy)
        return True

    def tag_ebs_volumes(self, virtual_id: str, instance_id: str, tags: list[Tag], policy: RetryPolicy) -> None:
        try:
            reservations = policy.call(self.ec2.describe_instances, InstanceIds=[instance_id])["Reservations"]
        except ClientError as e:
            if not is_not_found(e):
                raise
            log.warning("Timed out describing instance {id}, volumes left untagged", id=instance_id)
            return

        volume_ids = [
            mapping["Ebs"]["VolumeId"]
            for reservation in reservations
            for raw in reservation.get("Instances", [])
            for mapping in raw.get("BlockDeviceMappings", [])
            if mapping.get("Ebs", {}).get("VolumeId")
        ]
        for volume_id in volume_ids:
            log.info("Tagging volume {vol} / {vid}", vol=volume_id, vid=virtual_id)
            self.ec2.create_tags(Resources=[volume_id], Tags=tags)

    # -------------------------------------------------------------------------
    # Private IPs
    # -------------------------------------------------------------------------

    def wait_for_private_ips(self, instance_ids: Mapping[str, str], deadline: float) -> dict[str, RawInstance]:
        """Wait for instances to get a private IP.

        ``instance_ids`` maps virtual ids to EC2 instance ids. Instances that
        terminate while waiting are dropped; the result only holds instances
        that got an address before the deadline.
        """
        by_instance = {ec2_id: vid for vid, ec2_id in instance_ids.items()}
        ready: dict[str, RawInstance] = {}

        def poll() -> dict[str, str]:
            log.info("Waiting for {n} instance(s) to get a private IP", n=len(by_instance))
            try:
                reservations = self.ec2.describe_instances(InstanceIds=list(by_instance))["Reservations"]
            except ClientError as e:
                if not is_not_found(e):
                    raise
                return by_instance
            for reservation in reservations:
                for raw in reservation.get("Instances", []):
                    ec2_id = raw["InstanceId"]
                    if ec2_id not in by_instance:
                        continue
                    if is_terminal(raw):
                        log.info("Instance {id} terminated unexpectedly, skipping IP wait", id=ec2_id)
                        del by_instance[ec2_id]
                    elif raw.get("PrivateIpAddress"):
                        log.info("Instance {id} got IP {ip}", id=ec2_id, ip=raw["PrivateIpAddress"])
                        ready[by_instance.pop(ec2_id)] = raw
            return by_instance

        if by_instance:
            retrying = Retrying(
                stop=self._stop_at(deadline),
                wait=wait_fixed(PRIVATE_IP_POLL_INTERVAL),
                retry=retry_if_result(bool),
                sleep=self.context.sleep,
                retry_error_callback=lambda state: state.outcome.result(),
            )
            remaining = retrying(poll)
            if remaining:
                log.warning("Instances without a private IP: {ids}", ids=", ".join(remaining))
        return ready

    # -------------------------------------------------------------------------
    # Termination
    # -------------------------------------------------------------------------

    def terminate(self, instance_ids: Collection[str]) -> None:
        if not instance_ids:
            return
        log.info("Terminating instances: {ids}", ids=", ".join(sorted(instance_ids)))
        try:
            self.ec2.terminate_instances(InstanceIds=list(instance_ids))
        except ClientError as e:
            if error_code(e) != INSTANCE_NOT_FOUND:
                raise
            log.info("Some instances were already gone: {msg}", msg=e)

    def terminate_on_failure(self, instance_ids: Collection[str], error: BaseException) -> None:
        """Best-effort rollback; cleanup failures ride along on ``error``."""
        try:
            self.terminate(instance_ids)
        except Exception as cleanup_error:
            log.warning(
                "Failed to terminate {ids}: {err}. " + LEAK_WARNING,
                ids=", ".join(sorted(instance_ids)), err=cleanup_error,
            )
            attach_secondary(error, [cleanup_error])

    def find_live(self, virtual_ids: Sequence[str], wait: float = 0.0) -> dict[str, RawInstance]:
        return self.context.finder.do_find(
            self.template,
            virtual_ids,
            predicate=lambda raw: not is_terminal(raw),
            wait=wait,
        )

    def state_reasons(self, instance_ids: Collection[str]) -> list[str]:
        """Why the given instances terminated, for error messages."""
        if not instance_ids:
            return []
        reasons = []
        try:
            reservations = self.ec2.describe_instances(InstanceIds=list(instance_ids))["Reservations"]
        except ClientError as e:
            if not is_not_found(e):
                raise
            return []
        for reservation in reservations:
            for raw in reservation.get("Instances", []):
                if is_terminal(raw):
                    reason = raw.get("StateReason", {}).get("Message") or instance_state(raw)
                    reasons.append(f"{raw['InstanceId']}: {reason}")
        return reasons


def collected_error(
    message: str,
    errors: Sequence[BaseException],
    *,
    reasons: Sequence[str] = (),
    **context: Any,
) -> ProviderError:
    """One provider error for every failure collected during an allocation.

    Credential failures win over everything; the error is transient only
    when every collected failure is.
    """
    classified = [classify(e) for e in errors]
    if reasons:
        message = f"{message}. Instance state reasons: {'; '.join(reasons)}"
    kind: type[ProviderError] = UnrecoverableProviderError
    if any(isinstance(c, InvalidCredentialsError) for c in classified):
        kind = InvalidCredentialsError
    elif classified and all(isinstance(c, TransientProviderError) for c in classified):
        kind = TransientProviderError
    return kind(message, secondary=errors, context={"reasons": list(reasons), **context})
