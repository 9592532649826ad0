"""Centralized constants and enums for director-aws.

Tag keys, EC2 state names, spot request codes, timeout keys and the
numeric limits the allocators and the validator agree on.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

# =============================================================================
# AWS Resource Tags
# =============================================================================


class ResourceTag(StrEnum):
    """Tag keys written on every resource created for a virtual instance."""

    VIRTUAL_INSTANCE_ID = "director:virtual-instance-id"
    TEMPLATE_NAME = "director:template-name"
    RESOURCE_NAME = "Name"


class InstanceTag(StrEnum):
    """Tag keys reserved for the orchestration framework on instances."""

    HOSTNAME = "director:hostname"


AWS_MAX_TAGS_PER_RESOURCE: Final = 50
MAX_TAGS_ALLOWED: Final = AWS_MAX_TAGS_PER_RESOURCE - len(InstanceTag) - len(ResourceTag)


# =============================================================================
# EC2 Instance States
# =============================================================================


class InstanceState(StrEnum):
    """EC2 instance state names."""

    PENDING = "pending"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    STOPPING = "stopping"
    STOPPED = "stopped"


TERMINAL_STATES: Final = frozenset({InstanceState.SHUTTING_DOWN, InstanceState.TERMINATED})


class InstanceStatus(StrEnum):
    """Provider-neutral instance status reported to the orchestration framework."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DELETING = "DELETING"
    DELETED = "DELETED"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    UNKNOWN = "UNKNOWN"


INSTANCE_STATUS_BY_STATE: Final[dict[str, InstanceStatus]] = {
    InstanceState.PENDING: InstanceStatus.PENDING,
    InstanceState.RUNNING: InstanceStatus.RUNNING,
    InstanceState.SHUTTING_DOWN: InstanceStatus.DELETING,
    InstanceState.TERMINATED: InstanceStatus.DELETED,
    InstanceState.STOPPING: InstanceStatus.STOPPING,
    InstanceState.STOPPED: InstanceStatus.STOPPED,
}


# =============================================================================
# Spot Requests
# =============================================================================


class SpotRequestState(StrEnum):
    """Spot instance request states."""

    OPEN = "open"
    ACTIVE = "active"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SpotStatusCode(StrEnum):
    """Spot instance request status codes and the request state each implies."""

    PENDING_EVALUATION = "pending-evaluation"
    CAPACITY_NOT_AVAILABLE = "capacity-not-available"
    CAPACITY_OVERSUBSCRIBED = "capacity-oversubscribed"
    PRICE_TOO_LOW = "price-too-low"
    NOT_SCHEDULED_YET = "not-scheduled-yet"
    LAUNCH_GROUP_CONSTRAINT = "launch-group-constraint"
    AZ_GROUP_CONSTRAINT = "az-group-constraint"
    PLACEMENT_GROUP_CONSTRAINT = "placement-group-constraint"
    CONSTRAINT_NOT_FULFILLABLE = "constraint-not-fulfillable"
    PENDING_FULFILLMENT = "pending-fulfillment"
    FULFILLED = "fulfilled"
    REQUEST_CANCELED_AND_INSTANCE_RUNNING = "request-canceled-and-instance-running"
    MARKED_FOR_TERMINATION = "marked-for-termination"
    BAD_PARAMETERS = "bad-parameters"
    SCHEDULE_EXPIRED = "schedule-expired"
    CANCELED_BEFORE_FULFILLMENT = "canceled-before-fulfillment"
    SYSTEM_ERROR = "system-error"
    INSTANCE_TERMINATED_BY_PRICE = "instance-terminated-by-price"
    INSTANCE_TERMINATED_BY_USER = "instance-terminated-by-user"
    INSTANCE_TERMINATED_NO_CAPACITY = "instance-terminated-no-capacity"
    INSTANCE_TERMINATED_CAPACITY_OVERSUBSCRIBED = "instance-terminated-capacity-oversubscribed"
    INSTANCE_TERMINATED_LAUNCH_GROUP_CONSTRAINT = "instance-terminated-launch-group-constraint"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, code: str | None) -> SpotStatusCode:
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_SPOT_CODES


_TERMINAL_SPOT_CODES: Final = frozenset({
    SpotStatusCode.BAD_PARAMETERS,
    SpotStatusCode.SCHEDULE_EXPIRED,
    SpotStatusCode.CANCELED_BEFORE_FULFILLMENT,
    SpotStatusCode.SYSTEM_ERROR,
    SpotStatusCode.INSTANCE_TERMINATED_BY_PRICE,
    SpotStatusCode.INSTANCE_TERMINATED_BY_USER,
    SpotStatusCode.INSTANCE_TERMINATED_NO_CAPACITY,
    SpotStatusCode.INSTANCE_TERMINATED_CAPACITY_OVERSUBSCRIBED,
    SpotStatusCode.INSTANCE_TERMINATED_LAUNCH_GROUP_CONSTRAINT,
    SpotStatusCode.UNKNOWN,
})


# =============================================================================
# Timeout Keys (milliseconds)
# =============================================================================


class TimeoutKey(StrEnum):
    INSTANCE_WAIT_UNTIL_STARTED = "ec2.instance.waitUntilStartedMilliseconds"
    INSTANCE_WAIT_UNTIL_FINDABLE = "ec2.instance.waitUntilFindableMilliseconds"
    SPOT_REQUEST_DURATION = "ec2.spot.requestDurationMilliseconds"
    SPOT_PRICE_CHANGE_DURATION = "ec2.spot.priceChangeDurationMilliseconds"
    ASG_REQUEST_DURATION = "ec2.asg.requestDurationMilliseconds"
    ASG_INSTANCE_POLL_DURATION = "ec2.asg.instancePollDurationMilliseconds"


DEFAULT_TIMEOUTS_MS: Final[dict[str, int]] = {
    TimeoutKey.INSTANCE_WAIT_UNTIL_STARTED: 30 * 60 * 1000,
    TimeoutKey.INSTANCE_WAIT_UNTIL_FINDABLE: 10 * 60 * 1000,
    TimeoutKey.SPOT_REQUEST_DURATION: 10 * 60 * 1000,
    TimeoutKey.SPOT_PRICE_CHANGE_DURATION: 0,
    TimeoutKey.ASG_REQUEST_DURATION: 10 * 60 * 1000,
    TimeoutKey.ASG_INSTANCE_POLL_DURATION: 1000,
}


# =============================================================================
# Lookup and Polling Limits
# =============================================================================

MAX_TAG_FILTER_VALUES: Final = 200
GET_INSTANCE_STATE_BATCH_SIZE: Final = 95

FIND_POLL_INTERVAL: Final = 1.0
NOT_FOUND_RETRY_INTERVAL: Final = 5.0
PRIVATE_IP_POLL_INTERVAL: Final = 5.0
FINDABLE_POLL_INTERVAL: Final = 5.0
SPOT_POLL_INTERVAL: Final = 1.0
ASG_RETRY_INTERVAL: Final = 1.0


# =============================================================================
# Volumes
# =============================================================================

MIN_ROOT_VOLUME_SIZE_GB: Final = 10
MAX_VOLUMES_PER_INSTANCE: Final = 10
ROOT_VOLUME_TYPES: Final = ("gp2", "standard")
TENANCY_TYPES: Final = ("default", "dedicated")
IOPS_VOLUME_TYPE: Final = "io1"
EBS_ROOT_DEVICE_TYPE: Final = "ebs"

DEFAULT_DEVICE_NAME_PREFIX: Final = "/dev/sd"
DEFAULT_EPHEMERAL_RANGE_START: Final = "b"
DEFAULT_EBS_RANGE_START: Final = "f"


# =============================================================================
# Auto Scaling
# =============================================================================

SUSPENDED_SCALING_PROCESSES: Final = ("ReplaceUnhealthy", "AZRebalance")
