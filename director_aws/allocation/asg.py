"""Auto Scaling Group allocation.

The group and its launch template are both named after the template's
``group_id``, so re-running an allocation for the same group finds the
resources created by an earlier attempt instead of duplicating them.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, Final

from botocore.exceptions import ClientError
from loguru import logger
from tenacity import RetryCallState, Retrying, retry_if_result, wait_fixed

from director_aws.allocation.base import (
    LEAK_WARNING,
    AllocationContext,
    collected_error,
    network_interface,
)
from director_aws.aws_errors import classify, error_code, error_message, has_code, is_not_found
from director_aws.conc import call_all
from director_aws.constants import ASG_RETRY_INTERVAL, SUSPENDED_SCALING_PROCESSES, TimeoutKey
from director_aws.devices import DeviceMapping
from director_aws.exceptions import DirectorAwsError, Outcome, UnrecoverableProviderError, attach_secondary
from director_aws.retry import ErrorPredicate, RetryPolicy, on_error_code
from director_aws.template import Instance, InstanceTemplate

if TYPE_CHECKING:
    from mypy_boto3_autoscaling import AutoScalingClient

log = logger.bind(component="asg")

LAUNCH_TEMPLATE_NOT_FOUND: Final = "InvalidLaunchTemplateName.NotFoundException"
LAUNCH_TEMPLATE_ALREADY_EXISTS: Final = "InvalidLaunchTemplateName.AlreadyExistsException"
GROUP_ALREADY_EXISTS: Final = "AlreadyExists"
VALIDATION_ERROR: Final = "ValidationError"

_NOT_IN_GROUP = re.compile(r"The instance (.+) is not part of Auto Scaling group .+[.].*")
_NOT_IN_STATE = re.compile(r"The instance (.+) is not in .+[.].*")

_LAUNCH_TEMPLATE_EBS_KEYS: Final = frozenset({
    "DeleteOnTermination",
    "Encrypted",
    "Iops",
    "KmsKeyId",
    "SnapshotId",
    "Throughput",
    "VolumeSize",
    "VolumeType",
})


is_launch_template_not_found = on_error_code(LAUNCH_TEMPLATE_NOT_FOUND)


def is_not_in_group(e: BaseException) -> bool:
    return has_code(e, VALIDATION_ERROR) and _NOT_IN_GROUP.fullmatch(error_message(e)) is not None


def is_not_in_state(e: BaseException) -> bool:
    return has_code(e, VALIDATION_ERROR) and _NOT_IN_STATE.fullmatch(error_message(e)) is not None


def is_group_not_found(e: BaseException) -> bool:
    return has_code(e, VALIDATION_ERROR) and "not found" in error_message(e).lower()


def launch_template_mapping(mapping: DeviceMapping) -> DeviceMapping:
    """Convert a run-instances block device mapping to launch template form."""
    result: DeviceMapping = {"DeviceName": mapping["DeviceName"]}
    if "VirtualName" in mapping:
        result["VirtualName"] = mapping["VirtualName"]
    if (ebs := mapping.get("Ebs")) is not None:
        result["Ebs"] = {k: v for k, v in ebs.items() if k in _LAUNCH_TEMPLATE_EBS_KEYS}
    if "NoDevice" in mapping:
        result["NoDevice"] = mapping["NoDevice"]
    return result


class AutoScalingGroupAllocator:
    """Allocates instances through a launch template and an Auto Scaling Group.

    ``instance_ids`` are the requested virtual ids when allocating and EC2
    instance ids of group members when deleting. Every cloud call is retried
    until one shared deadline, fixed at construction.
    """

    def __init__(
        self,
        context: AllocationContext,
        autoscaling: AutoScalingClient,
        template: InstanceTemplate,
        instance_ids: Sequence[str],
        min_count: int,
    ) -> None:
        if not template.automatic or template.group_id is None:
            raise ValueError(f"Template '{template.name}' does not use an Auto Scaling Group")
        self.context = context
        self.ec2 = context.ec2
        self.autoscaling = autoscaling
        self.template = template
        self.instance_ids = list(dict.fromkeys(instance_ids))
        self.desired_count = len(self.instance_ids)
        self.min_count = min_count

        self.group_id: str = template.group_id
        self.launch_template_name = self.group_id
        self.group_name = self.group_id

        self.deadline = context.clock() + context.timeouts.seconds(TimeoutKey.ASG_REQUEST_DURATION)
        self.poll_interval = context.timeouts.seconds(TimeoutKey.ASG_INSTANCE_POLL_DURATION)

    def _policy(self, also: ErrorPredicate | None = None) -> RetryPolicy:
        return RetryPolicy.until(
            self.deadline,
            backoff=ASG_RETRY_INTERVAL,
            also=also,
            clock=self.context.clock,
            sleep=self.context.sleep,
        )

    def _retry(self, fn: Callable[[], object], also: ErrorPredicate | None = None) -> None:
        self._policy(also).call(fn)

    # -------------------------------------------------------------------------
    # Allocation
    # -------------------------------------------------------------------------

    def allocate(self) -> list[Instance]:
        log.info(
            "Requesting Auto Scaling group {name} of {min} - {n} instance(s)",
            name=self.group_name, min=self.min_count, n=self.desired_count,
        )
        try:
            data = self.launch_template_data()
            self._retry(lambda: self.create_launch_template(data))
            self._retry(self.create_or_update_group, also=is_launch_template_not_found)
            if not self.template.enable_automatic_instance_processing:
                self._retry(self.suspend_processes)

            members = self.wait_for_members()
            if len(members) < self.min_count:
                raise UnrecoverableProviderError(
                    f"Only allocated {len(members)} of {self.min_count} instances in configured time. "
                    "Cleaning up resources.",
                    context={"group": self.group_name, "instances": sorted(members)},
                )
            return self.context.finder.find(self.template, sorted(members))
        except Exception as e:
            error = e if isinstance(e, DirectorAwsError) else classify(e)
            cleanup = self.delete_group()
            if not cleanup.ok:
                log.warning(
                    "Failed to delete resources of Auto Scaling group {name}: {err}. " + LEAK_WARNING,
                    name=self.group_name, err=cleanup.primary,
                )
                for cleanup_error in cleanup.errors:
                    if not isinstance(cleanup_error, Exception):
                        raise cleanup_error
                attach_secondary(error, cleanup.errors)
            if error is e:
                raise
            raise error from e

    def launch_template_data(self) -> dict[str, Any]:
        template = self.template
        log.info(
            "Auto Scaling group request type: {type}, image: {image}",
            type=template.instance_type, image=template.image_id,
        )
        mappings = self.context.devices.for_template(self.ec2, template)
        data: dict[str, Any] = {
            "ImageId": template.image_id,
            "InstanceType": template.instance_type,
            "NetworkInterfaces": [network_interface(template, self.context.settings)],
            "BlockDeviceMappings": [launch_template_mapping(m) for m in mappings],
            "EbsOptimized": template.ebs_optimized,
            "Placement": {"Tenancy": template.tenancy},
        }
        if template.iam_profile_name:
            data["IamInstanceProfile"] = {"Name": template.iam_profile_name}
        if template.key_name:
            data["KeyName"] = template.key_name
        if (user_data := template.user_data_base64) is not None:
            data["UserData"] = user_data
        return data

    def create_launch_template(self, data: dict[str, Any]) -> None:
        log.info("Creating launch template {name}", name=self.launch_template_name)
        try:
            self.ec2.create_launch_template(
                LaunchTemplateName=self.launch_template_name,
                LaunchTemplateData=data,
            )
        except ClientError as e:
            if error_code(e) != LAUNCH_TEMPLATE_ALREADY_EXISTS:
                raise
            log.info("Launch template {name} already exists", name=self.launch_template_name)

    def group_request(self) -> dict[str, Any]:
        request: dict[str, Any] = {
            "AutoScalingGroupName": self.group_name,
            "LaunchTemplate": {"LaunchTemplateName": self.launch_template_name},
            "MinSize": self.desired_count,
            "MaxSize": self.desired_count,
            "DesiredCapacity": self.desired_count,
            "VPCZoneIdentifier": self.template.subnet_id,
        }
        if self.template.availability_zone:
            request["AvailabilityZones"] = [self.template.availability_zone]
        if self.template.placement_group:
            request["PlacementGroup"] = self.template.placement_group
        return request

    def create_or_update_group(self) -> None:
        log.info("Creating Auto Scaling group {name}", name=self.group_name)
        request = self.group_request()
        try:
            self.autoscaling.create_auto_scaling_group(
                **request,
                Tags=self.context.tags.group_tags(self.template, self.group_id),
            )
            return
        except ClientError as e:
            if error_code(e) != GROUP_ALREADY_EXISTS:
                raise

        for group in self.describe_groups():
            if group["DesiredCapacity"] < self.desired_count:
                log.info(
                    "Resizing Auto Scaling group {name} from {old} to {new}",
                    name=self.group_name, old=group["DesiredCapacity"], new=self.desired_count,
                )
                self.autoscaling.update_auto_scaling_group(**request)

    def suspend_processes(self) -> None:
        log.info("Disabling automatic instance processing for {name}", name=self.group_name)
        self.autoscaling.suspend_processes(
            AutoScalingGroupName=self.group_name,
            ScalingProcesses=list(SUSPENDED_SCALING_PROCESSES),
        )

    def describe_groups(self) -> list[dict[str, Any]]:
        # at most one group matches the name, no pagination needed
        response = self.autoscaling.describe_auto_scaling_groups(AutoScalingGroupNames=[self.group_name])
        return response.get("AutoScalingGroups", [])

    def member_ids(self) -> list[str]:
        return [
            instance["InstanceId"]
            for group in self.describe_groups()
            for instance in group.get("Instances", [])
        ]

    def wait_for_members(self) -> set[str]:
        """Collect group members until the desired count or the deadline."""
        members: set[str] = set()

        def poll() -> set[str]:
            policy = self._policy()
            members.update(policy.call(self.member_ids))
            log.debug(
                "Auto Scaling group {name} has {n} of {d} instance(s)",
                name=self.group_name, n=len(members), d=self.desired_count,
            )
            return members

        def stop(_: RetryCallState) -> bool:
            return self.context.clock() >= self.deadline

        retrying = Retrying(
            stop=stop,
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_result(lambda found: len(found) < self.desired_count),
            sleep=self.context.sleep,
            retry_error_callback=lambda state: state.outcome.result(),
        )
        return retrying(poll)

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    def delete(self) -> None:
        """Delete the whole group, or only the listed members."""
        context = {"template": self.template.name, "group": self.group_id}
        if not self.instance_ids:
            outcome = self.delete_group()
            try:
                outcome.raise_if_failed()
            except Exception as e:
                raise collected_error(
                    f"Problem deleting Auto Scaling group {self.group_id}.", outcome.errors, **context,
                ) from e
            return
        try:
            self.delete_members()
        except Exception as e:
            raise collected_error("Problem deleting instances from Auto Scaling group.", [e], **context) from e

    def delete_group(self) -> Outcome:
        """Delete the group and its launch template concurrently."""
        return call_all(
            lambda: self._retry(self.delete_auto_scaling_group),
            lambda: self._retry(self.delete_launch_template),
        )

    def delete_auto_scaling_group(self) -> None:
        log.info("Deleting Auto Scaling group {name}", name=self.group_name)
        try:
            self.autoscaling.delete_auto_scaling_group(AutoScalingGroupName=self.group_name, ForceDelete=True)
        except ClientError as e:
            if not is_group_not_found(e):
                raise
            log.info("Auto Scaling group {name} does not exist", name=self.group_name)

    def delete_launch_template(self) -> None:
        log.info("Deleting launch template {name}", name=self.launch_template_name)
        try:
            self.ec2.delete_launch_template(LaunchTemplateName=self.launch_template_name)
        except ClientError as e:
            if not is_not_found(e):
                raise
            log.info("Launch template {name} does not exist", name=self.launch_template_name)

    def delete_members(self) -> None:
        groups = self._policy().call(self.describe_groups)
        current_size = sum(g["DesiredCapacity"] for g in groups)
        current_min = sum(g["MinSize"] for g in groups)
        target_size = max(0, current_size - len(self.instance_ids))

        # detaching below MinSize is rejected
        if target_size < current_min:
            log.info("Lowering MinSize of {name} to {size}", name=self.group_name, size=target_size)
            self._retry(
                lambda: self.autoscaling.update_auto_scaling_group(
                    AutoScalingGroupName=self.group_name,
                    MinSize=target_size,
                )
            )

        log.info("Detaching instances from Auto Scaling group {name}", name=self.group_name)
        try:
            self._retry(lambda: self.detach(self.instance_ids))
        except ClientError as e:
            if not (is_not_in_group(e) or is_not_in_state(e)):
                raise
            self.detach_one_by_one()

        log.info("Terminating instances from Auto Scaling group {name}", name=self.group_name)
        self.context.finder.delete(self.template, self.instance_ids)

    def detach(self, instance_ids: Sequence[str]) -> None:
        self.autoscaling.detach_instances(
            AutoScalingGroupName=self.group_name,
            InstanceIds=list(instance_ids),
            ShouldDecrementDesiredCapacity=True,
        )

    def detach_one_by_one(self) -> None:
        for instance_id in self.instance_ids:
            log.info("Detaching instance {id} from {name}", id=instance_id, name=self.group_name)
            try:
                self._retry(lambda: self.detach([instance_id]), also=is_not_in_state)
            except ClientError as e:
                if not is_not_in_group(e):
                    raise
                log.warning(
                    "Instance {id} not in Auto Scaling group {name}, ignoring",
                    id=instance_id, name=self.group_name,
                )
