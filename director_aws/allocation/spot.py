"""Spot instance allocation.

Each virtual instance id gets a SpotAllocationRecord that moves through
PENDING -> REQUESTED -> FULFILLED -> TAGGED -> IP_ASSIGNED. Instances and
requests left over by an earlier, interrupted call are adopted before any
new request is made, so retrying an allocation converges instead of
doubling the fleet.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import IntEnum
from itertools import batched
from typing import Any

from botocore.exceptions import ClientError
from loguru import logger
from tenacity import Retrying, retry_if_result, wait_fixed

from director_aws.allocation.base import (
    LEAK_WARNING,
    BaseAllocator,
    client_token,
    network_interface,
)
from director_aws.aws_errors import classify, error_code, is_not_found, is_unrecoverable, propagate
from director_aws.constants import (
    FINDABLE_POLL_INTERVAL,
    MAX_TAG_FILTER_VALUES,
    SPOT_POLL_INTERVAL,
    SpotRequestState,
    SpotStatusCode,
    TimeoutKey,
)
from director_aws.exceptions import (
    DirectorAwsError,
    Outcome,
    UnrecoverableProviderError,
    attach_secondary,
)
from director_aws.retry import RetryPolicy
from director_aws.template import Instance, tag_value

log = logger.bind(component="spot")

MAX_SPOT_INSTANCE_COUNT_EXCEEDED = "MaxSpotInstanceCountExceeded"

_TOLERATED_REQUEST_ERRORS = {
    MAX_SPOT_INSTANCE_COUNT_EXCEEDED:
        "Some spot instances were not allocated due to reaching the max spot instance request limit",
    "InsufficientInstanceCapacity":
        "Some instances were not allocated due to instance limits or capacity issues",
    "InstanceLimitExceeded":
        "Some instances were not allocated due to instance limits or capacity issues",
    "RequestLimitExceeded":
        "Encountered rate limit errors while allocating instances",
}


# =============================================================================
# Allocation records
# =============================================================================


class SpotStage(IntEnum):
    PENDING = 0
    REQUESTED = 1
    FULFILLED = 2
    TAGGED = 3
    IP_ASSIGNED = 4


@dataclass(slots=True)
class SpotAllocationRecord:
    """Allocation progress of one virtual instance."""

    virtual_id: str
    stage: SpotStage = SpotStage.PENDING
    spot_request_id: str | None = None
    ec2_instance_id: str | None = None
    private_ip: str | None = None

    @property
    def needs_request(self) -> bool:
        return self.spot_request_id is None and self.ec2_instance_id is None

    @property
    def tagged(self) -> bool:
        return self.stage >= SpotStage.TAGGED

    @property
    def allocated(self) -> bool:
        return self.stage is SpotStage.IP_ASSIGNED

    def requested(self, request_id: str) -> None:
        self.spot_request_id = request_id
        self.stage = max(self.stage, SpotStage.REQUESTED)

    def fulfilled(self, instance_id: str) -> None:
        if self.ec2_instance_id is None:
            self.ec2_instance_id = instance_id
        self.stage = max(self.stage, SpotStage.FULFILLED)

    def mark_tagged(self) -> None:
        self.stage = max(self.stage, SpotStage.TAGGED)

    def ip_assigned(self, private_ip: str) -> None:
        self.private_ip = private_ip
        self.stage = SpotStage.IP_ASSIGNED


# =============================================================================
# Allocator
# =============================================================================


class SpotGroupAllocator(BaseAllocator):
    """Allocates spot instances for a group of virtual instance ids."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        timeouts = self.context.timeouts
        request_duration = timeouts.seconds(TimeoutKey.SPOT_REQUEST_DURATION)
        started = self._now()
        self.request_deadline = started + request_duration
        self.price_change_deadline = started + timeouts.seconds(TimeoutKey.SPOT_PRICE_CHANGE_DURATION)
        self.valid_until = datetime.now(UTC) + timedelta(seconds=request_duration)
        self.records = {vid: SpotAllocationRecord(vid) for vid in self.virtual_ids}
        self.untagged_request_instances: dict[str, str] = {}

    def allocate(self) -> list[Instance]:
        log.info(
            "Requesting {n} spot instance(s) for template {name}",
            n=len(self.virtual_ids), name=self.template.name,
        )
        errors: list[BaseException] = []
        try:
            instances = self._allocate(errors)
        except Exception as e:
            error = e if isinstance(e, DirectorAwsError) else classify(e)
            log.error("Problem allocating spot instances: {err}", err=error)
            cleanup = self._cleanup(success=False)
            if not cleanup.ok:
                log.warning("Spot cleanup failed. " + LEAK_WARNING)
            attach_secondary(error, [*errors, *cleanup.errors])
            if error is e:
                raise
            raise error from e

        cleanup = self._cleanup(success=instances is not None)
        if instances is not None:
            if not cleanup.ok:
                log.warning(
                    "Allocated spot instances, but cleanup failed: {err}. " + LEAK_WARNING,
                    err=cleanup.primary,
                )
            return instances

        raise UnrecoverableProviderError(
            "Problem allocating Spot instances.",
            secondary=[*errors, *cleanup.errors],
            context={
                "template": self.template.name,
                "allocated": sorted(vid for vid, r in self.records.items() if r.allocated),
                "failed": sorted(vid for vid, r in self.records.items() if not r.allocated),
            },
        )

    def delete(self) -> None:
        self.context.finder.delete(self.template, self.virtual_ids)

    def _allocate(self, errors: list[BaseException]) -> list[Instance] | None:
        self._adopt_orphaned_instances()
        pending = self._adopt_orphaned_requests()

        needing = [vid for vid, record in self.records.items() if record.needs_request]
        if needing:
            requested = self._request_spot_instances(needing, errors)
            self._tag_spot_requests(requested)
            pending |= set(requested.values())

        self._wait_for_spot_instances(pending, cancelling=False)
        self._tag_spot_instances(self._now() + self.started_timeout)
        self._wait_for_private_ips()

        allocated = [vid for vid, record in self.records.items() if record.allocated]
        if len(allocated) < self.min_count:
            log.info(
                "Failed to acquire the required number of spot instances "
                "(desired {desired}, required {required}, acquired {acquired})",
                desired=len(self.virtual_ids), required=self.min_count, acquired=len(allocated),
            )
            return None
        return self._wait_until_findable(allocated)

    # -------------------------------------------------------------------------
    # Orphans
    # -------------------------------------------------------------------------

    def _adopt_orphaned_instances(self) -> None:
        log.info("Checking for orphaned spot instances")
        for vid, raw in self.find_live(self.virtual_ids).items():
            log.info("Found orphaned instance {id} / {vid}, will reuse", id=raw["InstanceId"], vid=vid)
            record = self.records[vid]
            record.fulfilled(raw["InstanceId"])
            record.mark_tagged()
            if raw.get("PrivateIpAddress"):
                record.ip_assigned(raw["PrivateIpAddress"])

    def _adopt_orphaned_requests(self) -> set[str]:
        log.info("Checking for orphaned spot instance requests")
        id_tag = self._tags.id_tag_name
        adopted: set[str] = set()
        now = datetime.now(UTC)
        for request in self._tagged_requests(id_tag):
            request_id = request["SpotInstanceRequestId"]
            vid = tag_value(request, id_tag)
            if vid is None or vid not in self.records:
                log.warning("Orphaned spot instance request {id} has no virtual instance id", id=request_id)
                continue
            record = self.records[vid]
            match request.get("State"):
                case SpotRequestState.ACTIVE:
                    log.info(
                        "Reusing fulfilled orphaned spot request {id} / {vid} / {instance}",
                        id=request_id, vid=vid, instance=request.get("InstanceId"),
                    )
                    record.requested(request_id)
                    if request.get("InstanceId"):
                        record.fulfilled(request["InstanceId"])
                case SpotRequestState.CANCELLED | SpotRequestState.CLOSED | SpotRequestState.FAILED:
                    pass
                case _:
                    valid_until = request.get("ValidUntil")
                    if valid_until is not None and valid_until > now:
                        log.info("Reusing pending orphaned spot request {id} / {vid}", id=request_id, vid=vid)
                        record.requested(request_id)
                        adopted.add(request_id)
        return adopted

    def _tagged_requests(self, id_tag: str) -> Iterator[dict[str, Any]]:
        paginator = self.ec2.get_paginator("describe_spot_instance_requests")
        for chunk in batched(self.virtual_ids, MAX_TAG_FILTER_VALUES):
            filters = [{"Name": f"tag:{id_tag}", "Values": list(chunk)}]
            for page in paginator.paginate(Filters=filters):
                yield from page.get("SpotInstanceRequests", [])

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def _launch_specification(self) -> dict[str, Any]:
        template = self.template
        spec: dict[str, Any] = {
            "ImageId": template.image_id,
            "InstanceType": template.instance_type,
            "NetworkInterfaces": [network_interface(template, self.context.settings)],
            "BlockDeviceMappings": self.block_device_mappings(),
            "EbsOptimized": template.ebs_optimized,
        }
        spot_placement = {}
        if template.availability_zone:
            spot_placement["AvailabilityZone"] = template.availability_zone
        if template.placement_group:
            spot_placement["GroupName"] = template.placement_group
        if spot_placement:
            spec["Placement"] = spot_placement
        if template.iam_profile_name:
            spec["IamInstanceProfile"] = {"Name": template.iam_profile_name}
        if template.key_name:
            spec["KeyName"] = template.key_name
        if (user_data := template.user_data_base64) is not None:
            spec["UserData"] = user_data
        return spec

    def _request_spot_instances(self, virtual_ids: list[str], errors: list[BaseException]) -> dict[str, str]:
        log.info("Requesting spot instances")
        spec = self._launch_specification()
        discriminator = int(self.valid_until.timestamp() * 1000)
        requested: dict[str, str] = {}
        for vid in virtual_ids:
            request: dict[str, Any] = {
                "LaunchSpecification": spec,
                "InstanceCount": 1,
                "ClientToken": client_token(vid, discriminator),
                "ValidUntil": self.valid_until,
            }
            if self.template.spot_bid_usd_per_hr is not None:
                request["SpotPrice"] = str(self.template.spot_bid_usd_per_hr)
            if self.template.block_duration_minutes is not None:
                request["BlockDurationMinutes"] = self.template.block_duration_minutes
            try:
                response = self.ec2.request_spot_instances(**request)
            except ClientError as e:
                code = error_code(e)
                if code not in _TOLERATED_REQUEST_ERRORS and is_unrecoverable(e):
                    propagate(e)
                log.warning(
                    "{msg}: {err}",
                    msg=_TOLERATED_REQUEST_ERRORS.get(code, "Exception while trying to allocate instance"),
                    err=e,
                )
                errors.append(e)
                continue
            (spot_request,) = response["SpotInstanceRequests"]
            log.info("Created spot request {id}", id=spot_request["SpotInstanceRequestId"])
            requested[vid] = spot_request["SpotInstanceRequestId"]
            self.records[vid].requested(requested[vid])

        if lost := [vid for vid in virtual_ids if vid not in requested]:
            log.warning("Lost {n} spot request(s)", n=len(lost))
        return requested

    def _tag_spot_requests(self, requested: dict[str, str]) -> None:
        user_tags = self._tags.user_tags(self.template)
        policy = RetryPolicy.until(
            self.request_deadline,
            also=lambda e: error_code(e) == "InvalidSpotInstanceRequestID.NotFound",
            clock=self.context.clock,
            sleep=self.context.sleep,
        )
        for vid, request_id in requested.items():
            log.info("Tagging spot instance request {id} / {vid}", id=request_id, vid=vid)
            tags = [
                self._tags.id_tag(vid),
                self._tags.template_name_tag(self.template.name),
                *user_tags,
            ]
            try:
                policy.call(self.ec2.create_tags, Resources=[request_id], Tags=tags)
            except ClientError as e:
                if not is_not_found(e):
                    raise
                log.warning("Timed out tagging spot instance request {id}", id=request_id)

    # -------------------------------------------------------------------------
    # Fulfillment
    # -------------------------------------------------------------------------

    def _poll_requests(self, pending: set[str], cancelling: bool) -> set[str]:
        response = self.ec2.describe_spot_instance_requests(SpotInstanceRequestIds=sorted(pending))
        id_tag = self._tags.id_tag_name
        for request in response.get("SpotInstanceRequests", []):
            request_id = request["SpotInstanceRequestId"]
            state = request.get("State")
            code = request.get("Status", {}).get("Code")
            status = SpotStatusCode.parse(code)
            vid = tag_value(request, id_tag)
            record = self.records.get(vid) if vid is not None else None

            match state:
                case SpotRequestState.ACTIVE if cancelling:
                    log.info("Waiting for request {id} in state {state}", id=request_id, state=state)
                case SpotRequestState.ACTIVE if record is None:
                    log.info("Waiting for request {id} to be tagged", id=request_id)
                case SpotRequestState.ACTIVE:
                    pending.discard(request_id)
                    record.fulfilled(request["InstanceId"])
                case SpotRequestState.CANCELLED:
                    pending.discard(request_id)
                    if status is SpotStatusCode.REQUEST_CANCELED_AND_INSTANCE_RUNNING:
                        instance_id = request["InstanceId"]
                        if record is None:
                            log.info(
                                "Untagged request {id} has instance {instance}",
                                id=request_id, instance=instance_id,
                            )
                            self.untagged_request_instances[request_id] = instance_id
                        else:
                            record.fulfilled(instance_id)
                case SpotRequestState.CLOSED | SpotRequestState.FAILED:
                    pending.discard(request_id)
                case _ if code is not None and status.terminal:
                    log.info("Spot request {id} ended with status {code}", id=request_id, code=code)
                    pending.discard(request_id)
                case _ if status is SpotStatusCode.PRICE_TOO_LOW and self._now() >= self.price_change_deadline:
                    log.info("Spot price too low for request {id}", id=request_id)
                    pending.discard(request_id)
                case _:
                    log.info("Waiting for request {id} in state {state}", id=request_id, state=state)
        return pending

    def _wait_for_spot_instances(self, pending: set[str], cancelling: bool) -> None:
        if not pending:
            return
        retrying = Retrying(
            stop=self._stop_at(self.request_deadline),
            wait=wait_fixed(SPOT_POLL_INTERVAL),
            retry=retry_if_result(bool),
            sleep=self.context.sleep,
            retry_error_callback=lambda state: state.outcome.result(),
        )
        remaining = retrying(self._poll_requests, set(pending), cancelling)
        if remaining:
            log.warning("Spot requests still pending at deadline: {ids}", ids=", ".join(sorted(remaining)))

    def _tag_spot_instances(self, deadline: float) -> None:
        user_tags = self._tags.user_tags(self.template)
        for record in self.records.values():
            if record.ec2_instance_id is None or record.tagged:
                continue
            if self.tag_instance(record.virtual_id, record.ec2_instance_id, deadline, user_tags):
                record.mark_tagged()

    def _wait_for_private_ips(self) -> None:
        waiting = {
            vid: record.ec2_instance_id
            for vid, record in self.records.items()
            if record.tagged and record.private_ip is None and record.ec2_instance_id is not None
        }
        ready = self.wait_for_private_ips(waiting, self._now() + self.started_timeout)
        for vid, raw in ready.items():
            self.records[vid].ip_assigned(raw["PrivateIpAddress"])

    def _wait_until_findable(self, virtual_ids: list[str]) -> list[Instance]:
        deadline = self._now() + self.findable_timeout

        def incomplete(found: list[Instance]) -> bool:
            if len(found) < len(virtual_ids):
                log.info(
                    "Found {found} spot instance(s) while expecting {n}, waiting",
                    found=len(found), n=len(virtual_ids),
                )
                return True
            return False

        retrying = Retrying(
            stop=self._stop_at(deadline),
            wait=wait_fixed(FINDABLE_POLL_INTERVAL),
            retry=retry_if_result(incomplete),
            sleep=self.context.sleep,
            retry_error_callback=lambda state: state.outcome.result(),
        )
        found = retrying(self.context.finder.find, self.template, virtual_ids)
        if len(found) < len(virtual_ids):
            log.warning(
                "Found only {found} of {n} spot instances, continuing anyway",
                found=len(found), n=len(virtual_ids),
            )
        return found

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    def _cleanup(self, success: bool) -> Outcome:
        outcome = Outcome()
        try:
            self._cancel_spot_requests()
        except Exception as e:
            outcome.record(e)
        try:
            self._terminate_spot_instances(success)
        except Exception as e:
            outcome.record(e)
        return outcome

    def _cancel_spot_requests(self) -> None:
        request_ids = {r.spot_request_id for r in self.records.values() if r.spot_request_id is not None}
        if not request_ids:
            return
        log.info("Canceling spot instance requests {ids}", ids=", ".join(sorted(request_ids)))
        policy = RetryPolicy.until(self.request_deadline, clock=self.context.clock, sleep=self.context.sleep)
        policy.call(self.ec2.cancel_spot_instance_requests, SpotInstanceRequestIds=sorted(request_ids))
        self._wait_for_spot_instances(request_ids, cancelling=True)

    def _terminate_spot_instances(self, success: bool) -> None:
        if success:
            log.info("Allocation successful, cleaning up instances that were not allocated")
            instance_ids = {
                r.ec2_instance_id for r in self.records.values() if r.ec2_instance_id and not r.allocated
            }
        else:
            log.info("Allocation unsuccessful, cleaning up all instances")
            instance_ids = {r.ec2_instance_id for r in self.records.values() if r.ec2_instance_id}
        instance_ids |= set(self.untagged_request_instances.values())
        self.terminate(instance_ids)
