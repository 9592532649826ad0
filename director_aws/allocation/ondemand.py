"""On-demand instance allocation."""

from __future__ import annotations

import uuid
from typing import Any

from botocore.exceptions import ClientError
from loguru import logger

from director_aws.allocation.base import (
    BaseAllocator,
    collected_error,
    network_interface,
    placement,
)
from director_aws.aws_errors import classify, error_code, propagate
from director_aws.exceptions import DirectorAwsError
from director_aws.finder import RawInstance
from director_aws.template import Instance

log = logger.bind(component="ondemand")

INSUFFICIENT_INSTANCE_CAPACITY = "InsufficientInstanceCapacity"
INSTANCE_LIMIT_EXCEEDED = "InstanceLimitExceeded"


class OnDemandAllocator(BaseAllocator):
    """Allocates regular EC2 instances, all or at least ``min_count`` of them.

    Instances already tagged with a requested virtual id are reused. When
    fewer than ``min_count`` instances end up running with a private IP,
    every instance created or found by the call is terminated.
    """

    def allocate(self) -> list[Instance]:
        log.info(
            "Requesting {n} instance(s) for template {name}",
            n=len(self.virtual_ids), name=self.template.name,
        )
        allocated: dict[str, RawInstance] = {}
        unsuccessful: dict[str, RawInstance] = {}
        errors: list[BaseException] = []

        try:
            allocated.update(self.find_live(self.virtual_ids))
            if allocated:
                log.info("Instances already allocated: {ids}", ids=", ".join(sorted(allocated)))

            pending = [vid for vid in self.virtual_ids if vid not in allocated]
            if self.context.settings.use_tag_on_create:
                self._run_tagged(pending, allocated, errors)
            elif pending:
                self._run_bulk(pending, allocated, unsuccessful, errors)

            if len(allocated) >= self.min_count:
                ready = self._wait_until_ready(allocated)
                unsuccessful.update({vid: raw for vid, raw in allocated.items() if vid not in ready})
                if len(ready) >= self.min_count:
                    return [Instance.from_ec2(vid, raw) for vid, raw in ready.items()]

            reasons = self.state_reasons([raw["InstanceId"] for raw in unsuccessful.values()])
            raise collected_error(
                f"Problem allocating on-demand instances. Only {len(allocated)} of "
                f"{len(self.virtual_ids)} instance(s) running, {self.min_count} required",
                errors,
                reasons=reasons,
                template=self.template.name,
                allocated=sorted(allocated),
                failed=sorted(set(self.virtual_ids) - set(allocated)),
            )
        except Exception as e:
            error = e if isinstance(e, DirectorAwsError) else classify(e)
            log.error("Unsuccessful allocation of on-demand instances, terminating instances")
            self.terminate_on_failure(
                [raw["InstanceId"] for raw in (allocated | unsuccessful).values()],
                error,
            )
            if error is e:
                raise
            raise error from e

    def delete(self) -> None:
        self.context.finder.delete(self.template, self.virtual_ids)

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def _base_request(self) -> dict[str, Any]:
        template = self.template
        log.info(
            "Instance request type: {type}, image: {image}",
            type=template.instance_type, image=template.image_id,
        )
        request: dict[str, Any] = {
            "ImageId": template.image_id,
            "InstanceType": template.instance_type,
            "ClientToken": str(uuid.uuid4()),
            "NetworkInterfaces": [network_interface(template, self.context.settings)],
            "BlockDeviceMappings": self.block_device_mappings(),
            "EbsOptimized": template.ebs_optimized,
            "Placement": placement(template),
        }
        if template.iam_profile_name:
            request["IamInstanceProfile"] = {"Name": template.iam_profile_name}
        if template.key_name:
            request["KeyName"] = template.key_name
        if (user_data := template.user_data_text) is not None:
            request["UserData"] = user_data
        return request

    def _run_tagged(
        self,
        virtual_ids: list[str],
        allocated: dict[str, RawInstance],
        errors: list[BaseException],
    ) -> None:
        """One tagged run-instances call per virtual id; failures are collected."""
        if not virtual_ids:
            return
        log.info("Building {n} tagged instance request(s)", n=len(virtual_ids))
        base = self._base_request()
        user_tags = self._tags.user_tags(self.template)
        for vid in virtual_ids:
            tags = self._tags.instance_tags(self.template, vid, user_tags)
            request = base | {
                "ClientToken": str(uuid.uuid4()),
                "MinCount": 1,
                "MaxCount": 1,
                "TagSpecifications": [
                    {"ResourceType": "instance", "Tags": tags},
                    {"ResourceType": "volume", "Tags": tags},
                ],
            }
            try:
                response = self.ec2.run_instances(**request)
            except ClientError as e:
                log.error("AWS error while requesting instance {vid}: {code}", vid=vid, code=error_code(e))
                errors.append(e)
                continue
            (raw,) = response["Instances"]
            log.info(
                "Reservation {res} started {id} for {vid}",
                res=response.get("ReservationId"), id=raw["InstanceId"], vid=vid,
            )
            allocated[vid] = raw

    def _run_bulk(
        self,
        virtual_ids: list[str],
        allocated: dict[str, RawInstance],
        unsuccessful: dict[str, RawInstance],
        errors: list[BaseException],
    ) -> None:
        """One untagged run-instances call, then tag each created instance."""
        log.info("Tag on create is disabled")
        request = self._base_request() | {
            "MaxCount": len(virtual_ids),
            "MinCount": max(1, self.min_count - len(allocated)),
        }
        try:
            instances = self.ec2.run_instances(**request)["Instances"]
        except ClientError as e:
            if error_code(e) not in (INSUFFICIENT_INSTANCE_CAPACITY, INSTANCE_LIMIT_EXCEEDED):
                propagate(e)
            log.warning("Hit instance capacity issues, proceeding anyway: {err}", err=e)
            errors.append(e)
            instances = []

        created = dict(zip(virtual_ids, instances))
        unsuccessful.update(created)
        deadline = self._now() + self.findable_timeout
        user_tags = self._tags.user_tags(self.template)
        for vid, raw in created.items():
            if self.tag_instance(vid, raw["InstanceId"], deadline, user_tags):
                del unsuccessful[vid]
                allocated[vid] = raw | {"Tags": self._tags.instance_tags(self.template, vid, user_tags)}
            else:
                log.info("Instance {id} could not be tagged", id=raw["InstanceId"])

    # -------------------------------------------------------------------------
    # Readiness
    # -------------------------------------------------------------------------

    def _wait_until_ready(self, allocated: dict[str, RawInstance]) -> dict[str, RawInstance]:
        deadline = self._now() + self.started_timeout
        ready: dict[str, RawInstance] = {}
        without_ip: dict[str, str] = {}
        for vid, raw in allocated.items():
            instance_id = raw["InstanceId"]
            if not self.wait_until_started(instance_id, deadline):
                log.info("Instance {id} did not start", id=instance_id)
            elif raw.get("PrivateIpAddress"):
                ready[vid] = raw
            else:
                without_ip[vid] = instance_id
        ready.update(self.wait_for_private_ips(without_ip, deadline))
        return ready
