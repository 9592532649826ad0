"""EC2 provider facade.

Entry point for the orchestration framework: validates and builds templates,
picks the allocator for each template and exposes tag-based find, delete and
state lookups.

Example:
    from director_aws import EC2Provider, load_config

    provider = EC2Provider.from_config(load_config())
    template = provider.create_template("workers", raw_config, tags={"owner": "data"})
    instances = provider.allocate(template, ["vm-1", "vm-2", "vm-3"], min_count=2)
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import boto3
from loguru import logger

from director_aws.allocation import (
    AllocationContext,
    AutoScalingGroupAllocator,
    InstanceAllocator,
    OnDemandAllocator,
    SpotGroupAllocator,
)
from director_aws.clients import AwsClients
from director_aws.config import ProviderConfig
from director_aws.constants import InstanceStatus
from director_aws.devices import DeviceMappings
from director_aws.exceptions import ValidationError
from director_aws.finder import InstanceFinder
from director_aws.tags import TagHelper
from director_aws.template import Instance, InstanceTemplate
from director_aws.validation import TemplateValidator, ValidationResult

log = logger.bind(component="provider")


class EC2Provider:
    """Allocates, finds and deletes EC2 instances for instance templates.

    Every operation is safe to repeat: instances are located through their
    ownership tag, never through state kept in this object.
    """

    def __init__(
        self,
        clients: AwsClients,
        config: ProviderConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.clients = clients
        self.config = config or ProviderConfig()
        self.tags = TagHelper(self.config.tags)
        self.finder = InstanceFinder(clients.ec2, self.tags, clock=clock, sleep=sleep)
        self.validator = TemplateValidator(clients.ec2, clients.iam, clients.kms, self.config)
        self.context = AllocationContext(
            ec2=clients.ec2,
            tags=self.tags,
            finder=self.finder,
            devices=DeviceMappings(self.config.ephemeral_device_counts, self.config.device_mappings),
            settings=self.config.settings,
            timeouts=self.config.timeouts,
            clock=clock,
            sleep=sleep,
        )

    @classmethod
    def from_config(
        cls,
        config: ProviderConfig | None = None,
        session: boto3.Session | None = None,
    ) -> EC2Provider:
        config = config or ProviderConfig()
        return cls(AwsClients.from_session(session, config.region), config)

    # -------------------------------------------------------------------------
    # Templates
    # -------------------------------------------------------------------------

    def validate_template(
        self,
        name: str,
        raw: Mapping[str, Any],
        tags: Mapping[str, str] | None = None,
    ) -> ValidationResult:
        return self.validator.validate(name, raw, tags)

    def create_template(
        self,
        name: str,
        raw: Mapping[str, Any],
        tags: Mapping[str, str] | None = None,
    ) -> InstanceTemplate:
        """Validate ``raw`` and build the template, or raise ValidationError."""
        TagHelper.validate_tags(tags)
        result = self.validate_template(name, raw, tags)
        if not result.ok:
            raise ValidationError(name, result.errors)
        return InstanceTemplate.from_config(name, raw, tags)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def allocator(
        self,
        template: InstanceTemplate,
        instance_ids: Sequence[str],
        min_count: int,
    ) -> InstanceAllocator:
        if template.automatic:
            return AutoScalingGroupAllocator(
                self.context, self.clients.autoscaling, template, instance_ids, min_count,
            )
        if template.use_spot:
            return SpotGroupAllocator(self.context, template, instance_ids, min_count)
        return OnDemandAllocator(self.context, template, instance_ids, min_count)

    def allocate(
        self,
        template: InstanceTemplate,
        virtual_ids: Sequence[str],
        min_count: int,
    ) -> list[Instance]:
        """Create or reuse at least ``min_count`` running instances.

        Raises:
            UnrecoverableProviderError: Too many tags, or fewer than
                ``min_count`` instances before the deadline. Everything the
                call created has been cleaned up.
            TransientProviderError: Every failure was retryable.
            InvalidCredentialsError: AWS rejected the credentials.
        """
        TagHelper.validate_tags(template.tags)
        log.info(
            "Allocating {n} instance(s) (min {min}) for template {name}",
            n=len(virtual_ids), min=min_count, name=template.name,
        )
        return self.allocator(template, virtual_ids, min_count).allocate()

    def find(self, template: InstanceTemplate, virtual_ids: Sequence[str]) -> list[Instance]:
        return self.finder.find(template, virtual_ids)

    def get_instance_state(
        self,
        template: InstanceTemplate,
        virtual_ids: Sequence[str],
    ) -> dict[str, InstanceStatus]:
        return self.finder.get_instance_state(template, virtual_ids)

    def delete(self, template: InstanceTemplate, virtual_ids: Sequence[str] = ()) -> None:
        """Terminate instances; for group templates without ids, the whole group."""
        log.info("Deleting {n} instance(s) of template {name}", n=len(virtual_ids), name=template.name)
        self.allocator(template, virtual_ids, 0).delete()
