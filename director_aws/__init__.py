"""director-aws - EC2 and Auto Scaling Group allocation with tag-based reconciliation.

Example:

    from director_aws import EC2Provider, load_config, setup_logging

    setup_logging("INFO")
    provider = EC2Provider.from_config(load_config())

    template = provider.create_template("workers", {
        "image": "ami-0123456789abcdef0",
        "type": "m5.xlarge",
        "subnet_id": "subnet-0abc",
        "security_group_ids": "sg-0abc",
    })
    instances = provider.allocate(template, ["vm-1", "vm-2"], min_count=2)
    provider.delete(template, ["vm-1", "vm-2"])
"""

from loguru import logger

from director_aws.clients import AwsClients
from director_aws.config import ProviderConfig, ProviderSettings, Timeouts, load_config
from director_aws.constants import InstanceStatus
from director_aws.exceptions import (
    ConfigurationError,
    DirectorAwsError,
    InvalidCredentialsError,
    Outcome,
    ProviderError,
    TransientProviderError,
    UnrecoverableProviderError,
    ValidationError,
)
from director_aws.observability import setup_logging, teardown_logging
from director_aws.provider import EC2Provider
from director_aws.template import Instance, InstanceTemplate
from director_aws.validation import TemplateValidator, ValidationCondition, ValidationResult

# Library logging stays silent until setup_logging() is called
logger.disable("director_aws")

__all__ = [
    "AwsClients",
    "ConfigurationError",
    "DirectorAwsError",
    "EC2Provider",
    "Instance",
    "InstanceStatus",
    "InstanceTemplate",
    "InvalidCredentialsError",
    "Outcome",
    "ProviderConfig",
    "ProviderError",
    "ProviderSettings",
    "TemplateValidator",
    "Timeouts",
    "TransientProviderError",
    "UnrecoverableProviderError",
    "ValidationCondition",
    "ValidationError",
    "ValidationResult",
    "load_config",
    "setup_logging",
    "teardown_logging",
]
