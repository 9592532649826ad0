"""Instance templates and the instance view returned to callers.

An InstanceTemplate is the validated, immutable snapshot one allocation
request works from. It is parsed from the raw configuration mapping the
orchestration framework hands over (string or typed values keyed by
TemplateField).
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import Any, Final

from director_aws.constants import (
    INSTANCE_STATUS_BY_STATE,
    TERMINAL_STATES,
    InstanceStatus,
)
from director_aws.exceptions import ConfigurationError

# =============================================================================
# Configuration fields
# =============================================================================


class TemplateField(StrEnum):
    IMAGE = "image"
    TYPE = "type"
    SUBNET_ID = "subnet_id"
    SECURITY_GROUP_IDS = "security_group_ids"
    IAM_PROFILE_NAME = "iam_profile_name"
    KEY_NAME = "key_name"
    AVAILABILITY_ZONE = "availability_zone"
    PLACEMENT_GROUP = "placement_group"
    TENANCY = "tenancy"
    ROOT_VOLUME_SIZE_GB = "root_volume_size_gb"
    ROOT_VOLUME_TYPE = "root_volume_type"
    EBS_OPTIMIZED = "ebs_optimized"
    EBS_VOLUME_COUNT = "ebs_volume_count"
    EBS_VOLUME_SIZE_GIB = "ebs_volume_size_gib"
    EBS_VOLUME_TYPE = "ebs_volume_type"
    EBS_IOPS = "ebs_iops"
    ENABLE_EBS_ENCRYPTION = "enable_ebs_encryption"
    EBS_KMS_KEY_ID = "ebs_kms_key_id"
    USE_SPOT_INSTANCES = "use_spot_instances"
    SPOT_BID_USD_PER_HR = "spot_bid_usd_per_hr"
    BLOCK_DURATION_MINUTES = "block_duration_minutes"
    USER_DATA = "user_data"
    USER_DATA_UNENCODED = "user_data_unencoded"
    AUTOMATIC = "automatic"
    GROUP_ID = "group_id"
    ENABLE_AUTOMATIC_INSTANCE_PROCESSING = "enable_automatic_instance_processing"
    INSTANCE_NAME_PREFIX = "instance_name_prefix"

    @property
    def label(self) -> str:
        return _LABELS.get(self, self.value.replace("_", " ").capitalize())


_LABELS: Final[dict[TemplateField, str]] = {
    TemplateField.IMAGE: "Image (AMI) ID",
    TemplateField.TYPE: "Instance type",
    TemplateField.SUBNET_ID: "Subnet ID",
    TemplateField.SECURITY_GROUP_IDS: "Security group IDs",
    TemplateField.IAM_PROFILE_NAME: "IAM profile name",
    TemplateField.SPOT_BID_USD_PER_HR: "Spot bid (USD/hr)",
    TemplateField.EBS_KMS_KEY_ID: "EBS KMS key ID",
    TemplateField.EBS_IOPS: "EBS IOPS",
}

TEMPLATE_DEFAULTS: Final[dict[TemplateField, str]] = {
    TemplateField.TENANCY: "default",
    TemplateField.ROOT_VOLUME_SIZE_GB: "50",
    TemplateField.ROOT_VOLUME_TYPE: "gp2",
    TemplateField.EBS_OPTIMIZED: "false",
    TemplateField.EBS_VOLUME_COUNT: "0",
    TemplateField.EBS_VOLUME_SIZE_GIB: "500",
    TemplateField.EBS_VOLUME_TYPE: "st1",
    TemplateField.ENABLE_EBS_ENCRYPTION: "false",
    TemplateField.USE_SPOT_INSTANCES: "false",
    TemplateField.AUTOMATIC: "false",
    TemplateField.ENABLE_AUTOMATIC_INSTANCE_PROCESSING: "false",
    TemplateField.INSTANCE_NAME_PREFIX: "director",
}

REQUIRED_FIELDS: Final = (
    TemplateField.IMAGE,
    TemplateField.TYPE,
    TemplateField.SUBNET_ID,
    TemplateField.SECURITY_GROUP_IDS,
)


def _stringify(value: Any) -> str | None:
    match value:
        case None:
            return None
        case bool():
            return "true" if value else "false"
        case list() | tuple():
            return ",".join(str(v).strip() for v in value)
        case _:
            text = str(value).strip()
            return text or None


class TemplateConfig:
    """Read-only view over a raw template configuration.

    Values are normalized to stripped strings; missing or empty values fall
    back to TEMPLATE_DEFAULTS.
    """

    __slots__ = ("_values",)

    def __init__(self, raw: Mapping[str, Any]) -> None:
        self._values = {str(k): _stringify(v) for k, v in raw.items()}

    def get(self, key: TemplateField) -> str | None:
        value = self._values.get(key.value)
        return value if value is not None else TEMPLATE_DEFAULTS.get(key)

    def flag(self, key: TemplateField) -> bool:
        return (self.get(key) or "").lower() == "true"

    def csv(self, key: TemplateField) -> list[str]:
        return [part.strip() for part in (self.get(key) or "").split(",") if part.strip()]


def _int(config: TemplateConfig, key: TemplateField) -> int:
    text = config.get(key)
    try:
        return int(text or "")
    except ValueError as e:
        raise ConfigurationError(f"{key.label} must be an integer: {text}") from e


def _optional_int(config: TemplateConfig, key: TemplateField) -> int | None:
    return _int(config, key) if config.get(key) is not None else None


def _optional_decimal(config: TemplateConfig, key: TemplateField) -> Decimal | None:
    text = config.get(key)
    if text is None:
        return None
    try:
        return Decimal(text)
    except InvalidOperation as e:
        raise ConfigurationError(f"{key.label} must be a decimal: {text}") from e


# =============================================================================
# Template
# =============================================================================


@dataclass(frozen=True, slots=True)
class InstanceTemplate:
    """Immutable EC2 instance template.

    Args:
        name: Template name, written in the template-name tag.
        image_id: AMI ID.
        instance_type: EC2 instance type.
        subnet_id: Subnet for eth0; also the ASG VPC zone identifier.
        security_group_ids: Security groups for eth0.
        tags: User-defined tags.
        automatic: Allocate through an Auto Scaling Group.
        group_id: Name of the launch template and the ASG.
    """

    name: str
    image_id: str
    instance_type: str
    subnet_id: str
    security_group_ids: tuple[str, ...]
    tags: Mapping[str, str] = field(default_factory=dict)
    instance_name_prefix: str = "director"
    iam_profile_name: str | None = None
    key_name: str | None = None
    availability_zone: str | None = None
    placement_group: str | None = None
    tenancy: str = "default"
    root_volume_size_gb: int = 50
    root_volume_type: str = "gp2"
    ebs_optimized: bool = False
    ebs_volume_count: int = 0
    ebs_volume_size_gib: int = 500
    ebs_volume_type: str = "st1"
    ebs_iops: int | None = None
    enable_ebs_encryption: bool = False
    ebs_kms_key_id: str | None = None
    use_spot: bool = False
    spot_bid_usd_per_hr: Decimal | None = None
    block_duration_minutes: int | None = None
    user_data: str | None = None
    user_data_unencoded: str | None = None
    automatic: bool = False
    group_id: str | None = None
    enable_automatic_instance_processing: bool = False

    @classmethod
    def from_config(
        cls,
        name: str,
        raw: Mapping[str, Any],
        tags: Mapping[str, str] | None = None,
    ) -> InstanceTemplate:
        config = TemplateConfig(raw)
        missing = [f.label for f in REQUIRED_FIELDS if config.get(f) is None]
        if missing:
            raise ConfigurationError(f"Template '{name}' is missing {', '.join(missing)}")

        automatic = config.flag(TemplateField.AUTOMATIC)
        group_id = config.get(TemplateField.GROUP_ID)
        if automatic and group_id is None:
            raise ConfigurationError(f"Template '{name}' uses an Auto Scaling Group but has no group_id")

        return cls(
            name=name,
            image_id=config.get(TemplateField.IMAGE) or "",
            instance_type=config.get(TemplateField.TYPE) or "",
            subnet_id=config.get(TemplateField.SUBNET_ID) or "",
            security_group_ids=tuple(config.csv(TemplateField.SECURITY_GROUP_IDS)),
            tags=dict(tags or {}),
            instance_name_prefix=config.get(TemplateField.INSTANCE_NAME_PREFIX) or "director",
            iam_profile_name=config.get(TemplateField.IAM_PROFILE_NAME),
            key_name=config.get(TemplateField.KEY_NAME),
            availability_zone=config.get(TemplateField.AVAILABILITY_ZONE),
            placement_group=config.get(TemplateField.PLACEMENT_GROUP),
            tenancy=config.get(TemplateField.TENANCY) or "default",
            root_volume_size_gb=_int(config, TemplateField.ROOT_VOLUME_SIZE_GB),
            root_volume_type=config.get(TemplateField.ROOT_VOLUME_TYPE) or "gp2",
            ebs_optimized=config.flag(TemplateField.EBS_OPTIMIZED),
            ebs_volume_count=_int(config, TemplateField.EBS_VOLUME_COUNT),
            ebs_volume_size_gib=_int(config, TemplateField.EBS_VOLUME_SIZE_GIB),
            ebs_volume_type=config.get(TemplateField.EBS_VOLUME_TYPE) or "st1",
            ebs_iops=_optional_int(config, TemplateField.EBS_IOPS),
            enable_ebs_encryption=config.flag(TemplateField.ENABLE_EBS_ENCRYPTION),
            ebs_kms_key_id=config.get(TemplateField.EBS_KMS_KEY_ID),
            use_spot=config.flag(TemplateField.USE_SPOT_INSTANCES),
            spot_bid_usd_per_hr=_optional_decimal(config, TemplateField.SPOT_BID_USD_PER_HR),
            block_duration_minutes=_optional_int(config, TemplateField.BLOCK_DURATION_MINUTES),
            user_data=config.get(TemplateField.USER_DATA),
            user_data_unencoded=config.get(TemplateField.USER_DATA_UNENCODED),
            automatic=automatic,
            group_id=group_id,
            enable_automatic_instance_processing=config.flag(
                TemplateField.ENABLE_AUTOMATIC_INSTANCE_PROCESSING,
            ),
        )

    @property
    def user_data_text(self) -> str | None:
        """Plain user data, for APIs where botocore base64-encodes it."""
        if self.user_data_unencoded is not None:
            return self.user_data_unencoded
        if self.user_data is None:
            return None
        try:
            return base64.b64decode(self.user_data, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ConfigurationError("User data is not valid base64-encoded UTF-8") from e

    @property
    def user_data_base64(self) -> str | None:
        """Base64 user data, for launch specifications and launch templates."""
        if self.user_data is not None:
            return self.user_data
        if self.user_data_unencoded is None:
            return None
        return base64.b64encode(self.user_data_unencoded.encode("utf-8")).decode("ascii")


# =============================================================================
# Instance view
# =============================================================================

type Extractor = Callable[[Mapping[str, Any]], Any]


def _launch_time(raw: Mapping[str, Any]) -> str | None:
    value = raw.get("LaunchTime")
    return value.isoformat() if isinstance(value, datetime) else value


DISPLAY_PROPERTIES: Final[Sequence[tuple[str, Extractor]]] = (
    ("instanceId", lambda r: r.get("InstanceId")),
    ("imageId", lambda r: r.get("ImageId")),
    ("instanceType", lambda r: r.get("InstanceType")),
    ("availabilityZone", lambda r: r.get("Placement", {}).get("AvailabilityZone")),
    ("privateIpAddress", lambda r: r.get("PrivateIpAddress")),
    ("privateDnsName", lambda r: r.get("PrivateDnsName") or None),
    ("publicIpAddress", lambda r: r.get("PublicIpAddress")),
    ("publicDnsName", lambda r: r.get("PublicDnsName") or None),
    ("vpcId", lambda r: r.get("VpcId")),
    ("subnetId", lambda r: r.get("SubnetId")),
    ("launchTime", _launch_time),
    ("rootDeviceType", lambda r: r.get("RootDeviceType")),
    ("ebsOptimized", lambda r: r.get("EbsOptimized")),
    ("spotInstanceRequestId", lambda r: r.get("SpotInstanceRequestId")),
)


def instance_state(raw: Mapping[str, Any]) -> str | None:
    return raw.get("State", {}).get("Name")


def is_terminal(raw: Mapping[str, Any]) -> bool:
    return instance_state(raw) in TERMINAL_STATES


def tag_value(raw: Mapping[str, Any], key: str) -> str | None:
    for tag in raw.get("Tags", []):
        if tag.get("Key") == key:
            return tag.get("Value")
    return None


@dataclass(frozen=True, slots=True)
class Instance:
    """Uniform view of a cloud instance plus its describe-instances payload."""

    virtual_id: str
    ec2_instance_id: str
    state: str | None
    private_ip: str | None
    tags: Mapping[str, str]
    raw: Mapping[str, Any] = field(repr=False, compare=False)

    @classmethod
    def from_ec2(cls, virtual_id: str, raw: Mapping[str, Any]) -> Instance:
        return cls(
            virtual_id=virtual_id,
            ec2_instance_id=raw["InstanceId"],
            state=instance_state(raw),
            private_ip=raw.get("PrivateIpAddress"),
            tags={t["Key"]: t["Value"] for t in raw.get("Tags", [])},
            raw=raw,
        )

    @property
    def status(self) -> InstanceStatus:
        return INSTANCE_STATUS_BY_STATE.get(self.state or "", InstanceStatus.UNKNOWN)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def properties(self) -> dict[str, str]:
        result: dict[str, str] = {}
        for name, extract in DISPLAY_PROPERTIES:
            value = extract(self.raw)
            if value is not None:
                result[name] = str(value)
        return result
