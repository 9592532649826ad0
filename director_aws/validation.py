"""Template validation against live AWS state.

The validator runs every check and accumulates conditions keyed by template
field instead of stopping at the first problem. It only raises for AWS
failures it does not recognize (throttling that outlived botocore's own
retries, permission problems on describe calls and so on); those are
classified like any other provider failure.

Example:
    validator = TemplateValidator(clients.ec2, clients.iam, clients.kms, config)
    result = validator.validate("workers", raw_template)
    for condition in result.errors:
        print(condition)
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

from botocore.exceptions import ClientError
from loguru import logger

from director_aws.aws_errors import error_code, error_message
from director_aws.config import ProviderConfig, VolumeRange
from director_aws.constants import (
    EBS_ROOT_DEVICE_TYPE,
    IOPS_VOLUME_TYPE,
    MAX_TAGS_ALLOWED,
    MAX_VOLUMES_PER_INSTANCE,
    MIN_ROOT_VOLUME_SIZE_GB,
    ROOT_VOLUME_TYPES,
    TENANCY_TYPES,
)
from director_aws.exceptions import ConfigurationError
from director_aws.template import REQUIRED_FIELDS, TemplateConfig, TemplateField

if TYPE_CHECKING:
    from mypy_boto3_ec2 import EC2Client
    from mypy_boto3_iam import IAMClient
    from mypy_boto3_kms import KMSClient

log = logger.bind(component="validation")

SIXTY_FOUR_BIT_ARCHITECTURE: Final = "x86_64"
AVAILABLE_STATE: Final = "available"

INVALID_AMI_ID: Final = "InvalidAMIID"
INVALID_PARAMETER_VALUE: Final = "InvalidParameterValue"
INVALID_AVAILABILITY_ZONE: Final = "Invalid availability zone"
INVALID_PLACEMENT_GROUP: Final = "InvalidPlacementGroup"
INVALID_SUBNET_ID: Final = "InvalidSubnetID"
INVALID_SECURITY_GROUP: Final = "InvalidGroup"
INVALID_KEY_PAIR: Final = "InvalidKeyPair"
NO_SUCH_ENTITY: Final = "NoSuchEntity"
KMS_NOT_FOUND: Final = "NotFoundException"
KMS_ACCESS_DENIED: Final = "AccessDeniedException"

BLOCK_DURATION_STEP: Final = 60
BLOCK_DURATION_RANGE: Final = (60, 360)

_UNSUPPORTED_PLATFORM = "Only certain Linux platforms are supported"


class BlacklistKey(StrEnum):
    """Keys of the ``[image_blacklists]`` configuration table."""

    OWNER_ID = "ownerId"
    SPOT_OWNER_ID = "spotOwnerId"
    PLATFORM = "platform"
    SPOT_PLATFORM = "spotPlatform"


# =============================================================================
# Messages
# =============================================================================

MISSING_FIELD_MSG: Final = "%s is required"
INVALID_AMI_NAME_MSG: Final = "AMI ID does not start with ami-: %s"
INVALID_AMI_MSG: Final = "Invalid AMI: %s"
INVALID_AMI_ARCHITECTURE_MSG: Final = "Only 64-bit architecture is supported. Invalid architecture for AMI %s: %s"
INVALID_AMI_OWNER_MSG: Final = _UNSUPPORTED_PLATFORM + ". Invalid owner Id for AMI %s: %s (%s)"
INVALID_AMI_OWNER_SPOT_MSG: Final = (
    _UNSUPPORTED_PLATFORM + " for use with Spot instances. Invalid owner Id for AMI %s: %s (%s)"
)
INVALID_AMI_PLATFORM_MSG: Final = _UNSUPPORTED_PLATFORM + ". Invalid platform for AMI %s: %s (%s)"
INVALID_AMI_PLATFORM_SPOT_MSG: Final = (
    _UNSUPPORTED_PLATFORM + " for use with Spot instances. Invalid platform for AMI %s: %s (%s)"
)
INVALID_AMI_STATE_MSG: Final = "AMI should be available. Invalid state for AMI %s: %s"
INVALID_AMI_INSTANCE_TYPE_COMPATIBILITY_MSG: Final = (
    "Incompatible AMI virtualization type. Instance type %s does not support %s virtualization type of AMI %s."
)
INVALID_AMI_ROOT_DEVICE_TYPE_MSG: Final = (
    "Only EBS root device type is supported. Invalid root device type for AMI %s: %s"
)
INVALID_AVAILABILITY_ZONE_MSG: Final = INVALID_AVAILABILITY_ZONE + " : %s"
INVALID_PLACEMENT_GROUP_MSG: Final = "Invalid placement group: %s"
INVALID_TENANCY_MSG: Final = "Invalid tenancy type: %s. Available options: %s"
INVALID_IAM_PROFILE_NAME_MSG: Final = "Invalid IAM instance profile name: %s"
INVALID_SUBNET_MSG: Final = "Invalid subnet ID: %s"
INVALID_SECURITY_GROUP_MSG: Final = "Invalid security group ID: %s"
INVALID_SECURITY_GROUP_VPC_MSG: Final = "Security group %s and subnet %s belong to different networks."
INVALID_KEY_NAME_MSG: Final = "Invalid key name: %s"
INVALID_ROOT_VOLUME_TYPE_MSG: Final = "Invalid root volume type %s. Available options: %s"
INVALID_ROOT_VOLUME_SIZE_FORMAT_MSG: Final = "Root volume size must be an integer: %s"
INVALID_ROOT_VOLUME_SIZE_MSG: Final = "Root volume size should be at least %dGB. Current configuration: %dGB"
INVALID_COUNT_EMPTY_MSG: Final = "%s not found: %s"
INVALID_COUNT_DUPLICATES_MSG: Final = "More than one %s found with identifier %s"
MISSING_SPOT_BID_MSG: Final = "%s is required when Spot instances are used"
INVALID_SPOT_BID_MSG: Final = (
    "Invalid Spot bid %s. Spot bid must be a positive value representing the price in USD/hr"
)
INVALID_BLOCK_DURATION_MINUTES_MSG: Final = (
    "Invalid block duration in minutes, %s. Block duration must be a multiple of 60 "
    "(60, 120, 180, 240, 300, or 360)"
)
INVALID_EBS_VOLUME_COUNT_FORMAT_MSG: Final = "EBS volume count must be a integer: %s"
INVALID_EBS_VOLUME_COUNT_MSG: Final = "EBS volume count must be a non-negative integer no greater than %s"
INVALID_EBS_VOLUME_SIZE_FORMAT_MSG: Final = "EBS volume size must be a positive integer: %s"
VOLUME_SIZE_NOT_IN_RANGE_MSG: Final = "Volume size for %s must be between %d GiB and %d GiB"
UNKNOWN_VOLUME_TYPE_MSG: Final = "Volume type unknown: %s"
MALFORMED_VOLUME_METADATA_MSG: Final = "Malformed metadata: %s"
IOPS_NOT_PERMITTED_MSG: Final = "IOPS should only be set for io1 volume type"
IOPS_REQUIRED_MSG: Final = "IOPS must be set for io1 volume type"
INVALID_IOPS_FORMAT_MSG: Final = "IOPS must be a positive integer"
IOPS_NOT_IN_RANGE_MSG: Final = "IOPS of %d for %s is not in range, it must be between %d and %d"
INVALID_EBS_ENCRYPTION_MSG: Final = (
    "EBS volume count should be greater than 0 to specify EBS encryption properties"
)
INVALID_KMS_WHEN_ENCRYPTION_DISABLED_MSG: Final = "The KMS Key ID can only be set with encryption enabled"
INVALID_KMS_NOT_FOUND_MSG: Final = "The KMS Key ID could not be found"
KMS_KEY_DENIED_MSG: Final = (
    "Access denied attempting to verify the KMS Key ID. Ensure kms:DescribeKey permission is granted"
)
KMS_KEY_ERROR_MSG: Final = "Could not verify the KMS Key ID: %s"
BOTH_USER_DATA_USED_MSG: Final = "Specify only the encoded or unencoded user data, not both"
TOO_MANY_TAGS_MSG: Final = "Number of tags exceeds the maximum of %d"


# =============================================================================
# Result
# =============================================================================


@dataclass(frozen=True, slots=True)
class ValidationCondition:
    """One problem with one template field; ``field`` is None for template-wide issues."""

    field: TemplateField | None
    message: str

    def __str__(self) -> str:
        return self.message if self.field is None else f"{self.field.label}: {self.message}"


@dataclass(slots=True)
class ValidationResult:
    """Accumulator of validation conditions, in the order they were found."""

    errors: list[ValidationCondition] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add_error(self, key: TemplateField | None, message: str, *args: Any) -> None:
        condition = ValidationCondition(key, message % args if args else message)
        log.debug("Validation error: {condition}", condition=condition)
        self.errors.append(condition)

    def for_field(self, key: TemplateField | None) -> list[ValidationCondition]:
        return [c for c in self.errors if c.field == key]

    def messages(self, key: TemplateField | None) -> list[str]:
        return [c.message for c in self.for_field(key)]


def _parse_int(text: str | None) -> int | None:
    try:
        return int(text or "")
    except ValueError:
        return None


# =============================================================================
# Validator
# =============================================================================


class TemplateValidator:
    """Checks an instance template against the account it will run in."""

    def __init__(
        self,
        ec2: EC2Client,
        iam: IAMClient,
        kms: KMSClient,
        config: ProviderConfig | None = None,
    ) -> None:
        self.ec2 = ec2
        self.iam = iam
        self.kms = kms
        self.config = config or ProviderConfig()

    def validate(
        self,
        name: str,
        raw: Mapping[str, Any],
        tags: Mapping[str, str] | None = None,
    ) -> ValidationResult:
        log.info("Validating template {name}", name=name)
        config = TemplateConfig(raw)
        result = ValidationResult()

        if self.check_required(config, result):
            self.check_image(config, result)
            vpc_subnet = self.check_subnet(config, result)
            vpc_groups = self.check_security_groups(config, result)
            self.check_vpc(vpc_subnet, vpc_groups, result)
        self.check_availability_zone(config, result)
        self.check_placement_group(config, result)
        self.check_tenancy(config, result)
        self.check_iam_profile(config, result)
        self.check_root_volume_size(config, result)
        self.check_root_volume_type(config, result)
        self.check_ebs_volumes(config, result)
        self.check_key_name(config, result)
        self.check_spot_parameters(config, result)
        self.check_user_data(config, result)
        self.check_tags(tags, result)

        if result.ok:
            log.info("Template {name} is valid", name=name)
        else:
            log.warning("Template {name} has {n} validation error(s)", name=name, n=len(result.errors))
        return result

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def check_required(config: TemplateConfig, result: ValidationResult) -> bool:
        complete = True
        for key in REQUIRED_FIELDS:
            if config.get(key) is None:
                result.add_error(key, MISSING_FIELD_MSG, key.label)
                complete = False
        return complete

    @staticmethod
    def check_count(result: ValidationResult, key: TemplateField, identifier: str, found: Sequence[Any]) -> None:
        if not found:
            result.add_error(key, INVALID_COUNT_EMPTY_MSG, key.label, identifier)
        elif len(found) > 1:
            result.add_error(key, INVALID_COUNT_DUPLICATES_MSG, key.label, identifier)

    def _blacklisted(self, key: BlacklistKey, value: str) -> str | None:
        return self.config.image_blacklists.get(key, {}).get(value.lower())

    # -------------------------------------------------------------------------
    # Image
    # -------------------------------------------------------------------------

    def check_image(self, config: TemplateConfig, result: ValidationResult) -> None:
        image_id = config.get(TemplateField.IMAGE) or ""
        instance_type = config.get(TemplateField.TYPE) or ""

        if not image_id.startswith("ami-"):
            result.add_error(TemplateField.IMAGE, INVALID_AMI_NAME_MSG, image_id)
            return

        log.info("Describing AMI {image}", image=image_id)
        try:
            images = self.ec2.describe_images(ImageIds=[image_id]).get("Images", [])
        except ClientError as e:
            if not (error_code(e) or "").startswith(INVALID_AMI_ID):
                raise
            result.add_error(TemplateField.IMAGE, INVALID_AMI_MSG, image_id)
            return

        if len(images) != 1:
            self.check_count(result, TemplateField.IMAGE, image_id, images)
            return

        image = images[0]
        architecture = image.get("Architecture")
        if architecture != SIXTY_FOUR_BIT_ARCHITECTURE:
            result.add_error(TemplateField.IMAGE, INVALID_AMI_ARCHITECTURE_MSG, image_id, architecture)

        spot = config.flag(TemplateField.USE_SPOT_INSTANCES)
        self._check_blacklist(
            result, image_id, image.get("OwnerId"),
            (BlacklistKey.OWNER_ID, INVALID_AMI_OWNER_MSG),
            (BlacklistKey.SPOT_OWNER_ID, INVALID_AMI_OWNER_SPOT_MSG) if spot else None,
        )
        self._check_blacklist(
            result, image_id, image.get("Platform"),
            (BlacklistKey.PLATFORM, INVALID_AMI_PLATFORM_MSG),
            (BlacklistKey.SPOT_PLATFORM, INVALID_AMI_PLATFORM_SPOT_MSG) if spot else None,
        )

        if image.get("State") != AVAILABLE_STATE:
            result.add_error(TemplateField.IMAGE, INVALID_AMI_STATE_MSG, image_id, image.get("State"))

        virtualization = image.get("VirtualizationType")
        if not self.config.virtualization_mappings.supports(virtualization, instance_type):
            result.add_error(
                TemplateField.IMAGE, INVALID_AMI_INSTANCE_TYPE_COMPATIBILITY_MSG,
                instance_type, virtualization, image_id,
            )

        if image.get("RootDeviceType") != EBS_ROOT_DEVICE_TYPE:
            result.add_error(
                TemplateField.IMAGE, INVALID_AMI_ROOT_DEVICE_TYPE_MSG, image_id, image.get("RootDeviceType"),
            )

    def _check_blacklist(
        self,
        result: ValidationResult,
        image_id: str,
        value: str | None,
        general: tuple[BlacklistKey, str],
        spot: tuple[BlacklistKey, str] | None,
    ) -> None:
        if value is None:
            return
        for key, message in (general, spot) if spot else (general,):
            if (reason := self._blacklisted(key, value)) is not None:
                result.add_error(TemplateField.IMAGE, message, image_id, value, reason)
                return

    # -------------------------------------------------------------------------
    # Network
    # -------------------------------------------------------------------------

    def check_subnet(self, config: TemplateConfig, result: ValidationResult) -> dict[str, str]:
        """Returns ``{vpc id: subnet id}`` when the subnet resolved to exactly one."""
        subnet_id = config.get(TemplateField.SUBNET_ID) or ""
        log.info("Describing subnet {subnet}", subnet=subnet_id)
        try:
            subnets = self.ec2.describe_subnets(SubnetIds=[subnet_id]).get("Subnets", [])
        except ClientError as e:
            if not (error_code(e) or "").startswith(INVALID_SUBNET_ID):
                raise
            result.add_error(TemplateField.SUBNET_ID, INVALID_SUBNET_MSG, subnet_id)
            return {}
        self.check_count(result, TemplateField.SUBNET_ID, subnet_id, subnets)
        return {subnets[0]["VpcId"]: subnet_id} if len(subnets) == 1 else {}

    def check_security_groups(self, config: TemplateConfig, result: ValidationResult) -> dict[str, set[str]]:
        """Returns the valid security groups keyed by VPC id."""
        by_vpc: dict[str, set[str]] = {}
        for group_id in config.csv(TemplateField.SECURITY_GROUP_IDS):
            log.info("Describing security group {group}", group=group_id)
            try:
                groups = self.ec2.describe_security_groups(GroupIds=[group_id]).get("SecurityGroups", [])
            except ClientError as e:
                if not (error_code(e) or "").startswith(INVALID_SECURITY_GROUP):
                    raise
                result.add_error(TemplateField.SECURITY_GROUP_IDS, INVALID_SECURITY_GROUP_MSG, group_id)
                continue
            self.check_count(result, TemplateField.SECURITY_GROUP_IDS, group_id, groups)
            if len(groups) == 1:
                by_vpc.setdefault(groups[0]["VpcId"], set()).add(group_id)
        return by_vpc

    @staticmethod
    def check_vpc(
        vpc_subnet: Mapping[str, str],
        vpc_groups: Mapping[str, set[str]],
        result: ValidationResult,
    ) -> None:
        if len(vpc_subnet) != 1:
            log.error("Skipping VPC validation due to subnet validation error")
            return
        if not vpc_groups:
            log.error("Skipping VPC validation due to security group validation error")
            return

        ((vpc_id, subnet_id),) = vpc_subnet.items()
        foreign = sorted(g for vpc, groups in vpc_groups.items() if vpc != vpc_id for g in groups)
        if foreign:
            result.add_error(
                TemplateField.SECURITY_GROUP_IDS, INVALID_SECURITY_GROUP_VPC_MSG,
                ", ".join(foreign), subnet_id,
            )

    def check_availability_zone(self, config: TemplateConfig, result: ValidationResult) -> None:
        zone = config.get(TemplateField.AVAILABILITY_ZONE)
        if zone is None:
            return
        log.info("Describing zone {zone}", zone=zone)
        try:
            zones = self.ec2.describe_availability_zones(ZoneNames=[zone]).get("AvailabilityZones", [])
        except ClientError as e:
            if error_code(e) != INVALID_PARAMETER_VALUE or INVALID_AVAILABILITY_ZONE not in error_message(e):
                raise
            result.add_error(TemplateField.AVAILABILITY_ZONE, INVALID_AVAILABILITY_ZONE_MSG, zone)
            return
        self.check_count(result, TemplateField.AVAILABILITY_ZONE, zone, zones)

    def check_placement_group(self, config: TemplateConfig, result: ValidationResult) -> None:
        group = config.get(TemplateField.PLACEMENT_GROUP)
        if group is None:
            return
        log.info("Describing placement group {group}", group=group)
        try:
            groups = self.ec2.describe_placement_groups(GroupNames=[group]).get("PlacementGroups", [])
        except ClientError as e:
            if not (error_code(e) or "").startswith(INVALID_PLACEMENT_GROUP):
                raise
            result.add_error(TemplateField.PLACEMENT_GROUP, INVALID_PLACEMENT_GROUP_MSG, group)
            return
        self.check_count(result, TemplateField.PLACEMENT_GROUP, group, groups)

    @staticmethod
    def check_tenancy(config: TemplateConfig, result: ValidationResult) -> None:
        tenancy = config.get(TemplateField.TENANCY)
        if tenancy not in TENANCY_TYPES:
            result.add_error(TemplateField.TENANCY, INVALID_TENANCY_MSG, tenancy, ", ".join(TENANCY_TYPES))

    def check_key_name(self, config: TemplateConfig, result: ValidationResult) -> None:
        key_name = config.get(TemplateField.KEY_NAME)
        if key_name is None:
            return
        log.info("Describing key pair")
        try:
            pairs = self.ec2.describe_key_pairs(KeyNames=[key_name]).get("KeyPairs", [])
        except ClientError as e:
            if not (error_code(e) or "").startswith(INVALID_KEY_PAIR):
                raise
            result.add_error(TemplateField.KEY_NAME, INVALID_KEY_NAME_MSG, key_name)
            return
        # the key name is not echoed back
        self.check_count(result, TemplateField.KEY_NAME, "NotDisplayed", pairs)

    # -------------------------------------------------------------------------
    # IAM
    # -------------------------------------------------------------------------

    def check_iam_profile(self, config: TemplateConfig, result: ValidationResult) -> None:
        profile = config.get(TemplateField.IAM_PROFILE_NAME)
        if profile is None:
            return
        try:
            self.iam.get_instance_profile(InstanceProfileName=profile)
        except ClientError as e:
            if error_code(e) != NO_SUCH_ENTITY:
                raise
            result.add_error(TemplateField.IAM_PROFILE_NAME, INVALID_IAM_PROFILE_NAME_MSG, profile)

    # -------------------------------------------------------------------------
    # Volumes
    # -------------------------------------------------------------------------

    @staticmethod
    def check_root_volume_size(config: TemplateConfig, result: ValidationResult) -> None:
        text = config.get(TemplateField.ROOT_VOLUME_SIZE_GB)
        size = _parse_int(text)
        if size is None:
            result.add_error(TemplateField.ROOT_VOLUME_SIZE_GB, INVALID_ROOT_VOLUME_SIZE_FORMAT_MSG, text)
        elif size < MIN_ROOT_VOLUME_SIZE_GB:
            result.add_error(
                TemplateField.ROOT_VOLUME_SIZE_GB, INVALID_ROOT_VOLUME_SIZE_MSG, MIN_ROOT_VOLUME_SIZE_GB, size,
            )

    @staticmethod
    def check_root_volume_type(config: TemplateConfig, result: ValidationResult) -> None:
        volume_type = config.get(TemplateField.ROOT_VOLUME_TYPE)
        if volume_type not in ROOT_VOLUME_TYPES:
            result.add_error(
                TemplateField.ROOT_VOLUME_TYPE, INVALID_ROOT_VOLUME_TYPE_MSG,
                volume_type, ", ".join(ROOT_VOLUME_TYPES),
            )

    def check_ebs_volumes(self, config: TemplateConfig, result: ValidationResult) -> None:
        text = config.get(TemplateField.EBS_VOLUME_COUNT)
        count = _parse_int(text)
        if count is None:
            result.add_error(TemplateField.EBS_VOLUME_COUNT, INVALID_EBS_VOLUME_COUNT_FORMAT_MSG, text)
            return
        if not 0 <= count <= MAX_VOLUMES_PER_INSTANCE:
            result.add_error(
                TemplateField.EBS_VOLUME_COUNT, INVALID_EBS_VOLUME_COUNT_MSG, MAX_VOLUMES_PER_INSTANCE,
            )
            return

        encrypted = config.flag(TemplateField.ENABLE_EBS_ENCRYPTION)
        kms_key_id = config.get(TemplateField.EBS_KMS_KEY_ID)

        if count == 0:
            # encryption applies to the additional volumes only, never to the root
            if encrypted:
                result.add_error(TemplateField.ENABLE_EBS_ENCRYPTION, INVALID_EBS_ENCRYPTION_MSG)
            if kms_key_id is not None:
                result.add_error(TemplateField.EBS_KMS_KEY_ID, INVALID_EBS_ENCRYPTION_MSG)
            return

        if kms_key_id is not None:
            if not encrypted:
                result.add_error(TemplateField.EBS_KMS_KEY_ID, INVALID_KMS_WHEN_ENCRYPTION_DISABLED_MSG)
            self.check_kms_key(kms_key_id, result)

        volume_type = config.get(TemplateField.EBS_VOLUME_TYPE) or ""
        try:
            metadata = self.config.ebs_metadata(volume_type)
        except KeyError:
            result.add_error(TemplateField.EBS_VOLUME_TYPE, UNKNOWN_VOLUME_TYPE_MSG, volume_type)
            return
        except ConfigurationError as e:
            result.add_error(TemplateField.EBS_VOLUME_TYPE, MALFORMED_VOLUME_METADATA_MSG, e)
            return

        size_text = config.get(TemplateField.EBS_VOLUME_SIZE_GIB)
        size = _parse_int(size_text)
        if size is None:
            result.add_error(TemplateField.EBS_VOLUME_SIZE_GIB, INVALID_EBS_VOLUME_SIZE_FORMAT_MSG, size_text)
            return
        if not metadata.size.min <= size <= metadata.size.max:
            result.add_error(
                TemplateField.EBS_VOLUME_SIZE_GIB, VOLUME_SIZE_NOT_IN_RANGE_MSG,
                volume_type, metadata.size.min, metadata.size.max,
            )

        self.check_ebs_iops(config, volume_type, metadata.iops, result)

    @staticmethod
    def check_ebs_iops(
        config: TemplateConfig,
        volume_type: str,
        iops_range: VolumeRange | None,
        result: ValidationResult,
    ) -> None:
        text = config.get(TemplateField.EBS_IOPS)
        if volume_type != IOPS_VOLUME_TYPE:
            if text is not None:
                result.add_error(TemplateField.EBS_IOPS, IOPS_NOT_PERMITTED_MSG)
            return
        if text is None:
            result.add_error(TemplateField.EBS_IOPS, IOPS_REQUIRED_MSG)
            return
        iops = _parse_int(text)
        if iops is None or iops <= 0:
            result.add_error(TemplateField.EBS_IOPS, INVALID_IOPS_FORMAT_MSG)
            return
        if iops_range is not None and not iops_range.min <= iops <= iops_range.max:
            result.add_error(
                TemplateField.EBS_IOPS, IOPS_NOT_IN_RANGE_MSG, iops, volume_type, iops_range.min, iops_range.max,
            )

    def check_kms_key(self, kms_key_id: str, result: ValidationResult) -> None:
        try:
            self.kms.describe_key(KeyId=kms_key_id)
        except ClientError as e:
            code = error_code(e)
            if code == KMS_NOT_FOUND:
                result.add_error(TemplateField.EBS_KMS_KEY_ID, INVALID_KMS_NOT_FOUND_MSG)
            elif code == KMS_ACCESS_DENIED:
                result.add_error(TemplateField.EBS_KMS_KEY_ID, KMS_KEY_DENIED_MSG)
            else:
                result.add_error(TemplateField.EBS_KMS_KEY_ID, KMS_KEY_ERROR_MSG, error_message(e))

    # -------------------------------------------------------------------------
    # Spot, user data and tags
    # -------------------------------------------------------------------------

    @staticmethod
    def check_spot_parameters(config: TemplateConfig, result: ValidationResult) -> None:
        bid = config.get(TemplateField.SPOT_BID_USD_PER_HR)
        if bid is None:
            if config.flag(TemplateField.USE_SPOT_INSTANCES):
                result.add_error(
                    TemplateField.SPOT_BID_USD_PER_HR,
                    MISSING_SPOT_BID_MSG,
                    TemplateField.SPOT_BID_USD_PER_HR.label,
                )
        else:
            try:
                valid = Decimal(bid) > 0
            except InvalidOperation:
                valid = False
            if not valid:
                result.add_error(TemplateField.SPOT_BID_USD_PER_HR, INVALID_SPOT_BID_MSG, bid)

        duration_text = config.get(TemplateField.BLOCK_DURATION_MINUTES)
        if duration_text is not None:
            duration = _parse_int(duration_text)
            low, high = BLOCK_DURATION_RANGE
            if duration is None or not low <= duration <= high or duration % BLOCK_DURATION_STEP:
                result.add_error(
                    TemplateField.BLOCK_DURATION_MINUTES, INVALID_BLOCK_DURATION_MINUTES_MSG, duration_text,
                )

    @staticmethod
    def check_user_data(config: TemplateConfig, result: ValidationResult) -> None:
        encoded = config.get(TemplateField.USER_DATA)
        if encoded is not None and config.get(TemplateField.USER_DATA_UNENCODED) is not None:
            result.add_error(TemplateField.USER_DATA, BOTH_USER_DATA_USED_MSG)

    @staticmethod
    def check_tags(tags: Mapping[str, str] | None, result: ValidationResult) -> None:
        if tags is not None and len(tags) > MAX_TAGS_ALLOWED:
            result.add_error(None, TOO_MANY_TAGS_MSG, MAX_TAGS_ALLOWED)
