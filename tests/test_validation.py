from unittest.mock import MagicMock

import pytest

from director_aws.config import EbsMetadata, ProviderConfig
from director_aws.template import TemplateField
from director_aws.validation import TemplateValidator, ValidationCondition, ValidationResult
from tests.conftest import client_error, image

pytestmark = [pytest.mark.xdist_group("unit")]

VALID = {
    "image": "ami-12345678",
    "type": "m5.xlarge",
    "subnet_id": "subnet-1",
    "security_group_ids": "sg-1",
}


def vpc_of(group_id: str) -> str:
    return "vpc-2" if group_id.startswith("sg-other") else "vpc-1"


@pytest.fixture
def ec2() -> MagicMock:
    client = MagicMock()
    client.describe_images.return_value = {"Images": [image()]}
    client.describe_subnets.return_value = {"Subnets": [{"SubnetId": "subnet-1", "VpcId": "vpc-1"}]}
    client.describe_security_groups.side_effect = lambda GroupIds: {
        "SecurityGroups": [{"GroupId": g, "VpcId": vpc_of(g)} for g in GroupIds],
    }
    client.describe_availability_zones.return_value = {"AvailabilityZones": [{"ZoneName": "us-east-1a"}]}
    client.describe_placement_groups.return_value = {"PlacementGroups": [{"GroupName": "pg-1"}]}
    client.describe_key_pairs.return_value = {"KeyPairs": [{"KeyName": "ops"}]}
    return client


@pytest.fixture
def iam() -> MagicMock:
    return MagicMock()


@pytest.fixture
def kms() -> MagicMock:
    return MagicMock()


@pytest.fixture
def validator(ec2, iam, kms) -> TemplateValidator:
    return TemplateValidator(ec2, iam, kms)


def validate(validator: TemplateValidator, tags=None, **overrides) -> ValidationResult:
    return validator.validate("workers", {**VALID, **overrides}, tags)


class TestValidationResult:
    def test_formats_messages(self):
        result = ValidationResult()
        result.add_error(TemplateField.IMAGE, "Invalid AMI: %s", "ami-1")
        result.add_error(None, "100% custom")
        assert result.messages(TemplateField.IMAGE) == ["Invalid AMI: ami-1"]
        assert result.messages(None) == ["100% custom"]
        assert not result.ok

    def test_condition_str(self):
        assert str(ValidationCondition(TemplateField.IMAGE, "bad")) == "Image (AMI) ID: bad"
        assert str(ValidationCondition(None, "bad")) == "bad"


class TestValidTemplate:
    def test_no_conditions(self, validator):
        assert validate(validator).errors == []

    def test_optional_lookups(self, validator, ec2, iam):
        result = validate(
            validator,
            availability_zone="us-east-1a",
            placement_group="pg-1",
            key_name="ops",
            iam_profile_name="worker-profile",
        )
        assert result.ok
        ec2.describe_key_pairs.assert_called_once_with(KeyNames=["ops"])
        iam.get_instance_profile.assert_called_once_with(InstanceProfileName="worker-profile")


class TestRequiredFields:
    def test_missing_fields_skip_network_checks(self, validator, ec2):
        result = validator.validate("workers", {"type": "m5.xlarge"})
        assert result.messages(TemplateField.IMAGE) == ["Image (AMI) ID is required"]
        assert result.messages(TemplateField.SUBNET_ID) == ["Subnet ID is required"]
        ec2.describe_images.assert_not_called()
        ec2.describe_subnets.assert_not_called()


class TestImage:
    def test_bad_prefix(self, validator, ec2):
        result = validate(validator, image="img-1")
        assert result.messages(TemplateField.IMAGE) == ["AMI ID does not start with ami-: img-1"]
        ec2.describe_images.assert_not_called()

    def test_unknown_image(self, validator, ec2):
        ec2.describe_images.side_effect = client_error("InvalidAMIID.NotFound")
        assert validate(validator).messages(TemplateField.IMAGE) == ["Invalid AMI: ami-12345678"]

    def test_no_image(self, validator, ec2):
        ec2.describe_images.return_value = {"Images": []}
        assert validate(validator).messages(TemplateField.IMAGE) == ["Image (AMI) ID not found: ami-12345678"]

    def test_every_image_problem_is_reported(self, validator, ec2):
        ec2.describe_images.return_value = {
            "Images": [
                image(
                    Architecture="i386",
                    State="pending",
                    VirtualizationType="paravirtual",
                    RootDeviceType="instance-store",
                ),
            ],
        }
        messages = validate(validator).messages(TemplateField.IMAGE)
        assert messages == [
            "Only 64-bit architecture is supported. Invalid architecture for AMI ami-12345678: i386",
            "AMI should be available. Invalid state for AMI ami-12345678: pending",
            "Incompatible AMI virtualization type. Instance type m5.xlarge does not support "
            "paravirtual virtualization type of AMI ami-12345678.",
            "Only EBS root device type is supported. "
            "Invalid root device type for AMI ami-12345678: instance-store",
        ]

    def test_blacklisted_platform(self, ec2, iam, kms):
        config = ProviderConfig(image_blacklists={"platform": {"windows": "Windows is not supported"}})
        ec2.describe_images.return_value = {"Images": [image(Platform="Windows")]}
        result = validate(TemplateValidator(ec2, iam, kms, config))
        assert result.messages(TemplateField.IMAGE) == [
            "Only certain Linux platforms are supported. "
            "Invalid platform for AMI ami-12345678: Windows (Windows is not supported)",
        ]

    def test_spot_only_blacklist(self, ec2, iam, kms):
        config = ProviderConfig(image_blacklists={"spotOwnerId": {"111122223333": "Marketplace image"}})
        validator = TemplateValidator(ec2, iam, kms, config)

        assert validate(validator).ok
        spot = validate(validator, use_spot_instances="true", spot_bid_usd_per_hr="0.1")
        assert spot.messages(TemplateField.IMAGE) == [
            "Only certain Linux platforms are supported for use with Spot instances. "
            "Invalid owner Id for AMI ami-12345678: 111122223333 (Marketplace image)",
        ]


class TestNetwork:
    def test_unknown_subnet(self, validator, ec2):
        ec2.describe_subnets.side_effect = client_error("InvalidSubnetID.NotFound")
        assert validate(validator).messages(TemplateField.SUBNET_ID) == ["Invalid subnet ID: subnet-1"]

    def test_unknown_security_group(self, validator, ec2):
        ec2.describe_security_groups.side_effect = client_error("InvalidGroup.NotFound")
        result = validate(validator)
        assert result.messages(TemplateField.SECURITY_GROUP_IDS) == ["Invalid security group ID: sg-1"]

    def test_security_group_in_another_vpc(self, validator):
        result = validate(validator, security_group_ids="sg-1,sg-other-b,sg-other-a")
        assert result.messages(TemplateField.SECURITY_GROUP_IDS) == [
            "Security group sg-other-a, sg-other-b and subnet subnet-1 belong to different networks.",
        ]

    def test_invalid_zone(self, validator, ec2):
        ec2.describe_availability_zones.side_effect = client_error(
            "InvalidParameterValue", "Invalid availability zone: [us-east-1z]",
        )
        result = validate(validator, availability_zone="us-east-1z")
        assert result.messages(TemplateField.AVAILABILITY_ZONE) == ["Invalid availability zone : us-east-1z"]

    def test_unknown_placement_group(self, validator, ec2):
        ec2.describe_placement_groups.side_effect = client_error("InvalidPlacementGroup.Unknown")
        result = validate(validator, placement_group="pg-x")
        assert result.messages(TemplateField.PLACEMENT_GROUP) == ["Invalid placement group: pg-x"]

    def test_unknown_key_pair(self, validator, ec2):
        ec2.describe_key_pairs.side_effect = client_error("InvalidKeyPair.NotFound")
        assert validate(validator, key_name="nope").messages(TemplateField.KEY_NAME) == ["Invalid key name: nope"]

    def test_unexpected_errors_propagate(self, validator, ec2):
        ec2.describe_subnets.side_effect = client_error("UnauthorizedOperation")
        with pytest.raises(Exception, match="UnauthorizedOperation"):
            validate(validator)

    def test_tenancy(self, validator):
        result = validate(validator, tenancy="host")
        assert result.messages(TemplateField.TENANCY) == [
            "Invalid tenancy type: host. Available options: default, dedicated",
        ]


class TestIam:
    def test_unknown_profile(self, validator, iam):
        iam.get_instance_profile.side_effect = client_error("NoSuchEntity")
        result = validate(validator, iam_profile_name="ghost")
        assert result.messages(TemplateField.IAM_PROFILE_NAME) == ["Invalid IAM instance profile name: ghost"]


class TestVolumes:
    @pytest.mark.parametrize(
        ("size", "message"),
        [
            ("9", "Root volume size should be at least 10GB. Current configuration: 9GB"),
            ("big", "Root volume size must be an integer: big"),
        ],
    )
    def test_root_volume_size(self, validator, size, message):
        result = validate(validator, root_volume_size_gb=size)
        assert result.messages(TemplateField.ROOT_VOLUME_SIZE_GB) == [message]

    def test_root_volume_type(self, validator):
        result = validate(validator, root_volume_type="io1")
        assert result.messages(TemplateField.ROOT_VOLUME_TYPE) == [
            "Invalid root volume type io1. Available options: gp2, standard",
        ]

    @pytest.mark.parametrize("count", ["-1", "11"])
    def test_volume_count_range(self, validator, count):
        result = validate(validator, ebs_volume_count=count)
        assert result.messages(TemplateField.EBS_VOLUME_COUNT) == [
            "EBS volume count must be a non-negative integer no greater than 10",
        ]

    def test_volume_size_range(self, validator):
        result = validate(validator, ebs_volume_count="1", ebs_volume_type="st1", ebs_volume_size_gib="100")
        assert result.messages(TemplateField.EBS_VOLUME_SIZE_GIB) == [
            "Volume size for st1 must be between 500 GiB and 16384 GiB",
        ]

    def test_unknown_volume_type(self, validator):
        result = validate(validator, ebs_volume_count="1", ebs_volume_type="gp9")
        assert result.messages(TemplateField.EBS_VOLUME_TYPE) == ["Volume type unknown: gp9"]

    def test_encryption_requires_volumes(self, validator):
        result = validate(validator, enable_ebs_encryption="true", ebs_kms_key_id="key-1")
        assert result.messages(TemplateField.ENABLE_EBS_ENCRYPTION) == [
            "EBS volume count should be greater than 0 to specify EBS encryption properties",
        ]
        assert len(result.messages(TemplateField.EBS_KMS_KEY_ID)) == 1


class TestIops:
    @pytest.mark.parametrize(
        ("volume_type", "size", "iops", "message"),
        [
            ("io1", "100", None, "IOPS must be set for io1 volume type"),
            ("io1", "100", "0", "IOPS must be a positive integer"),
            ("io1", "100", "lots", "IOPS must be a positive integer"),
            ("io1", "100", "50", "IOPS of 50 for io1 is not in range, it must be between 100 and 20000"),
            ("io1", "100", "20001", "IOPS of 20001 for io1 is not in range, it must be between 100 and 20000"),
            ("gp2", "100", "1000", "IOPS should only be set for io1 volume type"),
        ],
    )
    def test_invalid(self, validator, volume_type, size, iops, message):
        overrides = {"ebs_volume_count": "1", "ebs_volume_type": volume_type, "ebs_volume_size_gib": size}
        if iops is not None:
            overrides["ebs_iops"] = iops
        assert validate(validator, **overrides).messages(TemplateField.EBS_IOPS) == [message]

    @pytest.mark.parametrize("iops", ["100", "5000", "20000"])
    def test_valid(self, validator, iops):
        result = validate(
            validator, ebs_volume_count="1", ebs_volume_type="io1", ebs_volume_size_gib="100", ebs_iops=iops,
        )
        assert result.ok

    def test_configured_range(self, ec2, iam, kms):
        config = ProviderConfig(ebs_metadata=EbsMetadata({"io1-iops": "100-1000"}))
        result = validate(
            TemplateValidator(ec2, iam, kms, config),
            ebs_volume_count="1", ebs_volume_type="io1", ebs_volume_size_gib="100", ebs_iops="5000",
        )
        assert result.messages(TemplateField.EBS_IOPS) == [
            "IOPS of 5000 for io1 is not in range, it must be between 100 and 1000",
        ]

    def test_malformed_metadata(self, ec2, iam, kms):
        config = ProviderConfig(ebs_metadata=EbsMetadata({"io1-iops": "1000-100"}))
        result = validate(
            TemplateValidator(ec2, iam, kms, config),
            ebs_volume_count="1", ebs_volume_type="io1", ebs_volume_size_gib="100", ebs_iops="500",
        )
        assert result.messages(TemplateField.EBS_VOLUME_TYPE)[0].startswith("Malformed metadata: ")


class TestKms:
    ENCRYPTED = {"ebs_volume_count": "1", "ebs_volume_size_gib": "500", "enable_ebs_encryption": "true"}

    def test_valid_key(self, validator, kms):
        assert validate(validator, ebs_kms_key_id="key-1", **self.ENCRYPTED).ok
        kms.describe_key.assert_called_once_with(KeyId="key-1")

    def test_key_without_encryption(self, validator):
        result = validate(validator, ebs_volume_count="1", ebs_volume_size_gib="500", ebs_kms_key_id="key-1")
        assert result.messages(TemplateField.EBS_KMS_KEY_ID) == [
            "The KMS Key ID can only be set with encryption enabled",
        ]

    @pytest.mark.parametrize(
        ("code", "message"),
        [
            ("NotFoundException", "The KMS Key ID could not be found"),
            (
                "AccessDeniedException",
                "Access denied attempting to verify the KMS Key ID. Ensure kms:DescribeKey permission is granted",
            ),
            ("KMSInternalException", "Could not verify the KMS Key ID: boom"),
        ],
    )
    def test_key_errors(self, validator, kms, code, message):
        kms.describe_key.side_effect = client_error(code, "boom" if code == "KMSInternalException" else "")
        result = validate(validator, ebs_kms_key_id="key-1", **self.ENCRYPTED)
        assert result.messages(TemplateField.EBS_KMS_KEY_ID) == [message]


class TestSpotAndUserData:
    def test_spot_requires_bid(self, validator):
        result = validate(validator, use_spot_instances="true")
        assert result.messages(TemplateField.SPOT_BID_USD_PER_HR) == [
            "Spot bid (USD/hr) is required when Spot instances are used",
        ]

    @pytest.mark.parametrize("bid", ["0", "-1", "cheap"])
    def test_invalid_bid(self, validator, bid):
        result = validate(validator, use_spot_instances="true", spot_bid_usd_per_hr=bid)
        assert len(result.messages(TemplateField.SPOT_BID_USD_PER_HR)) == 1

    @pytest.mark.parametrize(("duration", "valid"), [("60", True), ("360", True), ("90", False), ("420", False)])
    def test_block_duration(self, validator, duration, valid):
        result = validate(
            validator, use_spot_instances="true", spot_bid_usd_per_hr="0.1", block_duration_minutes=duration,
        )
        assert result.ok is valid

    def test_both_user_data(self, validator):
        result = validate(validator, user_data="ZWNobw==", user_data_unencoded="echo")
        assert result.messages(TemplateField.USER_DATA) == [
            "Specify only the encoded or unencoded user data, not both",
        ]


class TestTags:
    def test_too_many_tags(self, validator):
        result = validate(validator, tags={f"k{i}": "v" for i in range(47)})
        assert result.messages(None) == ["Number of tags exceeds the maximum of 46"]
