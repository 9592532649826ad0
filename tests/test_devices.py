import pytest

from director_aws.config import DeviceMappingSettings
from director_aws.devices import DeviceMappings, describe_image, device_names, select_root_device
from director_aws.exceptions import UnrecoverableProviderError
from tests.conftest import image, make_template

pytestmark = [pytest.mark.xdist_group("unit")]


class TestDeviceNames:
    def test_sequence(self):
        assert device_names("/dev/sd", "f", 3) == ["/dev/sdf", "/dev/sdg", "/dev/sdh"]

    def test_wraps_after_z(self):
        assert device_names("/dev/sd", "y", 3) == ["/dev/sdy", "/dev/sdz", "/dev/sdb"]

    def test_skips_excluded(self):
        assert device_names("/dev/sd", "f", 2, exclude={"/dev/sdf"}) == ["/dev/sdg", "/dev/sdh"]

    def test_invalid_start(self):
        with pytest.raises(ValueError, match="between 'b' and 'z'"):
            device_names("/dev/sd", "a", 1)

    def test_too_many(self):
        with pytest.raises(ValueError, match="cannot allocate"):
            device_names("/dev/sd", "b", 26)


class TestSelectRootDevice:
    def test_exact_match_wins_over_prefix(self):
        mappings = [
            {"DeviceName": "/dev/sda", "Ebs": {"SnapshotId": "snap-prefix"}},
            {"DeviceName": "/dev/sda1", "Ebs": {"SnapshotId": "snap-exact"}},
        ]
        assert select_root_device(mappings, "/dev/sda1")["Ebs"]["SnapshotId"] == "snap-exact"

    def test_prefix_match(self):
        mappings = [
            {"DeviceName": "/dev/sdb", "Ebs": {"SnapshotId": "snap-data"}},
            {"DeviceName": "/dev/sda", "Ebs": {"SnapshotId": "snap-root"}},
        ]
        assert select_root_device(mappings, "/dev/sda1")["Ebs"]["SnapshotId"] == "snap-root"

    def test_last_prefix_match_wins(self):
        mappings = [
            {"DeviceName": "/dev/sd", "Ebs": {"SnapshotId": "snap-first"}},
            {"DeviceName": "/dev/sda", "Ebs": {"SnapshotId": "snap-last"}},
        ]
        assert select_root_device(mappings, "/dev/sda1")["Ebs"]["SnapshotId"] == "snap-last"

    def test_ignores_non_ebs(self):
        mappings = [
            {"DeviceName": "/dev/sda1", "VirtualName": "ephemeral0"},
            {"DeviceName": "/dev/xvda", "Ebs": {"SnapshotId": "snap-1"}},
        ]
        assert select_root_device(mappings, "/dev/sda1")["DeviceName"] == "/dev/xvda"

    def test_none_without_ebs(self):
        assert select_root_device([{"DeviceName": "/dev/sdb", "VirtualName": "ephemeral0"}], "/dev/sda1") is None


class TestDeviceMappings:
    def test_root_resized_from_template(self):
        template = make_template(root_volume_size_gb=100, root_volume_type="standard")
        root = DeviceMappings().for_image(template, image())[0]
        assert root == {
            "DeviceName": "/dev/sda1",
            "Ebs": {
                "SnapshotId": "snap-1",
                "VolumeSize": 100,
                "VolumeType": "standard",
                "DeleteOnTermination": True,
            },
        }

    def test_ephemeral_devices(self):
        template = make_template(instance_type="d2.xlarge")
        mappings = DeviceMappings({"d2.xlarge": 2}).for_image(template, image())
        assert mappings[1:] == [
            {"DeviceName": "/dev/sdb", "VirtualName": "ephemeral0"},
            {"DeviceName": "/dev/sdc", "VirtualName": "ephemeral1"},
        ]

    def test_ebs_volumes_replace_ephemeral(self):
        template = make_template(
            instance_type="d2.xlarge",
            ebs_volume_count=2,
            ebs_volume_size_gib=200,
            ebs_volume_type="io1",
            ebs_iops=1000,
            enable_ebs_encryption=True,
            ebs_kms_key_id="key-1",
        )
        mappings = DeviceMappings({"d2.xlarge": 2}).for_image(template, image())
        assert [m["DeviceName"] for m in mappings] == ["/dev/sda1", "/dev/sdf", "/dev/sdg"]
        assert mappings[1]["Ebs"] == {
            "VolumeType": "io1",
            "VolumeSize": 200,
            "Encrypted": True,
            "DeleteOnTermination": True,
            "Iops": 1000,
            "KmsKeyId": "key-1",
        }

    def test_ebs_skips_image_devices(self):
        raw = image(BlockDeviceMappings=[
            {"DeviceName": "/dev/sda1", "Ebs": {"SnapshotId": "snap-1"}},
            {"DeviceName": "/dev/sdf", "Ebs": {"SnapshotId": "snap-2"}},
        ])
        mappings = DeviceMappings().for_image(make_template(ebs_volume_count=1), raw)
        assert mappings[-1]["DeviceName"] == "/dev/sdg"

    def test_custom_prefix(self):
        settings = DeviceMappingSettings(prefix="/dev/xvd", ebs_range_start="h")
        mappings = DeviceMappings(settings=settings).for_image(make_template(ebs_volume_count=1), image())
        assert mappings[-1]["DeviceName"] == "/dev/xvdh"

    def test_instance_store_root_rejected(self):
        with pytest.raises(UnrecoverableProviderError, match="Only EBS root device type"):
            DeviceMappings().for_image(make_template(), image(RootDeviceType="instance-store"))

    def test_image_without_mappings(self):
        with pytest.raises(UnrecoverableProviderError, match="no block device mappings"):
            DeviceMappings().for_image(make_template(), image(BlockDeviceMappings=[]))

    def test_for_template_describes_image(self, ec2):
        DeviceMappings().for_template(ec2, make_template())
        ec2.describe_images.assert_called_once_with(ImageIds=["ami-12345678"])


class TestDescribeImage:
    def test_missing_image(self, ec2):
        ec2.describe_images.return_value = {"Images": []}
        with pytest.raises(UnrecoverableProviderError, match="found 0"):
            describe_image(ec2, "ami-missing")
