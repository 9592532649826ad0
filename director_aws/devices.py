"""Block device mappings for instance requests.

Builds the BlockDeviceMappings list for run-instances, spot launch
specifications and launch templates: the image root volume resized to the
template settings, then either ephemeral instance-store devices or the
template's additional EBS volumes.
"""

from __future__ import annotations

from collections.abc import Collection, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from loguru import logger

from director_aws.config import DeviceMappingSettings
from director_aws.constants import EBS_ROOT_DEVICE_TYPE
from director_aws.exceptions import UnrecoverableProviderError
from director_aws.template import InstanceTemplate

if TYPE_CHECKING:
    from mypy_boto3_ec2 import EC2Client

type DeviceMapping = dict[str, Any]

log = logger.bind(component="devices")

_SUFFIX_COUNT = 25


# =============================================================================
# Device names
# =============================================================================


def device_names(prefix: str, start: str, count: int, exclude: Collection[str] = ()) -> list[str]:
    """Generate ``count`` device names from ``prefix + start`` upward.

    Suffixes wrap from ``z`` back to ``b``; names in ``exclude`` are skipped.
    """
    if len(start) != 1 or not "b" <= start <= "z":
        raise ValueError("start suffix should be between 'b' and 'z'")

    offset = ord(start) - ord("b")
    names: list[str] = []
    for i in range(_SUFFIX_COUNT):
        if len(names) == count:
            break
        name = f"{prefix}{chr(ord('b') + (offset + i) % _SUFFIX_COUNT)}"
        if name not in exclude:
            names.append(name)
    if len(names) < count:
        raise ValueError(f"cannot allocate {count} device names with prefix {prefix}")
    return names


# =============================================================================
# Root device
# =============================================================================


def select_root_device(mappings: Sequence[Mapping[str, Any]], root_device_name: str) -> DeviceMapping | None:
    """Pick the mapping describing the image root volume.

    Only mappings with an ``Ebs`` section count. An exact device name match
    wins; otherwise the last mapping whose name is a prefix of the root device
    name (``/dev/sda`` for ``/dev/sda1``); otherwise the first EBS mapping.
    """
    ebs = [m for m in mappings if m.get("Ebs") is not None]
    for mapping in ebs:
        if mapping.get("DeviceName") == root_device_name:
            return dict(mapping)
    for mapping in reversed(ebs):
        name = mapping.get("DeviceName") or ""
        if name and root_device_name.startswith(name):
            return dict(mapping)
    return dict(ebs[0]) if ebs else None


# =============================================================================
# Mappings
# =============================================================================


class DeviceMappings:
    """Block device mapping factory for one provider configuration."""

    __slots__ = ("_ephemeral_counts", "_settings")

    def __init__(
        self,
        ephemeral_counts: Mapping[str, int] | None = None,
        settings: DeviceMappingSettings | None = None,
    ) -> None:
        self._ephemeral_counts = dict(ephemeral_counts or {})
        self._settings = settings or DeviceMappingSettings()

    def ephemeral(self, instance_type: str) -> list[DeviceMapping]:
        count = self._ephemeral_counts.get(instance_type, 0)
        names = device_names(self._settings.prefix, self._settings.ephemeral_range_start, count)
        return [{"DeviceName": name, "VirtualName": f"ephemeral{i}"} for i, name in enumerate(names)]

    def ebs(self, template: InstanceTemplate, exclude: Collection[str] = ()) -> list[DeviceMapping]:
        names = device_names(
            self._settings.prefix,
            self._settings.ebs_range_start,
            template.ebs_volume_count,
            exclude,
        )
        mappings = []
        for name in names:
            ebs: dict[str, Any] = {
                "VolumeType": template.ebs_volume_type,
                "VolumeSize": template.ebs_volume_size_gib,
                "Encrypted": template.enable_ebs_encryption,
                "DeleteOnTermination": True,
            }
            if template.ebs_iops is not None:
                ebs["Iops"] = template.ebs_iops
            if template.ebs_kms_key_id is not None:
                ebs["KmsKeyId"] = template.ebs_kms_key_id
            mappings.append({"DeviceName": name, "Ebs": ebs})
        return mappings

    def for_image(self, template: InstanceTemplate, image: Mapping[str, Any]) -> list[DeviceMapping]:
        """Mappings for ``template`` launched from the described ``image``."""
        image_id = image.get("ImageId", template.image_id)
        if image.get("RootDeviceType") != EBS_ROOT_DEVICE_TYPE:
            raise UnrecoverableProviderError(
                f"Only EBS root device type is supported. Invalid root device type for "
                f"AMI {image_id}: {image.get('RootDeviceType')}"
            )
        image_mappings = image.get("BlockDeviceMappings") or []
        if not image_mappings:
            raise UnrecoverableProviderError(f"AMI {image_id} has no block device mappings")

        root_name = image.get("RootDeviceName", "")
        root = select_root_device(image_mappings, root_name)
        if root is None:
            raise UnrecoverableProviderError(f"Could not find root device mapping for AMI {image_id}")

        root_ebs = {
            k: v for k, v in root["Ebs"].items() if k != "Encrypted"
        }
        root_ebs |= {
            "VolumeSize": template.root_volume_size_gb,
            "VolumeType": template.root_volume_type,
            "DeleteOnTermination": True,
        }
        mappings: list[DeviceMapping] = [{"DeviceName": root["DeviceName"], "Ebs": root_ebs}]

        if template.ebs_volume_count == 0:
            mappings.extend(self.ephemeral(template.instance_type))
        else:
            used = {m.get("DeviceName") for m in image_mappings if m.get("DeviceName")}
            mappings.extend(self.ebs(template, exclude=used))

        log.debug("Block device mappings for {image}: {m}", image=image_id, m=mappings)
        return mappings

    def for_template(self, ec2: EC2Client, template: InstanceTemplate) -> list[DeviceMapping]:
        return self.for_image(template, describe_image(ec2, template.image_id))


def describe_image(ec2: EC2Client, image_id: str) -> Mapping[str, Any]:
    images = ec2.describe_images(ImageIds=[image_id]).get("Images", [])
    if len(images) != 1:
        raise UnrecoverableProviderError(f"Expected exactly one AMI with id {image_id}, found {len(images)}")
    return images[0]
