"""TOML-based provider configuration.

Loads ~/.director-aws/defaults.toml (global) and director-aws.toml (project),
merges them and builds a ProviderConfig. Every table is optional; the
built-in defaults below cover the static lookups the allocators and the
validator need.

Example director-aws.toml::

    region = "us-west-2"

    [settings]
    use_tag_on_create = true
    tag_ebs_volumes = true

    [timeouts]
    "ec2.asg.requestDurationMilliseconds" = 300000

    [tags]
    "director:virtual-instance-id" = "ClusterNodeId"

    [ebs_metadata]
    io1 = "4-16384"
    io1-iops = "100-20000"

    [image_blacklists]
    platform = { windows = "Windows is not supported" }
"""

from __future__ import annotations

import fnmatch
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from director_aws.constants import (
    DEFAULT_DEVICE_NAME_PREFIX,
    DEFAULT_EBS_RANGE_START,
    DEFAULT_EPHEMERAL_RANGE_START,
    DEFAULT_TIMEOUTS_MS,
    IOPS_VOLUME_TYPE,
)
from director_aws.exceptions import ConfigurationError

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".director-aws" / "defaults.toml"
PROJECT_CONFIG_NAME = "director-aws.toml"


# =============================================================================
# Timeouts
# =============================================================================


class Timeouts:
    """Named millisecond timeouts with hardcoded defaults.

    Configured values must be positive numbers; a key that is absent falls
    back to DEFAULT_TIMEOUTS_MS.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        parsed: dict[str, int] = {}
        for key, value in (values or {}).items():
            if isinstance(value, bool) or not isinstance(value, int | float):
                raise ConfigurationError(f"Timeout {key} is not a number: {value!r}")
            if value <= 0:
                raise ConfigurationError(f"Timeout {key} must be positive: {value!r}")
            parsed[key] = int(value)
        self._values = parsed

    def millis(self, key: str, default: int | None = None) -> int:
        value = self._values.get(key)
        if value is not None:
            return value
        if default is not None:
            return default
        return DEFAULT_TIMEOUTS_MS[key]

    def seconds(self, key: str, default: int | None = None) -> float:
        return self.millis(key, default) / 1000.0


# =============================================================================
# Static lookup tables
# =============================================================================


DEFAULT_EBS_METADATA: dict[str, str] = {
    "standard": "1-1024",
    "gp2": "1-16384",
    "gp3": "1-16384",
    "io1": "4-16384",
    "io1-iops": "100-20000",
    "st1": "500-16384",
    "sc1": "500-16384",
}

DEFAULT_EPHEMERAL_DEVICE_COUNTS: dict[str, int] = {
    "c3.large": 2,
    "c3.xlarge": 2,
    "c3.2xlarge": 2,
    "c3.4xlarge": 2,
    "c3.8xlarge": 2,
    "d2.xlarge": 3,
    "d2.2xlarge": 6,
    "d2.4xlarge": 12,
    "d2.8xlarge": 24,
    "i2.xlarge": 1,
    "i2.2xlarge": 2,
    "i2.4xlarge": 4,
    "i2.8xlarge": 8,
    "m3.medium": 1,
    "m3.large": 1,
    "m3.xlarge": 2,
    "m3.2xlarge": 2,
    "r3.large": 1,
    "r3.xlarge": 1,
    "r3.2xlarge": 1,
    "r3.4xlarge": 1,
    "r3.8xlarge": 2,
}

DEFAULT_VIRTUALIZATION_MAPPINGS: dict[str, list[str]] = {
    "paravirtual": [
        "c1.*", "c3.*", "hi1.*", "hs1.*", "m1.*", "m2.*", "m3.*", "t1.*",
    ],
    "hvm": [
        "a1.*", "c3.*", "c4.*", "c5.*", "c5d.*", "c5n.*", "c6i.*", "c7i.*",
        "cc2.*", "cr1.*", "d2.*", "d3.*", "g2.*", "g3.*", "g4dn.*", "g5.*",
        "h1.*", "i2.*", "i3.*", "i3en.*", "i4i.*", "m3.*", "m4.*", "m5.*",
        "m5a.*", "m5d.*", "m6i.*", "m7i.*", "p2.*", "p3.*", "p4d.*", "r3.*",
        "r4.*", "r5.*", "r5a.*", "r5d.*", "r6i.*", "r7i.*", "t2.*", "t3.*",
        "t3a.*", "x1.*", "x1e.*", "z1d.*",
    ],
}


@dataclass(frozen=True, slots=True)
class VolumeRange:
    min: int
    max: int

    @classmethod
    def parse(cls, key: str, text: str) -> VolumeRange:
        parts = text.strip().split("-")
        if len(parts) != 2:
            raise ConfigurationError(
                f"invalid format for {key}={text}, expecting exactly 2 parts for the value"
            )
        try:
            low, high = int(parts[0]), int(parts[1])
        except ValueError as e:
            raise ConfigurationError(f"invalid format for {key}={text}, bounds should be integers") from e
        if low <= 0 or high <= 0:
            raise ConfigurationError(f"invalid format for {key}={text}, bounds should be positive integers")
        if high < low:
            raise ConfigurationError(
                f"invalid format for {key}={text}, maximum size {high} should be "
                f"greater than or equal to minimum size {low}"
            )
        return cls(low, high)


@dataclass(frozen=True, slots=True)
class EbsVolumeMetadata:
    volume_type: str
    size: VolumeRange
    iops: VolumeRange | None = None


class EbsMetadata:
    """Size and IOPS ranges per EBS volume type."""

    __slots__ = ("_table",)

    def __init__(self, table: Mapping[str, str] | None = None) -> None:
        self._table = {**DEFAULT_EBS_METADATA, **(table or {})}

    def __call__(self, volume_type: str) -> EbsVolumeMetadata:
        """Raises KeyError for unknown types and ConfigurationError for bad ranges."""
        if volume_type not in self._table:
            raise KeyError(f"Could not get metadata for volume type {volume_type}")
        size = VolumeRange.parse(volume_type, self._table[volume_type])
        if volume_type != IOPS_VOLUME_TYPE:
            return EbsVolumeMetadata(volume_type, size)
        key = f"{IOPS_VOLUME_TYPE}-iops"
        if key not in self._table:
            raise KeyError(f"Could not get metadata for {key}")
        return EbsVolumeMetadata(volume_type, size, VolumeRange.parse(key, self._table[key]))


class VirtualizationMappings:
    """Instance types supported by each AMI virtualization type.

    Entries are exact instance types or fnmatch patterns such as ``m5.*``.
    """

    __slots__ = ("_table",)

    def __init__(self, table: Mapping[str, list[str]] | None = None) -> None:
        self._table = {**DEFAULT_VIRTUALIZATION_MAPPINGS, **(table or {})}

    def supports(self, virtualization_type: str | None, instance_type: str) -> bool:
        patterns = self._table.get(virtualization_type or "", [])
        return any(fnmatch.fnmatchcase(instance_type, p) for p in patterns)


@dataclass(frozen=True, slots=True)
class DeviceMappingSettings:
    prefix: str = DEFAULT_DEVICE_NAME_PREFIX
    ephemeral_range_start: str = DEFAULT_EPHEMERAL_RANGE_START
    ebs_range_start: str = DEFAULT_EBS_RANGE_START


@dataclass(frozen=True, slots=True)
class ProviderSettings:
    """Provider-wide behavior switches.

    Args:
        use_tag_on_create: Tag instances and volumes in the run-instances
            request itself, one request per virtual instance id.
        tag_ebs_volumes: Tag the EBS volumes of each instance after tagging
            the instance (only used when tagging after creation).
        associate_public_ip_addresses: Request a public IP on eth0.
    """

    use_tag_on_create: bool = True
    tag_ebs_volumes: bool = True
    associate_public_ip_addresses: bool = True


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    region: str | None = None
    settings: ProviderSettings = field(default_factory=ProviderSettings)
    timeouts: Timeouts = field(default_factory=Timeouts)
    tags: dict[str, str] = field(default_factory=dict)
    ebs_metadata: EbsMetadata = field(default_factory=EbsMetadata)
    ephemeral_device_counts: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_EPHEMERAL_DEVICE_COUNTS),
    )
    virtualization_mappings: VirtualizationMappings = field(default_factory=VirtualizationMappings)
    image_blacklists: dict[str, dict[str, str]] = field(default_factory=dict)
    device_mappings: DeviceMappingSettings = field(default_factory=DeviceMappingSettings)


# =============================================================================
# Loading
# =============================================================================


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Could not parse {path}: {e}") from e


def load_raw_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_cfg = _read_toml((project_dir or Path.cwd()) / PROJECT_CONFIG_NAME)
    return _deep_merge(global_cfg, project_cfg)


def build_config(raw: RawConfig) -> ProviderConfig:
    unknown = set(raw) - {
        "region", "settings", "timeouts", "tags", "ebs_metadata",
        "ephemeral_device_mappings", "virtualization_mappings",
        "image_blacklists", "device_mappings",
    }
    if unknown:
        raise ConfigurationError(f"Unknown configuration section(s): {', '.join(sorted(unknown))}")

    try:
        settings = ProviderSettings(**raw.get("settings", {}))
        device_mappings = DeviceMappingSettings(**raw.get("device_mappings", {}))
    except TypeError as e:
        raise ConfigurationError(str(e)) from e

    return ProviderConfig(
        region=raw.get("region"),
        settings=settings,
        timeouts=Timeouts(raw.get("timeouts", {})),
        tags=dict(raw.get("tags", {})),
        ebs_metadata=EbsMetadata(raw.get("ebs_metadata", {})),
        ephemeral_device_counts={
            **DEFAULT_EPHEMERAL_DEVICE_COUNTS,
            **raw.get("ephemeral_device_mappings", {}),
        },
        virtualization_mappings=VirtualizationMappings(raw.get("virtualization_mappings", {})),
        image_blacklists={k: dict(v) for k, v in raw.get("image_blacklists", {}).items()},
        device_mappings=device_mappings,
    )


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> ProviderConfig:
    return build_config(load_raw_config(project_dir=project_dir, global_path=global_path))
