from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from director_aws.allocation import AllocationContext
from director_aws.config import ProviderSettings, Timeouts
from director_aws.devices import DeviceMappings
from director_aws.finder import InstanceFinder
from director_aws.tags import TagHelper
from director_aws.template import InstanceTemplate

ID_TAG = "director:virtual-instance-id"


def client_error(code: str, message: str = "", operation: str = "Operation", status: int = 400) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": message or code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class FakeClock:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def raw_instance(
    instance_id: str,
    state: str = "running",
    virtual_id: str | None = None,
    private_ip: str | None = "10.0.0.1",
    **extra: Any,
) -> dict[str, Any]:
    raw: dict[str, Any] = {"InstanceId": instance_id, "State": {"Name": state}, **extra}
    if private_ip is not None:
        raw["PrivateIpAddress"] = private_ip
    if virtual_id is not None:
        raw["Tags"] = [{"Key": ID_TAG, "Value": virtual_id}]
    return raw


def reservations(*instances: Mapping[str, Any]) -> dict[str, Any]:
    return {"Reservations": [{"Instances": list(instances)}]}


def paginate_to(ec2: MagicMock, *pages: list[Mapping[str, Any]]) -> None:
    """Serve ``describe_instances`` pages through ``get_paginator``."""
    paginator = MagicMock()
    paginator.paginate.return_value = [{"Reservations": [{"Instances": page}]} for page in pages]
    ec2.get_paginator.return_value = paginator


def make_template(**overrides: Any) -> InstanceTemplate:
    values: dict[str, Any] = {
        "name": "workers",
        "image_id": "ami-12345678",
        "instance_type": "m5.xlarge",
        "subnet_id": "subnet-1",
        "security_group_ids": ("sg-1",),
    }
    values.update(overrides)
    return InstanceTemplate(**values)


def image(**overrides: Any) -> dict[str, Any]:
    values: dict[str, Any] = {
        "ImageId": "ami-12345678",
        "Architecture": "x86_64",
        "State": "available",
        "VirtualizationType": "hvm",
        "RootDeviceType": "ebs",
        "RootDeviceName": "/dev/sda1",
        "OwnerId": "111122223333",
        "BlockDeviceMappings": [
            {"DeviceName": "/dev/sda1", "Ebs": {"SnapshotId": "snap-1", "VolumeSize": 8, "VolumeType": "gp2"}},
        ],
    }
    values.update(overrides)
    return values


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ec2() -> MagicMock:
    client = MagicMock()
    client.describe_images.return_value = {"Images": [image()]}
    paginate_to(client, [])
    return client


@pytest.fixture
def tags() -> TagHelper:
    return TagHelper()


@pytest.fixture
def finder(ec2: MagicMock, tags: TagHelper, clock: FakeClock) -> InstanceFinder:
    return InstanceFinder(ec2, tags, clock=clock, sleep=clock.sleep)


def make_context(
    ec2: MagicMock,
    clock: FakeClock,
    *,
    finder: Any = None,
    settings: ProviderSettings | None = None,
    timeouts: Mapping[str, int] | None = None,
) -> AllocationContext:
    tags = TagHelper()
    return AllocationContext(
        ec2=ec2,
        tags=tags,
        finder=finder or InstanceFinder(ec2, tags, clock=clock, sleep=clock.sleep),
        devices=DeviceMappings(),
        settings=settings or ProviderSettings(),
        timeouts=Timeouts(timeouts),
        clock=clock,
        sleep=clock.sleep,
    )
