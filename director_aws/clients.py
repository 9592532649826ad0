"""AWS client bundle.

The allocators, the finder and the validator take an AwsClients value
instead of creating boto3 clients themselves, so tests can pass mocks.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import boto3
from botocore.config import Config

if TYPE_CHECKING:
    from mypy_boto3_autoscaling import AutoScalingClient
    from mypy_boto3_ec2 import EC2Client
    from mypy_boto3_iam import IAMClient
    from mypy_boto3_kms import KMSClient


# Transport-level retries stay in botocore; the allocators add their own
# deadline-bounded retries on top.
_CLIENT_CONFIG = Config(retries={"mode": "standard", "max_attempts": 5})


@dataclass(frozen=True, slots=True)
class AwsClients:
    ec2: EC2Client
    autoscaling: AutoScalingClient
    iam: IAMClient
    kms: KMSClient

    @classmethod
    def from_session(cls, session: boto3.Session | None = None, region: str | None = None) -> AwsClients:
        session = session or boto3.Session(region_name=region)

        def client(name: str) -> Any:
            return session.client(name, region_name=region, config=_CLIENT_CONFIG)

        return cls(
            ec2=client("ec2"),
            autoscaling=client("autoscaling"),
            iam=client("iam"),
            kms=client("kms"),
        )
