"""Instance allocators: on-demand, spot and Auto Scaling Group."""

from director_aws.allocation.asg import AutoScalingGroupAllocator
from director_aws.allocation.base import AllocationContext, InstanceAllocator
from director_aws.allocation.ondemand import OnDemandAllocator
from director_aws.allocation.spot import SpotGroupAllocator

__all__ = [
    "AllocationContext",
    "AutoScalingGroupAllocator",
    "InstanceAllocator",
    "OnDemandAllocator",
    "SpotGroupAllocator",
]
