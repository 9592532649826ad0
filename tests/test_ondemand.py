import itertools

import pytest

from director_aws.allocation import OnDemandAllocator
from director_aws.config import ProviderSettings
from director_aws.exceptions import TransientProviderError, UnrecoverableProviderError
from tests.conftest import client_error, make_context, make_template, paginate_to, raw_instance, reservations

pytestmark = [pytest.mark.xdist_group("unit")]


def running(ec2) -> None:
    ec2.describe_instance_status.return_value = {"InstanceStatuses": [{"InstanceState": {"Name": "running"}}]}


def launches(*outcomes):
    """run_instances side effect: an exception, or a private IP for a new instance."""
    counter = itertools.count(1)

    def run_instances(**request):
        outcome = outcomes[next(counter) - 1] if outcomes else "10.0.0.1"
        if isinstance(outcome, Exception):
            raise outcome
        instances = [
            raw_instance(f"i-{next(ids)}", state="pending", private_ip=outcome)
            for _ in range(request["MaxCount"])
        ]
        return {"ReservationId": "r-1", "Instances": instances}

    ids = itertools.count(1)
    return run_instances


class TestTaggedAllocation:
    def test_one_request_per_virtual_id(self, ec2, clock):
        running(ec2)
        ec2.run_instances.side_effect = launches("10.0.0.1", "10.0.0.2")
        allocator = OnDemandAllocator(make_context(ec2, clock), make_template(), ["vm-1", "vm-2"], 2)

        instances = allocator.allocate()

        assert [(i.virtual_id, i.private_ip) for i in instances] == [("vm-1", "10.0.0.1"), ("vm-2", "10.0.0.2")]
        first = ec2.run_instances.call_args_list[0].kwargs
        assert (first["MinCount"], first["MaxCount"]) == (1, 1)
        instance_tags = first["TagSpecifications"][0]
        assert instance_tags["ResourceType"] == "instance"
        assert {"Key": "director:virtual-instance-id", "Value": "vm-1"} in instance_tags["Tags"]
        assert first["TagSpecifications"][1]["ResourceType"] == "volume"
        ec2.terminate_instances.assert_not_called()

    def test_request_shape(self, ec2, clock):
        running(ec2)
        ec2.run_instances.side_effect = launches()
        template = make_template(
            iam_profile_name="worker-profile",
            key_name="ops",
            availability_zone="us-east-1a",
            user_data_unencoded="echo hi",
        )

        OnDemandAllocator(make_context(ec2, clock), template, ["vm-1"], 1).allocate()

        request = ec2.run_instances.call_args.kwargs
        assert request["ImageId"] == "ami-12345678"
        assert request["IamInstanceProfile"] == {"Name": "worker-profile"}
        assert request["KeyName"] == "ops"
        assert request["UserData"] == "echo hi"
        assert request["Placement"] == {"Tenancy": "default", "AvailabilityZone": "us-east-1a"}
        assert request["NetworkInterfaces"][0]["Groups"] == ["sg-1"]

    def test_existing_instances_are_reused(self, ec2, clock):
        running(ec2)
        paginate_to(ec2, [raw_instance("i-old", virtual_id="vm-1")])
        ec2.run_instances.side_effect = launches()

        instances = OnDemandAllocator(make_context(ec2, clock), make_template(), ["vm-1", "vm-2"], 2).allocate()

        assert ec2.run_instances.call_count == 1
        assert {i.virtual_id: i.ec2_instance_id for i in instances} == {"vm-1": "i-old", "vm-2": "i-1"}

    def test_partial_success_above_minimum(self, ec2, clock):
        running(ec2)
        ec2.run_instances.side_effect = launches("10.0.0.1", client_error("InsufficientInstanceCapacity"))

        instances = OnDemandAllocator(make_context(ec2, clock), make_template(), ["vm-1", "vm-2"], 1).allocate()

        assert [i.virtual_id for i in instances] == ["vm-1"]
        ec2.terminate_instances.assert_not_called()

    def test_below_minimum_terminates_everything(self, ec2, clock):
        running(ec2)
        capacity = client_error("InsufficientInstanceCapacity")
        ec2.run_instances.side_effect = launches("10.0.0.1", "10.0.0.2", "10.0.0.3", capacity, capacity)
        ids = [f"vm-{i}" for i in range(1, 6)]

        with pytest.raises(UnrecoverableProviderError, match="Only 3 of 5 instance") as exc_info:
            OnDemandAllocator(make_context(ec2, clock), make_template(), ids, 5).allocate()

        terminated = ec2.terminate_instances.call_args.kwargs["InstanceIds"]
        assert sorted(terminated) == ["i-1", "i-2", "i-3"]
        assert exc_info.value.context["failed"] == ["vm-4", "vm-5"]
        assert exc_info.value.secondary == [capacity, capacity]

    def test_transient_failures_stay_transient(self, ec2, clock):
        ec2.run_instances.side_effect = client_error("RequestLimitExceeded")
        with pytest.raises(TransientProviderError):
            OnDemandAllocator(make_context(ec2, clock), make_template(), ["vm-1"], 1).allocate()

    def test_rollback_failure_is_attached(self, ec2, clock):
        running(ec2)
        ec2.run_instances.side_effect = launches("10.0.0.1", client_error("InvalidParameterValue"))
        leak = client_error("UnauthorizedOperation")
        ec2.terminate_instances.side_effect = leak

        with pytest.raises(UnrecoverableProviderError) as exc_info:
            OnDemandAllocator(make_context(ec2, clock), make_template(), ["vm-1", "vm-2"], 2).allocate()

        assert leak in exc_info.value.secondary


class TestBulkAllocation:
    def test_tags_after_creation(self, ec2, clock):
        running(ec2)
        ec2.run_instances.side_effect = launches()
        ec2.describe_instances.return_value = reservations(
            raw_instance("i-1", BlockDeviceMappings=[{"DeviceName": "/dev/sda1", "Ebs": {"VolumeId": "vol-1"}}]),
        )
        context = make_context(ec2, clock, settings=ProviderSettings(use_tag_on_create=False))

        instances = OnDemandAllocator(context, make_template(), ["vm-1", "vm-2"], 1).allocate()

        request = ec2.run_instances.call_args.kwargs
        assert (request["MinCount"], request["MaxCount"]) == (1, 2)
        assert "TagSpecifications" not in request
        tagged = [c.kwargs["Resources"] for c in ec2.create_tags.call_args_list]
        assert ["i-1"] in tagged and ["i-2"] in tagged and ["vol-1"] in tagged
        assert {i.virtual_id for i in instances} == {"vm-1", "vm-2"}
        assert instances[0].tags["director:virtual-instance-id"] in {"vm-1", "vm-2"}

    def test_unrecoverable_request_error(self, ec2, clock):
        ec2.run_instances.side_effect = client_error("InvalidAMIID.Malformed")
        context = make_context(ec2, clock, settings=ProviderSettings(use_tag_on_create=False))
        with pytest.raises(UnrecoverableProviderError, match="InvalidAMIID.Malformed"):
            OnDemandAllocator(context, make_template(), ["vm-1"], 1).allocate()


class TestDelete:
    def test_terminates_by_tag(self, ec2, clock):
        paginate_to(ec2, [raw_instance("i-1", virtual_id="vm-1")])
        OnDemandAllocator(make_context(ec2, clock), make_template(), ["vm-1"], 0).delete()
        ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-1"])


def test_min_count_cannot_exceed_requested(ec2, clock):
    with pytest.raises(ValueError, match="exceeds"):
        OnDemandAllocator(make_context(ec2, clock), make_template(), ["vm-1"], 2)
