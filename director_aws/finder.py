"""Instance lookup and reconciliation by ownership tag.

Resolves virtual instance ids to cloud instances. describe-instances returns
every instance carrying the tag, historical ones included, so several
instances can map to one virtual id after a failed and retried allocation.
The reduction keeps at most one per id, preferring live instances over
``shutting-down``/``terminated`` ones.
"""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from itertools import batched
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError
from loguru import logger
from tenacity import RetryCallState, Retrying, retry_if_result, wait_fixed

from director_aws.aws_errors import INSTANCE_ID_MALFORMED, INSTANCE_NOT_FOUND, error_code
from director_aws.constants import (
    FIND_POLL_INTERVAL,
    GET_INSTANCE_STATE_BATCH_SIZE,
    MAX_TAG_FILTER_VALUES,
    InstanceStatus,
)
from director_aws.tags import TagHelper
from director_aws.template import Instance, InstanceTemplate, is_terminal, tag_value

if TYPE_CHECKING:
    from mypy_boto3_ec2 import EC2Client

type RawInstance = Mapping[str, Any]
type StatePredicate = Callable[[RawInstance], bool]

log = logger.bind(component="finder")


def resolve(pairs: Iterable[tuple[str, RawInstance]]) -> dict[str, RawInstance]:
    """Reduce ``(virtual id, instance)`` pairs to at most one instance per id.

    Live instances win over terminal ones. A terminal instance is kept only
    when it is the sole instance seen for its id. More than one live
    instance for an id is a data inconsistency: it is logged and the first
    one seen is kept.
    """
    grouped: dict[str, list[RawInstance]] = defaultdict(list)
    for virtual_id, raw in pairs:
        grouped[virtual_id].append(raw)

    resolved: dict[str, RawInstance] = {}
    for virtual_id, candidates in grouped.items():
        live = [c for c in candidates if not is_terminal(c)]
        if len(live) > 1:
            log.error(
                "Two non-terminal instances ({ids}) share virtual instance id {vid}",
                ids=", ".join(c["InstanceId"] for c in live), vid=virtual_id,
            )
        if live:
            if len(candidates) > len(live):
                log.warning(
                    "Ignoring terminal instance(s) for {vid}, using {id}",
                    vid=virtual_id, id=live[0]["InstanceId"],
                )
            resolved[virtual_id] = live[0]
        elif len(candidates) == 1:
            resolved[virtual_id] = candidates[0]
        else:
            log.warning(
                "Found {n} terminal instances and no live one for {vid}",
                n=len(candidates), vid=virtual_id,
            )
    return resolved


class InstanceFinder:
    """Tag-based instance lookup for one EC2 client."""

    def __init__(
        self,
        ec2: EC2Client,
        tags: TagHelper,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._ec2 = ec2
        self._tags = tags
        self._clock = clock
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # Raw lookups
    # -------------------------------------------------------------------------

    def _describe(self, **kwargs: Any) -> Iterator[RawInstance]:
        paginator = self._ec2.get_paginator("describe_instances")
        for page in paginator.paginate(**kwargs):
            for reservation in page.get("Reservations", []):
                yield from reservation.get("Instances", [])

    def _by_tag(self, virtual_ids: Sequence[str]) -> Iterator[tuple[str, RawInstance]]:
        id_tag = self._tags.id_tag_name
        for chunk in batched(virtual_ids, MAX_TAG_FILTER_VALUES):
            filters = [{"Name": f"tag:{id_tag}", "Values": list(chunk)}]
            for raw in self._describe(Filters=filters):
                virtual_id = tag_value(raw, id_tag)
                if virtual_id is None:
                    log.info("Instance {id} is not managed, skipping", id=raw.get("InstanceId"))
                    continue
                yield virtual_id, raw

    def _by_instance_id(self, instance_ids: Sequence[str]) -> Iterator[tuple[str, RawInstance]]:
        for chunk in batched(instance_ids, MAX_TAG_FILTER_VALUES):
            try:
                found = list(self._describe(InstanceIds=list(chunk)))
            except ClientError as e:
                code = error_code(e)
                if code == INSTANCE_ID_MALFORMED:
                    log.warning("Skipping malformed instance ids: {ids}", ids=", ".join(chunk))
                    continue
                if code != INSTANCE_NOT_FOUND:
                    raise
                # One unknown id fails the whole batch; retry the others alone.
                if len(chunk) > 1:
                    yield from self._by_instance_id_one_by_one(chunk)
                continue
            for raw in found:
                yield raw["InstanceId"], raw

    def _by_instance_id_one_by_one(self, instance_ids: Iterable[str]) -> Iterator[tuple[str, RawInstance]]:
        for instance_id in instance_ids:
            yield from self._by_instance_id([instance_id])

    def instances(
        self,
        template: InstanceTemplate,
        virtual_ids: Sequence[str],
    ) -> Iterator[tuple[str, RawInstance]]:
        """Every ``(virtual id, instance)`` pair, pages followed exhaustively.

        Auto Scaling Group members are created by AWS without a per-instance
        ownership tag, so for those templates the ids are EC2 instance ids.
        """
        if not virtual_ids:
            return iter(())
        if template.automatic:
            return self._by_instance_id(virtual_ids)
        return self._by_tag(virtual_ids)

    # -------------------------------------------------------------------------
    # Reconciled lookups
    # -------------------------------------------------------------------------

    def do_find(
        self,
        template: InstanceTemplate,
        virtual_ids: Sequence[str],
        predicate: StatePredicate | None = None,
        wait: float = 0.0,
    ) -> dict[str, RawInstance]:
        """Resolve ``virtual_ids``, re-polling until all satisfy ``predicate``.

        A zero ``wait`` performs exactly one pass. Ids that are still missing
        when the wait elapses are left out of the result.
        """
        wanted = list(dict.fromkeys(virtual_ids))
        deadline = self._clock() + wait

        def attempt() -> dict[str, RawInstance]:
            resolved = resolve(self.instances(template, wanted))
            if predicate is not None:
                resolved = {k: v for k, v in resolved.items() if predicate(v)}
            return resolved

        def incomplete(found: dict[str, RawInstance]) -> bool:
            missing = len(wanted) - len(found)
            if missing:
                log.debug("{n} instance(s) not resolved yet", n=missing)
            return missing > 0

        def stop(_: RetryCallState) -> bool:
            return self._clock() >= deadline

        retrying = Retrying(
            stop=stop,
            wait=wait_fixed(FIND_POLL_INTERVAL),
            retry=retry_if_result(incomplete),
            sleep=self._sleep,
            retry_error_callback=lambda state: state.outcome.result(),
        )
        return retrying(attempt)

    def find(self, template: InstanceTemplate, virtual_ids: Sequence[str]) -> list[Instance]:
        found = self.do_find(template, virtual_ids)
        return [Instance.from_ec2(vid, raw) for vid, raw in found.items()]

    def get_instance_state(
        self,
        template: InstanceTemplate,
        virtual_ids: Sequence[str],
    ) -> dict[str, InstanceStatus]:
        states = dict.fromkeys(virtual_ids, InstanceStatus.UNKNOWN)
        for chunk in batched(virtual_ids, GET_INSTANCE_STATE_BATCH_SIZE):
            for vid, raw in resolve(self.instances(template, list(chunk))).items():
                states[vid] = Instance.from_ec2(vid, raw).status
        return states

    def delete(self, template: InstanceTemplate, virtual_ids: Sequence[str]) -> list[str]:
        """Terminate the instances behind ``virtual_ids``; returns their EC2 ids."""
        found = self.do_find(template, virtual_ids)
        for vid in virtual_ids:
            if vid not in found:
                log.info("Unable to terminate unknown instance {vid}", vid=vid)
        instance_ids = [raw["InstanceId"] for raw in found.values() if not is_terminal(raw)]
        if instance_ids:
            log.info("Terminating instances: {ids}", ids=", ".join(instance_ids))
            self._ec2.terminate_instances(InstanceIds=instance_ids)
        return instance_ids
