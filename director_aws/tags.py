"""Ownership tags.

Every resource created for a virtual instance carries the same tag set:
the ownership tag (virtual instance id), the template-name tag, the
resource-name tag ``<prefix>-<virtual id>`` and the user's tags. Builtin
tag names can be remapped through the ``[tags]`` configuration table.
"""

from __future__ import annotations

from collections.abc import Mapping

from director_aws.constants import MAX_TAGS_ALLOWED, ResourceTag
from director_aws.exceptions import UnrecoverableProviderError
from director_aws.template import InstanceTemplate

type Tag = dict[str, str]


def _tag(key: str, value: str) -> Tag:
    return {"Key": key, "Value": value}


class TagHelper:
    __slots__ = ("_custom_names",)

    def __init__(self, custom_names: Mapping[str, str] | None = None) -> None:
        self._custom_names = dict(custom_names or {})

    def tag_name(self, key: str) -> str:
        return self._custom_names.get(key, key)

    @property
    def id_tag_name(self) -> str:
        return self.tag_name(ResourceTag.VIRTUAL_INSTANCE_ID)

    @property
    def template_name_tag_name(self) -> str:
        return self.tag_name(ResourceTag.TEMPLATE_NAME)

    def id_tag(self, virtual_id: str) -> Tag:
        return _tag(self.id_tag_name, virtual_id)

    def template_name_tag(self, template_name: str) -> Tag:
        return _tag(self.template_name_tag_name, template_name)

    def resource_name_tag(self, template: InstanceTemplate, virtual_id: str) -> Tag:
        return _tag(
            self.tag_name(ResourceTag.RESOURCE_NAME),
            f"{template.instance_name_prefix}-{virtual_id}",
        )

    def user_tags(self, template: InstanceTemplate) -> list[Tag]:
        return [_tag(self.tag_name(k), v) for k, v in template.tags.items()]

    def instance_tags(
        self,
        template: InstanceTemplate,
        virtual_id: str,
        user_tags: list[Tag] | None = None,
    ) -> list[Tag]:
        """Tags for an instance and the volumes created with it."""
        return [
            self.resource_name_tag(template, virtual_id),
            self.id_tag(virtual_id),
            self.template_name_tag(template.name),
            *(self.user_tags(template) if user_tags is None else user_tags),
        ]

    def request_tags(self, template: InstanceTemplate, virtual_id: str) -> list[Tag]:
        """Tags for a spot instance request."""
        return [
            self.id_tag(virtual_id),
            self.template_name_tag(template.name),
            *self.user_tags(template),
        ]

    def group_tags(self, template: InstanceTemplate, group_id: str) -> list[dict[str, object]]:
        """Auto Scaling Group tags, propagated to the instances it launches."""
        tags = [self.template_name_tag(template.name), *self.user_tags(template)]
        return [
            {
                "ResourceType": "auto-scaling-group",
                "ResourceId": group_id,
                "Key": t["Key"],
                "Value": t["Value"],
                "PropagateAtLaunch": True,
            }
            for t in tags
        ]

    @staticmethod
    def validate_tags(tags: Mapping[str, str] | None) -> None:
        if tags is not None and len(tags) > MAX_TAGS_ALLOWED:
            raise UnrecoverableProviderError(
                f"Number of tags exceeds the maximum of {MAX_TAGS_ALLOWED}"
            )
