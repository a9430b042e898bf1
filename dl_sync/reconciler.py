"""
Directory reconciler.

Makes sure the distribution group exists with its configured mail-routing attributes
and applies a membership delta one member at a time.
"""

import logging
from typing import Any, Dict

from dl_sync.directory_client import DirectoryUnavailable
from dl_sync.models import (
    GroupAttribute,
    GroupAttributeSet,
    MembershipDelta,
    RunContext,
    ACTION_ADD,
    ACTION_REMOVE,
    ACTION_CREATE_GROUP,
    ACTION_SET_ATTRIBUTE,
)

logger = logging.getLogger(__name__)


class GroupReconciler:
    """
    Applies the desired state of the group to the directory.

    The existence check and the create call are separate requests, so two runs
    started at the same moment could both try to create the group.
    """

    def __init__(self, directory, group_config: Dict[str, Any], dry_run: bool = False):
        """
        Args:
            directory: Directory client
            group_config: The ``group`` configuration section
            dry_run: Log intended changes without issuing mutating calls
        """
        self.directory = directory
        self.name = group_config['name']
        self.path = group_config['path']
        self.mail = group_config['mail']
        self.scope = group_config.get('scope', 'universal')
        self.category = group_config.get('category', 'distribution')
        self.attributes = GroupAttributeSet.from_config(group_config.get('attributes') or {})
        self.dry_run = dry_run

    def ensure_group(self, context: RunContext) -> str:
        """
        Find or create the group, then reconcile its attributes.

        Returns:
            DN of the group

        Raises:
            DirectoryUnavailable: If the lookup or the create call fails
        """
        context.group_name = self.name
        context.group_mail = self.mail

        group_dn = self.directory.find_group(self.name)
        if group_dn is None:
            if self.dry_run:
                group_dn = f"CN={self.name},{self.path}"
                logger.info(f"[dry run] Would create group {group_dn}")
                context.group_dn = group_dn
                context.group_created = True
                return group_dn

            logger.info(f"Group {self.name} not found, creating it under {self.path}")
            group_dn = self.directory.create_group(self.name, self.path, self.mail, self.scope, self.category)
            context.group_created = True
            context.record_change(ACTION_CREATE_GROUP, group_dn, after=[self.mail])

        context.group_dn = group_dn
        self.reconcile_attributes(group_dn, context)
        return group_dn

    def reconcile_attributes(self, group_dn: str, context: RunContext) -> Dict[str, Any]:
        """
        Update only the configured attributes whose current value differs.

        Returns:
            The update payload that was applied (empty if nothing differed)
        """
        if not len(self.attributes):
            logger.debug("No group attributes configured")
            return {}

        current = self.directory.get_group_attributes(group_dn, self.attributes.names)
        changes = self.attributes.diff(current)

        if not changes:
            logger.info(f"Group attributes of {group_dn} already match configuration, no update needed")
            return {}

        lowered = {str(key).lower(): value for key, value in current.items()}
        for name, desired in changes.items():
            attribute = GroupAttribute.from_name(name)
            before = attribute.normalize(lowered.get(name.lower()))
            after = attribute.normalize(desired)
            context.attribute_changes[name] = (before, after)
            logger.info(f"Attribute {name}: {before} -> {after}")

        if self.dry_run:
            logger.info(f"[dry run] Would update attributes of {group_dn}: {', '.join(sorted(changes))}")
            return changes

        self.directory.replace_group_attributes(group_dn, changes)
        for name, (before, after) in context.attribute_changes.items():
            context.record_change(ACTION_SET_ATTRIBUTE, group_dn, attribute=name, before=before, after=after)
        return changes

    def apply_delta(self, group_dn: str, delta: MembershipDelta, context: RunContext):
        """
        Add and remove members individually.

        A failed call is recorded on the context and the remaining members are still
        processed; nothing already applied is undone.
        """
        for member_dn in delta.sorted_add:
            self._apply_one(ACTION_ADD, self.directory.add_group_member, group_dn, member_dn, context)

        for member_dn in delta.sorted_remove:
            self._apply_one(ACTION_REMOVE, self.directory.remove_group_member, group_dn, member_dn, context)

        logger.info(f"Membership applied: {len(context.added)} added, {len(context.removed)} removed, "
                    f"{len(context.failed_mutations)} failed")

    def _apply_one(self, action: str, operation, group_dn: str, member_dn: str, context: RunContext):
        completed = context.added if action == ACTION_ADD else context.removed

        if self.dry_run:
            logger.info(f"[dry run] Would {action} {member_dn}")
            completed.append(member_dn)
            return

        try:
            operation(group_dn, member_dn)
        except DirectoryUnavailable as e:
            context.add_failed_mutation(action, member_dn, e)
            logger.error(f"Failed to {action} member {member_dn}: {e}")
            return

        completed.append(member_dn)
        if action == ACTION_ADD:
            context.record_change(action, member_dn, attribute='memberOf', after=[group_dn])
            logger.info(f"Added member {member_dn}")
        else:
            context.record_change(action, member_dn, attribute='memberOf', before=[group_dn])
            logger.info(f"Removed member {member_dn}")
