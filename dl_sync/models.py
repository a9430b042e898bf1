"""
Data types shared across the sync stages.

Roster records and membership sets are transient and owned by a single run.
RunRecord and ChangeRecord are the persisted forms kept by the history store.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

STATUS_SUCCESS = 'success'
STATUS_FAILURE = 'failure'

MODE_SYNC = 'sync'
MODE_ROLLBACK = 'rollback'

ACTION_ADD = 'add'
ACTION_REMOVE = 'remove'
ACTION_SET_ATTRIBUTE = 'set_attribute'
ACTION_CREATE_GROUP = 'create_group'


class GroupAttribute(Enum):
    """Exchange mail-routing attributes the sync is allowed to manage."""

    AUTH_ORIG = 'authOrig'
    UNAUTH_ORIG = 'unauthOrig'
    REJECT_PERMS = 'dLMemRejectPerms'
    SUBMIT_PERMS = 'dLMemSubmitPerms'
    REQUIRE_AUTH = 'msExchRequireAuthToSendTo'
    HIDE_FROM_ADDRESS_LISTS = 'msExchHideFromAddressLists'

    @classmethod
    def from_name(cls, name: str) -> Optional['GroupAttribute']:
        """Look up a member by its directory attribute name, ignoring case."""
        for member in cls:
            if member.value.lower() == str(name).lower():
                return member
        return None

    @property
    def is_boolean(self) -> bool:
        return self in (GroupAttribute.REQUIRE_AUTH, GroupAttribute.HIDE_FROM_ADDRESS_LISTS)

    def normalize(self, value: Any) -> List[str]:
        """
        Reduce a raw attribute value to a canonical sorted list of strings.

        Scalars and single-element lists compare equal, and None, empty strings
        and empty lists all mean "not set".
        """
        if value is None:
            return []

        if isinstance(value, (list, tuple, set, frozenset)):
            items = list(value)
        else:
            items = [value]

        normalized = []
        for item in items:
            if item is None:
                continue
            if self.is_boolean:
                normalized.append(_boolean_text(item))
                continue
            text = str(item).strip()
            if text:
                normalized.append(text)

        return sorted(normalized)


def _boolean_text(value: Any) -> str:
    if isinstance(value, bool):
        return 'TRUE' if value else 'FALSE'
    return 'TRUE' if str(value).strip().lower() in ('true', '1', 'yes') else 'FALSE'


class GroupAttributeSet:
    """Desired values for the managed group attributes."""

    def __init__(self, values: Optional[Dict[GroupAttribute, Any]] = None):
        self.values = dict(values or {})

    @classmethod
    def from_config(cls, attributes: Dict[str, Any]) -> 'GroupAttributeSet':
        values = {}
        for name, value in (attributes or {}).items():
            attribute = GroupAttribute.from_name(name)
            if attribute is None:
                raise ValueError(f"Unsupported group attribute: {name}")
            values[attribute] = value
        return cls(values)

    @property
    def names(self) -> List[str]:
        return [attribute.value for attribute in self.values]

    def diff(self, current: Dict[str, Any]) -> Dict[str, Any]:
        """
        Compare desired values against the group's current attributes.

        Args:
            current: Current attribute values keyed by directory attribute name

        Returns:
            Mapping of attribute name to desired value, for mismatching attributes only
        """
        lowered = {str(key).lower(): value for key, value in (current or {}).items()}
        changes = {}
        for attribute, desired in self.values.items():
            existing = lowered.get(attribute.value.lower())
            if attribute.normalize(existing) != attribute.normalize(desired):
                changes[attribute.value] = desired
        return changes

    def __len__(self):
        return len(self.values)


@dataclass(frozen=True)
class RosterRecord:
    """One row of the reduced personnel export."""

    values: Dict[str, str]

    def get(self, column: str, default: str = '') -> str:
        return self.values.get(column, default)

    def email(self, email_column: str) -> str:
        return (self.values.get(email_column) or '').strip()


@dataclass(frozen=True)
class MembershipDelta:
    """Add/remove sets that turn current membership into target membership."""

    to_add: FrozenSet[str]
    to_remove: FrozenSet[str]

    @property
    def sorted_add(self) -> List[str]:
        return sorted(self.to_add)

    @property
    def sorted_remove(self) -> List[str]:
        return sorted(self.to_remove)

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


@dataclass
class ChangeRecord:
    """One mutating operation applied to the directory."""

    action: str
    target: str
    timestamp: datetime = field(default_factory=datetime.now)
    attribute: Optional[str] = None
    before: Optional[str] = None
    after: Optional[str] = None
    id: Optional[int] = None


@dataclass
class RunRecord:
    """One invocation of the sync, successful or not."""

    run_at: datetime
    mode: str
    input_file: Optional[str]
    entry_count: int
    status: str
    log_excerpt: str = ''
    raw_csv: Optional[str] = None
    id: Optional[int] = None

    @property
    def run_date(self) -> str:
        return self.run_at.strftime('%Y-%m-%d')


@dataclass
class RunContext:
    """Everything a single run learns and does, handed from stage to stage."""

    mode: str = MODE_SYNC
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    dry_run: bool = False
    rollback_date: Optional[str] = None

    input_file: Optional[str] = None
    input_mtime: Optional[datetime] = None
    entry_count: int = 0
    reduced_file: Optional[str] = None
    raw_csv: Optional[str] = None
    log_file: Optional[str] = None

    group_name: Optional[str] = None
    group_mail: Optional[str] = None
    group_dn: Optional[str] = None
    group_created: bool = False
    attribute_changes: Dict[str, Tuple[List[str], List[str]]] = field(default_factory=dict)

    target_size: int = 0
    current_size: int = 0
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed_lookups: List[str] = field(default_factory=list)
    failed_mutations: List[Tuple[str, str, str]] = field(default_factory=list)
    final_group_size: Optional[int] = None
    changes: List[ChangeRecord] = field(default_factory=list)

    status: Optional[str] = None
    error: Optional[str] = None

    def add_failed_lookup(self, email: str):
        if email not in self.failed_lookups:
            self.failed_lookups.append(email)

    def add_failed_mutation(self, action: str, member: str, error: Any):
        self.failed_mutations.append((action, member, str(error)))

    def record_change(self, action: str, target: str, attribute: Optional[str] = None,
                      before: Optional[Iterable[str]] = None, after: Optional[Iterable[str]] = None):
        self.changes.append(ChangeRecord(
            action=action,
            target=target,
            attribute=attribute,
            before=_join(before),
            after=_join(after)
        ))

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_mutations)


def _join(values: Optional[Iterable[str]]) -> Optional[str]:
    if values is None:
        return None
    return '; '.join(values)
