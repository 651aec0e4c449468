"""
Value objects shared by the directory client and the reconciliation engine.

Everything here is an immutable snapshot: groups and users are re-read from the
directory for every group that is processed and thrown away afterwards.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, List, Mapping, Optional, Tuple

ACTION_ADD = 'Add'
ACTION_REMOVE = 'Remove'

STATUS_OK = 'ok'
STATUS_ERROR = 'error'


def _lookup(attributes: Mapping[str, Tuple[str, ...]], name: str) -> Tuple[str, ...]:
    """Case-insensitive attribute lookup; directory attribute names ignore case."""
    values = attributes.get(name)
    if values is not None:
        return values
    wanted = name.lower()
    for key, values in attributes.items():
        if key.lower() == wanted:
            return values
    return ()


@dataclass(frozen=True)
class Group:
    """A directory group and the raw attributes read alongside it."""
    dn: str
    name: str
    attributes: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    def get_values(self, name: str) -> Tuple[str, ...]:
        return _lookup(self.attributes, name)

    def get_value(self, name: str) -> Optional[str]:
        values = self.get_values(name)
        return values[0] if values else None


@dataclass(frozen=True)
class User:
    """
    A directory user.

    ``id`` is the stable unique identifier used for every membership comparison;
    ``account_name`` may change (renames) and is only used for ordering and display.
    """
    dn: str
    id: str
    account_name: str
    sid: Optional[str] = None
    attributes: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    def get_values(self, name: str) -> Tuple[str, ...]:
        return _lookup(self.attributes, name)

    @property
    def sort_key(self) -> str:
        return self.account_name.casefold()


@dataclass(frozen=True)
class GroupQueries:
    """Query strings resolved from a group's attribute slots. ``None`` means not set."""
    primary: str
    secondary_filter: Optional[str] = None
    user_scope_override: Optional[str] = None


@dataclass(frozen=True)
class ChangeRecord:
    """One applied or simulated membership change, as written in pass-through mode."""
    group: str
    query: str
    user: str
    action: str

    def to_dict(self) -> Dict[str, str]:
        return {
            'Group': self.group,
            'Query': self.query,
            'User': self.user,
            'Action': self.action,
        }


@dataclass
class ApplyOutcome:
    """Counters and records produced while applying one group's changes."""
    added: int = 0
    removed: int = 0
    skipped: int = 0
    failed: int = 0
    records: List[ChangeRecord] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class GroupResult:
    """Outcome of reconciling a single group."""
    group: str
    dn: str
    query: Optional[str] = None
    status: str = STATUS_OK
    error: Optional[str] = None
    stage: Optional[str] = None
    to_add: int = 0
    to_remove: int = 0
    added: int = 0
    removed: int = 0
    failed_mutations: int = 0
    records: List[ChangeRecord] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_OK

    def as_dict(self) -> Dict[str, Any]:
        return {
            'group': self.group,
            'status': self.status,
            'stage': self.stage,
            'error': self.error,
            'to_add': self.to_add,
            'to_remove': self.to_remove,
            'added': self.added,
            'removed': self.removed,
            'failed_mutations': self.failed_mutations,
            'elapsed_seconds': round(self.elapsed_seconds, 3),
        }
