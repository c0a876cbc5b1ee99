#!/usr/bin/env python3
"""Data model shared by the session manager and the folder navigator."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional


def normalize_scopes(scopes: Iterable[str]) -> FrozenSet[str]:
    """Normalize a scope collection for comparison (case-insensitive set)."""
    return frozenset(s.strip().lower() for s in scopes if s and s.strip())


@dataclass(frozen=True)
class Account:
    """Identity of the signed-in principal."""

    home_account_id: str
    local_account_id: str = ''
    username: str = ''
    environment: str = ''

    @classmethod
    def from_msal(cls, raw: Dict[str, Any]) -> 'Account':
        return cls(
            home_account_id=raw.get('home_account_id', ''),
            local_account_id=raw.get('local_account_id', ''),
            username=raw.get('username', ''),
            environment=raw.get('environment', ''),
        )


@dataclass(frozen=True)
class Credential:
    """Bearer token bound to a scope set and an account.

    The core never persists a Credential; it is re-derived from the
    provider's cache on every acquisition.
    """

    access_token: str
    scopes: FrozenSet[str]
    expires_at: float
    account: Optional[Account] = None

    def covers(self, scopes: Iterable[str]) -> bool:
        """True if this credential was issued for exactly the requested scopes."""
        return normalize_scopes(scopes) == self.scopes

    def __repr__(self) -> str:
        return (f"Credential(scopes={sorted(self.scopes)}, expires_at={self.expires_at}, "
                f"account={self.account.username if self.account else None})")


class InteractionState(Enum):
    IDLE = 'idle'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    FAILED = 'failed'


@dataclass(frozen=True)
class InteractionStatus:
    """Current interaction state, with a reason when FAILED."""

    state: InteractionState = InteractionState.IDLE
    reason: Optional[str] = None


@dataclass(frozen=True)
class PathEntry:
    """One frame of the navigation stack."""

    id: str
    display_name: str


@dataclass
class DriveEntry:
    """One row of a folder listing."""

    id: str
    name: str
    is_folder: bool = False
    size: int = 0
    web_url: str = ''
    last_modified: Optional[datetime] = None
    parent_id: Optional[str] = None

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'DriveEntry':
        """Build an entry from a Graph driveItem dictionary."""
        modified = item.get('lastModifiedDateTime')
        last_modified = None
        if modified:
            try:
                last_modified = datetime.fromisoformat(modified.replace('Z', '+00:00'))
            except ValueError:
                last_modified = None
        return cls(
            id=item['id'],
            name=item.get('name', ''),
            is_folder='folder' in item,
            size=item.get('size', 0) or 0,
            web_url=item.get('webUrl', ''),
            last_modified=last_modified,
            parent_id=item.get('parentReference', {}).get('id'),
        )


@dataclass(frozen=True)
class Hint:
    """A human-actionable remediation hint."""

    kind: str
    message: str


@dataclass(frozen=True)
class DiagnosticsSnapshot:
    """Point-in-time, read-only diagnostics report."""

    success: bool
    session_state: str
    interaction: InteractionStatus
    issues: List[str] = field(default_factory=list)
    hints: List[Hint] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def recommendations(self) -> List[str]:
        return [hint.message for hint in self.hints]

    def has_hint(self, kind: str) -> bool:
        return any(hint.kind == kind for hint in self.hints)
