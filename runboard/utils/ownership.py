"""
Ownership states for runs.

A run's owner reference is either a real account id or one of several
placeholder states ("imported", "unlinked_<hash>", "unclaimed_<hash>", empty).
Placeholders are claimable state, never a second real player, so every call
site that inspects ownership goes through parse_owner_ref() and checks the
resulting type instead of sniffing string prefixes.
"""

import hashlib
from dataclasses import dataclass
from typing import Optional, Union

from runboard.constants import OwnershipConstants


@dataclass(frozen=True)
class RealOwner:
    """Run linked to a real account."""
    player_id: str

    @property
    def ref(self) -> str:
        return self.player_id


@dataclass(frozen=True)
class UnlinkedOwner:
    """Provisional owner derived from a display name (unlinked_/unclaimed_ prefix)."""
    raw: str

    @property
    def ref(self) -> str:
        return self.raw


@dataclass(frozen=True)
class ImportedOwner:
    """Unattributed run delivered by the import pipeline."""

    @property
    def ref(self) -> str:
        return OwnershipConstants.IMPORTED


@dataclass(frozen=True)
class NoOwner:
    """No owner reference at all."""

    @property
    def ref(self) -> str:
        return ""


Ownership = Union[RealOwner, UnlinkedOwner, ImportedOwner, NoOwner]


def parse_owner_ref(owner_ref: Optional[str]) -> Ownership:
    """Classify a stored owner reference."""
    if owner_ref is None:
        return NoOwner()
    ref = str(owner_ref).strip()
    if not ref:
        return NoOwner()
    if ref == OwnershipConstants.IMPORTED:
        return ImportedOwner()
    if ref.startswith(OwnershipConstants.UNLINKED_PREFIX) or ref.startswith(OwnershipConstants.UNCLAIMED_PREFIX):
        return UnlinkedOwner(ref)
    return RealOwner(ref)


def is_claimable(ownership: Ownership) -> bool:
    """True when the owner is a placeholder that may be (re)attributed."""
    return not isinstance(ownership, RealOwner)


def real_player_id(owner_ref: Optional[str]) -> Optional[str]:
    """Return the account id for a real owner, None for any placeholder."""
    ownership = parse_owner_ref(owner_ref)
    if isinstance(ownership, RealOwner):
        return ownership.player_id
    return None


def normalize_name(name: Optional[str]) -> str:
    """Normalized display name used for every name comparison (trimmed, case-folded)."""
    if not name:
        return ""
    return str(name).strip().lower()


def name_hash(display_name: str) -> str:
    """Stable hash of a normalized display name."""
    digest = hashlib.sha1(normalize_name(display_name).encode('utf-8')).hexdigest()
    return digest[:OwnershipConstants.NAME_HASH_LENGTH]


def unlinked_ref_for(display_name: str) -> str:
    """Placeholder owner reference for a runner without an account."""
    return f"{OwnershipConstants.UNLINKED_PREFIX}{name_hash(display_name)}"
