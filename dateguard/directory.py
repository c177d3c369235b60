"""
Read-only collaborators: guardian directory, counterpart and authority lookups.

These are owned by the surrounding application.  The orchestrator only reads
through them; the in-memory implementations back tests and demos.
"""

from __future__ import annotations

import abc
from typing import Iterable, Optional

from dateguard.models import GuardianContact, GuardianGroup, NearestAuthority, Session


class GuardianDirectory(abc.ABC):
    @abc.abstractmethod
    def members_of(self, group_ids: Iterable[str]) -> dict[str, list[GuardianContact]]:
        """Current members of each known group, keyed by group id.

        Unknown group ids are omitted from the result.
        """


class CounterpartLookup(abc.ABC):
    @abc.abstractmethod
    def counterpart_identifier(self, session: Session) -> Optional[str]:
        """Raw identifier of the other party in the session's encounter.

        The orchestrator anonymizes it before it reaches any message.
        """


class AuthorityLookup(abc.ABC):
    @abc.abstractmethod
    def nearest_authority(self, latitude: float, longitude: float) -> Optional[NearestAuthority]:
        """Nearest police/emergency authority for the coordinates, if known."""


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

class InMemoryGuardianDirectory(GuardianDirectory):
    def __init__(self, groups: Iterable[GuardianGroup] = ()) -> None:
        self._groups: dict[str, GuardianGroup] = {}
        for group in groups:
            self.add_group(group)

    def add_group(self, group: GuardianGroup) -> None:
        self._groups[group.group_id] = group.model_copy(deep=True)

    def set_members(self, group_id: str, members: list[GuardianContact]) -> None:
        """Replace a group's membership (guardian management is external)."""
        if group_id not in self._groups:
            raise KeyError(f"Unknown guardian group '{group_id}'")
        self._groups[group_id] = self._groups[group_id].model_copy(update={"members": list(members)})

    def members_of(self, group_ids: Iterable[str]) -> dict[str, list[GuardianContact]]:
        result = {}
        for group_id in group_ids:
            group = self._groups.get(group_id)
            if group is not None:
                result[group_id] = list(group.members)
        return result


class InMemoryCounterpartLookup(CounterpartLookup):
    """Maps encounter ids to counterpart identifiers."""

    def __init__(self, identifiers: Optional[dict[str, str]] = None) -> None:
        self._identifiers = dict(identifiers or {})

    def counterpart_identifier(self, session: Session) -> Optional[str]:
        if session.encounter_id is None:
            return None
        return self._identifiers.get(session.encounter_id)


class StaticAuthorityLookup(AuthorityLookup):
    """Returns the same authority for every coordinate; for demos and tests."""

    def __init__(self, authority: Optional[NearestAuthority]) -> None:
        self._authority = authority

    def nearest_authority(self, latitude: float, longitude: float) -> Optional[NearestAuthority]:
        return self._authority
