"""
Guardian Roster Resolver.

Turns a session's guardian-group selection into the ordered list of contacts
to notify.  Groups are visited in the order captured at arm time, members in
group order, so repeated resolution (for retries) is stable.

Deduplication is per channel: the key is ``(channel, canonical
destination)``.  A guardian listed in two groups with the same phone number
is notified once on SMS; a second contact sharing only that phone keeps
whatever other channels it exposes.
"""

from __future__ import annotations

import logging

from dateguard.delivery import InvalidDestinationError, canonical_destination
from dateguard.directory import GuardianDirectory
from dateguard.models import DeliveryChannel, GuardianContact, Session

logger = logging.getLogger(__name__)

_CHANNEL_FIELDS = {
    DeliveryChannel.SMS: "phone",
    DeliveryChannel.PUSH: "device_token",
    DeliveryChannel.EMAIL: "email",
}


def _dedup_key(channel: DeliveryChannel, destination: str) -> tuple[DeliveryChannel, str]:
    try:
        return (channel, canonical_destination(channel, destination))
    except InvalidDestinationError:
        return (channel, destination.strip())


class GuardianRosterResolver:
    """Resolves the contacts to notify for a session."""

    def __init__(self, directory: GuardianDirectory) -> None:
        self._directory = directory

    def snapshot(self, group_ids: list[str]) -> dict[str, list[GuardianContact]]:
        """Current membership of ``group_ids``, for capture at arm time."""
        return self._directory.members_of(list(group_ids))

    def resolve(self, session: Session) -> list[GuardianContact]:
        """Ordered, per-channel deduplicated contacts for ``session``.

        Members come from the session's captured roster for each group when
        one exists; groups missing from the snapshot are read from the
        directory.  An empty list means nobody can be notified -- the caller
        must treat that as a failure.
        """
        group_ids = list(session.guardian_group_ids)
        captured = session.captured_rosters or {}
        missing = [gid for gid in group_ids if gid not in captured]
        live = self._directory.members_of(missing) if missing else {}

        seen: set[tuple[DeliveryChannel, str]] = set()
        resolved: list[GuardianContact] = []

        for group_id in group_ids:
            members = captured.get(group_id, live.get(group_id))
            if members is None:
                logger.warning("Guardian group %s not found", group_id)
                continue

            for contact in members:
                dropped = {}
                for channel in contact.channels():
                    key = _dedup_key(channel, contact.destination_for(channel))
                    if key in seen:
                        dropped[_CHANNEL_FIELDS[channel]] = None
                    else:
                        seen.add(key)

                if len(dropped) == len(contact.channels()):
                    continue
                resolved.append(contact.model_copy(update=dropped) if dropped else contact)

        logger.info(
            "Resolved %d guardian contact(s) from %d group(s)",
            len(resolved),
            len(group_ids),
        )
        return resolved
