"""
Sharing state machine.

A shared event moves through:

    pending --accept--> accepted --remove--> declined
    pending --decline-> declined
    pending --cancel--> (row deleted)

declined is terminal. Only the recipient accepts, declines or removes;
only the sender cancels, and only while the share is still pending.

The functions here decide whether a transition is allowed and what it
produces; they never touch the store. CalendarStore performs the writes
in the order these rules require.

Visibility is asymmetric. A sender sees every pending or accepted share
they sent (pending ones labelled "sent - pending"). A recipient sees only
accepted shares in the calendar grid; pending ones are offered through
the pending-actions list instead.
"""

import uuid
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from .debug import debug_print
from .errors import InvalidTransition, PermissionDenied
from .event_wrapper import (
    CanonicalEvent, Profile, SharedEvent, SharingAnnotation, SharingStatus
)
from .timezone_utils import utc_now


def _debug_print(msg: str) -> None:
    debug_print("SHARING", msg)


class ShareRole(Enum):
    SENDER = "sender"
    RECIPIENT = "recipient"
    NONE = "none"


# Stored-state transitions; cancel is a deletion and is checked separately
TRANSITIONS: dict[SharingStatus, frozenset[SharingStatus]] = {
    SharingStatus.PENDING: frozenset({SharingStatus.ACCEPTED, SharingStatus.DECLINED}),
    SharingStatus.ACCEPTED: frozenset({SharingStatus.DECLINED}),
    SharingStatus.DECLINED: frozenset(),
}


def role_of(shared: SharedEvent, user_id: str) -> ShareRole:
    if shared.shared_by == user_id:
        return ShareRole.SENDER
    if shared.shared_with == user_id:
        return ShareRole.RECIPIENT
    return ShareRole.NONE


def _require_role(shared: SharedEvent, user_id: str, role: ShareRole, action: str) -> None:
    if role_of(shared, user_id) != role:
        raise PermissionDenied(
            f"Only the {role.value} of shared event {shared.id} may {action} it"
        )


def _require_transition(shared: SharedEvent, target: SharingStatus) -> None:
    if target not in TRANSITIONS[shared.status]:
        raise InvalidTransition(shared.id, shared.status.value, target.value)


# ==================== Transitions ====================

def create_shares(
    event: CanonicalEvent,
    sender_id: str,
    friend_ids: Iterable[str],
    message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> list[SharedEvent]:
    """
    New pending shares, one per distinct recipient, each holding a
    snapshot of the event as it is right now.

    The sender must own the event. Sharing with yourself is skipped.
    """
    if event.user_id != sender_id:
        raise PermissionDenied(f"Event {event.id} is not owned by {sender_id}")

    now = now or utc_now()
    snapshot = event.snapshot()
    shares = []
    seen = set()
    for friend_id in friend_ids:
        if not friend_id or friend_id == sender_id or friend_id in seen:
            continue
        seen.add(friend_id)
        shares.append(SharedEvent(
            id=str(uuid.uuid4()),
            original_event_id=event.id,
            shared_by=sender_id,
            shared_with=friend_id,
            status=SharingStatus.PENDING,
            event_data=dict(snapshot),
            created_at=now,
            updated_at=now,
            message=message or None,
        ))
    _debug_print(f"Sharing {event.id} with {len(shares)} recipient(s)")
    return shares


def transition(
    shared: SharedEvent,
    target: SharingStatus,
    actor_id: str,
    now: Optional[datetime] = None,
) -> SharedEvent:
    """
    Validate and apply one stored-state transition.

    Every stored transition is the recipient's to make. Returns an updated
    copy; the input is left untouched.
    """
    _require_role(shared, actor_id, ShareRole.RECIPIENT, target.value)
    _require_transition(shared, target)
    return replace(shared, status=target, updated_at=now or utc_now())


def check_cancel(shared: SharedEvent, actor_id: str) -> None:
    """A share may be cancelled by its sender while it is still pending."""
    _require_role(shared, actor_id, ShareRole.SENDER, "cancel")
    if shared.status != SharingStatus.PENDING:
        raise InvalidTransition(shared.id, shared.status.value, "cancelled")


def fork_accepted_event(shared: SharedEvent, recipient_id: str) -> CanonicalEvent:
    """
    The recipient-owned copy created on acceptance.

    Built from the snapshot, carries the public photos, never private
    ones. Its id is deterministic so a retried accept overwrites rather
    than duplicates.
    """
    event = shared.snapshot_event(as_id=shared.accepted_copy_id, owner_id=recipient_id)
    return event.normalized()


# ==================== Visibility ====================

def is_visible(shared: SharedEvent, viewer_id: str) -> bool:
    """Does this share contribute occurrences to the viewer's calendar grid?"""
    role = role_of(shared, viewer_id)
    if role == ShareRole.SENDER:
        return shared.status in (SharingStatus.PENDING, SharingStatus.ACCEPTED)
    if role == ShareRole.RECIPIENT:
        return shared.status == SharingStatus.ACCEPTED
    return False


def is_pending_action(shared: SharedEvent, viewer_id: str) -> bool:
    """Should the viewer be asked to accept or decline this share?"""
    return role_of(shared, viewer_id) == ShareRole.RECIPIENT and \
        shared.status == SharingStatus.PENDING


def target_base_id(shared: SharedEvent, viewer_id: str) -> str:
    """
    Base id under which the share shows up for the viewer: the sender's
    original event, or the recipient's accepted copy.
    """
    if role_of(shared, viewer_id) == ShareRole.SENDER:
        return shared.sender_base_id
    return shared.accepted_copy_id


def annotate(
    shared: SharedEvent,
    viewer_id: str,
    profiles: dict[str, Profile],
    recipients: tuple[str, ...] = (),
) -> SharingAnnotation:
    """
    Label for a shared occurrence.

    Recipients see who shared it with them. Senders see the recipient(s)
    named in the display-name slot instead, with the avatar of the first
    recipient listed.
    """
    viewer_is_sender = role_of(shared, viewer_id) == ShareRole.SENDER
    recipients = recipients or (shared.shared_with,)
    if viewer_is_sender:
        names = [profiles[r].display_name if r in profiles else "Someone" for r in recipients]
        display_name = ", ".join(names)
        first = profiles.get(recipients[0])
        avatar = first.avatar_url if first else None
    else:
        sender = profiles.get(shared.shared_by)
        display_name = sender.display_name if sender else "Someone"
        avatar = sender.avatar_url if sender else None

    return SharingAnnotation(
        shared_event_id=shared.id,
        status=shared.status,
        shared_by=shared.shared_by,
        shared_by_display_name=display_name,
        shared_by_avatar=avatar,
        viewer_is_sender=viewer_is_sender,
        recipients=recipients,
        message=shared.message,
    )
