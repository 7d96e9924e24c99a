"""
HealthBridge Core - Conflict Resolution
Last-writer-wins on the document-declared update time, revision tie-break
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel


class ConflictDecision(str, Enum):
    """What to do with an incoming write"""
    APPLY = "apply"
    SKIP = "skip"
    FLAG = "flag"


class ConflictVerdict(BaseModel):
    """Decision plus a short machine-readable reason for the log"""
    decision: ConflictDecision
    reason: str

    @property
    def should_write(self) -> bool:
        return self.decision != ConflictDecision.SKIP


def parse_revision(rev: Optional[str]) -> Optional[Tuple[int, str]]:
    """
    Split a CouchDB revision "N-hash" into (generation, hash)

    Returns None for missing or malformed revisions.
    """
    if not rev or "-" not in rev:
        return None
    generation, _, digest = rev.partition("-")
    if not generation.isdigit():
        return None
    return int(generation), digest


def compare_revisions(incoming: Optional[str], stored: Optional[str]) -> int:
    """
    Order two revisions: negative if incoming is older, 0 if equal or
    incomparable, positive if incoming is newer
    """
    left = parse_revision(incoming)
    right = parse_revision(stored)
    if left is None or right is None:
        return 0
    if left == right:
        return 0
    return -1 if left < right else 1


def resolve_conflict(
    incoming_updated_at: Optional[datetime],
    stored_updated_at: Optional[datetime],
    incoming_rev: Optional[str] = None,
    stored_rev: Optional[str] = None,
    exists: bool = True
) -> ConflictVerdict:
    """
    Decide whether an incoming document revision replaces the stored row

    Only document-declared update times are compared. An incoming write is
    applied unless it is older than the stored one; equal times fall back
    to the revision. A write without a timestamp over a row that has one is
    applied but flagged for review.

    Args:
        incoming_updated_at: updatedAt declared by the incoming document
        stored_updated_at: updatedAt declared by the stored document
        incoming_rev: Incoming CouchDB revision
        stored_rev: Stored CouchDB revision
        exists: Whether a row already exists for the identifier

    Returns:
        ConflictVerdict
    """
    if not exists:
        return ConflictVerdict(decision=ConflictDecision.APPLY, reason="new")

    if incoming_updated_at is None:
        if stored_updated_at is not None:
            return ConflictVerdict(decision=ConflictDecision.FLAG, reason="missing_timestamp")
        if compare_revisions(incoming_rev, stored_rev) < 0:
            return ConflictVerdict(decision=ConflictDecision.SKIP, reason="older_revision")
        return ConflictVerdict(decision=ConflictDecision.APPLY, reason="untimestamped")

    if stored_updated_at is None:
        return ConflictVerdict(decision=ConflictDecision.APPLY, reason="stored_untimestamped")

    if incoming_updated_at < stored_updated_at:
        return ConflictVerdict(decision=ConflictDecision.SKIP, reason="stale")

    if incoming_updated_at > stored_updated_at:
        return ConflictVerdict(decision=ConflictDecision.APPLY, reason="newer")

    if compare_revisions(incoming_rev, stored_rev) < 0:
        return ConflictVerdict(decision=ConflictDecision.SKIP, reason="older_revision")
    return ConflictVerdict(decision=ConflictDecision.APPLY, reason="same_time")
