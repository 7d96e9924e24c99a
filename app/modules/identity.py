"""
HealthBridge Core - User Identity Resolution
Resolves opaque actor references found in documents to local user ids
"""

import logging
import re
from typing import Any, Mapping, Optional

from app.services.repository import Repository

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE
)

# Keys tried, in order, when an actor reference is an embedded object
NESTED_REFERENCE_KEYS = ("id", "userId", "user_id", "uuid", "email", "username")


def parse_direct_id(reference: Any) -> Optional[int]:
    """Integer id for numeric and numeric-string references, else None"""
    if isinstance(reference, bool):
        return None
    if isinstance(reference, int):
        return reference if reference > 0 else None
    if isinstance(reference, float) and reference.is_integer():
        return int(reference) if reference > 0 else None
    if isinstance(reference, str) and reference.strip().isdigit():
        value = int(reference.strip())
        return value if value > 0 else None
    return None


def classify_reference(reference: str) -> str:
    """Directory field a string reference should be matched against"""
    if UUID_PATTERN.match(reference):
        return "uuid"
    if "@" in reference:
        return "email"
    return "username"


class UserIdentityResolver:
    """
    Resolve actor references to local user ids

    Numeric references are direct ids. UUIDs, emails and usernames are
    looked up in the user directory. Embedded objects (e.g. a `createdBy`
    dict) are unwrapped first. A miss is never an error: it resolves to None.
    """

    def __init__(self, repository: Repository):
        self.repository = repository

    def resolve(self, reference: Any) -> Optional[int]:
        if reference is None:
            return None

        if isinstance(reference, Mapping):
            for key in NESTED_REFERENCE_KEYS:
                value = reference.get(key)
                if value is None:
                    continue
                resolved = self.resolve(value)
                if resolved is not None:
                    return resolved
            return None

        direct = parse_direct_id(reference)
        if direct is not None:
            return direct

        if not isinstance(reference, str) or not reference.strip():
            return None

        text = reference.strip()
        field = classify_reference(text)
        user_id = self.repository.find_user_id(field, text)
        if user_id is None:
            logger.debug(f"Actor reference not found in user directory ({field})")
        return user_id
