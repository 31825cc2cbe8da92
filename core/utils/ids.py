"""
Centralized identifier generation.

Row and event IDs are random UUID4 strings. Customer-facing account numbers
are ten decimal digits drawn from the OS CSPRNG.
"""

from __future__ import annotations

import secrets
from uuid import uuid4


def generate_id() -> str:
    """Generate a primary key for a persisted record."""
    return str(uuid4())


def generate_event_id() -> str:
    """Generate a globally unique event ID."""
    return str(uuid4())


def generate_account_number() -> str:
    """Generate a ten digit account number that never starts with zero."""
    first = str(secrets.randbelow(9) + 1)
    rest = "".join(str(secrets.randbelow(10)) for _ in range(9))
    return first + rest
