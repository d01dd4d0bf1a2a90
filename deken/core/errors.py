"""
Error taxonomy for the package manager.

Refresh-stage errors never cross into the caller's thread: the catalog
worker records them and announces them through the event bus.  Download
errors are reported once, through the task's completion outcome.
Persistence failures are raised to whoever attempted the mutation.

A platform with no matching artifact is not an error — it is an
empty result.
"""

from __future__ import annotations


class DekenError(Exception):
    """Base class for package manager errors."""

    kind = "error"


class NetworkUnreachable(DekenError):
    """Connection failed, timed out, or the server answered non-200."""

    kind = "network_unreachable"


class MalformedResponse(DekenError):
    """A registry response did not have the expected JSON shape."""

    kind = "malformed_response"


class ArchiveCorrupt(DekenError):
    """A downloaded archive could not be extracted."""

    kind = "archive_corrupt"


class PersistenceFailure(DekenError):
    """The install-state file could not be written."""

    kind = "persistence_failure"
