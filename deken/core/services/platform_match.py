"""
Platform matching — is a registry artifact built for this machine?

Deken tags every artifact with ``<os>-<arch>-<floatsize>``, e.g.
``Linux-amd64-32`` or ``Windows-i386-64``.  A tag matches when the OS
is exactly ours, the float size is exactly ours, and the architecture
token is one of the aliases our CPU is known by.
"""

from __future__ import annotations

import logging
import platform
from collections.abc import Iterable
from dataclasses import dataclass

from deken.core.models.registry import RawLibraryEntry

logger = logging.getLogger(__name__)

# platform.machine() → every name deken uploaders use for that CPU.
_ARCH_ALIASES: dict[str, tuple[str, ...]] = {
    "x86_64": ("amd64", "x86_64"),
    "amd64": ("amd64", "x86_64"),
    "AMD64": ("amd64", "x86_64"),       # Windows
    "i386": ("i386", "i686", "i586"),
    "i486": ("i386", "i686", "i586"),
    "i586": ("i386", "i686", "i586"),
    "i686": ("i386", "i686", "i586"),
    "x86": ("i386", "i686", "i586"),    # Windows 32-bit
    "aarch64": ("arm64", "aarch64"),
    "arm64": ("arm64", "aarch64"),      # macOS
    "ARM64": ("arm64", "aarch64"),      # Windows on ARM
    "armv6l": ("armv6", "armv6l", "arm"),
    "armv7l": ("armv7l", "armv7", "armv6l", "armv6", "arm"),
    "ppc": ("ppc", "PowerPC"),
    "powerpc": ("ppc", "PowerPC"),
}


@dataclass(frozen=True)
class PlatformMatcher:
    """Local platform triple, matched against artifact tags.

    Args:
        os_name: OS as deken spells it (``Linux``, ``Darwin``, ``Windows``...).
        arch_aliases: Every architecture token that denotes the local CPU.
        float_size: Pd float width in bits (32 or 64).
    """

    os_name: str
    arch_aliases: frozenset[str]
    float_size: int = 32

    @classmethod
    def local(
        cls,
        *,
        float_size: int = 32,
        os_name: str | None = None,
        arch_aliases: Iterable[str] | None = None,
    ) -> PlatformMatcher:
        """Build a matcher for the running machine, with optional overrides."""
        if os_name is None:
            os_name = platform.system()
        if arch_aliases is None:
            machine = platform.machine()
            arch_aliases = _ARCH_ALIASES.get(machine, (machine,) if machine else ())
            if not arch_aliases:
                logger.warning("Unknown architecture %r — no artifacts will match", machine)
        return cls(os_name=os_name, arch_aliases=frozenset(arch_aliases), float_size=float_size)

    @property
    def tag(self) -> str:
        """A representative tag for this platform (first alias, sorted)."""
        arch = sorted(self.arch_aliases)[0] if self.arch_aliases else "unknown"
        return f"{self.os_name}-{arch}-{self.float_size}"

    def matches(self, platform_tag: str | None) -> bool:
        """Check one ``<os>-<arch>-<width>`` tag against this platform."""
        if not platform_tag:
            return False

        os_part, sep, rest = platform_tag.partition("-")
        if not sep or os_part != self.os_name:
            return False

        arch, sep, width = rest.rpartition("-")
        if not sep or width != str(self.float_size):
            return False

        return arch in self.arch_aliases

    def matches_entry(self, entry: RawLibraryEntry) -> bool:
        """True if any of the artifact's declared tags matches."""
        return any(self.matches(tag) for tag in entry.platform_tags)


def select_latest(
    variants: Iterable[RawLibraryEntry],
    matcher: PlatformMatcher,
) -> RawLibraryEntry | None:
    """Pick the newest variant built for this platform.

    Keeps only matching variants, then the one with the greatest
    timestamp string (``yyyy:mm:dd hh:mm:ss`` sorts chronologically).
    Returns None when nothing matches.
    """
    best: RawLibraryEntry | None = None
    for variant in variants:
        if not matcher.matches_entry(variant):
            continue
        if best is None or variant.timestamp > best.timestamp:
            best = variant
    return best
