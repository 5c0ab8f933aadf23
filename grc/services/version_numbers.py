"""
Version numbering for versioned GRC entities and documents.

Versions are ``major.minor`` with a single decimal digit (``0.1``, ``2.3``,
``3.0``).  They are stored and compared as integer tenths so that repeated
minor bumps never drift the way binary floats do (``0.1 + 0.1`` is exactly
``0.2`` here).

Usage:
    from grc.services.version_numbers import Version, next_version

    next_version(None, "minor")              # Version("0.1")
    next_version(Version.parse("2.9"), "minor")   # Version("3.0")
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from grc.core.exceptions import ValidationError

BUMP_NONE = "none"
BUMP_MINOR = "minor"
BUMP_MAJOR = "major"

VALID_BUMPS = frozenset({BUMP_NONE, BUMP_MINOR, BUMP_MAJOR})

_ONE_PLACE = Decimal("0.1")
_TOLERANCE = Decimal("0.000001")


@dataclass(frozen=True, order=True)
class Version:
    """A ``major.minor`` version held as integer tenths."""

    tenths: int

    def __post_init__(self):
        if self.tenths < 0:
            raise ValueError(f"Version cannot be negative (tenths={self.tenths})")

    # ── Construction ──────────────────────────────────────────────────

    @classmethod
    def parse(cls, value) -> "Version":
        """Build a Version from a str, Decimal, int or float.

        Floats are accepted for JSON payloads, but anything that does not sit
        on a one-decimal boundary (``"2.35"``) is refused rather than rounded.
        """
        if isinstance(value, Version):
            return value
        if isinstance(value, bool) or value is None:
            raise ValueError(f"Not a version: {value!r}")
        try:
            raw = Decimal(str(value).strip())
            if not raw.is_finite():
                raise ValueError(f"Not a version: {value!r}")
            quantized = raw.quantize(_ONE_PLACE, rounding=ROUND_HALF_UP)
            tenths = int(quantized * 10)
        except ArithmeticError as exc:
            # InvalidOperation covers malformed text and exponents beyond the context precision
            raise ValueError(f"Not a version: {value!r}") from exc
        if abs(raw - quantized) > _TOLERANCE:
            raise ValueError(f"Version must have exactly one decimal place: {value!r}")
        return cls(tenths)

    # ── Accessors ─────────────────────────────────────────────────────

    @property
    def major(self) -> int:
        return self.tenths // 10

    @property
    def minor(self) -> int:
        return self.tenths % 10

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"


INITIAL_VERSION = Version(1)


def normalize_bump(bump: str | None) -> str:
    """Map a client-supplied bump kind to one of VALID_BUMPS.

    ``None`` / empty means "keep the current number", as the UI sends nothing
    when the user leaves the version unchanged.
    """
    if bump is not None and not isinstance(bump, str):
        raise ValidationError(
            f"Invalid version bump {bump!r}. Must be one of: {', '.join(sorted(VALID_BUMPS))}",
            details={"version_bump": "invalid"},
        )
    kind = (bump or BUMP_NONE).strip().lower()
    if kind not in VALID_BUMPS:
        raise ValidationError(
            f"Invalid version bump '{bump}'. Must be one of: {', '.join(sorted(VALID_BUMPS))}",
            details={"version_bump": "invalid"},
        )
    return kind


def next_version(latest: Version | None, bump: str | None) -> Version:
    """Allocate the version that follows ``latest`` for the given bump kind.

    - no previous version        → 0.1
    - "none"                      → latest unchanged
    - "major"                     → floor(latest) + 1.0
    - "minor"                     → latest + 0.1, carrying 2.9 → 3.0
    """
    kind = normalize_bump(bump)
    if latest is None:
        return INITIAL_VERSION
    if kind == BUMP_NONE:
        return latest
    if kind == BUMP_MAJOR:
        return Version((latest.major + 1) * 10)
    return Version(latest.tenths + 1)
