"""Version parsing and ranking for image tags.

Understands two tag dialects:

* LinuxServer: ``4.1.0-r0-ls330``, optionally with an architecture prefix
  (``amd64-4.1.0-r0-ls330``).
* Timestamp: ``0.19.0-20260217191538``, optionally with an architecture
  suffix (``0.19.0-20260217191538-amd64``).

Label values may additionally hold a plain ``X.Y.Z`` version.
"""

import re
from dataclasses import dataclass, field
from functools import cmp_to_key
from typing import Dict, List, Optional


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

DIALECT_LINUXSERVER = "linuxserver"
DIALECT_TIMESTAMP = "timestamp"
DIALECT_PLAIN = "plain"

_LINUXSERVER_RE = re.compile(r'(\d+)\.(\d+)\.(\d+)-r(\d+)(?:-ls(\d+))?$')
_TIMESTAMP_RE = re.compile(r'(\d+)\.(\d+)\.(\d+)-(\d{8,})(?:-|$)')
_PLAIN_RE = re.compile(r'^(\d+)\.(\d+)\.(\d+)(?:-r(\d+))?(?:-ls(\d+))?$')
_LABEL_VERSION_RE = re.compile(r'(\d+\.\d+\.\d+-r\d+(?:-ls\d+)?)|(\d+\.\d+\.\d+-\d{8,})')

# Architecture decoration, e.g. "amd64-4.1.0-r0-ls330" or "0.19.0-20260217191538-arm64".
# Build (-lsN) and revision (-rN) suffixes are part of the version, not decoration.
_ARCH_PREFIX_RE = re.compile(r'^[a-z0-9]+-[\d.]+')
_ARCH_SUFFIX_RE = re.compile(r'-(?!ls\d+$)(?!r\d+$)[a-z][a-z0-9]*$')

_NON_VERSION_TAGS = {"", "latest", "dev"}


@dataclass(frozen=True)
class VersionTuple:
    """Structured version; ``build`` holds the -ls number or the timestamp."""
    major: int
    minor: int
    patch: int
    revision: int = 0
    build: int = 0
    dialect: str = field(default="", compare=False)

    def as_dict(self) -> Dict[str, int]:
        return {
            "major": self.major,
            "minor": self.minor,
            "patch": self.patch,
            "revision": self.revision,
            "build": self.build,
        }


@dataclass(frozen=True)
class TaggedVersion:
    tag: str
    version: VersionTuple


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _int(value: Optional[str]) -> int:
    return int(value) if value else 0


def parse_version_from_tag(tag) -> Optional[VersionTuple]:
    """Parse a registry tag in LinuxServer or timestamp dialect.

    Returns None for tags like ``latest`` or ``dev`` and anything that
    matches neither dialect.
    """
    if not tag or not isinstance(tag, str):
        return None
    t = tag.strip()
    if t in _NON_VERSION_TAGS:
        return None

    m = _LINUXSERVER_RE.search(t)
    if m:
        return VersionTuple(
            major=int(m.group(1)),
            minor=int(m.group(2)),
            patch=int(m.group(3)),
            revision=int(m.group(4)),
            build=_int(m.group(5)),
            dialect=DIALECT_LINUXSERVER,
        )

    m = _TIMESTAMP_RE.search(t)
    if m:
        return VersionTuple(
            major=int(m.group(1)),
            minor=int(m.group(2)),
            patch=int(m.group(3)),
            revision=0,
            build=int(m.group(4)),
            dialect=DIALECT_TIMESTAMP,
        )

    return None


def parse_version_from_string(text) -> Optional[VersionTuple]:
    """Parse a tag or label value; also accepts plain ``X.Y.Z[-rN][-lsN]``."""
    if not text or not isinstance(text, str):
        return None
    raw = text.strip()

    version = parse_version_from_tag(raw)
    if version:
        return version

    m = _PLAIN_RE.match(raw)
    if m:
        return VersionTuple(
            major=int(m.group(1)),
            minor=int(m.group(2)),
            patch=int(m.group(3)),
            revision=_int(m.group(4)),
            build=_int(m.group(5)),
            dialect=DIALECT_PLAIN,
        )
    return None


def extract_version_from_label(label_value) -> Optional[str]:
    """Pull a version string out of free-form label text.

    LinuxServer images label themselves with text like
    ``Linuxserver.io version:- 4.1.0-r0-ls330 Build-date:- 2024-...``;
    the embedded version is returned.  Labels without an embedded
    LinuxServer/timestamp version are returned stripped, unchanged.
    """
    if not label_value or not isinstance(label_value, str):
        return None
    raw = label_value.strip()
    if not raw:
        return None
    m = _LABEL_VERSION_RE.search(raw)
    if m:
        return m.group(1) or m.group(2)
    return raw


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

def compare_version_parts(a: Optional[VersionTuple], b: Optional[VersionTuple]) -> int:
    """Return -1, 0 or 1 comparing major, minor, patch, revision, build in turn.

    A missing side compares equal.  Only meaningful for versions of the same
    dialect.
    """
    if a is None or b is None:
        return 0
    for left, right in ((a.major, b.major), (a.minor, b.minor), (a.patch, b.patch),
                        (a.revision, b.revision), (a.build, b.build)):
        if left != right:
            return -1 if left < right else 1
    return 0


def is_decorated_tag(tag: str) -> bool:
    """True when a tag carries an architecture-style prefix or suffix."""
    return bool(_ARCH_PREFIX_RE.match(tag) or _ARCH_SUFFIX_RE.search(tag))


def rank_tags(tags: List[str]) -> List[TaggedVersion]:
    """Parse *tags* and return the versioned ones, newest first.

    Unparseable tags are dropped; equal versions keep their input order.
    """
    if not isinstance(tags, (list, tuple)):
        return []
    tagged = []
    for tag in tags:
        version = parse_version_from_tag(tag)
        if version:
            tagged.append(TaggedVersion(tag=tag, version=version))
    return sorted(tagged, key=cmp_to_key(lambda x, y: compare_version_parts(x.version, y.version)),
                  reverse=True)


def get_newest_version_tag(tags: List[str]) -> Optional[TaggedVersion]:
    """Return the newest versioned tag, or None if no tag parses.

    Among tags sharing the newest version the undecorated one wins
    (``4.1.0-r0-ls330`` over ``amd64-4.1.0-r0-ls330``); if every candidate is
    decorated the first in rank order is used.
    """
    ranked = rank_tags(tags)
    if not ranked:
        return None
    best = ranked[0]
    for candidate in ranked:
        if compare_version_parts(candidate.version, best.version) != 0:
            break
        if not is_decorated_tag(candidate.tag):
            return candidate
    return best
