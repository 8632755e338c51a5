"""
Tolerant semantic version handling for node releases.

Accepted forms: ``2``, ``2.4``, ``2.4.1``, ``v2.4.1``, ``2.4.1-3`` (tag as a
fourth component). Components that are not integers count as 0.
"""
from typing import List, NamedTuple, Sequence

V1 = "1"
V2 = "2"
V2_0_0 = "2.0.0"
V2_4_1 = "2.4.1"
V2_5_1 = "2.5.1"

# Releases whose upgrade needs a database migration job, per node kind.
# Other boundaries (2.4.1, 2.5.1) only touch configuration and are applied by
# the builders.
JOB_BOUNDARIES = {
    "Peer": (V2_0_0,),
    "Orderer": (),
    "CA": (),
}
CONFIG_BOUNDARIES = (V2_4_1, V2_5_1)


class Version(NamedTuple):
    major: int = 0
    minor: int = 0
    fixpack: int = 0
    tag: int = 0

    @property
    def without_tag(self) -> "Version":
        return self._replace(tag=0)


def _to_int(s: str) -> int:
    try:
        return int(s)
    except ValueError:
        return 0


def parse(version: str) -> Version:
    version = (version or "").strip().lower()
    if version.startswith("v"):
        version = version[1:]
    tag = None
    if "-" in version:
        pieces = version.split("-")
        version, tag = pieces[0], pieces[1]
    parts = version.split(".") if version else []
    if tag is not None:
        parts.append(tag)
    if not 1 <= len(parts) <= 4:
        return Version()
    return Version(*(_to_int(p) for p in parts))


def equal(a: str, b: str) -> bool:
    return parse(a) == parse(b)


def equal_without_tag(a: str, b: str) -> bool:
    return parse(a).without_tag == parse(b).without_tag


def less_than(a: str, b: str) -> bool:
    return parse(a) < parse(b)


def greater_than(a: str, b: str) -> bool:
    return parse(a) > parse(b)


def major_release(version: str) -> str:
    return V2 if parse(version).major == 2 else V1


def from_image_tag(tag: str) -> str:
    """
    Extract the release from an image tag of the form
    ``<version>-<releasedate>-<arch>``. Digest references carry no version.
    """
    if "@" in tag or tag.startswith("sha256:"):
        return ""
    items = tag.split("-")
    if len(items) != 3:
        return ""
    return items[0]


def crosses(old: str, new: str, boundary: str) -> bool:
    """
    True when ``boundary`` lies in the half-open range (old, new]. A node with
    no recorded version has never run, so it crosses nothing.
    """
    if not old or not new:
        return False
    if not less_than(old, boundary):
        return False
    return equal_without_tag(new, boundary) or greater_than(new, boundary)


def migration_steps(old: str, new: str, boundaries: Sequence[str]) -> List[str]:
    """Boundaries crossed going from old to new, in ascending order."""
    return sorted((b for b in boundaries if crosses(old, new, b)), key=parse)
