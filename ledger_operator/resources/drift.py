"""
Drift detection: structural diff of a live object against the state its
instance implies, with an explicit list of ignored field paths.

Paths are rendered as dotted keys with list indices in brackets, e.g.
``template.spec.containers[0].image``. Keys that contain ``.`` or ``[`` are
quoted: ``template.metadata.annotations["ledger.platform.io/restartedAt"]``.

Ignore patterns use the same notation, plus:
  - ``*`` matches exactly one segment (key or list index), ``[*]`` exactly
    one list index
  - a leading ``**.`` lets the rest of the pattern start at any depth
A pattern ignores a path when it matches the whole path or a prefix of it
that ends on a segment boundary, so ``template.spec.affinity`` covers
everything beneath it while ``template.spec.aff`` covers nothing. There is no
substring matching.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Sequence, Tuple

from ..models import ResourceKind

_SEGMENT = re.compile(r'\["(?:[^"\\]|\\.)*"\]|\[[^\]]*\]|[^.\[\]]+')


class _Missing:
    def __repr__(self):
        return "<missing>"


MISSING = _Missing()


def split_path(path: str) -> List[str]:
    return _SEGMENT.findall(path)


def _render_key(key: str) -> str:
    if "." in key or "[" in key or "]" in key:
        return '["' + key.replace('"', '\\"') + '"]'
    return key


def join_path(segments: Sequence[str]) -> str:
    out = ""
    for seg in segments:
        if seg.startswith("[") or not out:
            out += seg
        else:
            out += "." + seg
    return out


def _segment_matches(pattern: str, segment: str) -> bool:
    if pattern == "*":
        return True
    if pattern == "[*]":
        return segment.startswith("[") and not segment.startswith('["')
    return pattern == segment


class IgnorePolicy:
    def __init__(self, patterns: Iterable[str] = ()):
        self.patterns = list(patterns)
        self._compiled = [self._compile(p) for p in self.patterns]

    @staticmethod
    def _compile(pattern: str) -> Tuple[bool, List[str]]:
        anywhere = pattern.startswith("**.")
        if anywhere:
            pattern = pattern[3:]
        return anywhere, split_path(pattern)

    @staticmethod
    def _prefix_matches(pattern: List[str], segments: List[str]) -> bool:
        if len(pattern) > len(segments):
            return False
        return all(_segment_matches(p, s) for p, s in zip(pattern, segments))

    def matches(self, path: str) -> bool:
        segments = split_path(path)
        for anywhere, pattern in self._compiled:
            if not pattern:
                continue
            if anywhere:
                if any(self._prefix_matches(pattern, segments[k:]) for k in range(len(segments))):
                    return True
            elif self._prefix_matches(pattern, segments):
                return True
        return False

    def extend(self, patterns: Iterable[str]) -> "IgnorePolicy":
        return IgnorePolicy(self.patterns + list(patterns))


@dataclass(frozen=True)
class DriftEntry:
    path: str
    live: Any
    expected: Any
    ignored: bool = False

    def __str__(self):
        return f"{self.path}: live={self.live!r} expected={self.expected!r}"


@dataclass
class DriftReport:
    entries: List[DriftEntry] = field(default_factory=list)
    truncated: bool = False

    @property
    def violations(self) -> List[DriftEntry]:
        return [e for e in self.entries if not e.ignored]

    @property
    def ignored(self) -> List[DriftEntry]:
        return [e for e in self.entries if e.ignored]

    @property
    def has_violations(self) -> bool:
        return bool(self.violations)

    def violation_paths(self) -> List[str]:
        return [e.path for e in self.violations]


class DriftDetector:
    """Bounded deep comparison of two canonical (JSON-shaped) trees."""

    def __init__(self, ignore: IgnorePolicy, max_depth: int = 20, max_diff: int = 30):
        self.ignore = ignore
        self.max_depth = max_depth
        self.max_diff = max_diff

    def compare(self, live: Any, expected: Any) -> DriftReport:
        report = DriftReport()
        self._walk(live, expected, [], 0, report)
        return report

    def _record(self, segments: List[str], live: Any, expected: Any, report: DriftReport) -> bool:
        """
        Record one difference; True when it is a violation. Only violations
        count toward ``max_diff``: ignored entries past the cap are dropped
        without ending the walk.
        """
        path = join_path(segments) or "."
        ignored = self.ignore.matches(path)
        if ignored:
            if len(report.ignored) < self.max_diff:
                report.entries.append(DriftEntry(path, live, expected, True))
            return False
        if len(report.violations) >= self.max_diff:
            report.truncated = True
            return True
        report.entries.append(DriftEntry(path, live, expected, False))
        return True

    def _walk(self, live: Any, expected: Any, segments: List[str], depth: int, report: DriftReport):
        if report.truncated or live == expected:
            return
        if depth >= self.max_depth:
            if self._record(segments, live, expected, report):
                report.truncated = True
            return

        if isinstance(live, dict) and isinstance(expected, dict):
            for key in sorted(set(live) | set(expected)):
                self._walk(live.get(key, MISSING), expected.get(key, MISSING),
                           segments + [_render_key(key)], depth + 1, report)
                if report.truncated:
                    return
        elif isinstance(live, list) and isinstance(expected, list):
            for i in range(max(len(live), len(expected))):
                self._walk(live[i] if i < len(live) else MISSING,
                           expected[i] if i < len(expected) else MISSING,
                           segments + [f"[{i}]"], depth + 1, report)
                if report.truncated:
                    return
        else:
            self._record(segments, live, expected, report)


_HEALTH_CHECK_FIELDS = ("successThreshold", "failureThreshold", "initialDelaySeconds",
                        "periodSeconds", "timeoutSeconds")

DEPLOYMENT_IGNORE = [
    "**.volumes[*].secret.defaultMode",
    "**.volumes[*].configMap.defaultMode",
    "**.terminationMessagePath",
    "**.terminationMessagePolicy",
    "**.securityContext.procMount",
    "template.spec.terminationGracePeriodSeconds",
    "template.spec.dnsPolicy",
    "template.spec.serviceAccount",
    "template.spec.schedulerName",
    "template.spec.restartPolicy",
    "template.spec.affinity",
    "template.metadata.creationTimestamp",
    'template.metadata.annotations["ledger.platform.io/restartedAt"]',
    'template.metadata.annotations["ledger.platform.io/restartReasons"]',
    "revisionHistoryLimit",
    "progressDeadlineSeconds",
    "strategy.rollingUpdate",
    "**.valueFrom.fieldRef.apiVersion",
] + [f"**.{check}.{f}" for check in ("livenessProbe", "readinessProbe", "startupProbe")
     for f in _HEALTH_CHECK_FIELDS]

SERVICE_IGNORE = [
    "clusterIP",
    "clusterIPs",
    "ipFamilies",
    "ipFamilyPolicy",
    "sessionAffinity",
    "internalTrafficPolicy",
    "externalTrafficPolicy",
    "ports[*].nodePort",
]

DEFAULT_IGNORE = {
    ResourceKind.DEPLOYMENT: DEPLOYMENT_IGNORE,
    ResourceKind.SERVICE: SERVICE_IGNORE,
    ResourceKind.PVC: ["volumeName", "volumeMode", "storageClassName"],
}


def default_ignore_policy(kind: ResourceKind, extra: Iterable[str] = ()) -> IgnorePolicy:
    return IgnorePolicy(DEFAULT_IGNORE.get(kind, []) + list(extra))
