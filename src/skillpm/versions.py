from __future__ import annotations

import re
from functools import cmp_to_key

_SEMVER_RE = re.compile(
    r"^v?(0|[1-9]\d*)(?:\.(0|[1-9]\d*))?(?:\.(0|[1-9]\d*))?"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)


def is_semver(version: str) -> bool:
    return bool(version) and _SEMVER_RE.match(version.strip()) is not None


def _split_version(version: str) -> tuple[tuple[int, int, int], tuple[str, ...] | None]:
    m = _SEMVER_RE.match(version.strip())
    if not m:
        raise ValueError(f"Unsupported version format: {version!r}")
    major, minor, patch, pre, _build = m.groups()
    nums = (int(major), int(minor or 0), int(patch or 0))
    pre_parts = tuple(pre.split(".")) if pre else None
    return nums, pre_parts


def _compare_prerelease(pa: tuple[str, ...] | None, pb: tuple[str, ...] | None) -> int:
    if pa is None and pb is None:
        return 0
    if pa is None:
        return 1
    if pb is None:
        return -1
    for i in range(max(len(pa), len(pb))):
        if i >= len(pa):
            return -1
        if i >= len(pb):
            return 1
        x, y = pa[i], pb[i]
        x_num, y_num = x.isdigit(), y.isdigit()
        if x_num and y_num:
            if int(x) != int(y):
                return -1 if int(x) < int(y) else 1
            continue
        if x_num != y_num:
            return -1 if x_num else 1
        if x != y:
            return -1 if x < y else 1
    return 0


def compare_versions(a: str, b: str) -> int:
    """Semver ordering; falls back to plain string ordering for non-semver input."""
    try:
        ma, pa = _split_version(a)
        mb, pb = _split_version(b)
    except ValueError:
        if a < b:
            return -1
        if a > b:
            return 1
        return 0
    if ma != mb:
        return -1 if ma < mb else 1
    return _compare_prerelease(pa, pb)


def choose_latest(versions: list[str]) -> str:
    candidates = [v for v in versions if v]
    if not candidates:
        return ""
    if all(is_semver(v) for v in candidates):
        return max(candidates, key=cmp_to_key(compare_versions))
    return max(candidates)


def looks_like_version(value: str) -> bool:
    if not value:
        return False
    if is_semver(value):
        return True
    return value.count(".") >= 1 and not any(ch in value for ch in "/ @")
