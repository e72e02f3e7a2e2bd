from __future__ import annotations

import hashlib
import logging
import os
import subprocess
from pathlib import Path, PurePosixPath
from typing import Callable

from .config import SourceConfig
from .errors import ErrorCode, ScanPathError, SkillpmError
from .sources import ResolveRequest, ResolveResult, SearchResult, UpdateResult, compute_checksum
from .store import PRIMARY_FILENAME

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 1 << 20
MAX_TOTAL_BYTES = 10 << 20

GitRunner = Callable[[list[str], Path | None], str]


def run_git(args: list[str], cwd: Path | None = None) -> str:
    proc = subprocess.run(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        capture_output=True,
        text=True,
        check=False,
    )
    if proc.returncode != 0:
        output = (proc.stderr or proc.stdout or "").strip()
        raise RuntimeError(f"git {' '.join(args)} exited with {proc.returncode}: {output}")
    return proc.stdout


def _scan_paths(source: SourceConfig) -> list[str]:
    return list(source.scan_paths) or ["."]


def _check_skill_name(skill: str, code: ErrorCode) -> None:
    p = PurePosixPath(skill.replace("\\", "/"))
    if p.is_absolute() or ".." in p.parts or skill.startswith("~"):
        raise SkillpmError(code, f"invalid skill name {skill!r}")


def _under_root(root: Path, rel: str, code: ErrorCode) -> Path:
    p = PurePosixPath(rel.replace("\\", "/"))
    if p.is_absolute() or ".." in p.parts or rel.startswith("~"):
        raise SkillpmError(code, f"path {rel!r} escapes {root}")
    target = root.joinpath(*p.parts)
    try:
        target.resolve().relative_to(root.resolve())
    except ValueError as e:
        raise SkillpmError(code, f"path {rel!r} escapes {root}") from e
    return target


def _first_heading(path: Path) -> str:
    try:
        with path.open("r", encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.strip()
                if line.startswith("# "):
                    return line[2:].strip()
    except OSError:
        return ""
    return ""


def _nested_skills(directory: Path, base: Path) -> list[str]:
    found: list[str] = []
    for marker in directory.rglob(PRIMARY_FILENAME):
        if ".git" in marker.relative_to(directory).parts:
            continue
        if marker.parent == directory:
            continue
        found.append(marker.parent.relative_to(base).as_posix())
    return sorted(found)


def read_ancillary_files(skill_dir: Path) -> dict[str, str]:
    """
    Collect every regular file below ``skill_dir`` other than the primary file.

    Files larger than 1 MiB, files that would push the total past 10 MiB and
    files that are not valid UTF-8 are skipped.
    """
    files: dict[str, str] = {}
    total = 0
    for dirpath, dirnames, filenames in os.walk(skill_dir):
        dirnames[:] = sorted(d for d in dirnames if d != ".git")
        for name in sorted(filenames):
            path = Path(dirpath) / name
            rel = path.relative_to(skill_dir).as_posix()
            if rel == PRIMARY_FILENAME or not path.is_file() or path.is_symlink():
                continue
            try:
                size = path.stat().st_size
                if size > MAX_FILE_BYTES or total + size > MAX_TOTAL_BYTES:
                    logger.debug("skipping oversized file %s (%d bytes)", path, size)
                    continue
                text = path.read_bytes().decode("utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.debug("skipping unreadable file %s: %s", path, e)
                continue
            total += size
            files[rel] = text
    return files


class _SkillTreeProvider:
    """Search and resolve over a checked-out tree laid out as ``<scan path>/<skill>/SKILL.md``."""

    resolve_code = ErrorCode.GIT_RESOLVE
    search_code = ErrorCode.GIT_SEARCH

    def _root(self, source: SourceConfig) -> Path:
        raise NotImplementedError

    def _ensure_ready(self, source: SourceConfig) -> None:
        raise NotImplementedError

    def _latest_version(self, source: SourceConfig, root: Path, checksum: str) -> str:
        raise NotImplementedError

    def _source_ref(self, source: SourceConfig, version: str) -> str:
        return f"{source.url}@{version}"

    def _search_tree(self, source: SourceConfig, root: Path, query: str) -> list[SearchResult]:
        needle = query.strip().lower()
        results: list[SearchResult] = []
        for sp in _scan_paths(source):
            base = _under_root(root, sp, self.search_code)
            if not base.is_dir():
                continue
            for entry in sorted(base.iterdir()):
                marker = entry / PRIMARY_FILENAME
                if not entry.is_dir() or not marker.is_file():
                    continue
                if needle and needle not in entry.name.lower():
                    continue
                results.append(
                    SearchResult(
                        source=source.name,
                        slug=f"{source.name}/{entry.name}",
                        name=entry.name,
                        description=_first_heading(marker),
                    )
                )
        results.sort(key=lambda r: r.slug)
        return results

    def _find_skill_dir(self, source: SourceConfig, root: Path, skill: str) -> Path:
        containers: list[tuple[Path, Path]] = []
        for sp in _scan_paths(source):
            base = _under_root(root, sp, self.resolve_code)
            candidate = _under_root(root, f"{sp}/{skill}", self.resolve_code)
            if (candidate / PRIMARY_FILENAME).is_file():
                return candidate
            if candidate.is_dir():
                containers.append((candidate, base))

        for candidate, base in containers:
            nested = _nested_skills(candidate, base)
            if nested:
                raise ScanPathError(skill, nested)
        raise SkillpmError(
            self.resolve_code,
            f"skill {skill!r} not found in scan paths {_scan_paths(source)}",
        )

    def search(self, source: SourceConfig, query: str) -> list[SearchResult]:
        root = self._root(source)
        if not root.is_dir():
            raise SkillpmError(self.search_code, f"source {source.name!r} is not available at {root}")
        return self._search_tree(source, root, query)

    def resolve(self, source: SourceConfig, request: ResolveRequest) -> ResolveResult:
        skill = request.skill.strip().strip("/")
        if not skill:
            raise SkillpmError(self.resolve_code, "empty skill")
        _check_skill_name(skill, self.resolve_code)

        self._ensure_ready(source)
        root = self._root(source)
        skill_dir = self._find_skill_dir(source, root, skill)

        try:
            content = (skill_dir / PRIMARY_FILENAME).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise SkillpmError(self.resolve_code, f"reading {PRIMARY_FILENAME}: {e}") from e
        files = read_ancillary_files(skill_dir)
        checksum = compute_checksum(content, files)

        version = request.constraint.strip()
        if not version or version.lower() == "latest":
            version = self._latest_version(source, root, checksum)

        return ResolveResult(
            skill_ref=f"{source.name}/{skill}",
            source=source.name,
            skill=skill,
            resolved_version=version,
            checksum=checksum,
            source_ref=self._source_ref(source, version),
            content=content,
            files=files,
        )


class GitProvider(_SkillTreeProvider):
    """
    Sources backed by a shallow git clone kept under the cache root.

    Each source gets ``<cache root>/<name>-<sha256(url)[:16]>`` so that renaming
    the URL of a source never reuses a stale checkout.
    """

    def __init__(self, *, cache_root: Path, runner: GitRunner | None = None) -> None:
        self.cache_root = Path(cache_root)
        self._run = runner or run_git

    def cache_dir(self, source: SourceConfig) -> Path:
        digest = hashlib.sha256(source.url.encode("utf-8")).hexdigest()[:16]
        return self.cache_root / f"{source.name}-{digest}"

    def _root(self, source: SourceConfig) -> Path:
        return self.cache_dir(source)

    def _is_cloned(self, source: SourceConfig) -> bool:
        return (self.cache_dir(source) / ".git").is_dir()

    def update(self, source: SourceConfig) -> UpdateResult:
        if not source.url:
            raise SkillpmError(ErrorCode.GIT_UPDATE, f"source {source.name!r} missing url")
        branch = source.branch or "main"
        cache_dir = self.cache_dir(source)
        try:
            cache_dir.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SkillpmError(ErrorCode.GIT_UPDATE, str(e)) from e

        try:
            if self._is_cloned(source):
                self._run(["fetch", "origin", branch, "--depth", "1"], cache_dir)
                self._run(["reset", "--hard", f"origin/{branch}"], cache_dir)
            else:
                self._run(
                    ["clone", "--depth", "1", "--single-branch", "--branch", branch, source.url, str(cache_dir)],
                    None,
                )
        except (OSError, RuntimeError) as e:
            raise SkillpmError(ErrorCode.GIT_UPDATE, f"{source.name}: {e}") from e
        logger.debug("git source %s at %s", source.name, cache_dir)
        return UpdateResult(source=source, note="git source updated")

    def search(self, source: SourceConfig, query: str) -> list[SearchResult]:
        if not self._is_cloned(source):
            raise SkillpmError(
                ErrorCode.GIT_SEARCH,
                f"source {source.name!r} not cloned; update the source first",
            )
        return self._search_tree(source, self.cache_dir(source), query)

    def _ensure_ready(self, source: SourceConfig) -> None:
        if not self._is_cloned(source):
            self.update(source)

    def _latest_version(self, source: SourceConfig, root: Path, checksum: str) -> str:
        try:
            short = self._run(["rev-parse", "--short", "HEAD"], root).strip()
        except (OSError, RuntimeError) as e:
            logger.debug("could not read HEAD of %s: %s", root, e)
            short = ""
        return f"0.0.0+git.{short or 'unknown'}"


class DirProvider(_SkillTreeProvider):
    """Sources that are plain local directories, read in place."""

    def _root(self, source: SourceConfig) -> Path:
        return Path(source.url).expanduser()

    def update(self, source: SourceConfig) -> UpdateResult:
        root = self._root(source) if source.url else None
        if root is None or not root.is_dir():
            raise SkillpmError(ErrorCode.DIR_UPDATE, f"source {source.name!r}: directory {source.url!r} not found")
        return UpdateResult(source=source, note="directory source checked")

    def _ensure_ready(self, source: SourceConfig) -> None:
        self.update(source)

    def _latest_version(self, source: SourceConfig, root: Path, checksum: str) -> str:
        return f"0.0.0+dir.{checksum[7:19]}"

    def _source_ref(self, source: SourceConfig, version: str) -> str:
        return f"file://{self._root(source).resolve().as_posix()}@{version}"
