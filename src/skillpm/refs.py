from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlsplit

from .errors import ErrorCode, SkillpmError

REGISTRY_HOSTS = {"clawhub.ai": "clawhub", "www.clawhub.ai": "clawhub"}
KNOWN_GIT_HOSTS = {"github.com", "gitlab.com", "bitbucket.org"}
_BRANCH_MARKERS = ("tree", "blob")


@dataclass(frozen=True)
class ParsedReference:
    source: str
    skill: str
    constraint: str = ""
    is_url: bool = False
    url: str = ""
    branch: str = ""

    @property
    def skill_ref(self) -> str:
        return f"{self.source}/{self.skill}"


def _strip_filename(skill_path: str) -> str:
    # SKILL.md, README.md, ... point at a file inside the skill, not the skill itself.
    if not skill_path:
        return ""
    parts = skill_path.split("/")
    if "." in parts[-1]:
        parts = parts[:-1]
    return "/".join(parts)


def _split_tree_marker(parts: list[str]) -> tuple[list[str], str, str]:
    """Return (repo segments, branch, subpath) for a git-hosting URL path."""
    for i, seg in enumerate(parts):
        if seg == "-" and i + 2 < len(parts) and parts[i + 1] in _BRANCH_MARKERS:
            return parts[:i], parts[i + 2], "/".join(parts[i + 3 :])
        if seg in _BRANCH_MARKERS and i >= 2 and i + 1 < len(parts):
            return parts[:i], parts[i + 1], "/".join(parts[i + 2 :])
    return parts, "", ""


def _parse_url_ref(raw: str) -> ParsedReference:
    parts = urlsplit(raw)
    host = (parts.hostname or "").lower()
    path = parts.path.strip("/")
    if not host:
        raise SkillpmError(ErrorCode.REF_PARSE, f"invalid URL {raw!r}")

    if host in REGISTRY_HOSTS:
        if not path:
            raise SkillpmError(ErrorCode.REF_PARSE, f"invalid registry URL {raw!r}")
        return ParsedReference(source=REGISTRY_HOSTS[host], skill=path)

    segments = [s for s in path.split("/") if s]
    repo_segments, branch, subpath = _split_tree_marker(segments)

    bare_host = host[4:] if host.startswith("www.") else host
    if bare_host in KNOWN_GIT_HOSTS:
        if len(repo_segments) < 2:
            raise SkillpmError(ErrorCode.REF_PARSE, f"invalid {bare_host} repo URL {raw!r}")
        if bare_host == "github.com":
            # gitlab nests subgroups; github repos are always owner/name
            repo_segments = repo_segments[:2]
    elif not repo_segments:
        raise SkillpmError(ErrorCode.REF_PARSE, f"URL {raw!r} has no repository path")

    if repo_segments[-1].endswith(".git"):
        repo_segments[-1] = repo_segments[-1][: -len(".git")]
    repo = repo_segments[-1]

    skill = _strip_filename(subpath) or repo
    scheme = parts.scheme or "https"
    return ParsedReference(
        source="_".join(repo_segments),
        skill=skill,
        is_url=True,
        url=f"{scheme}://{bare_host}/{'/'.join(repo_segments)}.git",
        branch=branch or "main",
    )


def _split_constraint(raw: str) -> tuple[str, str]:
    at_idx = raw.rfind("@")
    if at_idx <= 0:
        return raw, ""
    left = raw[:at_idx]
    right = raw[at_idx + 1 :].strip()
    if "/" in right:
        return raw, ""
    return left, right


def parse_ref(raw: str) -> ParsedReference:
    value = (raw or "").strip()
    if not value:
        raise SkillpmError(ErrorCode.REF_PARSE, "empty skill reference")

    left, constraint = _split_constraint(value)
    if left.startswith(("http://", "https://")):
        ref = _parse_url_ref(left)
        return ParsedReference(
            source=ref.source,
            skill=ref.skill,
            constraint=constraint,
            is_url=ref.is_url,
            url=ref.url,
            branch=ref.branch,
        )

    if "/" not in left:
        raise SkillpmError(
            ErrorCode.REF_PARSE, f"expected <source>/<skill>[@constraint] or URL, got {raw!r}"
        )
    source, skill = left.split("/", 1)
    source = source.strip()
    skill = skill.strip()
    if not source or not skill:
        raise SkillpmError(
            ErrorCode.REF_PARSE, f"expected <source>/<skill>[@constraint] or URL, got {raw!r}"
        )
    return ParsedReference(source=source, skill=skill, constraint=constraint)
