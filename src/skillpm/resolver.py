from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .config import Config, SourceConfig
from .errors import ErrorCode, ScanPathError, SkillpmError
from .refs import ParsedReference, parse_ref
from .security import SkillContent
from .sources import ResolveRequest, ResolveResult, SourceManager
from .store import Lockfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedSkill:
    skill_ref: str
    source: str
    skill: str
    resolved_version: str
    checksum: str
    source_ref: str
    content: str
    files: dict[str, str] = field(default_factory=dict)
    resolver_hash: str = ""
    trust_tier: str = "review"
    is_suspicious: bool = False
    is_malware_blocked: bool = False

    @classmethod
    def from_result(cls, result: ResolveResult, *, trust_tier: str) -> "ResolvedSkill":
        return cls(
            skill_ref=result.skill_ref,
            source=result.source,
            skill=result.skill,
            resolved_version=result.resolved_version,
            checksum=result.checksum,
            source_ref=result.source_ref,
            content=result.content,
            files=dict(result.files),
            resolver_hash=result.resolver_hash,
            trust_tier=trust_tier,
            is_suspicious=result.moderation.is_suspicious,
            is_malware_blocked=result.moderation.is_malware_blocked,
        )

    def scan_content(self) -> SkillContent:
        return SkillContent(
            skill_ref=self.skill_ref,
            content=self.content,
            files=self.files,
            source=self.source,
            trust_tier=self.trust_tier,
            version=self.resolved_version,
        )


def _ephemeral_source(ref: ParsedReference) -> SourceConfig:
    return SourceConfig(
        name=ref.source,
        kind="git",
        url=ref.url,
        branch=ref.branch,
        scan_paths=["."],
        trust_tier="review",
    )


class Resolver:
    def __init__(self, sources: SourceManager | None) -> None:
        self.sources = sources

    def _source_for(self, config: Config, ref: ParsedReference) -> SourceConfig:
        src = config.find_source(ref.source)
        if src is not None:
            return src
        if ref.is_url:
            # Bare URL references never touch the persisted config.
            return _ephemeral_source(ref)
        raise SkillpmError(ErrorCode.SOURCE_NOT_FOUND, f"source {ref.source!r} not found")

    def resolve_many(self, config: Config, refs: list[str], lockfile: Lockfile | None = None) -> list[ResolvedSkill]:
        """
        Resolve every reference in order; any failure aborts the whole batch.

        Empty or ``latest`` constraints are pinned to the locked version when the
        lockfile already knows the skill. A URL reference that points at a
        directory of skills expands to one result per contained skill.
        """
        if self.sources is None:
            raise SkillpmError(ErrorCode.RESOLVE_SETUP, "source manager not configured")
        lock = lockfile or Lockfile()

        out: list[ResolvedSkill] = []
        for raw in refs:
            ref = parse_ref(raw)
            src = self._source_for(config, ref)

            constraint = ref.constraint
            if not constraint or constraint.lower() == "latest":
                entry = lock.find(ref.skill_ref)
                if entry is not None:
                    logger.debug("pinning %s to locked %s", ref.skill_ref, entry.resolved_version)
                    constraint = entry.resolved_version

            try:
                result = self.sources.resolve(src, ResolveRequest(skill=ref.skill, constraint=constraint))
            except ScanPathError as e:
                if not ref.is_url:
                    raise
                logger.debug("%s is a container of %d skills", raw, len(e.available_skills))
                for name in e.available_skills:
                    sub = self.sources.resolve(src, ResolveRequest(skill=name, constraint=constraint))
                    out.append(ResolvedSkill.from_result(sub, trust_tier=src.trust_tier))
                continue
            out.append(ResolvedSkill.from_result(result, trust_tier=src.trust_tier))
        return out
