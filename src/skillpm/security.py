from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path, PurePosixPath
from typing import Callable

from .config import SecurityConfig
from .errors import ErrorCode, SkillpmError
from .store import PRIMARY_FILENAME

logger = logging.getLogger(__name__)


class Severity(IntEnum):
    INFO = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @classmethod
    def parse(cls, value: str) -> "Severity":
        try:
            return cls[value.strip().upper()]
        except KeyError:
            return cls.HIGH

    def __str__(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class Finding:
    rule_id: str
    severity: Severity
    skill_ref: str
    file: str
    description: str
    line: int = 0
    pattern: str = ""

    def describe(self) -> str:
        where = f"{self.file}: " if self.file else ""
        return f"[{self.severity.name}] {self.rule_id} ({where}{self.description})"


@dataclass(frozen=True)
class SkillContent:
    skill_ref: str
    content: str
    files: dict[str, str] = field(default_factory=dict)
    source: str = ""
    trust_tier: str = ""
    version: str = ""


@dataclass
class ScanReport:
    skills: list[str] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)

    @property
    def max_severity(self) -> Severity:
        return max((f.severity for f in self.findings), default=Severity.INFO)


_PatternDef = tuple[re.Pattern, Severity, str]


def _p(pattern: str, severity: Severity, description: str, flags: int = 0) -> _PatternDef:
    return re.compile(pattern, flags), severity, description


DANGEROUS_PATTERNS: list[_PatternDef] = [
    _p(r"rm\s+-rf\s+/(?:\s|$)", Severity.CRITICAL, "Destructive file deletion (rm -rf /)"),
    _p(r"rm\s+-rf\s+~/", Severity.CRITICAL, "Destructive home directory deletion"),
    _p(r"rm\s+-rf\s+\$HOME", Severity.CRITICAL, "Destructive home directory deletion via $HOME"),
    _p(r"curl\s+[^|]*\|\s*(?:ba)?sh", Severity.CRITICAL, "Remote code execution pipe detected"),
    _p(r"wget\s+[^|]*\|\s*(?:ba)?sh", Severity.CRITICAL, "Remote code execution pipe detected"),
    _p(r"base64\s+(?:-d|--decode)[^|]*\|\s*(?:ba)?sh", Severity.CRITICAL, "Obfuscated code execution detected"),
    _p(r"/etc/shadow", Severity.CRITICAL, "Access to /etc/shadow detected"),
    _p(r"/etc/passwd", Severity.CRITICAL, "Access to /etc/passwd detected"),
    _p(r"mkfifo\b.*\bnc\b", Severity.CRITICAL, "Reverse shell pattern detected"),
    _p(r"\bnc\b.*-e\s+/bin/", Severity.CRITICAL, "Reverse shell pattern detected"),
    _p(r"(?:~|\$HOME)/\.ssh/id_rsa", Severity.CRITICAL, "SSH key exfiltration pattern detected"),
    _p(r"stratum\+tcp://|\bxmrig\b|\bminerd\b", Severity.CRITICAL, "Crypto mining indicator detected"),
    _p(r"chmod\s+777\s+/", Severity.CRITICAL, "Dangerous permission change on system path"),
    _p(r"\beval\b\s*\(", Severity.CRITICAL, "Arbitrary code execution via eval"),
    _p(r"\bos\.exec\b", Severity.HIGH, "Code execution via os.exec"),
    _p(r"\bsubprocess\.(?:run|Popen)\b", Severity.HIGH, "Code execution via subprocess"),
    _p(r"\bchild_process\.exec\b", Severity.HIGH, "Code execution via child_process.exec"),
    _p(r"\bos\.environ\b", Severity.HIGH, "Environment variable harvesting detected"),
    _p(r"curl\s+.*-d\s", Severity.HIGH, "Data exfiltration via curl POST"),
    _p(r"wget\s+--post-data", Severity.HIGH, "Data exfiltration via wget POST"),
    _p(r"\.env\b", Severity.HIGH, "Reference to .env file detected"),
    _p(r"credentials\.json|secrets\.yaml", Severity.HIGH, "Reference to a credentials file detected"),
    _p(r"git\s+config\s+--global", Severity.HIGH, "Global git config modification detected"),
    _p(r"(?:pip|npm)\s+install\b", Severity.HIGH, "Package installation command detected"),
    _p(r"\bsudo\b", Severity.MEDIUM, "Sudo usage detected"),
]

PROMPT_INJECTION_PATTERNS: list[_PatternDef] = [
    _p(r"ignore\s+(?:all\s+)?(?:previous|prior)\s+instructions", Severity.HIGH, "Prompt injection: ignore previous instructions", re.I),
    _p(r"disregard\s+(?:all\s+)?(?:previous|prior|above)\s+instructions", Severity.HIGH, "Prompt injection: disregard instructions", re.I),
    _p(r"forget\s+(?:all\s+)?(?:previous|prior)\s+(?:instructions|context)", Severity.HIGH, "Prompt injection: forget context", re.I),
    _p(r"you\s+are\s+now\s+(?:a\s+)?(?:new|different)", Severity.HIGH, "Prompt injection: identity override", re.I),
    _p(r"(?:do\s+not|don't|never)\s+(?:tell\s+the\s+user|reveal\s+(?:this|these))", Severity.HIGH, "Concealment instruction detected", re.I),
    _p("[\u200b\u200c\u200d\ufeff\u202e]", Severity.HIGH, "Invisible or direction-override character detected"),
    _p(r"update\s+this\s+skill\s+to", Severity.MEDIUM, "Self-referential update instruction detected", re.I),
    _p(r"modify\s+(?:your|the)\s+(?:skill|config)", Severity.MEDIUM, "Configuration modification instruction detected", re.I),
]

_BASE64_BLOCK = re.compile(r"[A-Za-z0-9+/=]{100,}")
_HEX_BLOCK = re.compile(r"(?:0x)?[0-9a-fA-F]{200,}")

MAX_PRIMARY_BYTES = 100 * 1024
MAX_SINGLE_FILE_BYTES = 500 * 1024
MAX_ANCILLARY_COUNT = 50


def _match_patterns(rule_id: str, skill_ref: str, file: str, content: str, patterns: list[_PatternDef]) -> list[Finding]:
    findings: list[Finding] = []
    lines = content.split("\n")
    for regex, severity, description in patterns:
        for i, line in enumerate(lines):
            if regex.search(line):
                findings.append(
                    Finding(rule_id, severity, skill_ref, file, description, line=i + 1, pattern=regex.pattern)
                )
                # one match per pattern per file
                break
    return findings


def _dangerous_pattern_rule(skill: SkillContent) -> list[Finding]:
    findings = _match_patterns("SCAN_DANGEROUS_PATTERN", skill.skill_ref, PRIMARY_FILENAME, skill.content, DANGEROUS_PATTERNS)
    for path in sorted(skill.files):
        findings.extend(
            _match_patterns("SCAN_DANGEROUS_PATTERN", skill.skill_ref, path, skill.files[path], DANGEROUS_PATTERNS)
        )
    return findings


def _prompt_injection_rule(skill: SkillContent) -> list[Finding]:
    # Only the primary file is loaded into the agent's context.
    findings = _match_patterns(
        "SCAN_PROMPT_INJECTION", skill.skill_ref, PRIMARY_FILENAME, skill.content, PROMPT_INJECTION_PATTERNS
    )
    for i, line in enumerate(skill.content.split("\n")):
        if _BASE64_BLOCK.search(line):
            findings.append(
                Finding(
                    "SCAN_PROMPT_INJECTION",
                    Severity.HIGH,
                    skill.skill_ref,
                    PRIMARY_FILENAME,
                    "Large encoded block in skill content",
                    line=i + 1,
                )
            )
            break
    return findings


def _file_type_rule(skill: SkillContent) -> list[Finding]:
    findings: list[Finding] = []
    for path in sorted(skill.files):
        content = skill.files[path]
        lower = path.lower()
        if content.startswith(("\x7fELF", "MZ")):
            findings.append(Finding("SCAN_FILE_TYPE", Severity.HIGH, skill.skill_ref, path, "Binary executable detected"))
            continue
        if lower.endswith((".so", ".dylib", ".dll")):
            findings.append(Finding("SCAN_FILE_TYPE", Severity.HIGH, skill.skill_ref, path, "Compiled shared library detected"))
        elif lower.endswith((".sh", ".bash")):
            if any(token in content for token in ("curl", "wget", "nc ", "exec")):
                findings.append(
                    Finding(
                        "SCAN_FILE_TYPE",
                        Severity.MEDIUM,
                        skill.skill_ref,
                        path,
                        "Shell script with network or execution commands",
                    )
                )
        elif lower.endswith((".exe", ".bat", ".com", ".scr", ".msi")):
            findings.append(
                Finding("SCAN_FILE_TYPE", Severity.LOW, skill.skill_ref, path, "Unexpected executable file extension")
            )
    return findings


def _size_anomaly_rule(skill: SkillContent) -> list[Finding]:
    findings: list[Finding] = []
    if len(skill.content) > MAX_PRIMARY_BYTES:
        findings.append(
            Finding(
                "SCAN_SIZE_ANOMALY",
                Severity.MEDIUM,
                skill.skill_ref,
                PRIMARY_FILENAME,
                f"{PRIMARY_FILENAME} is unusually large ({len(skill.content)} bytes)",
            )
        )
    for path in sorted(skill.files):
        size = len(skill.files[path])
        if size > MAX_SINGLE_FILE_BYTES:
            findings.append(
                Finding("SCAN_SIZE_ANOMALY", Severity.MEDIUM, skill.skill_ref, path, f"File is unusually large ({size} bytes)")
            )
    if len(skill.files) > MAX_ANCILLARY_COUNT:
        findings.append(
            Finding(
                "SCAN_SIZE_ANOMALY",
                Severity.LOW,
                skill.skill_ref,
                "",
                f"Unusually many ancillary files ({len(skill.files)})",
            )
        )
    return findings


def _entropy_rule(skill: SkillContent) -> list[Finding]:
    findings: list[Finding] = []
    for path, content in [(PRIMARY_FILENAME, skill.content)] + sorted(skill.files.items()):
        for i, line in enumerate(content.split("\n")):
            if _HEX_BLOCK.search(line):
                findings.append(
                    Finding(
                        "SCAN_ENTROPY",
                        Severity.HIGH,
                        skill.skill_ref,
                        path,
                        "Large hex-encoded block detected",
                        line=i + 1,
                    )
                )
                break
    return findings


RULES: dict[str, Callable[[SkillContent], list[Finding]]] = {
    "SCAN_DANGEROUS_PATTERN": _dangerous_pattern_rule,
    "SCAN_PROMPT_INJECTION": _prompt_injection_rule,
    "SCAN_FILE_TYPE": _file_type_rule,
    "SCAN_SIZE_ANOMALY": _size_anomaly_rule,
    "SCAN_ENTROPY": _entropy_rule,
}


def _format_findings(report: ScanReport, minimum: Severity) -> str:
    parts = [f.describe() for f in report.findings if f.severity >= minimum]
    if not parts:
        return "no findings"
    if len(parts) == 1:
        return parts[0]
    return f"{len(parts)} findings: " + "; ".join(parts)


class Scanner:
    """
    Rule-based content scanner run over an install batch before anything is staged.

    ``enforce`` is the policy: critical findings always block, findings at or
    above ``block_severity`` (and anything medium or worse) block unless forced.
    """

    def __init__(self, config: SecurityConfig | None = None) -> None:
        cfg = config or SecurityConfig()
        self.enabled = cfg.scan_enabled
        self.block_severity = Severity.parse(cfg.block_severity)
        self.disabled_rules = set(cfg.disabled_rules)

    def scan(self, skills: list[SkillContent]) -> ScanReport:
        report = ScanReport()
        for skill in skills:
            report.skills.append(skill.skill_ref)
            if not self.enabled:
                continue
            for rule_id, rule in RULES.items():
                if rule_id in self.disabled_rules:
                    continue
                report.findings.extend(rule(skill))
        logger.debug("scanned %d skill(s), %d finding(s)", len(skills), len(report.findings))
        return report

    def enforce(self, report: ScanReport, force: bool = False) -> None:
        worst = report.max_severity
        if worst == Severity.CRITICAL:
            raise SkillpmError(ErrorCode.SECURITY_SCAN_CRITICAL, _format_findings(report, Severity.CRITICAL))
        if force:
            return
        if worst >= self.block_severity:
            raise SkillpmError(ErrorCode.SECURITY_SCAN_BLOCKED, _format_findings(report, self.block_severity) + "; use force to proceed")
        if worst >= Severity.MEDIUM:
            raise SkillpmError(ErrorCode.SECURITY_SCAN_BLOCKED, _format_findings(report, Severity.MEDIUM) + "; use force to proceed")


class SecurityPolicy:
    """Trust-tier and moderation gates applied to each resolved skill."""

    def __init__(self, config: SecurityConfig | None = None) -> None:
        cfg = config or SecurityConfig()
        self.strict = cfg.profile.strip().lower() == "strict"

    def check_trust_tier(self, tier: str) -> None:
        if tier in ("trusted", "review"):
            return
        if tier == "untrusted":
            if self.strict:
                raise SkillpmError(ErrorCode.SECURITY_TRUST_DENY, "strict profile denies install from untrusted source")
            return
        raise SkillpmError(ErrorCode.SECURITY_TRUST_DENY, f"invalid trust tier {tier!r}")

    def check_moderation(self, *, is_suspicious: bool, is_malware_blocked: bool, force: bool = False) -> None:
        if is_malware_blocked:
            raise SkillpmError(ErrorCode.SECURITY_MALWARE_BLOCKED, "provider marked skill as blocked malware")
        if is_suspicious and not force:
            raise SkillpmError(ErrorCode.SECURITY_SUSPICIOUS_CONFIRM, "provider marked skill suspicious; use force to proceed")


def safe_join(base: Path, rel: str) -> Path:
    """Join ``rel`` under ``base``, refusing absolute paths and anything that climbs out."""
    p = PurePosixPath(rel.replace("\\", "/"))
    if p.is_absolute() or Path(rel).is_absolute():
        raise SkillpmError(ErrorCode.SECURITY_PATH_TRAVERSAL, f"absolute path not allowed: {rel!r}")
    if ".." in p.parts:
        raise SkillpmError(ErrorCode.SECURITY_PATH_TRAVERSAL, f"path escapes base: {rel!r}")
    target = base.joinpath(*p.parts)
    try:
        target.resolve().relative_to(base.resolve())
    except ValueError as e:
        raise SkillpmError(ErrorCode.SECURITY_PATH_TRAVERSAL, f"path escapes base: {rel!r}") from e
    return target
