from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Stable error prefixes. Callers match on these, never on message text."""

    REF_PARSE = "REF_PARSE"

    CONFIG_MISSING = "CONFIG_MISSING"
    CONFIG_SOURCE = "CONFIG_SOURCE"
    CONFIG_PARSE = "CONFIG_PARSE"

    SOURCE_PROVIDER = "SOURCE_PROVIDER"
    SOURCE_UPDATE = "SOURCE_UPDATE"
    SOURCE_SEARCH = "SOURCE_SEARCH"
    SOURCE_NOT_FOUND = "SOURCE_NOT_FOUND"
    SCAN_PATH = "SCAN_PATH"

    GIT_UPDATE = "GIT_UPDATE"
    GIT_SEARCH = "GIT_SEARCH"
    GIT_RESOLVE = "GIT_RESOLVE"
    DIR_UPDATE = "DIR_UPDATE"

    REGISTRY_DISCOVERY = "REGISTRY_DISCOVERY"
    REGISTRY_HTTP = "REGISTRY_HTTP"
    REGISTRY_SEARCH = "REGISTRY_SEARCH"
    REGISTRY_RESOLVE = "REGISTRY_RESOLVE"
    REGISTRY_DOWNLOAD = "REGISTRY_DOWNLOAD"

    RESOLVE_SETUP = "RESOLVE_SETUP"

    STATE_PARSE = "STATE_PARSE"
    STATE_VERSION = "STATE_VERSION"
    STATE_SCHEMA = "STATE_SCHEMA"
    LOCK_PARSE = "LOCK_PARSE"
    LOCK_VERSION = "LOCK_VERSION"
    LOCK_SCHEMA = "LOCK_SCHEMA"
    STORE_LAYOUT = "STORE_LAYOUT"

    SECURITY_TRUST_DENY = "SECURITY_TRUST_DENY"
    SECURITY_MALWARE_BLOCKED = "SECURITY_MALWARE_BLOCKED"
    SECURITY_SUSPICIOUS_CONFIRM = "SECURITY_SUSPICIOUS_CONFIRM"
    SECURITY_SCAN_CRITICAL = "SECURITY_SCAN_CRITICAL"
    SECURITY_SCAN_BLOCKED = "SECURITY_SCAN_BLOCKED"
    SECURITY_PATH_TRAVERSAL = "SECURITY_PATH_TRAVERSAL"

    INSTALL_STAGE_CREATE = "INSTALL_STAGE_CREATE"
    INSTALL_STAGE_WRITE = "INSTALL_STAGE_WRITE"
    INSTALL_COMMIT_BACKUP = "INSTALL_COMMIT_BACKUP"
    INSTALL_COMMIT = "INSTALL_COMMIT"
    INSTALL_STATE_SAVE = "INSTALL_STATE_SAVE"
    INSTALL_LOCK_SAVE = "INSTALL_LOCK_SAVE"
    UNINSTALL_SAVE = "UNINSTALL_SAVE"

    ADAPTER_NOT_SUPPORTED = "ADAPTER_NOT_SUPPORTED"
    ADAPTER_STATE_PARSE = "ADAPTER_STATE_PARSE"
    ADAPTER_SNAPSHOT = "ADAPTER_SNAPSHOT"
    ADAPTER_INJECT_WRITE = "ADAPTER_INJECT_WRITE"
    ADAPTER_INJECT_COPY = "ADAPTER_INJECT_COPY"
    ADAPTER_REMOVE_WRITE = "ADAPTER_REMOVE_WRITE"

    SYNC_SETUP = "SYNC_SETUP"

    PROJECT_MANIFEST = "PROJECT_MANIFEST"
    PROJECT_NO_MANIFEST = "PROJECT_NO_MANIFEST"
    PROJECT_SCOPE = "PROJECT_SCOPE"
    PROJECT_INIT = "PROJECT_INIT"

    HARVEST_RUNTIME = "HARVEST_RUNTIME"
    HARVEST_WRITE = "HARVEST_WRITE"
    IMPORT_SKILL_SHAPE = "IMPORT_SKILL_SHAPE"


class SkillpmError(RuntimeError):
    def __init__(self, code: ErrorCode, detail: str = "") -> None:
        super().__init__(f"{code.value}: {detail}" if detail else code.value)
        self.code = code
        self.detail = detail


class ScanPathError(SkillpmError):
    """The requested skill path is a container of skills, not a skill."""

    def __init__(self, path: str, available_skills: list[str]) -> None:
        self.path = path
        self.available_skills = list(available_skills)
        super().__init__(
            ErrorCode.SCAN_PATH,
            f"{path!r} is a directory containing {len(self.available_skills)} skill(s): "
            + ", ".join(self.available_skills),
        )

