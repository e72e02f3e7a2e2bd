from .errors import ErrorCode, ScanPathError, SkillpmError

__version__ = "0.1.0"

__all__ = ["ErrorCode", "ScanPathError", "SkillpmError", "__version__"]
