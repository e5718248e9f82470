"""Exception types shared across coba."""


class AgentError(Exception):
    """Raised by the work loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (unknown provider, missing workDir, etc.)."""
