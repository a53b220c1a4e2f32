from __future__ import annotations

"""Exception types for configuration problems the engine handles locally."""


class ConfigInvalid(ValueError):
    """Raised when a receiver or target URL cannot be used."""


class SourceFormatError(RuntimeError):
    """External target source answered with a payload we cannot parse."""
