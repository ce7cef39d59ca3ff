"""Exception types raised by casepal."""


class CasepalError(Exception):
    """Base class for casepal errors."""


class ConfigError(CasepalError):
    """Invalid configuration value."""


class RemoteStoreError(CasepalError):
    """The remote vector store rejected a request or could not be reached."""
