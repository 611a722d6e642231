"""Exception types shared across the file cloner."""


class FileClonerError(Exception):
    """Base class for all file cloner errors."""


class TransportUnavailable(FileClonerError):
    """The local listener could not be started. Fatal at startup."""


class ConfigReadFailure(FileClonerError):
    """The request list could not be read or parsed."""


class MalformedMessage(FileClonerError):
    """A wire message or its payload does not have the expected shape."""


class PersistenceFailure(FileClonerError):
    """A manifest file could not be created or written."""
