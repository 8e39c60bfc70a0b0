"""Exception hierarchy for junos-client.

PyEZ / requests errors are translated into these at the session and
Space client boundaries, so callers only need to catch ``JunosError``
subclasses.
"""


class JunosError(Exception):
    """Base class of every error raised by junos-client."""


class AuthError(JunosError):
    """Credentials were rejected by the device or Junos Space."""


class ConnectError(JunosError):
    """The connection could not be established or was lost."""


class SessionClosedError(ConnectError):
    """An operation was attempted on a closed session."""


class CommandError(JunosError):
    """The device rejected an RPC or CLI command."""


class ParseError(CommandError):
    """Configuration could not be parsed by the device."""


class CommitError(CommandError):
    """The device refused to commit the candidate configuration."""


class SourceError(JunosError):
    """A configuration source (file or URL) could not be read."""


class NotFoundError(JunosError):
    """The requested configuration scope, device or object does not exist."""


class TransactionError(JunosError):
    """A configuration transaction operation was issued out of order."""


class AlreadyLockedError(TransactionError):
    """The configuration database is already locked."""


class NotLockedError(TransactionError):
    """The operation needs the configuration lock, but it is not held."""


class SpaceError(JunosError):
    """Junos Space returned an HTTP error."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code
