"""Exception hierarchy shared across cadenza.

Only conditions a caller can act on are exceptions. A denied tool call
is an ordinary outcome and is encoded in a ``ToolResult`` instead.
"""


class CadenzaError(Exception):
    """Base for all cadenza errors."""


class ConfigurationError(CadenzaError):
    """Request cannot be sent as configured.

    Raised before any network activity. The message is shown to the
    user and should say how to fix the problem.
    """


class MissingCredentialError(ConfigurationError):
    pass


class UnsupportedModelError(ConfigurationError):
    pass


class TransportError(CadenzaError):
    """Network or HTTP failure while a stream is open."""


class ProtocolError(CadenzaError):
    """A vendor or MCP message could not be parsed."""


class ToolExecutionError(CadenzaError):
    """A tool body or the process behind it failed."""


class ToolsetNotFoundError(CadenzaError):
    pass


class Cancelled(CadenzaError):
    """The generation's abort signal fired."""
