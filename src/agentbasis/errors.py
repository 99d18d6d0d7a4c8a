"""
Exception hierarchy for agentbasis.

Only programmer misuse raises: invalid configuration at init and
explicit access to a client that does not exist. Everything that can
happen at call time inside instrumented code is logged instead.
"""


class AgentBasisError(Exception):
    """Base class for all agentbasis errors."""


class ConfigurationError(AgentBasisError):
    """Missing or invalid configuration, raised by init().

    Attributes:
        field: Name of the first offending field (e.g. 'batch_size').
    """

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")


class NotInitializedError(AgentBasisError):
    """The client was used explicitly before AgentBasis.init()."""

    def __init__(self, action: str = "use the client") -> None:
        super().__init__(
            f"AgentBasis must be initialized to {action}. Call AgentBasis.init() first."
        )
