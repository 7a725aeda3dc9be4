"""Exception hierarchy for open_agent.

Every error raised across module boundaries derives from OpenAgentError so
callers can catch the whole family in one place. The ``retryable`` flag is
what the default retry predicate looks at.
"""

from __future__ import annotations

from typing import Any


class OpenAgentError(Exception):
    """Base class.

    Attributes:
        message: Human-readable description.
        extra: Free-form details (tool name, status code, ...).
    """

    retryable: bool = False

    def __init__(self, message: str = "", **extra: Any) -> None:
        self.message = message
        self.extra = extra
        super().__init__(message)


class TransportError(OpenAgentError):
    """Connection-level failure (DNS, refused connection, dropped stream).

    ``recoverable=False`` marks failures that will repeat for every request
    on this session (invalid URL, unsupported scheme, closed client).
    """

    def __init__(self, message: str = "", *, recoverable: bool = True, **extra: Any) -> None:
        super().__init__(message, **extra)
        self.recoverable = recoverable

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.recoverable


class RequestTimeout(TransportError):
    """The endpoint did not answer within the configured timeout."""


class ApiError(OpenAgentError):
    """Endpoint answered with a non-2xx status or an in-stream error payload."""

    def __init__(self, message: str = "", *, status_code: int | None = None, **extra: Any) -> None:
        super().__init__(message, **extra)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        if self.status_code is None:
            return False
        return self.status_code == 429 or self.status_code >= 500


class ProtocolDecodeError(OpenAgentError):
    """Malformed event framing or malformed tool-call arguments."""


class InvalidInputError(OpenAgentError):
    """A value handed to the library failed validation."""


class UnknownToolError(OpenAgentError):
    """The model asked for a tool that is not registered."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool '{tool_name}' not found", tool=tool_name)
        self.tool_name = tool_name


class ToolExecutionError(OpenAgentError):
    """A registered tool failed. Converted into an error ToolResult."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message, tool=tool_name)
        self.tool_name = tool_name


class PolicyBlockedError(OpenAgentError):
    """A UserPromptSubmit hook refused the prompt."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Prompt blocked by hook: {reason}", reason=reason)
        self.reason = reason


class ToolIterationLimitExceeded(OpenAgentError):
    """The auto-execution loop ran out of tool rounds without a final answer."""

    def __init__(self, limit: int) -> None:
        super().__init__(
            f"Model still requested tools after {limit} tool rounds",
            limit=limit,
        )
        self.limit = limit


class InvalidStateError(OpenAgentError):
    """Session misuse, e.g. send() while a previous exchange is undrained."""


class ExchangeInterrupted(OpenAgentError):
    """Raised at a suspension point once the cancellation token is set.

    Session.receive() turns this into end-of-turn; it only escapes when the
    token helpers are used directly.
    """
