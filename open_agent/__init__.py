"""open_agent -- streaming, tool-calling client for OpenAI-compatible endpoints.

Public API:
    Session, query      - Stateful conversation and one-shot helper
    SessionPool         - Many sessions on one loop with a shared limiter
    AgentOptions        - Per-session options; Settings for env config
    Tool, tool          - Tool definitions and the fluent builder
    Hooks, HookDecision - Lifecycle policy hooks
    Message and blocks  - TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock
"""

from open_agent.api.conversation import ConversationStore
from open_agent.api.models import (
    ContentBlock,
    ImageBlock,
    ImageDetail,
    Message,
    Role,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from open_agent.api.multiplex import ExchangeResult, SessionPool
from open_agent.api.session import Session, SessionState, query
from open_agent.api.tools import Tool, ToolBuilder, ToolRegistry, tool
from open_agent.cancellation import CancellationToken
from open_agent.config import (
    AgentOptions,
    Provider,
    Settings,
    configure_logging,
    get_base_url,
    get_model,
)
from open_agent.context import (
    TokenEstimator,
    estimate_tokens,
    is_approaching_limit,
    truncate_messages,
)
from open_agent.errors import (
    ApiError,
    InvalidInputError,
    InvalidStateError,
    OpenAgentError,
    PolicyBlockedError,
    ProtocolDecodeError,
    RequestTimeout,
    ToolExecutionError,
    ToolIterationLimitExceeded,
    TransportError,
    UnknownToolError,
)
from open_agent.hooks import (
    HookAction,
    HookDecision,
    HookEvent,
    Hooks,
    PostToolUseEvent,
    PreToolUseEvent,
    UserPromptSubmitEvent,
)
from open_agent.retry import RetryPolicy, is_retryable_error, retry_with_backoff

__version__ = "0.1.0"
