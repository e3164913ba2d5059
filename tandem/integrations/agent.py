"""Agent invocation through the Claude Agent SDK."""

import time
from contextlib import aclosing
from pathlib import Path
from typing import Dict, List, Optional, Union

import anyio
import claude_agent_sdk
from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ResultMessage,
    TextBlock,
    UserMessage,
)

from tandem.errors import ErrorKind, TandemError
from tandem.models import AgentConfig, AgentResult, AgentRole, McpServerConfig
from tandem.utils.cancellation import CancellationToken
from tandem.utils.logger import get_logger

logger = get_logger(__name__)


def build_agent_env(config: AgentConfig) -> Dict[str, str]:
    """Environment overrides for the agent subprocess.

    With ``force_subscription_auth`` the credential variables are blanked
    for the agent only, so it falls back to subscription login. The
    environment of this process is left untouched.
    """
    if not config.force_subscription_auth:
        return {}
    env = {name: "" for name in config.credential_env_vars}
    env["CLAUDE_USE_SUBSCRIPTION"] = "true"
    return env


def _raise_if_cancelled(cancellation: Optional[CancellationToken], cause: Exception) -> None:
    if cancellation is not None and cancellation.cancelled:
        raise TandemError(ErrorKind.CANCELLED, cancellation.reason or "Interrupted", cause) from cause


class ResponseCollector:
    """Accumulates the streamed messages of one agent run.

    The final response is the text of the last assistant turn: every text
    block of the consecutive assistant messages that follow the last tool
    result.
    """

    def __init__(self):
        self.message_count = 0
        self.result: Optional[ResultMessage] = None
        self._turn_texts: List[str] = []
        self._final_texts: List[str] = []
        self._in_assistant_turn = False

    def add(self, message: object) -> None:
        self.message_count += 1
        if isinstance(message, AssistantMessage):
            if not self._in_assistant_turn:
                self._turn_texts = []
                self._in_assistant_turn = True
            self._turn_texts.extend(
                block.text for block in message.content
                if isinstance(block, TextBlock) and block.text.strip()
            )
            if self._turn_texts:
                self._final_texts = list(self._turn_texts)
        elif isinstance(message, UserMessage):
            self._in_assistant_turn = False
        elif isinstance(message, ResultMessage):
            self.result = message

    @property
    def final_response(self) -> str:
        if self._final_texts:
            return "\n\n".join(self._final_texts)
        if self.result is not None and self.result.result:
            return self.result.result
        return ""

    @property
    def success(self) -> bool:
        # Runs may end without a result event.
        return self.result is None or not self.result.is_error

    @property
    def cost_usd(self) -> float:
        if self.result is None or self.result.total_cost_usd is None:
            return 0.0
        return float(self.result.total_cost_usd)


class AgentInvoker:
    """Runs one agent role against a prompt and normalizes the outcome."""

    def __init__(self, config: AgentConfig):
        self.config = config

    def build_options(
        self,
        cwd: Union[str, Path],
        max_turns: Optional[int],
        mcp_servers: Optional[Dict[str, McpServerConfig]] = None,
    ) -> ClaudeAgentOptions:
        options = ClaudeAgentOptions(
            cwd=str(cwd),
            max_turns=max_turns,
            permission_mode=self.config.permission_mode,
            env=build_agent_env(self.config),
        )
        if self.config.model:
            options.model = self.config.model
        if mcp_servers:
            options.mcp_servers = {name: server.to_sdk() for name, server in mcp_servers.items()}
        return options

    async def invoke(
        self,
        role: AgentRole,
        prompt: str,
        cwd: Union[str, Path],
        max_turns: Optional[int] = None,
        cancellation: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
        mcp_servers: Optional[Dict[str, McpServerConfig]] = None,
    ) -> AgentResult:
        """Run the agent and collect its final response.

        Args:
            role: Role being played (only used for reporting)
            prompt: Full prompt text
            cwd: Working directory for the agent
            max_turns: Turn cap (defaults to the configured cap for the role)
            cancellation: Token polled between streamed messages
            timeout: Hard cap in seconds (defaults to ``agent.call_timeout``)
            mcp_servers: MCP servers to expose to the agent

        Returns:
            Normalized agent result

        Raises:
            TandemError: AGENT_EXECUTION for any SDK failure or timeout,
                CANCELLED when the token fires mid-run
        """
        if max_turns is None:
            max_turns = self.config.max_turns_for(role)
        if timeout is None:
            timeout = self.config.call_timeout

        options = self.build_options(cwd, max_turns, mcp_servers)
        collector = ResponseCollector()
        started = time.monotonic()
        logger.info(f"Running {role.value} agent in {cwd}")

        try:
            with anyio.fail_after(timeout):
                async with aclosing(claude_agent_sdk.query(prompt=prompt, options=options)) as stream:
                    async for message in stream:
                        collector.add(message)
                        if cancellation is not None:
                            cancellation.raise_if_cancelled()
        except TandemError:
            raise
        except TimeoutError as e:
            _raise_if_cancelled(cancellation, e)
            logger.error(f"{role.value} agent exceeded {timeout}s")
            raise TandemError(
                ErrorKind.AGENT_EXECUTION, f"{role.value} agent exceeded {timeout}s", e
            ) from e
        except Exception as e:
            # Ctrl+C also reaches the agent subprocess, which then dies with an error.
            _raise_if_cancelled(cancellation, e)
            logger.error(f"{role.value} agent failed: {e}")
            raise TandemError(ErrorKind.AGENT_EXECUTION, f"{role.value} agent failed: {e}", e) from e

        result = AgentResult(
            role=role,
            final_response=collector.final_response,
            success=collector.success,
            cost_usd=collector.cost_usd,
            duration_ms=int((time.monotonic() - started) * 1000),
            message_count=collector.message_count,
        )
        logger.info(
            f"{role.value} agent finished: success={result.success}, "
            f"messages={result.message_count}, cost=${result.cost_usd:.4f}"
        )
        return result
