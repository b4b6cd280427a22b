"""Agent invoker: run one architecture/solver/reviewer session via ClaudeSDKClient."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import uuid
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ClaudeSDKError,
    CLINotFoundError,
    HookMatcher,
    ProcessError,
    ResultMessage,
    TextBlock,
    ToolUseBlock,
)

from .errors import (
    AgentCancelledError,
    AgentError,
    AgentNoOutputError,
    AgentProcessError,
    AgentTimeoutError,
    AgentUnavailableError,
    ConfigurationError,
)
from .events import AuditEvent, EventSink, emit_safely
from .hooks import REVIEWER_DISALLOWED_TOOLS, AgentHooks
from .models import AgentAvailability, AgentRun, AgentRunStatus, AgentType

if TYPE_CHECKING:
    from .config import OrchestratorConfig

logger = logging.getLogger("orchestrator")

AVAILABILITY_TIMEOUT_SECONDS = 10.0


def new_agent_id(kind: AgentType) -> str:
    return f"{kind.value}-{uuid.uuid4().hex[:8]}"


class CancelToken:
    """Explicit cancellation signal shared by every agent run of a feature."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


def _get_sdk_subprocess_pid(client: ClaudeSDKClient) -> int | None:
    """Extract the PID of the agent CLI subprocess from the SDK client.

    Navigates: client._transport._process.pid
    Returns None if any attribute is missing (SDK internals changed).
    """
    transport = getattr(client, "_transport", None)
    proc = getattr(transport, "_process", None)
    return getattr(proc, "pid", None)


class AgentInvoker:
    """Supervises single agent sessions: bounded time, classified result."""

    def __init__(self, config: OrchestratorConfig, events: EventSink | None = None):
        self.config = config
        self.events = events
        self._active_pids: dict[str, int] = {}

    async def check_availability(self) -> AgentAvailability:
        """Check the agent CLI with ``--version``."""
        cli = str(self.config.cli_path or "claude")
        try:
            proc = await asyncio.create_subprocess_exec(
                cli, "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Agent CLI not available: {e}")
            return AgentAvailability(available=False, error=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=AVAILABILITY_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return AgentAvailability(available=False, error=f"{cli} --version timed out")

        if proc.returncode != 0:
            error = stderr.decode(errors="replace").strip() or f"exit code {proc.returncode}"
            logger.error(f"Agent CLI not available: {error}")
            return AgentAvailability(available=False, error=error)

        version = stdout.decode(errors="replace").strip()
        logger.info(f"Agent CLI available: {version}")
        return AgentAvailability(available=True, version=version)

    async def run(
        self,
        kind: AgentType,
        prompt: str,
        working_dir: Path | str,
        timeout: float,
        cancel_token: CancelToken | None = None,
        agent_id: str | None = None,
        feature: str | None = None,
        issue_number: int | None = None,
    ) -> str:
        """Run one agent session and return its full text output.

        Raises AgentTimeoutError, AgentProcessError, AgentNoOutputError,
        AgentUnavailableError or AgentCancelledError.
        """
        agent_id = agent_id or new_agent_id(kind)
        working_dir = Path(working_dir)
        if not working_dir.is_dir():
            raise ConfigurationError(f"Agent working directory does not exist: {working_dir}")
        if cancel_token is not None and cancel_token.cancelled:
            raise AgentCancelledError(kind.value, agent_id)

        record = AgentRun(
            agent_id=agent_id,
            type=kind,
            status=AgentRunStatus.RUNNING,
            working_dir=str(working_dir),
            start_time=datetime.now(),
        )
        emit_safely(self.events, AuditEvent.agent_run(record, feature, issue_number))
        context = {"feature": feature, "issue": issue_number, "agent_id": agent_id}
        logger.info(
            f"Running {kind.value} agent {agent_id} in {working_dir} (timeout {timeout:.0f}s)",
            extra=context,
        )

        session = asyncio.create_task(self._stream(kind, prompt, working_dir, agent_id))
        cancel_wait = asyncio.create_task(cancel_token.wait()) if cancel_token else None
        waiters = {session} if cancel_wait is None else {session, cancel_wait}

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
            )
            if session not in done:
                if cancel_wait is not None and cancel_wait in done:
                    raise AgentCancelledError(kind.value, agent_id)
                raise AgentTimeoutError(kind.value, agent_id, timeout)

            try:
                output = session.result()
            except AgentError:
                raise
            except Exception as e:
                raise self._classify(kind, agent_id, e) from e

            if not output.strip():
                raise AgentNoOutputError(kind.value, agent_id)

            record.status = AgentRunStatus.COMPLETED
            logger.info(f"{kind.value} agent {agent_id} finished ({len(output)} chars)", extra=context)
            return output

        except AgentError as e:
            record.status = (
                AgentRunStatus.TIMED_OUT if isinstance(e, AgentTimeoutError)
                else AgentRunStatus.FAILED
            )
            record.error = str(e)
            logger.warning(str(e), extra=context)
            raise
        except asyncio.CancelledError:
            record.status = AgentRunStatus.FAILED
            record.error = "cancelled"
            raise
        finally:
            if not session.done():
                await self._stop_session(session, agent_id)
            if cancel_wait is not None:
                cancel_wait.cancel()
            self._active_pids.pop(agent_id, None)
            record.end_time = datetime.now()
            emit_safely(self.events, AuditEvent.agent_run(record, feature, issue_number))

    @staticmethod
    def _classify(kind: AgentType, agent_id: str, error: Exception) -> AgentError:
        if isinstance(error, (CLINotFoundError, FileNotFoundError)):
            return AgentUnavailableError(kind.value, agent_id, str(error))
        if isinstance(error, ProcessError):
            return AgentProcessError(kind.value, agent_id, error.exit_code, error.stderr or str(error))
        if isinstance(error, ClaudeSDKError):
            return AgentProcessError(kind.value, agent_id, None, str(error))
        return AgentProcessError(kind.value, agent_id, None, f"{type(error).__name__}: {error}")

    def _options(self, kind: AgentType, working_dir: Path, hooks: AgentHooks) -> ClaudeAgentOptions:
        disallowed = REVIEWER_DISALLOWED_TOOLS if kind == AgentType.REVIEWER else []
        model = self.config.planning_model if kind == AgentType.ARCHITECTURE else self.config.model
        return ClaudeAgentOptions(
            model=model,
            permission_mode=self.config.permission_mode,
            allowed_tools=[t for t in self.config.allowed_tools if t not in disallowed],
            disallowed_tools=list(disallowed),
            cwd=str(working_dir),
            cli_path=self.config.cli_path,
            setting_sources=["project"],
            hooks={
                "PreToolUse": [
                    HookMatcher(matcher="Bash", hooks=[hooks.policy_hook]),
                    HookMatcher(matcher=None, hooks=[hooks.activity_tracker]),
                ],
                "Stop": [
                    HookMatcher(hooks=[hooks.stop_hook]),
                ],
            },
        )

    async def _stream(
        self, kind: AgentType, prompt: str, working_dir: Path, agent_id: str,
    ) -> str:
        """Send the prompt to a fresh session and collect its text output."""
        hooks = AgentHooks(kind, agent_id)
        chunks: list[str] = []
        final_result: str | None = None

        async with ClaudeSDKClient(self._options(kind, working_dir, hooks)) as client:
            await client.query(prompt)

            # Must be after query(): that's when the subprocess spawns.
            pid = _get_sdk_subprocess_pid(client)
            if pid is not None:
                self._active_pids[agent_id] = pid

            async for message in client.receive_messages():
                if isinstance(message, AssistantMessage):
                    for block in message.content:
                        if isinstance(block, TextBlock):
                            chunks.append(block.text)
                            self._log_assistant_text(agent_id, block.text)
                        elif isinstance(block, ToolUseBlock):
                            logger.debug(f"  {agent_id}: {block.name}")

                if isinstance(message, ResultMessage):
                    if message.is_error:
                        raise AgentProcessError(
                            kind.value, agent_id, None, message.result or "session ended with an error",
                        )
                    final_result = message.result
                    break

        output = "\n".join(chunks)
        if not output.strip() and final_result:
            output = final_result
        return output

    @staticmethod
    def _log_assistant_text(agent_id: str, text: str) -> None:
        """Log the first meaningful line of assistant text as progress."""
        for line in text.split("\n"):
            line = line.strip()
            if line:
                if len(line) > 120:
                    line = line[:117] + "..."
                logger.info(f"  {agent_id}: {line}", extra={"agent_id": agent_id})
                break

    async def _stop_session(self, session: asyncio.Task[str], agent_id: str) -> None:
        """Cancel the session task and make sure its subprocess is gone."""
        self.terminate(agent_id)
        session.cancel()
        await asyncio.gather(session, return_exceptions=True)

    def terminate(self, agent_id: str) -> None:
        """Send SIGTERM to an agent subprocess (its process group when it leads one)."""
        pid = self._active_pids.pop(agent_id, None)
        if pid is None:
            return
        logger.info(f"  Terminating {agent_id} subprocess (PID {pid})...")
        try:
            pgid = os.getpgid(pid)
            if pgid != os.getpgrp():
                os.killpg(pgid, signal.SIGTERM)
            else:
                os.kill(pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            pass

    def terminate_all(self) -> None:
        for agent_id in list(self._active_pids):
            self.terminate(agent_id)
