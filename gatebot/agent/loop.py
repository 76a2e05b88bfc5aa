"""Agent loop: the reply-cycle state machine and its bus wiring."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, TypeVar

from loguru import logger

from gatebot.agent.context import ContextBuilder
from gatebot.agent.policy import InvocationContext, PolicyFilter, is_sandboxed
from gatebot.agent.tools.base import Tool, ToolResult
from gatebot.agent.tools.browser import BrowserTool
from gatebot.agent.tools.filesystem import EditFileTool, ListDirTool, ReadFileTool, WriteFileTool
from gatebot.agent.tools.message import MessageTool
from gatebot.agent.tools.registry import ToolRegistry
from gatebot.agent.tools.shell import ExecTool
from gatebot.agent.tools.web import WebFetchTool
from gatebot.browser.cdp import CDPDriver
from gatebot.browser.driver import BrowserDriver
from gatebot.browser.refs import RefCache
from gatebot.bus.events import InboundMessage, OutboundMessage
from gatebot.bus.queue import MessageBus
from gatebot.config.schema import Config
from gatebot.errors import CycleAborted, PolicyDenied, ProtocolViolation, UnknownTool
from gatebot.providers.base import LLMProvider, ToolCallRequest
from gatebot.session.manager import SessionManager
from gatebot.utils.helpers import truncate_string

T = TypeVar("T")


class LoopState(str, Enum):
    AWAITING_ENGINE_TURN = "awaiting_engine_turn"
    EXECUTING_CALLS = "executing_calls"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class CycleResult:
    """
    Outcome of one reply cycle.

    `appended` holds the messages the cycle added after the caller's list:
    complete assistant-call/tool-result rounds, plus the final assistant
    message when the cycle finished. A turn that aborted the cycle is never
    part of it.
    """

    state: LoopState
    content: str | None = None
    appended: list[dict[str, Any]] = field(default_factory=list)
    results: list[ToolResult] = field(default_factory=list)
    abort_reason: str | None = None
    detail: str = ""
    iterations: int = 0

    @property
    def ok(self) -> bool:
        return self.state == LoopState.DONE

    @property
    def tools_used(self) -> list[str]:
        return [r.name for r in self.results]


def validate_turn(calls: list[ToolCallRequest]) -> None:
    """Raise ProtocolViolation for a malformed engine turn."""
    seen: set[str] = set()
    for call in calls:
        if not isinstance(call.id, str) or not call.id:
            raise ProtocolViolation(f"tool call without an id (tool={call.name!r})")
        if call.id in seen:
            raise ProtocolViolation(f"duplicate tool call id {call.id!r}")
        seen.add(call.id)
        if not isinstance(call.name, str) or not call.name.strip():
            raise ProtocolViolation(f"tool call {call.id!r} has no tool name")


class AgentLoop:
    """
    The agent loop is the core processing engine.

    It:
    1. Receives messages from the bus
    2. Builds context with history
    3. Runs a reply cycle: engine turn, tool calls, engine turn, ...
    4. Persists the cycle to the session
    5. Sends the response back
    """

    _ABORT_REPLY = "Sorry, I couldn't complete that request ({reason})."
    _HELP_TEXT = (
        "gatebot commands:\n"
        "/new - Start a new conversation\n"
        "/stop - Stop the running request\n"
        "/help - Show available commands"
    )

    def __init__(
        self,
        bus: MessageBus,
        provider: LLMProvider,
        config: Config | None = None,
        *,
        agent_id: str | None = None,
        workspace: Path | None = None,
        session_manager: SessionManager | None = None,
        registry: ToolRegistry | None = None,
        policy: PolicyFilter | None = None,
        browser_driver: BrowserDriver | None = None,
        ref_cache: RefCache | None = None,
    ):
        self.config = config or Config()
        self.bus = bus
        self.provider = provider
        self.agent_id = agent_id or self.config.agents.default_agent
        self.workspace = workspace or self.config.workspace_path

        defaults = self.config.agents.defaults
        self.model = self.config.agent(self.agent_id).model or provider.get_default_model()
        self.max_iterations = defaults.max_tool_iterations
        self.temperature = defaults.temperature
        self.max_tokens = defaults.max_tokens
        self.memory_window = defaults.memory_window
        self.context_window_tokens = defaults.context_window_tokens
        self.parallel_tool_calls = defaults.parallel_tool_calls
        self.tool_timeout = self.config.tools.timeout_s

        self.context = ContextBuilder(self.workspace)
        self.sessions = session_manager or SessionManager(self.workspace)
        self.policy = policy or PolicyFilter.from_config(self.config)
        self.ref_cache = ref_cache or RefCache(ttl_s=self.config.tools.browser.ref_ttl_s)
        self._browser_driver = browser_driver
        if registry is None:
            self.tools = ToolRegistry()
            self._register_default_tools()
        else:
            self.tools = registry

        self._running = False
        self._session_locks: dict[str, asyncio.Lock] = {}
        self._active: dict[str, asyncio.Event] = {}
        self._resets: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()

    def _register_default_tools(self) -> None:
        """Register the default set of tools."""
        tools_cfg = self.config.tools

        # File tools (restrict to workspace if configured)
        allowed_dir = self.workspace if tools_cfg.restrict_to_workspace else None
        self.tools.register(ReadFileTool(allowed_dir=allowed_dir))
        self.tools.register(WriteFileTool(allowed_dir=allowed_dir))
        self.tools.register(EditFileTool(allowed_dir=allowed_dir))
        self.tools.register(ListDirTool(allowed_dir=allowed_dir))

        self.tools.register(
            ExecTool(
                working_dir=str(self.workspace),
                timeout=tools_cfg.exec.timeout,
                deny_patterns=tools_cfg.exec.deny_patterns or None,
                allow_patterns=tools_cfg.exec.allow_patterns or None,
                restrict_to_workspace=tools_cfg.restrict_to_workspace,
            )
        )
        self.tools.register(
            WebFetchTool(max_chars=tools_cfg.web.fetch_max_chars, timeout=tools_cfg.web.timeout_s)
        )
        self.tools.register(MessageTool(send_callback=self.bus.publish_outbound))

        browser_cfg = tools_cfg.browser
        if browser_cfg.enabled:
            driver = self._browser_driver or CDPDriver(browser_cfg.endpoint, timeout=browser_cfg.timeout_s)
            self.tools.register(
                BrowserTool(
                    driver,
                    self.ref_cache,
                    default_mode=browser_cfg.default_mode,
                    max_chars=browser_cfg.snapshot_max_chars,
                )
            )

    def offered_tools(self, context: InvocationContext) -> list[Tool]:
        """Tools the engine may see for this context."""
        return self.policy.effective_tools(self.tools.list(), context)

    async def run_cycle(
        self,
        context: InvocationContext,
        messages: list[dict[str, Any]],
        cancel: asyncio.Event | None = None,
    ) -> CycleResult:
        """
        Drive one reply cycle to `done` or `aborted`.

        `messages` is not modified; the cycle works on its own copy and
        reports what it added in `CycleResult.appended`.
        """
        working = list(messages)
        appended: list[dict[str, Any]] = []
        results: list[ToolResult] = []
        offered = self.offered_tools(context)
        offered_names = {tool.name for tool in offered}
        definitions = self.tools.get_definitions(offered)
        iteration = 0

        logger.info(
            f"Cycle start {context.session_key}: {len(offered)}/{len(self.tools)} tools offered"
            + (" (sandboxed)" if context.sandboxed else "")
        )

        try:
            while iteration < self.max_iterations:
                iteration += 1
                logger.debug(f"{context.session_key}: {LoopState.AWAITING_ENGINE_TURN.value} (turn {iteration})")
                if cancel is not None and cancel.is_set():
                    raise CycleAborted("cancelled")

                estimate = self.context.estimate_tokens(working, definitions)
                if estimate > self.context_window_tokens:
                    raise CycleAborted(
                        "context_window_exceeded",
                        f"~{estimate} tokens > {self.context_window_tokens}",
                    )

                response = await self._until_cancelled(
                    self.provider.chat(
                        messages=working,
                        tools=definitions or None,
                        model=self.model,
                        temperature=self.temperature,
                        max_tokens=self.max_tokens,
                    ),
                    cancel,
                )
                if response.finish_reason == "error":
                    raise CycleAborted("provider_error", response.content or "")
                if response.finish_reason == "context_overflow":
                    raise CycleAborted("context_window_exceeded", response.content or "")

                try:
                    validate_turn(response.tool_calls)
                except ProtocolViolation as e:
                    raise CycleAborted("protocol_violation", str(e)) from e

                if not response.has_tool_calls:
                    final = response.content or ""
                    self.context.add_assistant_message(appended, final)
                    logger.info(f"Cycle done {context.session_key} after {iteration} turn(s)")
                    return CycleResult(
                        state=LoopState.DONE,
                        content=final,
                        appended=appended,
                        results=results,
                        iterations=iteration,
                    )

                logger.debug(
                    f"{context.session_key}: {LoopState.EXECUTING_CALLS.value} x{len(response.tool_calls)}"
                )
                turn_results = await self._execute_calls(response.tool_calls, context, offered_names, cancel)

                round_messages: list[dict[str, Any]] = []
                self.context.add_assistant_message(
                    round_messages,
                    response.content,
                    [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.name,
                                "arguments": json.dumps(tc.arguments, ensure_ascii=False),
                            },
                        }
                        for tc in response.tool_calls
                    ],
                    reasoning_content=response.reasoning_content,
                )
                for result in turn_results:
                    self.context.add_tool_result(round_messages, result.call_id, result.name, result.content)
                working.extend(round_messages)
                appended.extend(round_messages)
                results.extend(turn_results)

            raise CycleAborted("max_iterations", f"no final answer after {self.max_iterations} turns")

        except CycleAborted as e:
            logger.error(f"Cycle aborted {context.session_key}: {e}")
            return CycleResult(
                state=LoopState.ABORTED,
                appended=appended,
                results=results,
                abort_reason=e.reason,
                detail=e.detail,
                iterations=iteration,
            )

    async def _until_cancelled(self, aw: Awaitable[T], cancel: asyncio.Event | None) -> T:
        """Await `aw`, cancelling it and aborting the cycle once `cancel` is set."""
        if cancel is None:
            return await aw
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise CycleAborted("cancelled")

    def _parallel_safe(self, call: ToolCallRequest, offered: set[str]) -> bool:
        tool = self.tools.get(call.name)
        return bool(self.parallel_tool_calls and tool is not None and call.name in offered and tool.concurrency_safe)

    def _batches(self, calls: list[ToolCallRequest], offered: set[str]) -> list[list[int]]:
        """Group call indexes; consecutive concurrency-safe calls share a batch."""
        batches: list[tuple[list[int], bool]] = []
        for i, call in enumerate(calls):
            safe = self._parallel_safe(call, offered)
            if safe and batches and batches[-1][1]:
                batches[-1][0].append(i)
            else:
                batches.append(([i], safe))
        return [indexes for indexes, _ in batches]

    async def _execute_calls(
        self,
        calls: list[ToolCallRequest],
        context: InvocationContext,
        offered: set[str],
        cancel: asyncio.Event | None,
    ) -> list[ToolResult]:
        """Run every call of one turn; results come back in request order."""
        results: list[ToolResult | None] = [None] * len(calls)
        for batch in self._batches(calls, offered):
            if len(batch) == 1:
                outcomes = [await self._until_cancelled(self._execute_one(calls[batch[0]], context, offered), cancel)]
            else:
                outcomes = await self._until_cancelled(
                    asyncio.gather(*(self._execute_one(calls[i], context, offered) for i in batch)),
                    cancel,
                )
            for i, result in zip(batch, outcomes):
                results[i] = result
                if result.fault and self.policy.is_fatal(self.tools.get(result.name)):
                    raise CycleAborted("fatal_executor_fault", f"{result.name}: {result.content}")
        return [r for r in results if r is not None]

    async def _execute_one(
        self,
        call: ToolCallRequest,
        context: InvocationContext,
        offered: set[str],
    ) -> ToolResult:
        tool = self.tools.get(call.name)
        if tool is None:
            logger.warning(f"Unknown tool requested: {call.name}")
            error = UnknownTool(f"Tool '{call.name}' is not available", hint="Use one of the offered tools")
            return ToolResult(call.id, call.name, error.render(), ok=False, error_kind=error.kind)
        if call.name not in offered:
            decision = self.policy.decide([tool], context)[0]
            logger.warning(f"Denied tool requested: {call.name} ({decision.reason})")
            error = PolicyDenied(f"Tool '{call.name}' is not allowed here: {decision.reason}")
            return ToolResult(call.id, call.name, error.render(), ok=False, error_kind=error.kind)

        args = call.arguments
        if isinstance(tool, MessageTool) and isinstance(args, dict):
            target = {"channel": context.channel, "chat_id": context.chat_id}
            args = {**{k: v for k, v in target.items() if v}, **args}

        args_str = json.dumps(call.arguments, ensure_ascii=False, default=str)
        logger.info(f"Tool call: {call.name}({truncate_string(args_str, 200)})")
        result = await self.tools.execute(call.name, args, call_id=call.id, timeout=self.tool_timeout)
        status = "ok" if result.ok else result.error_kind
        logger.info(f"Tool result: {call.name} -> {status}")
        if result.error_kind == "stale_ref":
            logger.warning(f"Stale browser ref in {context.session_key}: {result.content[:120]}")
        return result

    async def run(self) -> None:
        """Run the agent loop, processing messages from the bus."""
        self._running = True
        logger.info("Agent loop started")

        while self._running:
            try:
                msg = await asyncio.wait_for(self.bus.consume_inbound(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            # Control commands must not queue behind the cycle they control
            if self._command_name(msg.content) in ("/stop", "/new"):
                await self._publish(await self._process_message(msg))
                continue

            task = asyncio.create_task(self._dispatch(msg))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        await self._drain_tasks()
        logger.info("Agent loop stopped")

    async def _drain_tasks(self, grace_s: float = 5.0) -> None:
        """Let cancelled cycles publish their replies, then cancel whatever is left."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        _done, pending = await asyncio.wait(tasks, timeout=grace_s)
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _dispatch(self, msg: InboundMessage) -> None:
        try:
            async with self._lock_for(msg.session_key):
                response = await self._process_message(msg)
            await self._publish(response)
        except Exception as e:
            logger.exception(f"Error processing message: {e}")
            await self.bus.publish_outbound(
                OutboundMessage(
                    channel=msg.channel,
                    chat_id=msg.chat_id,
                    content=f"Sorry, I encountered an error: {str(e)}",
                )
            )

    async def _publish(self, response: OutboundMessage | None) -> None:
        if response:
            await self.bus.publish_outbound(response)

    def _lock_for(self, session_key: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_key)
        if lock is None:
            lock = self._session_locks[session_key] = asyncio.Lock()
        return lock

    def stop(self) -> None:
        """Stop the agent loop and cancel running cycles."""
        self._running = False
        for event in self._active.values():
            event.set()
        logger.info("Agent loop stopping")

    def cancel(self, session_key: str) -> bool:
        """Cancel the active cycle of a session. Returns False if none is running."""
        event = self._active.get(session_key)
        if event is None or event.is_set():
            return False
        event.set()
        return True

    @staticmethod
    def _command_name(content: str) -> str:
        cmd = content.strip().lower()
        token = cmd.split()[0] if cmd else ""
        return token.split("@", 1)[0]

    def build_context(self, session_key: str, channel: str = "", chat_id: str = "") -> InvocationContext:
        """Invocation context for one reply cycle of `session_key`."""
        session = self.sessions.get_or_create(session_key)
        return InvocationContext(
            session_key=session_key,
            agent_id=self.agent_id,
            provider=self.provider.name,
            model=self.model,
            sandboxed=is_sandboxed(self.config, self.agent_id, session_key),
            history=tuple(session.get_history(max_messages=self.memory_window)),
            channel=channel,
            chat_id=chat_id,
        )

    async def _process_message(
        self, msg: InboundMessage, session_key: str | None = None
    ) -> OutboundMessage | None:
        """
        Process a single inbound message.

        Args:
            msg: The inbound message to process.
            session_key: Override session key (used by process_direct).

        Returns:
            The response message, or None if no response needed.
        """
        key = session_key or msg.session_key
        cmd_name = self._command_name(msg.content)

        def reply(content: str) -> OutboundMessage:
            return OutboundMessage(
                channel=msg.channel, chat_id=msg.chat_id, content=content, metadata=dict(msg.metadata)
            )

        if cmd_name == "/help":
            return reply(self._HELP_TEXT)
        if cmd_name == "/stop":
            return reply("Stopped." if self.cancel(key) else "Nothing is running.")
        if cmd_name == "/new":
            self._resets[key] = self._resets.get(key, 0) + 1
            self.cancel(key)
            self.sessions.delete(key)
            return reply("New session started.")

        preview = truncate_string(msg.content, 80)
        logger.info(f"Processing message from {msg.channel}:{msg.sender_id}: {preview}")

        context = self.build_context(key, msg.channel, msg.chat_id)
        initial_messages = self.context.build_messages(
            history=list(context.history),
            current_message=msg.content,
            channel=msg.channel,
            chat_id=msg.chat_id,
        )

        generation = self._resets.get(key, 0)
        cancel = asyncio.Event()
        self._active[key] = cancel
        try:
            result = await self.run_cycle(context, initial_messages, cancel)
        finally:
            if self._active.get(key) is cancel:
                del self._active[key]

        if result.ok:
            final_content = result.content or "I've completed processing but have no response to give."
        else:
            final_content = self._ABORT_REPLY.format(reason=(result.abort_reason or "error").replace("_", " "))

        if self._resets.get(key, 0) != generation:
            logger.info(f"Session {key} was reset during the cycle; not persisting it")
        else:
            session = self.sessions.get_or_create(key)
            session.add_message("user", msg.content)
            session.extend(result.appended)
            if not result.ok:
                session.add_message("assistant", final_content, aborted=result.abort_reason)
            self.sessions.save(session)

        preview = truncate_string(final_content, 120)
        logger.info(f"Response to {msg.channel}:{msg.sender_id}: {preview}")

        metadata = dict(msg.metadata)
        if result.results:
            metadata["tools_used"] = result.tools_used
        if not result.ok:
            metadata["aborted"] = result.abort_reason
        return OutboundMessage(
            channel=msg.channel,
            chat_id=msg.chat_id,
            content=final_content,
            metadata=metadata,
        )

    async def process_direct(
        self,
        content: str,
        session_key: str = "cli:direct",
        channel: str = "cli",
        chat_id: str = "direct",
    ) -> str:
        """
        Process a message directly (for CLI usage).

        Args:
            content: The message content.
            session_key: Session identifier (overrides channel:chat_id for session lookup).
            channel: Source channel (for tool context routing).
            chat_id: Source chat ID (for tool context routing).

        Returns:
            The agent's response.
        """
        msg = InboundMessage(channel=channel, sender_id="user", chat_id=chat_id, content=content)
        async with self._lock_for(session_key):
            response = await self._process_message(msg, session_key=session_key)
        return response.content if response else ""
