"""Conversation orchestration: send, edit, regenerate and the tool-call loop."""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set

from ..cancellation import CancellationToken, cancellable_sleep
from ..config import Config
from ..exceptions import OperationAborted, RequestLimitExceeded
from ..model_manager import ModelManager, ResolvedModel
from ..models import (
    SYSTEM_MODEL_MARKER,
    UNSET,
    Attachment,
    BranchInfo,
    Message,
    MessageRole,
    Protocol,
    Thread,
    ThreadSettings,
    ToolCall,
)
from ..providers.streaming import StreamAccumulator
from ..providers.types import ChatMessage, ChatReply, ChatRequest
from ..retry import SleepFn, with_provider_retry
from ..storage import DuckDBStorage
from ..tools.gateway import ToolGateway
from ..tools.local import ToolContext
from ..tree import MessageTreeStore
from .errors import format_error_message
from .images import collect_generated_images
from .request_builder import (
    build_chat_messages,
    build_chat_request,
    build_response_request,
    truncate_history,
)
from .sink import StreamSink

logger = logging.getLogger(__name__)

DEFAULT_THREAD_TITLE = "New Chat"

TITLE_PROMPT = (
    "You are a helpful assistant that generates a short, concise title for a conversation. "
    "The title should be in the same language as the conversation. "
    "Return ONLY the title text, no quotes or extra words. Maximum 20 characters."
)
TITLE_MAX_TOKENS = 50

ABORTED_TOOL_RESULT = "Error: aborted"
_TITLE_QUOTES = "\"'「」“”"


class TurnState(Enum):
    IDLE = "idle"
    USER_MESSAGE_PERSISTED = "user_message_persisted"
    AWAITING_PROVIDER_REPLY = "awaiting_provider_reply"
    STREAMING_REPLY = "streaming_reply"
    TOOL_CALLS_PENDING = "tool_calls_pending"


class EditMode(Enum):
    SAVE = "save"
    REGENERATE = "regenerate"
    BRANCH = "branch"


class RegenerateMode(Enum):
    REGENERATE = "regenerate"
    BRANCH = "branch"


@dataclass
class SendResult:
    """Outcome of one turn.

    ``message`` is the final assistant message, or the persisted error message
    when the turn failed. It is None when the turn was aborted.
    """

    thread_id: int
    user_message: Optional[Message] = None
    message: Optional[Message] = None
    tool_messages: List[Message] = field(default_factory=list)
    aborted: bool = False

    @property
    def is_error(self) -> bool:
        return self.message is not None and self.message.is_error


@dataclass
class _TurnParams:
    system_prompt: Optional[str]
    context_window: Optional[int]
    max_tokens: Optional[int]
    extra_params: Dict[str, Any]
    stream: bool


class ConversationOrchestrator:
    """Runs conversation turns against a thread's message tree.

    One cancellation token is kept per thread; starting a new send on a
    thread cancels the turn already running there.
    """

    def __init__(
        self,
        storage: DuckDBStorage,
        model_manager: ModelManager,
        gateway: ToolGateway,
        config: Optional[Config] = None,
        sleep: SleepFn = cancellable_sleep,
    ):
        self.storage = storage
        self.model_manager = model_manager
        self.gateway = gateway
        self.config = config or Config()
        self.tree = MessageTreeStore(storage)
        self._sleep = sleep
        self._tokens: Dict[int, CancellationToken] = {}
        self._states: Dict[int, TurnState] = {}
        self._sinks: Dict[int, StreamSink] = {}
        self._background_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Threads and views
    # ------------------------------------------------------------------

    async def create_thread(
        self, title: str = DEFAULT_THREAD_TITLE, settings: Optional[ThreadSettings] = None
    ) -> Thread:
        thread = await self.storage.create_thread(title)
        if settings is not None:
            await self.storage.save_thread_settings(settings.model_copy(update={"thread_id": thread.id}))
        logger.info(f"Created thread {thread.id}")
        return thread

    def sink(self, thread_id: int) -> StreamSink:
        """Live sink of the reply streaming into ``thread_id``."""
        sink = self._sinks.get(thread_id)
        if sink is None:
            sink = StreamSink(thread_id)
            self._sinks[thread_id] = sink
        return sink

    def turn_state(self, thread_id: int) -> TurnState:
        return self._states.get(thread_id, TurnState.IDLE)

    def is_busy(self, thread_id: int) -> bool:
        return thread_id in self._tokens

    async def get_active_path(self, thread_id: int, leaf_id: Any = UNSET) -> List[Message]:
        return await self.tree.get_active_path(thread_id, leaf_id)

    async def get_branch_info(self, message_id: int) -> Optional[BranchInfo]:
        return await self.tree.get_branch_info(message_id)

    async def switch_branch(self, message_id: int) -> Optional[int]:
        return await self.tree.switch_branch(message_id)

    def stop(self, thread_id: int) -> bool:
        """Cancel the turn in flight on ``thread_id``, if any."""
        token = self._tokens.get(thread_id)
        sink = self._sinks.get(thread_id)
        if sink is not None:
            sink.clear()
        if token is None:
            return False
        token.cancel("Stopped by user")
        logger.info(f"Stop requested for thread {thread_id}")
        return True

    async def delete_thread(self, thread_id: int) -> bool:
        """Stop any running turn and delete the thread with everything in it."""
        self.stop(thread_id)
        self._tokens.pop(thread_id, None)
        self._states.pop(thread_id, None)
        self._sinks.pop(thread_id, None)
        return await self.storage.delete_thread(thread_id)

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send(
        self,
        thread_id: Optional[int],
        text: str,
        attachments: Sequence[Attachment] = (),
        parent_id: Any = UNSET,
        model_id: Optional[str] = None,
        provider_id: Optional[int] = None,
        stream: Optional[bool] = None,
    ) -> SendResult:
        """Send a user message and run the turn to completion.

        Args:
            thread_id: Target thread; None creates a new thread.
            text: User message text. An empty text without attachments
                re-sends from ``parent_id`` without a new user message.
            attachments: Files stored with the user message.
            parent_id: Node to attach to. UNSET means the active leaf and
                None means a new root.
            model_id: Overrides the thread's model for this turn.
            provider_id: Overrides the thread's provider for this turn.
            stream: Overrides the model's streaming setting.

        Raises:
            ConfigurationError: no provider, no model, or a disabled model.
                Nothing has been persisted in that case.
        """
        settings = None
        if thread_id is not None:
            settings = await self.storage.get_thread_settings(thread_id)
        resolved = await self.model_manager.resolve(
            model_id or (settings.model_id if settings else None),
            provider_id if provider_id is not None else (settings.provider_id if settings else None),
        )

        created = thread_id is None
        if created:
            thread = await self.create_thread()
        else:
            thread = await self.storage.get_thread(thread_id)
            if thread is None:
                raise ValueError(f"Thread {thread_id} not found")

        # A thread that never had a turn gets a title after its first exchange
        first_turn = created or not thread.active_leaf_set
        params = self._turn_params(resolved, settings, stream)

        previous = self._tokens.get(thread.id)
        if previous is not None:
            previous.cancel("Superseded by a new message")
        token = CancellationToken()
        self._tokens[thread.id] = token

        try:
            result = await self._run_turn(thread, resolved, params, text, attachments, parent_id, token)
        finally:
            if self._tokens.get(thread.id) is token:
                del self._tokens[thread.id]
                self._states[thread.id] = TurnState.IDLE

        if first_turn and self.config.auto_generate_title and result.message and not result.is_error:
            self._spawn(self.generate_title(thread.id, resolved))
        return result

    def _turn_params(
        self, resolved: ResolvedModel, settings: Optional[ThreadSettings], stream: Optional[bool]
    ) -> _TurnParams:
        info = resolved.info
        extra_params = dict(info.extra_params)
        if settings is not None:
            extra_params.update(settings.extra_params)
        return _TurnParams(
            system_prompt=(settings and settings.system_prompt)
            or info.default_system_prompt
            or self.config.default_system_prompt,
            context_window=(settings and settings.context_window) or self.config.default_context_window,
            max_tokens=(settings and settings.max_tokens) or info.max_tokens or self.config.default_max_tokens,
            extra_params=extra_params,
            stream=stream if stream is not None else (info.enable_stream and self.config.stream_by_default),
        )

    def _set_state(self, thread_id: int, token: CancellationToken, state: TurnState) -> None:
        # A superseded turn must not overwrite the state of its replacement
        if self._tokens.get(thread_id) is token:
            self._states[thread_id] = state

    async def _resolve_parent(self, thread: Thread, parent_id: Any) -> Optional[int]:
        if parent_id is UNSET:
            path = await self.tree.get_active_path(thread.id)
            parent_id = path[-1].id if path else None
        if not thread.active_leaf_set or thread.active_leaf_id != parent_id:
            await self.storage.set_active_leaf(thread.id, parent_id)
        return parent_id

    async def _run_turn(
        self,
        thread: Thread,
        resolved: ResolvedModel,
        params: _TurnParams,
        text: str,
        attachments: Sequence[Attachment],
        parent_id: Any,
        token: CancellationToken,
    ) -> SendResult:
        result = SendResult(thread_id=thread.id)
        sink = self.sink(thread.id)
        current_parent = await self._resolve_parent(thread, parent_id)

        if text or attachments:
            user_message = await self.storage.add_message(
                thread.id,
                MessageRole.USER,
                content=text,
                parent_id=current_parent,
                attachments=attachments,
            )
            await self.storage.set_active_leaf(thread.id, user_message.id)
            current_parent = user_message.id
            result.user_message = user_message
            self._set_state(thread.id, token, TurnState.USER_MESSAGE_PERSISTED)

        model_name = resolved.info.name
        requests = 0
        try:
            while True:
                if requests >= self.config.request_limit:
                    raise RequestLimitExceeded(
                        f"Stopped after {requests} provider requests without a final answer"
                    )
                requests += 1
                token.raise_if_cancelled()

                started = time.monotonic()
                reply = await self._request_reply(thread.id, resolved, params, current_parent, token, sink)
                duration_ms = int((time.monotonic() - started) * 1000)
                token.raise_if_cancelled()

                if reply.tool_calls:
                    self._set_state(thread.id, token, TurnState.TOOL_CALLS_PENDING)
                    assistant = await self.storage.add_message(
                        thread.id,
                        MessageRole.ASSISTANT,
                        content=reply.content,
                        parent_id=current_parent,
                        tool_calls=reply.tool_calls,
                        reasoning=reply.reasoning or None,
                        reasoning_summary=reply.reasoning_summary or None,
                        model=model_name,
                    )
                    await self.storage.set_active_leaf(thread.id, assistant.id)
                    current_parent = assistant.id
                    result.tool_messages.append(assistant)
                    sink.clear()

                    for index, tool_call in enumerate(reply.tool_calls):
                        try:
                            tool_message = await self._run_tool_call(
                                thread.id, resolved, tool_call, current_parent, token
                            )
                        except OperationAborted:
                            result.tool_messages.extend(
                                await self._close_unanswered_calls(
                                    thread.id, reply.tool_calls[index:], current_parent, token
                                )
                            )
                            raise
                        current_parent = tool_message.id
                        result.tool_messages.append(tool_message)
                    continue

                cost = self.model_manager.estimate_cost(resolved.info, reply.usage)
                final = await self.storage.add_message(
                    thread.id,
                    MessageRole.ASSISTANT,
                    content=reply.content,
                    parent_id=current_parent,
                    reasoning=reply.reasoning or None,
                    reasoning_summary=reply.reasoning_summary or None,
                    usage=reply.usage,
                    cost=cost,
                    model=model_name,
                    generated_files=collect_generated_images(reply),
                )
                await self.storage.set_active_leaf(thread.id, final.id)
                if reply.usage is not None:
                    await self.storage.save_token_usage(
                        thread.id,
                        message_id=final.id,
                        input_tokens=reply.usage.prompt_tokens,
                        output_tokens=reply.usage.completion_tokens,
                        cost_usd=cost,
                        duration_ms=duration_ms,
                        model=resolved.info.id,
                    )
                sink.clear()
                result.message = final
                return result

        except OperationAborted:
            logger.info(f"Turn on thread {thread.id} aborted")
            sink.clear()
            result.aborted = True
            return result
        except Exception as e:
            if token.cancelled:
                logger.info(f"Turn on thread {thread.id} aborted ({e})")
                sink.clear()
                result.aborted = True
                return result
            logger.error(f"Turn on thread {thread.id} failed: {e}", exc_info=True)
            sink.clear()
            error_message = await self.storage.add_message(
                thread.id,
                MessageRole.ASSISTANT,
                content=format_error_message(e),
                parent_id=current_parent,
                model=SYSTEM_MODEL_MARKER,
            )
            await self.storage.set_active_leaf(thread.id, error_message.id)
            result.message = error_message
            return result

    async def _request_reply(
        self,
        thread_id: int,
        resolved: ResolvedModel,
        params: _TurnParams,
        leaf_id: Optional[int],
        token: CancellationToken,
        sink: StreamSink,
    ) -> ChatReply:
        path = await self.tree.get_active_path(thread_id, leaf_id)
        messages = await build_chat_messages(
            self.storage,
            truncate_history(path, params.context_window),
            system_prompt=params.system_prompt,
            supports_images=resolved.info.supports_images,
        )
        tools = None
        if resolved.info.supports_tools:
            tools = await self.gateway.get_tool_definitions(resolved) or None

        builder = (
            build_response_request
            if resolved.info.protocol == Protocol.RESPONSE_API
            else build_chat_request
        )
        request = builder(
            resolved.api_model_id,
            messages,
            tools=tools,
            max_tokens=params.max_tokens,
            stream=params.stream,
            extra_params=params.extra_params,
        )
        self._set_state(thread_id, token, TurnState.AWAITING_PROVIDER_REPLY)

        async def attempt() -> ChatReply:
            sink.clear()
            if isinstance(request, ChatRequest):
                response = await resolved.adapter.chat_completion(request)
            else:
                response = await resolved.adapter.create_response(request)
            if isinstance(response, ChatReply):
                return response
            return await self._consume_stream(thread_id, response, token, sink)

        return await with_provider_retry(lambda: token.guard(attempt()), token, sleep=self._sleep)

    async def _consume_stream(self, thread_id, stream, token: CancellationToken, sink: StreamSink) -> ChatReply:
        self._set_state(thread_id, token, TurnState.STREAMING_REPLY)
        accumulator = StreamAccumulator()
        async for delta in stream:
            if token.cancelled:
                break
            accumulator.add(delta)
            sink.append(delta)
        token.raise_if_cancelled()
        return accumulator.reply()

    async def _run_tool_call(
        self,
        thread_id: int,
        resolved: ResolvedModel,
        tool_call: ToolCall,
        parent_id: int,
        token: CancellationToken,
    ) -> Message:
        token.raise_if_cancelled()
        context = ToolContext(thread_id=thread_id, model=resolved, gateway=self.gateway, token=token)
        ui_metadata = None
        try:
            args = json.loads(tool_call.function.arguments or "{}")
            outcome = await token.guard(
                self.gateway.execute_tool(tool_call.function.name, args, context)
            )
            content = outcome.content
            ui_metadata = outcome.ui_metadata
        except OperationAborted:
            raise
        except Exception as e:
            logger.warning(f"Tool '{tool_call.function.name}' failed: {e}")
            content = f"Error: {e}"

        tool_message = await self.storage.add_message(
            thread_id,
            MessageRole.TOOL,
            content=content,
            parent_id=parent_id,
            tool_call_id=tool_call.id,
            mcp_app_ui=ui_metadata,
        )
        await self.storage.set_active_leaf(thread_id, tool_message.id)
        return tool_message

    async def _close_unanswered_calls(
        self,
        thread_id: int,
        tool_calls: Sequence[ToolCall],
        parent_id: int,
        token: CancellationToken,
    ) -> List[Message]:
        """Answer the calls a stopped turn never ran so the branch stays sendable.

        A superseded turn leaves the tree alone: its replacement already
        owns the active leaf.
        """
        if self._tokens.get(thread_id) is not token:
            return []
        closed = []
        for tool_call in tool_calls:
            tool_message = await self.storage.add_message(
                thread_id,
                MessageRole.TOOL,
                content=ABORTED_TOOL_RESULT,
                parent_id=parent_id,
                tool_call_id=tool_call.id,
            )
            parent_id = tool_message.id
            closed.append(tool_message)
        if closed:
            await self.storage.set_active_leaf(thread_id, parent_id)
        return closed

    # ------------------------------------------------------------------
    # Edit and regenerate
    # ------------------------------------------------------------------

    async def _require_message(self, message_id: int) -> Message:
        message = await self.storage.get_message(message_id)
        if message is None:
            raise ValueError(f"Message {message_id} not found")
        return message

    async def edit(
        self,
        message_id: int,
        content: str,
        mode: EditMode = EditMode.SAVE,
        removed_file_ids: Sequence[int] = (),
        new_files: Sequence[Attachment] = (),
        **send_options,
    ) -> Optional[SendResult]:
        """Edit a message.

        ``SAVE`` only rewrites the message. ``REGENERATE`` rewrites it, drops
        everything below it and re-runs the turn from it. ``BRANCH`` leaves
        the original untouched and sends the edited text, with the kept and
        new files, as a new sibling.
        """
        message = await self._require_message(message_id)

        if mode == EditMode.BRANCH:
            removed = set(removed_file_ids)
            kept = [
                Attachment(file_name=f.file_name, mime_type=f.mime_type, data=f.data)
                for f in await self.storage.get_message_files(message_id)
                if f.id not in removed and not f.is_generated
            ]
            return await self.send(
                message.thread_id,
                content,
                attachments=kept + list(new_files),
                parent_id=message.parent_id,
                **send_options,
            )

        await self.storage.update_message(message_id, content, removed_file_ids, new_files)
        if mode == EditMode.SAVE:
            return None

        await self.tree.delete_children(message_id)
        return await self.send(message.thread_id, "", parent_id=message_id, **send_options)

    async def regenerate(
        self,
        message_id: int,
        mode: RegenerateMode = RegenerateMode.REGENERATE,
        **send_options,
    ) -> SendResult:
        """Produce a new reply for a user or assistant message.

        For an assistant message the turn is re-run from its parent; in
        ``REGENERATE`` mode the old reply and everything below it are deleted
        first. For a user message the turn is re-run from the message itself,
        deleting its existing replies in ``REGENERATE`` mode.
        """
        message = await self._require_message(message_id)

        if message.role == MessageRole.ASSISTANT:
            if mode == RegenerateMode.REGENERATE:
                await self.tree.delete_subtree(message_id)
            return await self.send(
                message.thread_id, "", parent_id=message.parent_id, **send_options
            )

        if message.role == MessageRole.USER:
            if mode == RegenerateMode.REGENERATE:
                await self.tree.delete_children(message_id)
            return await self.send(message.thread_id, "", parent_id=message_id, **send_options)

        raise ValueError(f"Cannot regenerate a {message.role.value} message")

    # ------------------------------------------------------------------
    # Titles
    # ------------------------------------------------------------------

    async def generate_title(
        self, thread_id: int, resolved: Optional[ResolvedModel] = None
    ) -> Optional[str]:
        """Ask the model for a short title and store it.

        Failures are logged and leave the title unchanged.
        """
        try:
            if resolved is None:
                settings = await self.storage.get_thread_settings(thread_id)
                resolved = await self.model_manager.resolve(
                    settings.model_id if settings else None,
                    settings.provider_id if settings else None,
                )

            path = await self.tree.get_active_path(thread_id)
            exchange = [
                m
                for m in path
                if m.role in (MessageRole.USER, MessageRole.ASSISTANT)
                and not m.is_error
                and not m.tool_calls
            ][:2]
            if not exchange:
                return None

            messages = [ChatMessage(role="system", content=TITLE_PROMPT)]
            messages.extend(ChatMessage(role=m.role.value, content=m.content) for m in exchange)
            messages.append(ChatMessage(role="user", content="Generate a title for this conversation."))

            reply = await resolved.adapter.chat_completion(
                ChatRequest(
                    model=resolved.api_model_id,
                    messages=messages,
                    max_tokens=TITLE_MAX_TOKENS,
                    stream=False,
                )
            )
            if not isinstance(reply, ChatReply):
                logger.warning("Title generation returned a stream, ignoring")
                return None

            title = reply.content.strip().strip(_TITLE_QUOTES).strip()
            if not title:
                return None
            await self.storage.rename_thread(thread_id, title)
            logger.info(f"Generated title for thread {thread_id}: {title}")
            return title
        except Exception as e:
            logger.warning(f"Title generation failed for thread {thread_id}: {e}")
            return None

    def _spawn(self, coroutine) -> asyncio.Task:
        task = asyncio.create_task(coroutine)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def wait_for_background_tasks(self) -> None:
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for token in self._tokens.values():
            token.cancel("Shutting down")
        await self.wait_for_background_tasks()
        await self.model_manager.aclose()
        if self.gateway.mcp_manager is not None:
            await self.gateway.mcp_manager.aclose()
