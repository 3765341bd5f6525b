"""Subagent tool: a nested, bounded tool loop on the calling thread's model."""

import json
import logging
from typing import Any, Dict, List

from ..providers.streaming import collect_stream
from ..providers.types import ChatMessage, ChatReply, ChatRequest
from ..retry import with_provider_retry
from .local import ToolContext

logger = logging.getLogger(__name__)

SUBAGENT_TOOL = "subagent"
MAX_STEPS = 5

SUBAGENT_PARAMETERS = {
    "type": "object",
    "properties": {
        "input": {"type": "string", "description": "Task for the subagent"},
        "systemPrompt": {"type": "string", "description": "Optional system prompt"},
    },
    "required": ["input"],
}


async def run_subagent(args: Dict[str, Any], context: ToolContext) -> str:
    if context.model is None:
        return "Error: subagent requires an active model"
    task = args.get("input") or ""
    if not task:
        return "Error: input is required"

    messages: List[ChatMessage] = []
    if args.get("systemPrompt"):
        messages.append(ChatMessage(role="system", content=args["systemPrompt"]))
    messages.append(ChatMessage(role="user", content=task))

    tools = None
    if context.gateway is not None and context.model.info.supports_tools:
        definitions = await context.gateway.get_tool_definitions(context.model)
        # No recursion into further subagents
        tools = [tool for tool in definitions if tool.name != SUBAGENT_TOOL] or None

    adapter = context.model.adapter
    reply = ChatReply()
    for step in range(MAX_STEPS):
        request = ChatRequest(
            model=context.model.api_model_id,
            messages=messages,
            tools=tools,
            max_tokens=context.model.info.max_tokens,
            extra_params=dict(context.model.info.extra_params),
        )

        async def call():
            result = await adapter.chat_completion(request)
            if isinstance(result, ChatReply):
                return result
            return await collect_stream(result)

        if context.token is not None:
            reply = await with_provider_retry(lambda: context.token.guard(call()), context.token)
        else:
            reply = await with_provider_retry(call)

        if not reply.tool_calls or context.gateway is None:
            return reply.content

        messages.append(
            ChatMessage(role="assistant", content=reply.content or None, tool_calls=reply.tool_calls)
        )
        for tool_call in reply.tool_calls:
            try:
                call_args = json.loads(tool_call.function.arguments or "{}")
                result = await context.gateway.execute_tool(tool_call.function.name, call_args, context)
                output = result.content
            except Exception as e:
                logger.warning(f"Subagent tool '{tool_call.function.name}' failed: {e}")
                output = f"Error: {e}"
            messages.append(ChatMessage(role="tool", content=output, tool_call_id=tool_call.id))
        logger.debug(f"Subagent step {step + 1} ran {len(reply.tool_calls)} tool call(s)")

    logger.warning(f"Subagent stopped after {MAX_STEPS} steps")
    return reply.content
