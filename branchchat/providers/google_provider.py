"""Google Gemini adapter (generateContent REST API)."""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from ..models import TokenUsage, ToolCall, ToolCallFunction
from .base import BaseProvider, ReplyOrStream
from .streaming import iter_sse_json, new_call_id
from .types import (
    WEB_SEARCH_TOOL,
    ChatDelta,
    ChatMessage,
    ChatReply,
    ChatRequest,
    FinishReason,
    ToolCallDelta,
    ToolSchema,
)

logger = logging.getLogger(__name__)

_FINISH_REASONS = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.LENGTH,
    "SAFETY": FinishReason.CONTENT_FILTER,
    "RECITATION": FinishReason.CONTENT_FILTER,
    "PROHIBITED_CONTENT": FinishReason.CONTENT_FILTER,
}


def _inline_data(url: str) -> Optional[Dict[str, Any]]:
    if not url.startswith("data:") or ";base64," not in url:
        return None
    header, data = url.split(",", 1)
    return {"inlineData": {"mimeType": header[len("data:"):].split(";")[0], "data": data}}


def _parts_of(message: ChatMessage) -> List[Dict[str, Any]]:
    if isinstance(message.content, list):
        parts = []
        for part in message.content:
            if part.type == "text":
                if part.text:
                    parts.append({"text": part.text})
            elif part.image_url:
                inline = _inline_data(part.image_url)
                if inline:
                    parts.append(inline)
                else:
                    parts.append({"fileData": {"fileUri": part.image_url}})
        return parts
    return [{"text": message.content}] if message.content else []


def _to_gemini_contents(messages: List[ChatMessage]) -> Dict[str, Any]:
    """Gemini ``contents`` plus ``systemInstruction`` for a unified message list."""
    system_parts: List[Dict[str, str]] = []
    contents: List[Dict[str, Any]] = []
    # functionResponse needs the function name, tool messages only carry the call id
    call_names: Dict[str, str] = {}

    for message in messages:
        if message.role == "system":
            if message.text():
                system_parts.append({"text": message.text()})
            continue

        if message.role == "tool":
            response_part = {
                "functionResponse": {
                    "name": call_names.get(message.tool_call_id or "", "tool"),
                    "response": {"content": message.text()},
                }
            }
            if contents and contents[-1]["role"] == "user" and all(
                "functionResponse" in p for p in contents[-1]["parts"]
            ):
                contents[-1]["parts"].append(response_part)
            else:
                contents.append({"role": "user", "parts": [response_part]})
            continue

        parts = _parts_of(message)
        if message.role == "assistant" and message.tool_calls:
            for call in message.tool_calls:
                call_names[call.id] = call.function.name
                try:
                    args = json.loads(call.function.arguments or "{}")
                except json.JSONDecodeError:
                    args = {}
                parts.append({"functionCall": {"name": call.function.name, "args": args}})
        if not parts:
            continue
        contents.append({"role": "model" if message.role == "assistant" else "user", "parts": parts})

    body: Dict[str, Any] = {"contents": contents}
    if system_parts:
        body["systemInstruction"] = {"parts": system_parts}
    return body


def _to_gemini_tools(tools: List[ToolSchema]) -> List[Dict[str, Any]]:
    declarations = []
    converted: List[Dict[str, Any]] = []
    for tool in tools:
        if tool.name == WEB_SEARCH_TOOL:
            converted.append({"googleSearch": {}})
            continue
        declarations.append(
            {"name": tool.name, "description": tool.description, "parameters": tool.parameters}
        )
    if declarations:
        converted.insert(0, {"functionDeclarations": declarations})
    return converted


def _usage_of(metadata: Optional[Dict[str, Any]]) -> Optional[TokenUsage]:
    if not metadata:
        return None
    prompt = metadata.get("promptTokenCount", 0)
    completion = metadata.get("candidatesTokenCount", 0)
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=metadata.get("totalTokenCount", prompt + completion),
    )


class GoogleProvider(BaseProvider):
    """Adapter for the Gemini REST API over httpx."""

    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.provider.api_key or "", "content-type": "application/json"}

    async def fetch_api_models(self) -> List[Dict[str, str]]:
        response = await self.http_client.get(f"{self.base_url}/models", headers=self._headers())
        response.raise_for_status()
        models = []
        for entry in response.json().get("models", []):
            model_id = entry.get("name", "").replace("models/", "", 1)
            if "generateContent" not in entry.get("supportedGenerationMethods", ["generateContent"]):
                continue
            models.append({"id": model_id, "name": entry.get("displayName") or model_id})
        return models

    def _build_body(self, request: ChatRequest) -> Dict[str, Any]:
        body = _to_gemini_contents(request.messages)
        if request.tools:
            body["tools"] = _to_gemini_tools(request.tools)
        generation_config = dict(request.extra_params.get("generationConfig", {}))
        if request.max_tokens:
            generation_config["maxOutputTokens"] = request.max_tokens
        if generation_config:
            body["generationConfig"] = generation_config
        for key, value in request.extra_params.items():
            if key != "generationConfig":
                body[key] = value
        return body

    async def chat_completion(self, request: ChatRequest) -> ReplyOrStream:
        body = self._build_body(request)
        if request.stream:
            url = f"{self.base_url}/models/{request.model}:streamGenerateContent?alt=sse"
        else:
            url = f"{self.base_url}/models/{request.model}:generateContent"

        http_request = self.http_client.build_request("POST", url, headers=self._headers(), json=body)
        response = await self.http_client.send(http_request, stream=request.stream)
        await self.raise_for_status(response)

        if request.stream:
            return self._iter_stream(response)
        return self._parse_reply(response.json())

    @staticmethod
    def _candidate_parts(data: Dict[str, Any]):
        candidates = data.get("candidates") or []
        if not candidates:
            return None, []
        candidate = candidates[0]
        return candidate, (candidate.get("content") or {}).get("parts") or []

    @classmethod
    def _parse_reply(cls, data: Dict[str, Any]) -> ChatReply:
        candidate, parts = cls._candidate_parts(data)
        text, reasoning, images, tool_calls = [], [], [], []
        for part in parts:
            if "functionCall" in part:
                call = part["functionCall"]
                tool_calls.append(
                    ToolCall(
                        id=call.get("id") or new_call_id(),
                        function=ToolCallFunction(
                            name=call.get("name", ""), arguments=json.dumps(call.get("args") or {})
                        ),
                    )
                )
            elif "inlineData" in part:
                inline = part["inlineData"]
                images.append(f"data:{inline.get('mimeType')};base64,{inline.get('data')}")
            elif part.get("thought"):
                reasoning.append(part.get("text", ""))
            elif "text" in part:
                text.append(part["text"])

        finish_reason = _FINISH_REASONS.get((candidate or {}).get("finishReason"))
        if tool_calls:
            finish_reason = FinishReason.TOOL_CALLS
        return ChatReply(
            content="".join(text),
            reasoning="".join(reasoning),
            tool_calls=tool_calls,
            images=images,
            usage=_usage_of(data.get("usageMetadata")),
            finish_reason=finish_reason,
        )

    @classmethod
    async def _iter_stream(cls, response: httpx.Response) -> AsyncIterator[ChatDelta]:
        # Gemini sends each function call whole, so every call gets its own index
        next_index = 0
        try:
            async for chunk in iter_sse_json(response):
                reply = cls._parse_reply(chunk)
                fragments = []
                for call in reply.tool_calls:
                    fragments.append(
                        ToolCallDelta(
                            index=next_index,
                            id=call.id,
                            name=call.function.name,
                            arguments=call.function.arguments,
                        )
                    )
                    next_index += 1
                yield ChatDelta(
                    content=reply.content,
                    reasoning=reply.reasoning,
                    tool_calls=fragments,
                    images=reply.images,
                    usage=reply.usage,
                    finish_reason=reply.finish_reason,
                )
        finally:
            await response.aclose()
