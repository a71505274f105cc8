"""
Agent engine boundary.

An engine turns one prompt into a stream of typed event dicts:

    {"type": "session_init", "session_id": str}
    {"type": "text", "content": str}
    {"type": "tool_use", "name": str, "input": Any, "id": str}
    {"type": "tool_result", "tool_use_id": str, "result": Any}
    {"type": "done"}
    {"type": "error", "error": str}
    {"type": "aborted"}

The gateway never looks inside an engine beyond this protocol. The default
implementation streams chat completions through the OpenAI client and keeps
conversation history in the session transcripts.
"""

import base64
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageAttachment:
    """Raw image bytes plus their media type, as received from a platform."""
    data: bytes
    media_type: str = "image/jpeg"

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.media_type};base64,{encoded}"


def _tool_name(tool: Dict[str, Any]) -> str:
    return (tool.get("function") or {}).get("name") or tool.get("name") or ""


def _filter_tools(tools: List[Dict[str, Any]], allowed: Optional[List[str]]) -> List[Dict[str, Any]]:
    """Keep only the tool definitions named in *allowed*; an empty allowlist keeps all."""
    if not allowed:
        return list(tools)
    return [tool for tool in tools if _tool_name(tool) in allowed]


class AgentEngine(ABC):
    """Base class for agent engines."""

    name = "engine"

    @abstractmethod
    def query(
        self,
        prompt: str,
        session_id: Optional[str] = None,
        image: Optional[ImageAttachment] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Run one prompt and stream events.

        Args:
            prompt: The user message
            session_id: Engine session to resume, or None for a fresh one
            image: Optional image attached to the prompt
            options: Tool/capability configuration for this run
        """


class OpenAIChatEngine(AgentEngine):
    """
    Engine backed by the OpenAI chat completions streaming API.

    Chat completions are stateless, so history is replayed from the session
    transcript on every call and the new exchange is appended afterwards.

    Options: ``max_turns`` caps how many past exchanges are replayed,
    ``allowed_tools`` narrows the ``tools`` definitions sent to the API.
    """

    name = "openai"

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        system_prompt: str = "",
        session_store=None,
        client=None,
    ):
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.system_prompt = system_prompt
        self.session_store = session_store
        self._client = client

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    def _load_history(self, session_id: str, max_turns: Optional[int] = None) -> List[Dict[str, Any]]:
        """Transcript messages to replay, limited to the last *max_turns* exchanges."""
        if not self.session_store:
            return []
        history = []
        for msg in self.session_store.load_transcript(session_id):
            role = msg.get("role")
            content = msg.get("content")
            if role in ("user", "assistant") and content:
                history.append({"role": role, "content": content})
        if max_turns:
            history = history[-2 * max_turns:]
            # Never open the replay with a dangling assistant message
            while history and history[0]["role"] != "user":
                history.pop(0)
        return history

    def _build_messages(
        self,
        prompt: str,
        history: List[Dict[str, Any]],
        image: Optional[ImageAttachment],
    ) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.extend(history)
        if image is not None:
            messages.append({
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt or "Describe this image."},
                    {"type": "image_url", "image_url": {"url": image.to_data_url()}},
                ],
            })
        else:
            messages.append({"role": "user", "content": prompt})
        return messages

    async def query(self, prompt, session_id=None, image=None, options=None):
        options = options or {}
        if session_id is None:
            session_id = f"{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"
            yield {"type": "session_init", "session_id": session_id}

        history = self._load_history(session_id, options.get("max_turns"))
        messages = self._build_messages(prompt, history, image)
        request: Dict[str, Any] = {
            "model": options.get("model") or self.model,
            "messages": messages,
            "stream": True,
        }
        tools = _filter_tools(options.get("tools") or [], options.get("allowed_tools"))
        if tools:
            request["tools"] = tools

        parts: List[str] = []
        tool_calls: Dict[int, Dict[str, str]] = {}
        try:
            stream = await self._get_client().chat.completions.create(**request)
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    parts.append(delta.content)
                    yield {"type": "text", "content": delta.content}
                for tc in delta.tool_calls or []:
                    slot = tool_calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        slot["id"] = tc.id
                    if tc.function:
                        slot["name"] += tc.function.name or ""
                        slot["arguments"] += tc.function.arguments or ""
        except Exception as e:
            logger.warning("OpenAI stream failed for session %s: %s", session_id, e)
            yield {"type": "error", "error": f"{type(e).__name__}: {e}"}
            return

        for slot in tool_calls.values():
            try:
                tool_input = json.loads(slot["arguments"]) if slot["arguments"] else {}
            except json.JSONDecodeError:
                tool_input = slot["arguments"]
            yield {"type": "tool_use", "name": slot["name"], "input": tool_input, "id": slot["id"]}

        if self.session_store:
            ts = datetime.now().isoformat()
            user_content = prompt if image is None else f"{prompt}\n[image: {image.media_type}]"
            self.session_store.append_to_transcript(
                session_id, {"role": "user", "content": user_content, "timestamp": ts}
            )
            if parts:
                self.session_store.append_to_transcript(
                    session_id, {"role": "assistant", "content": "".join(parts), "timestamp": ts}
                )

        yield {"type": "done"}
