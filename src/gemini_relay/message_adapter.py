# src/gemini_relay/message_adapter.py
"""
Conversion between OpenAI chat messages and the Gemini request / event shapes.

Everything here is a pure function. Messages with unknown roles, non-text
content parts and blank content are dropped silently; that filtering is the
intended behaviour, not an error path.
"""

import re
import json
import time
import itertools
import logging
from typing import Any, Dict, List, Optional, Tuple

lib_logger = logging.getLogger("gemini_relay")

DONE_FRAME = "data: [DONE]\n\n"

_INTERNAL_MARKER_PATTERNS = [
    re.compile(r"<thinking>.*?</thinking>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<pseudocode>.*?</pseudocode>", re.IGNORECASE | re.DOTALL),
]

_ROLE_MAP = {"user": "user", "assistant": "model"}

_id_counter = itertools.count(1)


def _completion_id() -> str:
    return f"chatcmpl-{time.time_ns():x}{next(_id_counter):04x}"


def extract_text_content(content: Any) -> Optional[str]:
    """Flattens OpenAI message content (string, part list or single part) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = []
        for item in content:
            text = extract_text_content(item)
            if text and text.strip():
                texts.append(text)
        return "".join(texts) if texts else None
    if isinstance(content, dict) and content.get("type") == "text":
        text = content.get("text")
        return text if isinstance(text, str) else None
    return None


def split_system_instruction(
    messages: List[Any],
) -> Tuple[str, List[Dict[str, str]]]:
    """
    Separates system messages from the conversation.

    Returns the newline-joined system instruction (each part trimmed, empty
    ones skipped, original order) and the user/assistant messages with their
    content flattened to plain text.
    """
    system_parts: List[str] = []
    conversation: List[Dict[str, str]] = []

    for message in messages:
        if not isinstance(message, dict):
            continue
        role = message.get("role")
        text = extract_text_content(message.get("content"))
        if role == "system":
            if text and text.strip():
                system_parts.append(text.strip())
            continue
        if role not in _ROLE_MAP:
            lib_logger.debug(f"Dropping message with unsupported role '{role}'")
            continue
        if not text or not text.strip():
            continue
        conversation.append({"role": role, "content": text})

    return "\n".join(system_parts), conversation


def to_backend_conversation(
    messages: List[Any], system_instruction: str = ""
) -> List[Dict[str, Any]]:
    """Builds Gemini `contents` turns, with the system instruction as the leading user turn."""
    contents: List[Dict[str, Any]] = []
    if system_instruction:
        contents.append({"role": "user", "parts": [{"text": system_instruction}]})

    for message in messages:
        if not isinstance(message, dict):
            continue
        backend_role = _ROLE_MAP.get(message.get("role"))
        if backend_role is None:
            continue
        text = extract_text_content(message.get("content"))
        if not text or not text.strip():
            continue
        contents.append({"role": backend_role, "parts": [{"text": text}]})

    return contents


def to_cli_prompt(messages: List[Any], system_instruction: str = "") -> str:
    """Flattens the conversation into the role-tagged prompt the gemini CLI reads on stdin."""
    prompt = ""
    if system_instruction:
        prompt += f"[SYSTEM]\n{system_instruction}\n\n"
    for message in messages:
        if not isinstance(message, dict) or message.get("role") not in _ROLE_MAP:
            continue
        text = extract_text_content(message.get("content"))
        if not text or not text.strip():
            continue
        prompt += f"[{message['role'].upper()}]\n{text}\n\n"
    return prompt


def strip_internal_markers(text: str) -> str:
    """Removes <thinking> and <pseudocode> blocks. Idempotent; whitespace is left alone."""
    previous = None
    while previous != text:
        previous = text
        for pattern in _INTERNAL_MARKER_PATTERNS:
            text = pattern.sub("", text)
    return text


def make_text_event(text: str) -> Dict[str, Any]:
    """Wraps raw CLI output text in the same event shape the HTTP backend yields."""
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


def extract_event_text(event: Any) -> Optional[str]:
    """
    Returns the text carried by a backend event, or None when it has none.

    Code Assist wraps the Gemini payload in a `response` envelope; the bare
    Gemini shape is accepted too. Thought parts are not content.
    """
    if not isinstance(event, dict):
        return None
    payload = event.get("response", event)
    if not isinstance(payload, dict):
        return None
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    candidate = candidates[0]
    if not isinstance(candidate, dict):
        return None
    parts = (candidate.get("content") or {}).get("parts")
    if not isinstance(parts, list):
        return None

    texts = [
        part["text"]
        for part in parts
        if isinstance(part, dict)
        and isinstance(part.get("text"), str)
        and not part.get("thought")
    ]
    return "".join(texts) if texts else None


def _chunk(model: str, delta: Dict[str, Any], finish_reason: Optional[str]) -> str:
    payload = {
        "id": _completion_id(),
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def event_fragment(event: Any) -> Optional[str]:
    """The user-visible text of one event after marker stripping, or None."""
    text = extract_event_text(event)
    if text is None:
        return None
    text = strip_internal_markers(text)
    return text or None


def to_openai_stream_chunk(event: Any, model: str) -> Optional[str]:
    """One `data:` frame for the event's text, or None when there is nothing to send."""
    text = event_fragment(event)
    if text is None:
        return None
    return _chunk(model, {"role": "assistant", "content": text}, None)


def to_openai_final_chunk(full_text: str, model: str) -> str:
    delta = {"role": "assistant", "content": full_text} if full_text else {}
    return _chunk(model, delta, "stop")


def to_openai_non_stream_response(full_text: str, model: str) -> Dict[str, Any]:
    return {
        "id": _completion_id(),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": full_text},
                "finish_reason": "stop",
            }
        ],
    }
