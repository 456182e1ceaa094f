"""Recover a JSON object from raw model output."""

import json
import re

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")
_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL)


def response_text(response) -> str:
    """Message text of an ``ollama.chat`` response; raises if there is none."""
    content = response.message.content if response.message else None
    if not content:
        raise ValueError("Empty response from model")
    return content


def extract_json(raw: str) -> str:
    """Strip reasoning tags and code fences, then cut from the first { to the last }."""
    text = _THINK_RE.sub("", raw).strip()
    if text.startswith("```"):
        text = _FENCE_RE.sub("", text)

    first, last = text.find("{"), text.rfind("}")
    if first != -1 and last > first:
        text = text[first : last + 1]
    return text


def parse_json_object(raw: str) -> dict:
    """Decode the JSON object inside ``raw``; raises ValueError if there is none."""
    data = json.loads(extract_json(raw))
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data
