"""
JSON utilities for cleaning and locating JSON in model responses.
"""

import json
import re
from typing import Optional

_GREEDY_ARRAY = re.compile(r'\[[\s\S]*\]')
_GREEDY_OBJECT = re.compile(r'\{[\s\S]*\}')


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def find_json_array(text: str) -> Optional[list]:
    """Locate the first JSON array literal embedded in free text.

    Each '[' is tried as the start of an array so that bracketed prose before
    the payload does not hide it. Falls back to the span between the first
    '[' and the last ']'.

    Args:
        text: Raw model output, possibly wrapped in prose or code fences

    Returns:
        The decoded list, or None when no array can be decoded
    """
    if not text:
        return None

    cleaned = clean_json_response(text)
    decoder = json.JSONDecoder()
    for match in re.finditer(r'\[', cleaned):
        try:
            value, _ = decoder.raw_decode(cleaned, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(value, list):
            return value

    greedy = _GREEDY_ARRAY.search(cleaned)
    if greedy:
        try:
            value = json.loads(greedy.group(0))
        except json.JSONDecodeError:
            return None
        if isinstance(value, list):
            return value
    return None


def find_json_object(text: str) -> Optional[dict]:
    """Locate the first JSON object literal embedded in free text."""
    if not text:
        return None

    cleaned = clean_json_response(text)
    decoder = json.JSONDecoder()
    for match in re.finditer(r'\{', cleaned):
        try:
            value, _ = decoder.raw_decode(cleaned, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value

    greedy = _GREEDY_OBJECT.search(cleaned)
    if greedy:
        try:
            value = json.loads(greedy.group(0))
        except json.JSONDecodeError:
            return None
        if isinstance(value, dict):
            return value
    return None
