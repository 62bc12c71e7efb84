"""
JSON utilities for model responses and stored documents.
"""

import json
from typing import Any, Optional


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def try_parse_json(content: str) -> Optional[Any]:
    """Parse content as JSON, returning None when it is not JSON."""
    try:
        return json.loads(content)
    except (TypeError, ValueError):
        return None


def dump_json(data: Any) -> str:
    """Serialize a document for the file share (pretty printed, datetimes as ISO strings)."""
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)
