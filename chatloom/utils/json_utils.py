"""
JSON utilities for cleaning LLM responses and reading JSON Lines.
"""

import json
from typing import Any, Dict, Iterable, Iterator, List, Tuple


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


def to_json_lines(records: Iterable[Dict[str, Any]]) -> str:
    """Serialize records as JSON Lines, one compact object per line."""
    return '\n'.join(json.dumps(record, ensure_ascii=False, separators=(',', ':')) for record in records)


def iter_json_lines(payload: str) -> Iterator[Tuple[int, Any, str]]:
    """Iterate over a JSON Lines payload.

    Blank lines are skipped. Lines that fail to parse are yielded with a None
    object and the decode error text so callers can decide what to do.

    Args:
        payload: Raw JSONL text

    Yields:
        Tuples of (line_number, parsed_object_or_None, error_text)
    """
    for line_number, line in enumerate(payload.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            yield line_number, json.loads(line), ''
        except json.JSONDecodeError as e:
            yield line_number, None, str(e)


def parse_json_lines(payload: str) -> List[Any]:
    """Parse every valid line of a JSON Lines payload, dropping broken ones."""
    return [obj for _, obj, error in iter_json_lines(payload) if not error]
