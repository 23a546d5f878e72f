# field_extractor.py

import json
import re
from typing import Any, Dict, Iterable, NamedTuple, Optional, Union

from cycle_models import FieldMapping, RequestSuccess, logger

# --- Sentinel Object for Missing Keys ---
MISSING = object()

# Matches indices ([0]) or sequences of non-dot/bracket characters
_path_regex = re.compile(r'\[(\d+)\]|\.?([^.\[\]]+)')


class ExtractedFields(NamedTuple):
    headers: Dict[str, str]
    body: Dict[str, str]


def get_value_from_path(data: Any, path: str) -> Any:
    """
    Safely retrieve a value from nested dicts/lists using dot notation for keys
    and bracket notation for list indices (e.g., 'data.values[0].id').
    Returns the sentinel MISSING if the path is invalid or the key is not found.
    """
    if not path:
        return MISSING
    if not isinstance(data, (dict, list)):
        logger.debug(f"Cannot resolve path '{path}' in a {type(data).__name__} value.")
        return MISSING

    current_value = data
    for match in _path_regex.finditer(path):
        index_str, part_name = match.group(1), match.group(2)
        if index_str is not None:
            index = int(index_str)
            if not isinstance(current_value, list) or not 0 <= index < len(current_value):
                return MISSING
            current_value = current_value[index]
        elif isinstance(current_value, dict):
            current_value = current_value.get(part_name, MISSING)
            if current_value is MISSING:
                return MISSING
        else:
            return MISSING
    return current_value


def _load_json(body: Union[bytes, str]) -> Any:
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as err:
        logger.debug(f"Response body is not valid JSON: {err}")
        return MISSING


def parse_path(body: Union[bytes, str], path: str) -> Any:
    """JSON-decode body and resolve path inside it. MISSING if either step fails."""
    document = _load_json(body)
    if document is MISSING:
        return MISSING
    return get_value_from_path(document, path)


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def extract(response: RequestSuccess, mappings: Iterable[FieldMapping]) -> ExtractedFields:
    """
    Best-effort extraction of mapped values from a response.
    Unresolvable paths are omitted; this never raises.
    """
    headers: Dict[str, str] = {}
    body: Dict[str, str] = {}
    ci_headers = {k.lower(): v for k, v in response.headers.items()}
    document: Any = MISSING
    document_parsed = False

    for mapping in mappings:
        prefix, _, effective_path = mapping.source_path.partition('.')
        prefix = prefix.lower()
        value: Any = MISSING

        if prefix == 'json':
            if not document_parsed:
                # Decode once for all json.* mappings.
                document = _load_json(response.body)
                document_parsed = True
            if document is not MISSING:
                value = get_value_from_path(document, effective_path)
        elif prefix == 'headers':
            value = ci_headers.get(effective_path.lower(), MISSING)
        else:
            logger.warning(f"Unsupported source path '{mapping.source_path}' for '{mapping.target_field}'; skipping.")
            continue

        if value is MISSING or value is None:
            logger.debug(f"Extraction of '{mapping.source_path}' for '{mapping.target_field}' found nothing; field omitted.")
            continue

        text = _as_text(value)
        if mapping.field_type == 'body':
            body[mapping.target_field] = text
        else:
            headers[mapping.target_field] = text
        logger.debug(f"Extracted '{mapping.source_path}' into '{mapping.target_field}': {text[:100]!r}")

    return ExtractedFields(headers, body)


def inject_headers(headers: Dict[str, str], extracted: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Merge extracted values over headers; a case-insensitive name clash is won by the extracted value."""
    merged = dict(headers)
    if not extracted:
        return merged
    for name, value in extracted.items():
        for existing in [k for k in merged if k.lower() == name.lower()]:
            del merged[existing]
        merged[name] = value
    return merged
