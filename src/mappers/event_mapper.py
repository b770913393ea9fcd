import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Iterable

from detection.events import SecurityEvent, Severity, TOP_LEVEL_FIELDS, is_scalar

logger = logging.getLogger(__name__)


def parse_timestamp(value: Any) -> datetime:
    """
    Accepts datetimes, ISO-8601 strings and epoch numbers in seconds,
    milliseconds or nanoseconds. Naive values are taken as UTC.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
        if seconds > 1e17:
            seconds /= 1e9
        elif seconds > 1e11:
            seconds /= 1e3
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            return parse_timestamp(datetime.fromisoformat(text))
        except ValueError:
            pass
        try:
            return parse_timestamp(float(text))
        except ValueError:
            raise ValueError(f"Unrecognized timestamp: {value!r}")

    raise ValueError(f"Unrecognized timestamp: {value!r}")


def flatten_metadata(data: Dict[str, Any], prefix: str = '') -> Dict[str, Any]:
    """
    Flattens nested dictionaries into dotted keys and keeps only scalar
    values. Lists and None are dropped.
    """
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(flatten_metadata(value, prefix=f"{name}."))
        elif is_scalar(value):
            flat[name] = value
        else:
            logger.debug(f"Dropping non-scalar metadata field {name!r} ({type(value).__name__})")
    return flat


class EventMapper:
    """
    Builds SecurityEvent records from loosely-typed dictionaries.

    `mappings` optionally renames fields: `{target_field: path or [paths]}`
    where a path uses dot notation into the raw dictionary. The first path
    that resolves to a non-empty value wins.
    """

    def __init__(self, mappings: Optional[Dict[str, Any]] = None):
        self.mappings = mappings or {}

    def _get_nested_value(self, data: Dict[str, Any], path: str) -> Optional[Any]:
        """
        Dot-notation lookup. Keys that themselves contain dots (e.g.
        attributes['host.name']) are matched before descending further.
        """
        keys = path.split('.')
        current: Any = data
        for i, key in enumerate(keys):
            if not isinstance(current, dict):
                return None
            if i < len(keys) - 1:
                remaining = ".".join(keys[i:])
                if remaining in current:
                    return current[remaining]
            current = current.get(key)
        return current

    def _expand_body(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        structured = dict(raw)
        body = structured.get('body')
        if isinstance(body, str) and body.strip().startswith('{'):
            try:
                structured['body'] = json.loads(body)
            except json.JSONDecodeError:
                logger.debug("Event body looks like JSON but does not parse, keeping it as text")

        # Windows events keep most Sigma fields under EventData.
        body = structured.get('body')
        if isinstance(body, dict) and isinstance(body.get('EventData'), dict):
            for key, value in body['EventData'].items():
                body.setdefault(key, value)
        return structured

    def _apply_mappings(self, structured: Dict[str, Any]) -> Dict[str, Any]:
        mapped: Dict[str, Any] = {}
        for target, source_path in self.mappings.items():
            if source_path is None:
                continue

            paths: Iterable[str]
            if isinstance(source_path, (list, tuple)):
                paths = [str(p) for p in source_path if p]
            else:
                paths = [str(source_path)]

            for path in paths:
                val = self._get_nested_value(structured, path)
                if isinstance(val, str) and not val.strip():
                    continue
                if val is not None:
                    mapped[target] = val
                    break
        return mapped

    def to_security_event(self, raw: Dict[str, Any]) -> SecurityEvent:
        """
        Builds an immutable SecurityEvent.

        Top-level attributes come from the matching keys of `raw`; everything
        else (including a parsed JSON `body` and any `metadata` dict) is
        flattened into scalar metadata. Explicit mappings are applied last.
        """
        structured = self._expand_body(raw)
        mapped = self._apply_mappings(structured)

        metadata: Dict[str, Any] = {}
        body = structured.get('body')
        if isinstance(body, dict):
            metadata.update(flatten_metadata(body))
        elif body is not None and is_scalar(body):
            metadata['message'] = body

        nested = structured.get('metadata')
        if isinstance(nested, dict):
            metadata.update(flatten_metadata(nested))

        extra = {k: v for k, v in structured.items() if k not in TOP_LEVEL_FIELDS and k not in ('body', 'metadata')}
        for key, value in flatten_metadata(extra).items():
            metadata.setdefault(key, value)

        top = {k: structured.get(k) for k in TOP_LEVEL_FIELDS}
        for key, value in mapped.items():
            if key in TOP_LEVEL_FIELDS:
                top[key] = value
            elif is_scalar(value):
                metadata[key] = value

        timestamp = top['timestamp']
        return SecurityEvent(
            id=str(top['id'] or uuid.uuid4()),
            timestamp=parse_timestamp(timestamp) if timestamp is not None else datetime.now(timezone.utc),
            source=str(top['source'] or 'unknown'),
            severity=Severity.parse(top['severity'], default=Severity.MEDIUM),
            category=str(top['category'] or 'unknown'),
            description=str(top['description'] or ''),
            host=str(top['host'] or ''),
            metadata=metadata,
        )
