from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml

from detection.errors import RuleError

logger = logging.getLogger(__name__)

CONDITION_KEY = "condition"
VALID_LEVELS = ("info", "low", "medium", "high", "critical")
VALID_STATUSES = ("experimental", "test", "stable", "deprecated")
RULE_EXTENSIONS = (".yml", ".yaml")


def _freeze(value: Any) -> Any:
    """Recursively turn dicts into read-only mappings and lists into tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({str(k): _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _str_list(value: Any) -> Tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(v).strip() for v in value if str(v).strip())


@dataclass(frozen=True)
class LogSource:
    category: Optional[str] = None
    product: Optional[str] = None
    service: Optional[str] = None


@dataclass(frozen=True)
class SigmaRule:
    """
    An immutable Sigma rule.

    `detection` maps selection names to selection definitions and holds the
    condition string under the reserved `condition` key.
    """
    id: str
    title: str
    detection: Mapping[str, Any]
    level: str
    status: str = "experimental"
    description: str = ""
    logsource: LogSource = field(default_factory=LogSource)
    author: Optional[str] = None
    date: Optional[str] = None
    tags: Tuple[str, ...] = ()
    falsepositives: Tuple[str, ...] = ()
    references: Tuple[str, ...] = ()
    file_path: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "detection", _freeze(self.detection))

    @property
    def condition(self) -> str:
        return str(self.detection.get(CONDITION_KEY) or "")

    @property
    def selection_names(self) -> Tuple[str, ...]:
        return tuple(name for name in self.detection if name != CONDITION_KEY)


def parse_sigma_rule(doc: Any, file_path: Optional[str] = None) -> SigmaRule:
    """
    Validate a parsed YAML document and build a SigmaRule.

    Required: `title`, `detection` with a string `condition`, and a `level`
    from VALID_LEVELS. Missing optional metadata is tolerated.
    """
    where = file_path or "<inline>"
    if not isinstance(doc, dict):
        raise RuleError(f"Rule document in {where} is not a mapping")

    title = str(doc.get("title") or "").strip()
    if not title:
        raise RuleError(f"Missing or invalid required field 'title' in {where}")

    detection = doc.get("detection")
    if not isinstance(detection, dict):
        raise RuleError(f"Missing or invalid required field 'detection' in {where}")
    if not isinstance(detection.get(CONDITION_KEY), str) or not detection[CONDITION_KEY].strip():
        raise RuleError(f"Missing or invalid required field 'detection.condition' in {where}")

    level = str(doc.get("level") or "").strip().lower()
    if level not in VALID_LEVELS:
        raise RuleError(f"Invalid or missing level {doc.get('level')!r} in {where} (expected one of {VALID_LEVELS})")

    rule_id = str(doc.get("id") or "").strip()
    if not rule_id:
        rule_id = "auto-" + hashlib.sha256(title.encode("utf-8")).hexdigest()[:12]
        logger.debug(f"Rule {title!r} in {where} has no id, using {rule_id}")

    status = str(doc.get("status") or "").strip().lower()
    if status not in VALID_STATUSES:
        status = "experimental"

    raw_logsource = doc.get("logsource") if isinstance(doc.get("logsource"), dict) else {}
    logsource = LogSource(
        category=raw_logsource.get("category"),
        product=raw_logsource.get("product"),
        service=raw_logsource.get("service"),
    )

    return SigmaRule(
        id=rule_id,
        title=title,
        detection={str(k): v for k, v in detection.items()},
        level=level,
        status=status,
        description=str(doc.get("description") or ""),
        logsource=logsource,
        author=str(doc["author"]) if doc.get("author") is not None else None,
        date=str(doc["date"]) if doc.get("date") is not None else None,
        tags=_str_list(doc.get("tags")),
        falsepositives=_str_list(doc.get("falsepositives")),
        references=_str_list(doc.get("references")),
        file_path=file_path,
    )


def parse_sigma_yaml(content: str, file_path: Optional[str] = None) -> SigmaRule:
    try:
        doc = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise RuleError(f"Invalid YAML in {file_path or '<inline>'}: {e}") from e
    return parse_sigma_rule(doc, file_path=file_path)


def parse_sigma_file(file_path: str) -> SigmaRule:
    with open(file_path, "r", encoding="utf-8", errors="ignore") as f:
        return parse_sigma_yaml(f.read(), file_path=file_path)


def iter_rule_files(root: str, recursive: bool = True) -> Iterable[str]:
    if not recursive:
        for filename in sorted(os.listdir(root)):
            path = os.path.join(root, filename)
            if os.path.isfile(path) and filename.lower().endswith(RULE_EXTENSIONS):
                yield path
        return

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            if filename.lower().endswith(RULE_EXTENSIONS):
                yield os.path.join(dirpath, filename)


def load_rules_from_directory(root: str, recursive: bool = True) -> Tuple[List[SigmaRule], List[str]]:
    """
    Load every rule file under `root` in a stable (sorted) order.

    Returns the parsed rules and a list of "<path>: <error>" strings for
    files that could not be read or validated.
    """
    rules: List[SigmaRule] = []
    errors: List[str] = []

    if not os.path.isdir(root):
        logger.warning(f"Sigma rules path does not exist: {root}")
        return rules, errors

    for file_path in iter_rule_files(root, recursive=recursive):
        try:
            rules.append(parse_sigma_file(file_path))
        except (OSError, RuleError) as e:
            errors.append(f"{file_path}: {e}")

    logger.info(f"Loaded {len(rules)} rules from {root} ({len(errors)} errors)")
    return rules, errors


def rule_summary(rule: SigmaRule) -> Dict[str, Any]:
    return {
        "rule_id": rule.id,
        "rule_title": rule.title,
        "rule_level": rule.level,
        "rule_status": rule.status,
        "rule_tags": list(rule.tags),
        "rule_file": rule.file_path,
    }
