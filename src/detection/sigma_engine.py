from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from detection.condition import ConditionNode, parse_condition
from detection.errors import RuleError, RuleParseError
from detection.events import SecurityEvent, resolve_field
from detection.modifiers import FieldCriterion, compile_criterion
from detection.rules import SigmaRule, load_rules_from_directory, rule_summary

logger = logging.getLogger(__name__)


def _normalize_level(level: Any) -> str:
    value = str(level or "").strip().lower()
    return value or "unknown"


def _normalize_filter(values: Optional[Sequence[str]]) -> Optional[Set[str]]:
    if not values:
        return None
    return {str(v).strip().lower() for v in values if str(v).strip()}


@dataclass(frozen=True)
class CompiledClause:
    criteria: Tuple[FieldCriterion, ...]

    def matches(self, event: SecurityEvent) -> bool:
        # An empty clause is vacuously true.
        return all(c.matches(resolve_field(event, c.field)) for c in self.criteria)


@dataclass(frozen=True)
class CompiledSelection:
    """
    OR across clauses; each clause is an AND of field criteria. A selection
    written as a single mapping compiles to exactly one clause.
    """
    name: str
    clauses: Tuple[CompiledClause, ...]

    def matches(self, event: SecurityEvent) -> bool:
        return any(clause.matches(event) for clause in self.clauses)


def compile_selection(name: str, definition: Any) -> CompiledSelection:
    if isinstance(definition, Mapping):
        criteria = tuple(compile_criterion(key, value) for key, value in definition.items())
        return CompiledSelection(name=name, clauses=(CompiledClause(criteria),))

    if isinstance(definition, (list, tuple)) and not definition:
        raise RuleParseError(f"Selection {name!r} is an empty list")

    if isinstance(definition, (list, tuple)) and all(isinstance(item, Mapping) for item in definition):
        clauses = tuple(
            CompiledClause(tuple(compile_criterion(key, value) for key, value in item.items()))
            for item in definition
        )
        return CompiledSelection(name=name, clauses=clauses)

    raise RuleParseError(f"Selection {name!r} must be a mapping or a list of mappings")


def evaluate_selection(event: SecurityEvent, selection: CompiledSelection) -> bool:
    return selection.matches(event)


@dataclass(frozen=True)
class BoundRule:
    """
    A rule parsed and compiled once: selections are compiled, the condition
    is a tree with quantifiers already expanded. Safe to share across threads.
    """
    rule: SigmaRule
    selections: Mapping[str, CompiledSelection]
    condition: ConditionNode
    referenced: Tuple[str, ...]


@dataclass(frozen=True)
class MatchResult:
    rule: SigmaRule
    matched_selections: Tuple[str, ...]

    def as_dict(self) -> Dict[str, Any]:
        data = rule_summary(self.rule)
        data["matched_selections"] = list(self.matched_selections)
        return data


def bind_rule(rule: SigmaRule) -> BoundRule:
    """
    Compile a rule's selections and condition.

    Raises RuleError (RuleParseError / InvalidModifierError) tagged with the
    rule id when the rule cannot be evaluated.
    """
    try:
        names = rule.selection_names
        selections = {name: compile_selection(name, rule.detection[name]) for name in names}
        condition = parse_condition(rule.condition, names)
    except RuleError as e:
        raise type(e)(e.reason, rule_id=rule.id) from e

    referenced = tuple(dict.fromkeys(condition.selection_names()))
    return BoundRule(rule=rule, selections=selections, condition=condition, referenced=referenced)


def match_bound(event: SecurityEvent, bound: BoundRule) -> Optional[MatchResult]:
    """
    Evaluate one bound rule. Every selection referenced by the condition is
    evaluated exactly once so the result can list all that were true.
    """
    results = {name: evaluate_selection(event, bound.selections[name]) for name in bound.referenced}
    if not bound.condition.evaluate(results.__getitem__):
        return None

    matched = tuple(name for name in bound.referenced if results[name])
    logger.debug(f"Event {event.id} matched rule {bound.rule.id} (selections: {list(matched)})")
    return MatchResult(rule=bound.rule, matched_selections=matched)


def match_event(event: SecurityEvent, rule: Union[SigmaRule, BoundRule]) -> Optional[MatchResult]:
    """
    Match one event against one rule. Returns None when the rule does not
    match or cannot be compiled; rule errors are logged, never raised.
    """
    if isinstance(rule, SigmaRule):
        try:
            rule = bind_rule(rule)
        except RuleError as e:
            logger.warning(f"Skipping invalid rule: {e}")
            return None
    return match_bound(event, rule)


def match_event_against_rules(
    event: SecurityEvent, rules: Iterable[Union[SigmaRule, BoundRule]]
) -> List[MatchResult]:
    """Results keep the order of `rules`; non-matching rules are omitted."""
    matches: List[MatchResult] = []
    for rule in rules:
        result = match_event(event, rule)
        if result is not None:
            matches.append(result)
    return matches


class SigmaEngine:
    """
    Loads Sigma YAML rules, binds them once and evaluates security events.

    Rules that fail to load or bind are kept out of the rule set and
    reported in `load_errors`; the remaining rules keep their load order.
    """

    def __init__(self, config: Dict[str, Any], rules: Optional[Iterable[SigmaRule]] = None):
        self.rules_path = config.get("rules_path", "")
        self.rules_paths: List[str] = list(config.get("rules_paths") or [])
        if self.rules_path and self.rules_path not in self.rules_paths:
            self.rules_paths.append(self.rules_path)

        self.severity_filter = _normalize_filter(config.get("severity_filter"))
        self.enabled_products = _normalize_filter(config.get("enabled_products"))
        self.enabled_categories = _normalize_filter(config.get("enabled_categories"))
        self.include_deprecated = bool(config.get("include_deprecated", False))

        self.bound_rules: List[BoundRule] = []
        self.load_errors: List[str] = []
        self.rules_scanned: int = 0
        self.rules_skipped: int = 0

        self._load_rules(list(rules or []))

    @property
    def rules(self) -> List[SigmaRule]:
        return [bound.rule for bound in self.bound_rules]

    def _accepts(self, rule: SigmaRule) -> bool:
        if rule.status == "deprecated" and not self.include_deprecated:
            return False
        if self.severity_filter and _normalize_level(rule.level) not in self.severity_filter:
            return False
        if self.enabled_products and _normalize_level(rule.logsource.product) not in self.enabled_products:
            return False
        if self.enabled_categories and _normalize_level(rule.logsource.category) not in self.enabled_categories:
            return False
        return True

    def _load_rules(self, extra_rules: List[SigmaRule]) -> None:
        candidates: List[SigmaRule] = []
        for root in self.rules_paths:
            if not root:
                continue
            loaded, errors = load_rules_from_directory(root)
            candidates.extend(loaded)
            self.load_errors.extend(errors)
        candidates.extend(extra_rules)
        self.rules_scanned = len(candidates)

        skipped = 0
        for rule in candidates:
            if not self._accepts(rule):
                skipped += 1
                continue
            try:
                self.bound_rules.append(bind_rule(rule))
            except RuleError as e:
                self.load_errors.append(f"{rule.file_path or rule.id}: {e}")
        self.rules_skipped = skipped

        errs = len(self.load_errors)
        logger.info(
            f"Sigma rules loaded: {len(self.bound_rules)} "
            f"(scanned: {self.rules_scanned}, skipped: {skipped}, errors: {errs})"
        )
        if errs:
            logger.warning(f"Some Sigma rules failed to load (showing first 5): {self.load_errors[:5]}")

    def match(self, event: SecurityEvent) -> List[MatchResult]:
        return match_event_against_rules(event, self.bound_rules)

    def evaluate(self, events: Iterable[SecurityEvent]) -> List[Dict[str, Any]]:
        alerts: List[Dict[str, Any]] = []
        if not self.bound_rules:
            return alerts

        for event in events:
            for bound in self.bound_rules:
                try:
                    result = match_bound(event, bound)
                except Exception as e:
                    logger.error(f"Error evaluating rule {bound.rule.title!r} ({bound.rule.id}): {e}", exc_info=True)
                    continue
                if result is not None:
                    alert = result.as_dict()
                    alert["event_id"] = event.id
                    alert["event_host"] = event.host
                    alerts.append(alert)

        return alerts
