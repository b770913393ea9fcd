from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from detection.errors import RuleParseError

SelectionLookup = Callable[[str], bool]

_TOKEN_RE = re.compile(r"\(|\)|[^\s()]+")
_KEYWORDS = {"and", "or", "not", "of", "all", "them"}


class ConditionNode:
    def evaluate(self, get_selection: SelectionLookup) -> bool:
        raise NotImplementedError

    def selection_names(self) -> Iterator[str]:
        raise NotImplementedError


@dataclass(frozen=True)
class SelectionRef(ConditionNode):
    name: str

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        return get_selection(self.name)

    def selection_names(self) -> Iterator[str]:
        yield self.name


@dataclass(frozen=True)
class Not(ConditionNode):
    node: ConditionNode

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        return not self.node.evaluate(get_selection)

    def selection_names(self) -> Iterator[str]:
        yield from self.node.selection_names()


@dataclass(frozen=True)
class And(ConditionNode):
    left: ConditionNode
    right: ConditionNode

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        return self.left.evaluate(get_selection) and self.right.evaluate(get_selection)

    def selection_names(self) -> Iterator[str]:
        yield from self.left.selection_names()
        yield from self.right.selection_names()


@dataclass(frozen=True)
class Or(ConditionNode):
    left: ConditionNode
    right: ConditionNode

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        return self.left.evaluate(get_selection) or self.right.evaluate(get_selection)

    def selection_names(self) -> Iterator[str]:
        yield from self.left.selection_names()
        yield from self.right.selection_names()


@dataclass(frozen=True)
class Quantifier(ConditionNode):
    """
    `<N> of <group>` or `all of <group>`, already expanded to the concrete
    selection names of the rule. `required_count` is None for `all`.
    """
    required_count: Optional[int]
    names: Tuple[str, ...]
    pattern: str

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        if self.required_count is None:
            return all(get_selection(name) for name in self.names)
        matched = 0
        for name in self.names:
            if get_selection(name):
                matched += 1
                if matched >= self.required_count:
                    return True
        return False

    def selection_names(self) -> Iterator[str]:
        yield from self.names


def tokenize(condition: str) -> List[str]:
    return _TOKEN_RE.findall(condition or "")


def expand_group(pattern: str, selection_names: Sequence[str]) -> Tuple[str, ...]:
    """
    Resolve the target of a quantifier. `them` is every selection; `prefix*`
    is every selection whose name starts with `prefix`. Only a single
    trailing `*` is accepted.
    """
    if pattern.lower() == "them":
        return tuple(selection_names)
    if not pattern.endswith("*") or "*" in pattern[:-1]:
        raise RuleParseError(f"Quantifier target {pattern!r} must be 'them' or a prefix ending in '*'")
    prefix = pattern[:-1]
    return tuple(name for name in selection_names if name.startswith(prefix))


class ConditionParser:
    """
    Recursive-descent parser for Sigma conditions.

    Precedence, tightest first: NOT, AND, OR. Both binary operators are
    left-associative. Keywords are case-insensitive, selection names are not.
    """

    def __init__(self, tokens: List[str], selection_names: Sequence[str]):
        self.tokens = tokens
        self.pos = 0
        self.selection_names = list(selection_names)
        self._known = set(self.selection_names)

    def _peek(self) -> Optional[str]:
        if self.pos >= len(self.tokens):
            return None
        return self.tokens[self.pos]

    def _peek_keyword(self) -> Optional[str]:
        tok = self._peek()
        if tok is None:
            return None
        lowered = tok.lower()
        return lowered if lowered in _KEYWORDS else None

    def _consume(self) -> Optional[str]:
        tok = self._peek()
        if tok is not None:
            self.pos += 1
        return tok

    def _expect(self, expected: str) -> str:
        tok = self._consume()
        if tok is None:
            raise RuleParseError(f"Expected {expected!r}, got end of condition")
        if tok.lower() != expected:
            raise RuleParseError(f"Expected {expected!r}, got {tok!r}")
        return tok

    def parse(self) -> ConditionNode:
        if not self.tokens:
            raise RuleParseError("Empty condition")
        node = self._parse_or()
        if self._peek() is not None:
            raise RuleParseError(f"Unexpected trailing tokens: {self.tokens[self.pos:]}")
        return node

    def _parse_or(self) -> ConditionNode:
        node = self._parse_and()
        while self._peek_keyword() == "or":
            self._consume()
            node = Or(node, self._parse_and())
        return node

    def _parse_and(self) -> ConditionNode:
        node = self._parse_not()
        while self._peek_keyword() == "and":
            self._consume()
            node = And(node, self._parse_not())
        return node

    def _parse_not(self) -> ConditionNode:
        if self._peek_keyword() == "not":
            self._consume()
            return Not(self._parse_not())
        return self._parse_atom()

    def _parse_atom(self) -> ConditionNode:
        tok = self._peek()
        if tok is None:
            raise RuleParseError("Unexpected end of condition")

        if tok == "(":
            self._consume()
            node = self._parse_or()
            self._expect(")")
            return node

        if tok == ")":
            raise RuleParseError("Unbalanced ')'")

        if tok.isdigit() or tok.lower() == "all":
            return self._parse_quantifier()

        if tok.lower() in _KEYWORDS:
            raise RuleParseError(f"Unexpected keyword {tok!r}")

        self._consume()
        if "*" in tok:
            raise RuleParseError(f"Wildcard {tok!r} is only allowed after 'of'")
        if tok not in self._known:
            raise RuleParseError(f"Condition references undefined selection {tok!r}")
        return SelectionRef(tok)

    def _parse_quantifier(self) -> ConditionNode:
        tok = self._consume()
        if tok.lower() == "all":
            count = None
        else:
            count = int(tok)
            if count < 1:
                raise RuleParseError(f"Quantifier count must be at least 1, got {count}")

        self._expect("of")
        pattern = self._consume()
        if pattern is None or pattern in ("(", ")"):
            raise RuleParseError(f"Missing selection group after '{tok} of'")

        names = expand_group(pattern, self.selection_names)
        if not names:
            raise RuleParseError(f"Selection group {pattern!r} matches no selections")
        return Quantifier(required_count=count, names=names, pattern=pattern)


def parse_condition(condition: str, selection_names: Sequence[str]) -> ConditionNode:
    """
    Parse a condition string against the selection names of one rule.

    Raises RuleParseError on malformed syntax or on references to
    selections that the rule does not define.
    """
    return ConditionParser(tokenize(condition), selection_names).parse()
