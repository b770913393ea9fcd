from typing import Optional


class RuleError(ValueError):
    """
    A Sigma rule cannot be compiled or evaluated.

    Raised while loading or binding a rule. Callers that evaluate many rules
    catch it per rule, log it and move on to the next rule.
    """

    def __init__(self, message: str, rule_id: Optional[str] = None):
        self.rule_id = rule_id
        self.reason = message
        if rule_id:
            message = f"rule {rule_id}: {message}"
        super().__init__(message)


class RuleParseError(RuleError):
    """Malformed condition, undefined selection reference or invalid pattern."""


class InvalidModifierError(RuleError):
    """Unknown or conflicting field modifier in a selection key."""
