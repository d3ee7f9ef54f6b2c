"""Exclusion, ignore and retry policy.

The policy engine is consulted before a unit is scheduled (``exclude`` blocks)
and after a run of the wrapped tool fails (``errors`` block ignore and retry
rules, plus the legacy ``retryable_errors`` attributes).
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from strata.schema import (
    ConfigDocument,
    ErrorPattern,
    ExcludeConfig,
    IgnoreRule,
    RetryRule,
    SchemaError,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_SLEEP_INTERVAL_SEC = 5
DEFAULT_RETRY_RULE_NAME = "default"
ERROR_SIGNALS_FILE = "error-signals.json"

ALL_ACTIONS = "all"
ALL_EXCEPT_OUTPUT_ACTIONS = "all_except_output"

DEFAULT_RETRYABLE_ERRORS = [
    r"(?s).*Failed to load state.*tcp.*timeout.*",
    r"(?s).*Failed to load backend.*TLS handshake timeout.*",
    r"(?s).*Creating metric alarm failed.*request to update this alarm is in progress.*",
    r"(?s).*Error installing provider.*TLS handshake timeout.*",
    r"(?s).*Error configuring the backend.*TLS handshake timeout.*",
    r"(?s).*Error installing provider.*tcp.*timeout.*",
    r"(?s).*Error installing provider.*tcp.*connection reset by peer.*",
    r"NoSuchBucket: The specified bucket does not exist",
    r"(?s).*Error creating SSM parameter: TooManyUpdates:.*",
    r"(?s).*app.terraform.io.*: 429 Too Many Requests.*",
    r"(?s).*ssh_exchange_identification.*Connection closed by remote host.*",
    r"(?s).*Client\.Timeout exceeded while awaiting headers.*",
    r"(?s).*Could not download module.*The requested URL returned error: 429.*",
]

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_WHITESPACE = re.compile(r"\s+")


class PolicyError(Exception):
    """Base exception for policy errors."""

    pass


class FailureAction(Enum):
    IGNORE = "ignore"
    RETRY = "retry"
    FAIL = "fail"


@dataclass(frozen=True)
class FailureDecision:
    """Outcome of evaluating a failed run against the error rules.

    Attributes:
        action: Whether to ignore, retry or fail.
        rule: Name of the rule that decided, if any.
        sleep_interval_sec: Delay before the retry.
        message: Warning message of an ignore rule.
        signals: Signals of an ignore rule.
    """

    action: FailureAction
    rule: Optional[str] = None
    sleep_interval_sec: int = 0
    message: str = ""
    signals: Dict[str, Any] = field(default_factory=dict)


def clean_error_text(text: str) -> str:
    """Remove ANSI escapes and collapse whitespace."""
    return _WHITESPACE.sub(" ", _ANSI_ESCAPE.sub("", text)).strip()


def is_action_listed(actions: Sequence[str], command: str) -> bool:
    """Return True if ``command`` is covered by an exclude ``actions`` list."""
    command = command.lower()
    for action in actions:
        if action == ALL_ACTIONS:
            return True
        if action == ALL_EXCEPT_OUTPUT_ACTIONS and command != "output":
            return True
        if action.lower() == command:
            return True
    return False


def should_exclude(exclude: Optional[ExcludeConfig], command: str) -> bool:
    """Return True if the unit is excluded from the queue for ``command``."""
    if exclude is None or not exclude.condition:
        return False
    return is_action_listed(exclude.actions, command)


def prevents_run(exclude: Optional[ExcludeConfig], command: str) -> bool:
    """Return True if an exclude block stops the unit from running.

    With ``no_run`` the action list is matched like ``should_exclude``;
    otherwise only an exact command entry prevents the run.
    """
    if exclude is None or not exclude.condition:
        return False
    if exclude.no_run:
        return is_action_listed(exclude.actions, command)
    return command in exclude.actions


def _compile_patterns(patterns: Any, owner: str) -> tuple:
    if not isinstance(patterns, list):
        raise SchemaError(f"{owner}: error patterns must be a list of strings")
    return tuple(ErrorPattern.compile(str(p)) for p in patterns)


def _int_attribute(body: Dict[str, Any], name: str, default: int, owner: str) -> int:
    value = body.get(name, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SchemaError(f"{owner}: '{name}' must be a number")
    return int(value)


def rules_from_config(config: ConfigDocument):
    """Build retry and ignore rules from a resolved configuration.

    Returns:
        Tuple of (retry rules, ignore rules) in declaration order.

    Raises:
        SchemaError: If a rule is malformed.
    """
    retry_rules: List[RetryRule] = []
    ignore_rules: List[IgnoreRule] = []

    errors = config.get_block("errors")
    if errors is not None:
        for name, body in (errors.body.get("retry") or {}).items():
            owner = f"retry '{name}'"
            retry_rules.append(
                RetryRule(
                    name=name,
                    patterns=_compile_patterns(body.get("retryable_errors", []), owner),
                    max_attempts=_int_attribute(body, "max_attempts", DEFAULT_MAX_ATTEMPTS, owner),
                    sleep_interval_sec=_int_attribute(
                        body, "sleep_interval_sec", DEFAULT_SLEEP_INTERVAL_SEC, owner
                    ),
                )
            )
        for name, body in (errors.body.get("ignore") or {}).items():
            owner = f"ignore '{name}'"
            signals = body.get("signals") or {}
            if not isinstance(signals, dict):
                raise SchemaError(f"{owner}: 'signals' must be a map")
            ignore_rules.append(
                IgnoreRule(
                    name=name,
                    patterns=_compile_patterns(body.get("ignorable_errors", []), owner),
                    message=str(body.get("message") or ""),
                    signals=signals,
                )
            )

    attributes = config.attributes
    legacy = (
        "retryable_errors" in attributes
        or "retry_max_attempts" in attributes
        or "retry_sleep_interval_sec" in attributes
    )
    if legacy:
        patterns = attributes.get("retryable_errors")
        if patterns is None:
            patterns = DEFAULT_RETRYABLE_ERRORS
        retry_rules.append(
            RetryRule(
                name=DEFAULT_RETRY_RULE_NAME,
                patterns=_compile_patterns(patterns, "retryable_errors"),
                max_attempts=_int_attribute(
                    attributes, "retry_max_attempts", DEFAULT_MAX_ATTEMPTS, "retry_max_attempts"
                ),
                sleep_interval_sec=_int_attribute(
                    attributes,
                    "retry_sleep_interval_sec",
                    DEFAULT_SLEEP_INTERVAL_SEC,
                    "retry_sleep_interval_sec",
                ),
            )
        )

    return retry_rules, ignore_rules


class PolicyEngine:
    """Decides what happens to a failed run of a unit."""

    def __init__(
        self,
        retry_rules: Optional[List[RetryRule]] = None,
        ignore_rules: Optional[List[IgnoreRule]] = None,
    ):
        self.retry_rules = list(retry_rules or [])
        self.ignore_rules = list(ignore_rules or [])

    @classmethod
    def from_config(cls, config: ConfigDocument) -> "PolicyEngine":
        """Create an engine from a resolved configuration.

        Raises:
            PolicyError: If an error rule is malformed.
        """
        try:
            retry_rules, ignore_rules = rules_from_config(config)
        except SchemaError as e:
            raise PolicyError(f"Invalid error rules in {config.path}: {e}")
        return cls(retry_rules, ignore_rules)

    @staticmethod
    def _matches(patterns: Sequence[ErrorPattern], text: str) -> bool:
        matched = False
        for pattern in patterns:
            if pattern.matches(text):
                if pattern.negative:
                    return False
                matched = True
        return matched

    def find_ignore_rule(self, text: str) -> Optional[IgnoreRule]:
        for rule in self.ignore_rules:
            if self._matches(rule.patterns, text):
                return rule
        return None

    def find_retry_rule(self, text: str) -> Optional[RetryRule]:
        for rule in self.retry_rules:
            if self._matches(rule.patterns, text):
                return rule
        return None

    def evaluate_failure(self, error_text: str, attempt: int) -> FailureDecision:
        """Decide what to do with a failed attempt.

        Ignore rules are checked first; the first matching one wins and no
        retry is attempted. Otherwise the first matching retry rule allows
        another attempt while ``attempt`` is below its ``max_attempts``.

        Args:
            error_text: Output of the failed run.
            attempt: Number of attempts made so far, starting at 1.

        Returns:
            FailureDecision.
        """
        text = clean_error_text(error_text)

        ignore_rule = self.find_ignore_rule(text)
        if ignore_rule is not None:
            return FailureDecision(
                action=FailureAction.IGNORE,
                rule=ignore_rule.name,
                message=ignore_rule.message,
                signals=dict(ignore_rule.signals),
            )

        retry_rule = self.find_retry_rule(text)
        if retry_rule is not None:
            if attempt < retry_rule.max_attempts:
                return FailureDecision(
                    action=FailureAction.RETRY,
                    rule=retry_rule.name,
                    sleep_interval_sec=retry_rule.sleep_interval_sec,
                )
            logger.warning(
                f"Retry rule '{retry_rule.name}' exhausted after {attempt} attempts"
            )
            return FailureDecision(action=FailureAction.FAIL, rule=retry_rule.name)

        return FailureDecision(action=FailureAction.FAIL)


def write_error_signals(unit_dir: str, decision: FailureDecision) -> Optional[str]:
    """Write the signals of an ignore decision next to the unit.

    Returns:
        Path of the written file, or None if the rule has no signals.

    Raises:
        PolicyError: If the file cannot be written.
    """
    if not decision.signals:
        return None
    path = os.path.join(unit_dir, ERROR_SIGNALS_FILE)
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(decision.signals, f, indent=2, sort_keys=True)
    except OSError as e:
        raise PolicyError(f"Failed to write error signals to {path}: {e}")
    return path
