"""Unit tests for policy module."""

import json

import pytest

from strata.policy import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRYABLE_ERRORS,
    ERROR_SIGNALS_FILE,
    FailureAction,
    FailureDecision,
    PolicyEngine,
    PolicyError,
    clean_error_text,
    is_action_listed,
    prevents_run,
    rules_from_config,
    should_exclude,
    write_error_signals,
)
from strata.schema import Block, ConfigDocument, ExcludeConfig


def _config(errors=None, attributes=None):
    blocks = {}
    if errors is not None:
        blocks["errors"] = [Block("errors", (), errors)]
    return ConfigDocument(
        path="/live/app/terragrunt.hcl", blocks=blocks, attributes=attributes or {}
    )


class TestExclusion:
    """Test cases for exclude block evaluation."""

    def test_is_action_listed(self):
        """Test action list matching."""
        assert is_action_listed(["all"], "apply")
        assert is_action_listed(["all_except_output"], "plan")
        assert not is_action_listed(["all_except_output"], "output")
        assert is_action_listed(["PLAN"], "plan")
        assert not is_action_listed(["plan"], "apply")

    def test_should_exclude(self):
        """Test that only a true condition excludes."""
        assert should_exclude(ExcludeConfig(condition=True, actions=("plan",)), "plan")
        assert not should_exclude(ExcludeConfig(condition=False, actions=("all",)), "plan")
        assert not should_exclude(None, "plan")

    def test_prevents_run(self):
        """Test no_run semantics."""
        exclude = ExcludeConfig(condition=True, actions=("all",), no_run=True)
        assert prevents_run(exclude, "apply")

        exclude = ExcludeConfig(condition=True, actions=("all",), no_run=False)
        assert not prevents_run(exclude, "apply")

        exclude = ExcludeConfig(condition=True, actions=("apply",), no_run=False)
        assert prevents_run(exclude, "apply")


class TestRulesFromConfig:
    """Test cases for rules_from_config function."""

    def test_errors_block(self):
        """Test retry and ignore rules in declaration order."""
        config = _config(
            errors={
                "retry": {
                    "net": {"retryable_errors": [".*timeout.*"], "max_attempts": 4, "sleep_interval_sec": 1},
                },
                "ignore": {
                    "known": {
                        "ignorable_errors": [".*already exists.*"],
                        "message": "known issue",
                        "signals": {"alert": False},
                    },
                },
            }
        )
        retry, ignore = rules_from_config(config)
        assert [r.name for r in retry] == ["net"]
        assert retry[0].max_attempts == 4
        assert retry[0].sleep_interval_sec == 1
        assert ignore[0].message == "known issue"
        assert ignore[0].signals == {"alert": False}

    def test_retry_defaults(self):
        """Test defaults of a retry rule."""
        retry, _ = rules_from_config(_config(errors={"retry": {"r": {"retryable_errors": ["x"]}}}))
        assert retry[0].max_attempts == DEFAULT_MAX_ATTEMPTS
        assert retry[0].sleep_interval_sec == 5

    def test_legacy_attributes(self):
        """Test that legacy retry attributes become a default rule."""
        retry, _ = rules_from_config(_config(attributes={"retry_max_attempts": 5}))
        assert retry[0].name == "default"
        assert retry[0].max_attempts == 5
        assert len(retry[0].patterns) == len(DEFAULT_RETRYABLE_ERRORS)

    def test_no_rules(self):
        """Test a configuration without error rules."""
        assert rules_from_config(_config()) == ([], [])

    def test_malformed_rule(self):
        """Test that malformed rules raise PolicyError from the engine."""
        config = _config(errors={"retry": {"r": {"retryable_errors": "x"}}})
        with pytest.raises(PolicyError):
            PolicyEngine.from_config(config)


class TestPolicyEngine:
    """Test cases for PolicyEngine class."""

    def test_ignore_beats_retry(self):
        """Test that an ignore rule wins over a retry rule for the same error."""
        engine = PolicyEngine.from_config(
            _config(
                errors={
                    "retry": {"r": {"retryable_errors": [".*boom.*"]}},
                    "ignore": {"i": {"ignorable_errors": [".*boom.*"], "message": "ok"}},
                }
            )
        )
        decision = engine.evaluate_failure("Error: boom", attempt=1)
        assert decision.action == FailureAction.IGNORE
        assert decision.rule == "i"
        assert decision.message == "ok"

    def test_retry_until_max_attempts(self):
        """Test that retries stop at max_attempts."""
        engine = PolicyEngine.from_config(
            _config(errors={"retry": {"r": {"retryable_errors": [".*timeout.*"], "max_attempts": 3}}})
        )
        assert engine.evaluate_failure("tcp timeout", 1).action == FailureAction.RETRY
        assert engine.evaluate_failure("tcp timeout", 2).action == FailureAction.RETRY
        decision = engine.evaluate_failure("tcp timeout", 3)
        assert decision.action == FailureAction.FAIL
        assert decision.rule == "r"

    def test_negated_pattern(self):
        """Test that a matching negated pattern disqualifies the rule."""
        engine = PolicyEngine.from_config(
            _config(
                errors={
                    "ignore": {
                        "i": {"ignorable_errors": [".*error.*", "!.*fatal.*"]},
                    }
                }
            )
        )
        assert engine.evaluate_failure("some error", 1).action == FailureAction.IGNORE
        assert engine.evaluate_failure("fatal error", 1).action == FailureAction.FAIL

    def test_no_match_fails(self):
        """Test that unmatched errors fail."""
        assert PolicyEngine().evaluate_failure("anything", 1) == FailureDecision(FailureAction.FAIL)

    def test_ansi_and_whitespace_ignored(self):
        """Test that colored, multi-line output still matches."""
        engine = PolicyEngine.from_config(
            _config(errors={"retry": {"r": {"retryable_errors": ["Failed to load state: timeout"]}}})
        )
        text = "\x1b[31mFailed to load\n  state: timeout\x1b[0m"
        assert engine.evaluate_failure(text, 1).action == FailureAction.RETRY

    def test_clean_error_text(self):
        """Test ANSI stripping and whitespace collapsing."""
        assert clean_error_text("\x1b[1m a \n\t b \x1b[0m") == "a b"


class TestErrorSignals:
    """Test cases for write_error_signals function."""

    def test_writes_signals(self, tmp_path):
        """Test that signals are written as JSON next to the unit."""
        decision = FailureDecision(FailureAction.IGNORE, rule="i", signals={"retry": False})
        path = write_error_signals(str(tmp_path), decision)
        assert path == str(tmp_path / ERROR_SIGNALS_FILE)
        assert json.loads((tmp_path / ERROR_SIGNALS_FILE).read_text()) == {"retry": False}

    def test_no_signals(self, tmp_path):
        """Test that nothing is written without signals."""
        decision = FailureDecision(FailureAction.IGNORE, rule="i")
        assert write_error_signals(str(tmp_path), decision) is None
        assert not (tmp_path / ERROR_SIGNALS_FILE).exists()
