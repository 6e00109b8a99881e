import logging

import pytest

from rule_conditions import (
    ConditionEvaluationError,
    ConditionSyntaxError,
    compile_condition,
    check_condition,
    evaluate,
)
from incentive_engine import DEFAULT_RULES


@pytest.fixture
def fields() -> dict:
    return {
        "policyName": "Etouch",
        "paymentType": "Regular",
        "paymentFrequency": "Monthly",
        "paymentAmount": 10000.0,
        "autopay": False,
        "ekyc": True,
        "ap": 1,
        "apX": 2,
    }


def test_strict_equality_on_strings_and_booleans(fields: dict) -> None:
    assert evaluate('policyName === "Etouch"', fields)
    assert not evaluate('policyName === "I-Secure"', fields)
    assert evaluate("autopay === false", fields)
    assert evaluate("ekyc === true", fields)
    assert evaluate('policyName !== "I-Secure"', fields)


def test_conjunction_disjunction_and_parentheses(fields: dict) -> None:
    assert evaluate(
        'policyName === "Etouch" && paymentFrequency === "Monthly" && autopay === false', fields
    )
    assert evaluate(
        'ekyc === true && (policyName === "Etouch" || policyName === "I-Secure")', fields
    )
    assert not evaluate(
        'autopay === true && (policyName === "Etouch" || policyName === "I-Secure")', fields
    )
    # && binds tighter than ||
    assert evaluate('policyName === "X" && autopay === true || ekyc === true', fields)


def test_negation_and_single_quotes(fields: dict) -> None:
    assert evaluate("!autopay", fields)
    assert not evaluate("!(ekyc && !autopay)", fields)
    assert evaluate("policyName === 'Etouch'", fields)


def test_relational_comparisons(fields: dict) -> None:
    assert evaluate("paymentAmount >= 10000", fields)
    assert evaluate("paymentAmount > 5000 && paymentAmount < 20000", fields)
    assert not evaluate("paymentAmount <= 9999.5", fields)


def test_strict_equality_does_not_coerce_but_loose_does(fields: dict) -> None:
    assert not evaluate("ekyc === 1", fields)
    assert evaluate("ekyc == 1", fields)
    assert not evaluate('paymentAmount === "10000"', fields)
    assert evaluate('paymentAmount == "10000"', fields)
    assert evaluate("paymentAmount != 5", fields)


def test_field_names_match_whole_tokens_only(fields: dict) -> None:
    """A field called `ap` must not be confused with `apX`."""
    assert evaluate("ap === 1", fields)
    assert evaluate("apX === 2", fields)
    assert not evaluate("apX === 1", fields)


def test_unknown_field_is_not_a_match(fields: dict) -> None:
    cond = compile_condition("bfl === true")
    with pytest.raises(ConditionEvaluationError):
        cond.evaluate(fields)
    assert evaluate("bfl === true", fields) is False


@pytest.mark.parametrize("source", [
    "autopay ===",
    "(ekyc === true",
    "ekyc = true",
    "",
    "ekyc true",
    'policyName === "Etouch',
    "ekyc === true)",
])
def test_malformed_conditions_fail_to_compile(source: str) -> None:
    with pytest.raises(ConditionSyntaxError):
        compile_condition(source)
    assert check_condition(source) is not None


def test_malformed_condition_evaluates_false_with_warning(fields: dict, caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="RuleConditions"):
        assert evaluate("ekyc === true &&", fields) is False
    assert any("Failed to evaluate condition" in r.getMessage() for r in caplog.records)


def test_unorderable_comparison_evaluates_false(fields: dict) -> None:
    assert evaluate("policyName > 5", fields) is False


def test_non_text_condition_is_rejected(fields: dict) -> None:
    assert evaluate(None, fields) is False
    assert check_condition(None) is not None


def test_unhashable_condition_is_rejected(fields: dict) -> None:
    assert evaluate(["ekyc === true"], fields) is False
    assert evaluate({"ekyc": True}, fields) is False
    assert check_condition(["ekyc === true"]) is not None


def test_compiled_conditions_are_cached() -> None:
    assert compile_condition("ekyc === true") is compile_condition("ekyc === true")


def test_field_names_in_order_of_appearance() -> None:
    cond = compile_condition(
        'accountAggregator === true && (policyName === "Etouch" || policyName === "I-Secure")'
    )
    assert cond.field_names() == ["accountAggregator", "policyName"]


def test_every_default_rule_parses() -> None:
    for rule in DEFAULT_RULES:
        assert check_condition(rule.condition) is None, rule.name
