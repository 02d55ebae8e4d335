# backend/tests/unit/test_conditions.py
import pytest

from chatflow.engine.errors import NodeExecutionError
from chatflow.handlers.logic import apply_operation, evaluate_condition


@pytest.mark.parametrize("operator, actual, expected, result", [
    ("equals", "yes", "yes", True),
    ("equals", "yes", "no", False),
    ("equals", None, "yes", False),
    ("equals", "5", 5, True),
    ("not_equals", "yes", "no", True),
    ("not_equals", "yes", "yes", False),
    ("not_equals", None, "yes", True),
    ("exists", "value", None, True),
    ("exists", "", None, False),
    ("exists", None, None, False),
    ("exists", [], None, False),
    ("not_exists", None, None, True),
    ("not_exists", "value", None, False),
    ("contains", "Hello World", "world", True),
    ("contains", "Hello", "bye", False),
    ("contains", None, "x", False),
    ("contains", ["red", "Blue"], "blue", True),
    ("not_contains", "Hello", "bye", True),
    ("not_contains", "Hello World", "world", False),
    ("not_contains", None, "x", True),
    ("starts_with", "Order-123", "order", True),
    ("ends_with", "photo.JPG", ".jpg", True),
    ("greater_than", "10", 9, True),
    ("greater_than", "abc", 9, False),
    ("less_than", 2.5, "3", True),
    ("regex", "ORD-4411", r"^ORD-\d{4}$", True),
    ("regex", None, r".*", False),
])
def test_condition_truth_table(operator, actual, expected, result):
    assert evaluate_condition(operator, actual, expected) is result


def test_invalid_regex_raises_execution_error():
    with pytest.raises(NodeExecutionError):
        evaluate_condition("regex", "abc", "([")


@pytest.mark.parametrize("operation, current, value, result", [
    ("set", "old", "new", "new"),
    ("append", "ab", "c", "abc"),
    ("prepend", "bc", "a", "abc"),
    ("append", [1], 2, [1, 2]),
    ("increment", None, None, 1),
    ("increment", "4", 2, 6),
    ("decrement", 10, "2.5", 7.5),
])
def test_variable_operations(operation, current, value, result):
    assert apply_operation(operation, current, value, "v") == result


def test_increment_of_text_is_rejected():
    with pytest.raises(NodeExecutionError):
        apply_operation("increment", "abc", 1, "v")
