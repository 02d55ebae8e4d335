# backend/tests/unit/test_templating.py
from chatflow.engine.templating import lookup, render, render_text, render_value

VARIABLES = {
    "name": "Asha",
    "count": 3,
    "order": {"items": [{"sku": "A1"}, {"sku": "B2"}], "paid": True},
}


def test_placeholders_are_substituted():
    assert render("Hi {name}, you have {count} items", VARIABLES) == "Hi Asha, you have 3 items"


def test_single_placeholder_keeps_the_value_type():
    assert render("{count}", VARIABLES) == 3
    assert render("{order.items}", VARIABLES) == [{"sku": "A1"}, {"sku": "B2"}]


def test_unknown_placeholders_are_left_intact():
    assert render("Hello {missing}", VARIABLES) == "Hello {missing}"
    assert render("{missing}", VARIABLES) == "{missing}"


def test_dotted_paths_and_list_indexes():
    assert lookup(VARIABLES, "order.items.1.sku") == "B2"
    assert lookup(VARIABLES, "order.items.5.sku", default="none") == "none"
    assert render_text("Paid: {order.paid}", VARIABLES) == "Paid: true"


def test_render_value_walks_nested_structures():
    body = {"customer": "{name}", "lines": ["{order.items.0.sku}", 7], "total": "{count}"}
    assert render_value(body, VARIABLES) == {"customer": "Asha", "lines": ["A1", 7], "total": 3}
