from __future__ import annotations

import json

import pytest

from receipt_nest.modules.categories.rules import (
    DEFAULT_CATEGORY_RULES,
    CategoryRule,
    load_category_rules,
)
from receipt_nest.modules.categories.service import AssignedBy, classify_category


@pytest.mark.parametrize(
    ("merchant", "category_id"),
    [
        ("Trader Joe's", "groceries"),
        ("Starbucks", "restaurants"),
        ("Amazon", "shopping"),
        ("Shell Gas Station", "transportation"),
        ("Netflix", "entertainment"),
        ("CVS Pharmacy", "healthcare"),
        ("Marriott Hotel", "travel"),
    ],
)
def test_keyword_rules_assign_category(merchant, category_id):
    assignment = classify_category(merchant, rules=DEFAULT_CATEGORY_RULES)

    assert assignment.id == category_id
    assert assignment.confidence == 0.9
    assert assignment.assigned_by == AssignedBy.RULE


def test_first_matching_rule_wins():
    # "uber eats" is a restaurants keyword, listed before transportation's "uber".
    assert classify_category("Uber Eats", rules=DEFAULT_CATEGORY_RULES).id == "restaurants"
    assert classify_category("Uber", rules=DEFAULT_CATEGORY_RULES).id == "transportation"


def test_unmatched_merchant_falls_back_to_other():
    assignment = classify_category("Zxqv Holdings", rules=DEFAULT_CATEGORY_RULES)

    assert assignment.to_dict() == {
        "id": "other",
        "name": "Other",
        "confidence": 0.5,
        "assignedBy": "default",
    }


def test_custom_rule_table(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(
        json.dumps(
            [
                {"id": "pets", "name": "Pets", "keywords": ["Petco", "vet"]},
                {"id": "misc", "keywords": []},
            ]
        ),
        encoding="utf-8",
    )

    rules = load_category_rules(path)

    assert rules == (
        CategoryRule("pets", "Pets", ("petco", "vet")),
        CategoryRule("misc", "misc", ()),
    )
    assert classify_category("PETCO #12", rules=rules).name == "Pets"


def test_malformed_rule_table_is_rejected(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps({"id": "pets"}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_category_rules(path)

    path.write_text(json.dumps([{"name": "No id"}]), encoding="utf-8")
    with pytest.raises(ValueError):
        load_category_rules(path)
