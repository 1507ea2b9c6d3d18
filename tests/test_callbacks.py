"""Tests for inline-button payloads."""

import pytest

import catalog
from callbacks import ADMIN_ACTS, Act, Action, button, parse_action


@pytest.mark.unit
@pytest.mark.parametrize("action, data", [
    (Action(Act.START_LISTING), "go"),
    (Action(Act.APPROVE, 12), "apr:12"),
    (Action(Act.OPTION, arg="2"), "opt::2"),
    (Action(Act.EDIT_FIELD, 12, "price"), "ef:12:price"),
])
def test_encode_and_parse(action, data):
    assert action.encode() == data
    assert parse_action(data) == action


@pytest.mark.unit
@pytest.mark.parametrize("data", [None, "", "zz:1", "apr:abc", "unknown"])
def test_parse_rejects_foreign_payloads(data):
    assert parse_action(data) is None


@pytest.mark.unit
def test_encode_rejects_oversized_payload():
    with pytest.raises(ValueError):
        Action(Act.EDIT_FIELD, 1, "x" * 70).encode()


@pytest.mark.unit
def test_title_buttons_fit_telegram_limit():
    for category, titles in catalog.TITLES.items():
        for i, title in enumerate(titles):
            data = button(title, Act.TITLE, arg=str(i)).callback_data
            assert len(data.encode("utf-8")) <= 64


@pytest.mark.unit
def test_admin_classification_and_index():
    assert Action(Act.APPROVE, 1).is_admin
    assert not Action(Act.CONFIRM).is_admin
    assert Action(Act.OPTION, arg="3").index == 3
    assert Action(Act.CONTACT, arg="own").index is None
    assert Act.CANCEL not in ADMIN_ACTS


@pytest.mark.unit
def test_act_values_are_unique():
    values = [a.value for a in Act]
    assert len(values) == len(set(values))
    assert all(":" not in v for v in values)
