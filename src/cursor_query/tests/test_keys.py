import math

import pytest

from cursor_query.errors import InvalidKeyShape
from cursor_query.keys import build, resource_matches
from cursor_query.params import OrdersParams, ProductsParams, validate_params


def test_param_order_does_not_change_identity():
    a = build("orders.list", {"first": 20, "after": "c1"})
    b = build("orders.list", {"after": "c1", "first": 20})
    assert a == b
    assert hash(a) == hash(b)
    assert a.canonical == b.canonical
    assert {a: "page"}[b] == "page"


def test_canonical_form_is_compact_json():
    key = build("orders.list", {"first": 20, "after": None})
    assert str(key) == '["orders.list",[["after",null],["first",20]]]'


def test_equal_python_values_of_different_types_are_distinct_keys():
    assert build("r", {"x": 1}) != build("r", {"x": 1.0})
    assert build("r", {"x": 1}) != build("r", {"x": True})
    assert build("r", {"x": "1"}) != build("r", {"x": 1})


def test_none_param_differs_from_missing_param():
    assert build("r", {"x": None}) != build("r", {})


def test_different_resources_never_collide():
    assert build("orders.list", {"id": 1}) != build("orders.detail", {"id": 1})


@pytest.mark.parametrize(
    "params",
    [
        {"x": [1, 2]},
        {"x": {"nested": 1}},
        {"x": math.nan},
        {"x": math.inf},
        {1: "numeric name"},
        {"": "empty name"},
    ],
)
def test_build_rejects_unserializable_params(params):
    with pytest.raises(InvalidKeyShape):
        build("orders.list", params)


def test_build_rejects_bad_resource_and_non_mapping():
    with pytest.raises(InvalidKeyShape):
        build("", {})
    with pytest.raises(InvalidKeyShape):
        build("orders", [("first", 1)])  # type: ignore[arg-type]


def test_invalid_key_shape_is_a_value_error():
    with pytest.raises(ValueError):
        build("orders", {"x": object()})


def test_key_helpers():
    key = build("orders.list", {"first": 20})
    assert key.params == {"first": 20}
    assert key.get("first") == 20
    assert key.get("after", "none") == "none"

    moved = key.with_params(after="c2")
    assert moved == build("orders.list", {"first": 20, "after": "c2"})
    assert moved.without("after") == key
    # params() hands out a copy
    key.params["first"] = 99
    assert key.get("first") == 20


def test_prefix_matching_is_segment_aware():
    key = build("orders.list", {"first": 20})
    assert key.matches("orders")
    assert key.matches("orders.list")
    assert not key.matches("order")
    assert not key.matches("orders.li")
    assert key.matches(build("orders.list", {"first": 20}))
    assert not key.matches(build("orders.list", {"first": 10}))
    assert resource_matches("products", "products")
    assert not resource_matches("productsx", "products")


def test_params_dataclasses_drop_unset_fields():
    assert OrdersParams().params() == {"first": 20}
    assert OrdersParams(first=None, last=5, before="c").params() == {"last": 5, "before": "c"}
    assert ProductsParams(after="c9").params() == {"first": 20, "after": "c9"}
    assert OrdersParams.allowed_names() == {"first", "after", "before", "last"}


def test_validate_params_rejects_unknown_names():
    validate_params(ProductsParams, {"first": 10, "after": "c2"})
    with pytest.raises(InvalidKeyShape, match="categoryId"):
        validate_params(OrdersParams, {"first": 10, "categoryId": 2})
