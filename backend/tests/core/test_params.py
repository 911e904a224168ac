"""Unit tests for core.params.validate_params."""

from datetime import date
from decimal import Decimal

import pytest

from querydispatch.core.errors import ValidationError
from querydispatch.core.params import validate_params


class TestValidateParams:
    def test_none_and_blank_are_empty(self):
        assert validate_params(None) == {}
        assert validate_params("") == {}
        assert validate_params("   ") == {}

    def test_dict_passes_through(self):
        params = {"region": "eu", "year": 2024, "ratio": 0.5, "active": True, "note": None}
        assert validate_params(params) == params

    def test_json_string_is_decoded(self):
        assert validate_params('{"a": 1, "b": ["x", "y"]}') == {"a": 1, "b": ["x", "y"]}

    def test_invalid_json_rejected(self):
        with pytest.raises(ValidationError, match="not valid JSON"):
            validate_params("{oops")

    def test_json_array_rejected(self):
        with pytest.raises(ValidationError, match="must be an object"):
            validate_params("[1, 2]")

    def test_non_mapping_rejected(self):
        with pytest.raises(ValidationError):
            validate_params(42)

    def test_tuple_becomes_list(self):
        assert validate_params({"ids": (1, 2, 3)}) == {"ids": [1, 2, 3]}

    def test_rich_scalars_allowed(self):
        out = validate_params({"d": date(2024, 1, 1), "amount": Decimal("1.50")})
        assert out["d"] == date(2024, 1, 1)
        assert out["amount"] == Decimal("1.50")

    @pytest.mark.parametrize("name", ["1abc", "a-b", "", "has space", "drop;table"])
    def test_bad_names_rejected(self, name):
        with pytest.raises(ValidationError, match="Invalid parameter name"):
            validate_params({name: 1})

    def test_nested_object_rejected(self):
        with pytest.raises(ValidationError, match="unsupported value type dict"):
            validate_params({"a": {"b": 1}})

    def test_nested_list_rejected(self):
        with pytest.raises(ValidationError, match="list items must be scalars"):
            validate_params({"a": [[1]]})

    def test_order_is_kept(self):
        assert list(validate_params({"z": 1, "a": 2, "m": 3})) == ["z", "a", "m"]

    def test_is_a_value_error(self):
        # pydantic turns ValueError raised in validators into field errors
        with pytest.raises(ValueError):
            validate_params({"a": object()})
