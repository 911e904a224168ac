"""Unit tests for engines.normalizer."""

from querydispatch.engines.normalizer import NativeResult, flatten_document, normalize


class TestColumnar:
    def test_declared_order_kept(self):
        out = normalize(NativeResult(rows=[(1, "a"), (2, "b")], columns=["id", "name"]))
        assert out.columns == ["id", "name"]
        assert out.data == [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}]
        assert out.row_count == 2

    def test_zero_rows_keeps_columns(self):
        out = normalize(NativeResult(rows=[], columns=["branch", "avg_cost"]))
        assert out.data == []
        assert out.columns == ["branch", "avg_cost"]
        assert out.row_count == 0

    def test_duplicate_names_suffixed(self):
        out = normalize(NativeResult(rows=[(1, 2, 3)], columns=["id", "id", "id"]))
        assert out.columns == ["id", "id_2", "id_3"]
        assert out.data == [{"id": 1, "id_2": 2, "id_3": 3}]

    def test_suffix_skips_existing_name(self):
        out = normalize(NativeResult(rows=[], columns=["id", "id_2", "id"]))
        assert out.columns == ["id", "id_2", "id_3"]

    def test_short_rows_padded_with_null(self):
        out = normalize(NativeResult(rows=[(1,)], columns=["a", "b"]))
        assert out.data == [{"a": 1, "b": None}]

    def test_null_values_kept(self):
        out = normalize(NativeResult(rows=[(None, None)], columns=["a", "b"]))
        assert out.data == [{"a": None, "b": None}]

    def test_no_columns(self):
        out = normalize(NativeResult(rows=[], columns=[]))
        assert out.columns == [] and out.data == [] and out.row_count == 0


class TestRowOriented:
    def test_first_row_order_then_appended(self):
        out = normalize(NativeResult(rows=[{"b": 1, "a": 2}, {"a": 3, "c": 4}]))
        assert out.columns == ["b", "a", "c"]
        assert out.data == [
            {"b": 1, "a": 2, "c": None},
            {"b": None, "a": 3, "c": 4},
        ]

    def test_every_row_has_every_column(self):
        out = normalize(NativeResult(rows=[{"x": 1}, {}, {"y": 2}]))
        for row in out.data:
            assert list(row) == out.columns

    def test_scalar_rows_wrapped(self):
        out = normalize(NativeResult(rows=[1, 2]))
        assert out.columns == ["value"]
        assert out.data == [{"value": 1}, {"value": 2}]

    def test_empty(self):
        out = normalize(NativeResult(rows=[]))
        assert out.columns == [] and out.data == [] and out.row_count == 0

    def test_same_input_same_output(self):
        native = NativeResult(rows=[{"k": 1, "v": "a"}, {"k": 2}])
        assert normalize(native) == normalize(native)


class TestFlattenDocument:
    def test_nested_to_dotted(self):
        doc = {"_id": 1, "customer": {"name": "Ada", "address": {"city": "Oslo"}}}
        assert flatten_document(doc) == {
            "_id": 1,
            "customer.name": "Ada",
            "customer.address.city": "Oslo",
        }

    def test_lists_kept_as_values(self):
        assert flatten_document({"tags": ["a", {"b": 1}]}) == {"tags": ["a", {"b": 1}]}

    def test_empty_mapping_kept(self):
        assert flatten_document({"meta": {}}) == {"meta": {}}
