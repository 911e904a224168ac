"""Unit tests for connectors.document with a mocked MongoClient."""

import json
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from bson import Binary, Decimal128, ObjectId
from pymongo import errors as mongo_errors

from querydispatch.connectors.document import (
    DocumentStoreConnector,
    classify_error,
    parse_document_query,
)
from querydispatch.core.config import DocumentStoreSettings
from querydispatch.core.errors import (
    PermanentBackendError,
    QueryTimeoutError,
    TransientBackendError,
    ValidationError,
)
from tests.utils.settings import make_settings


def _q(**spec) -> str:
    return json.dumps(spec)


def _connector(**settings_overrides) -> DocumentStoreConnector:
    config = DocumentStoreSettings(uri="mongodb://mongo:27017", database="dashboards")
    return DocumentStoreConnector.from_settings(config, make_settings(**settings_overrides))


def _client_with(collection: MagicMock) -> MagicMock:
    db = MagicMock()
    db.__getitem__.return_value = collection
    client = MagicMock()
    client.__getitem__.return_value = db
    return client


class TestParseDocumentQuery:
    def test_params_merge_into_filter(self):
        parsed = parse_document_query(_q(collection="orders", filter={"status": "open"}), {"branch": "north"})
        assert parsed["filter"] == {"status": "open", "branch": "north"}

    def test_params_prepended_as_match_for_pipeline(self):
        pipeline = [{"$group": {"_id": "$branch", "n": {"$sum": 1}}}]
        parsed = parse_document_query(_q(collection="orders", pipeline=pipeline), {"year": 2024})
        assert parsed["pipeline"] == [{"$match": {"year": 2024}}] + pipeline

    def test_pipeline_without_params_unchanged(self):
        pipeline = [{"$limit": 1}]
        assert parse_document_query(_q(collection="c", pipeline=pipeline), {})["pipeline"] == pipeline

    def test_not_json(self):
        with pytest.raises(ValidationError, match="not valid JSON"):
            parse_document_query("db.orders.find()", {})

    def test_not_object(self):
        with pytest.raises(ValidationError, match="must be a JSON object"):
            parse_document_query("[]", {})

    def test_collection_required(self):
        with pytest.raises(ValidationError, match="collection"):
            parse_document_query(_q(filter={}), {})

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValidationError, match="Unknown document query keys: update"):
            parse_document_query(_q(collection="c", update={"$set": {"a": 1}}), {})

    def test_pipeline_and_filter_exclusive(self):
        with pytest.raises(ValidationError):
            parse_document_query(_q(collection="c", pipeline=[], filter={}), {})

    def test_operator_param_name_rejected(self):
        with pytest.raises(ValidationError, match="may not be a query operator"):
            parse_document_query(_q(collection="c"), {"$where": "1"})

    @pytest.mark.parametrize(
        "spec",
        [
            {"collection": "c", "sort": [["a", 2]]},
            {"collection": "c", "sort": {"a": 1}},
            {"collection": "c", "limit": -1},
            {"collection": "c", "skip": "10"},
            {"collection": "c", "limit": True},
            {"collection": "c", "projection": ["a"]},
            {"collection": "c", "pipeline": [1]},
            {"collection": "c", "filter": []},
        ],
    )
    def test_malformed_parts_rejected(self, spec):
        with pytest.raises(ValidationError):
            parse_document_query(json.dumps(spec), {})

    def test_server_script_rejected_without_admin(self):
        query = _q(collection="c", filter={"$where": "this.a > 1"})
        with pytest.raises(PermanentBackendError, match="\\$where"):
            parse_document_query(query, {})
        assert parse_document_query(query, {}, allow_admin=True)["filter"] == {"$where": "this.a > 1"}

    def test_nested_script_operator_found(self):
        pipeline = [{"$group": {"_id": None, "x": {"$accumulator": {}}}}]
        with pytest.raises(PermanentBackendError, match="accumulator"):
            parse_document_query(_q(collection="c", pipeline=pipeline), {})

    @pytest.mark.parametrize(
        "stage",
        [{"$out": "costs_copy"}, {"$merge": {"into": "costs", "whenMatched": "replace"}}],
    )
    def test_write_stages_rejected_without_admin(self, stage):
        query = _q(collection="jobs", pipeline=[{"$match": {}}, stage])
        with pytest.raises(PermanentBackendError, match="write collections"):
            parse_document_query(query, {})
        assert parse_document_query(query, {}, allow_admin=True)["pipeline"][-1] == stage


class TestClassifyError:
    def test_execution_timeout(self):
        assert isinstance(classify_error(mongo_errors.ExecutionTimeout("slow")), QueryTimeoutError)

    def test_connection_failure_transient(self):
        assert isinstance(
            classify_error(mongo_errors.ServerSelectionTimeoutError("no servers")),
            TransientBackendError,
        )
        assert isinstance(classify_error(mongo_errors.AutoReconnect("x")), TransientBackendError)

    def test_operation_failure_permanent(self):
        err = classify_error(mongo_errors.OperationFailure("unknown operator: $foo"))
        assert isinstance(err, PermanentBackendError)

    def test_configuration_error_permanent(self):
        assert isinstance(classify_error(mongo_errors.ConfigurationError("bad uri")), PermanentBackendError)


class TestDocumentStoreConnector:
    def test_find_flattens_and_stringifies_ids(self):
        oid = ObjectId("65a1b2c3d4e5f60718293a4b")
        cursor = MagicMock()
        cursor.sort.return_value = cursor
        cursor.skip.return_value = cursor
        cursor.limit.return_value = cursor
        cursor.max_time_ms.return_value = cursor
        cursor.__iter__.return_value = iter(
            [
                {"_id": oid, "branch": "north", "cost": {"avg": 12.5}},
                {"_id": "x2", "branch": "south"},
            ]
        )
        collection = MagicMock()
        collection.find.return_value = cursor

        native = _connector().run(
            _client_with(collection),
            _q(collection="jobs", filter={"open": True}, projection={"cost": 1}, sort=[["branch", 1]], skip=5, limit=20),
            {"branch": "north"},
        )

        collection.find.assert_called_once_with({"open": True, "branch": "north"}, {"cost": 1})
        cursor.sort.assert_called_once_with([("branch", 1)])
        cursor.skip.assert_called_once_with(5)
        cursor.limit.assert_called_once_with(20)
        cursor.max_time_ms.assert_called_once_with(2000)
        assert native.columns is None
        assert native.rows == [
            {"_id": str(oid), "branch": "north", "cost.avg": 12.5},
            {"_id": "x2", "branch": "south"},
        ]

    def test_limit_capped_by_max_rows(self):
        cursor = MagicMock()
        cursor.limit.return_value = cursor
        cursor.max_time_ms.return_value = cursor
        cursor.__iter__.return_value = iter([])
        collection = MagicMock()
        collection.find.return_value = cursor

        _connector(MAX_ROWS=10).run(_client_with(collection), _q(collection="c", limit=500), {})
        cursor.limit.assert_called_once_with(10)

    def test_aggregate_appends_limit_and_time_budget(self):
        collection = MagicMock()
        collection.aggregate.return_value = iter([{"_id": "north", "n": 3}])
        pipeline = [{"$group": {"_id": "$branch", "n": {"$sum": 1}}}]

        native = _connector(MAX_ROWS=100).run(_client_with(collection), _q(collection="jobs", pipeline=pipeline), {})

        collection.aggregate.assert_called_once_with(pipeline + [{"$limit": 100}], maxTimeMS=2000)
        assert native.rows == [{"_id": "north", "n": 3}]

    def test_bson_values_converted_at_any_depth(self):
        oid = ObjectId("65a1b2c3d4e5f60718293a4b")
        collection = MagicMock()
        collection.aggregate.return_value = iter(
            [
                {
                    "_id": oid,
                    "refs": [oid, {"owner": oid}],
                    "total": Decimal128("12.50"),
                    "blob": Binary(b"\xff\x00"),
                }
            ]
        )
        native = _connector().run(_client_with(collection), _q(collection="jobs", pipeline=[]), {})

        assert native.rows == [
            {
                "_id": str(oid),
                "refs": [str(oid), {"owner": str(oid)}],
                "total": Decimal("12.50"),
                "blob": b"\xff\x00",
            }
        ]

    def test_admin_write_stage_is_not_followed_by_limit(self):
        collection = MagicMock()
        collection.aggregate.return_value = iter([])
        pipeline = [{"$match": {"open": True}}, {"$out": "open_jobs"}]

        _connector(ALLOW_ADMIN_SQL=True).run(_client_with(collection), _q(collection="jobs", pipeline=pipeline), {})

        collection.aggregate.assert_called_once_with(pipeline, maxTimeMS=2000)

    def test_driver_error_translated(self):
        collection = MagicMock()
        collection.aggregate.side_effect = mongo_errors.ExecutionTimeout("operation exceeded time limit")
        with pytest.raises(QueryTimeoutError):
            _connector().run(_client_with(collection), _q(collection="c", pipeline=[]), {})

    @patch("querydispatch.connectors.document.MongoClient")
    def test_connect_uses_timeouts(self, mock_client: MagicMock):
        _connector(CONNECT_TIMEOUT=4).connect()
        args, kwargs = mock_client.call_args
        assert args == ("mongodb://mongo:27017",)
        assert kwargs["connectTimeoutMS"] == 4000
        assert kwargs["serverSelectionTimeoutMS"] == 4000
        assert kwargs["maxPoolSize"] == 1

    @patch("querydispatch.connectors.document.MongoClient")
    def test_connect_bad_uri_is_permanent(self, mock_client: MagicMock):
        mock_client.side_effect = mongo_errors.InvalidURI("bad")
        with pytest.raises(PermanentBackendError):
            _connector().connect()

    def test_ping(self):
        client = MagicMock()
        assert _connector().ping(client) is True
        client.admin.command.assert_called_once_with("ping")
