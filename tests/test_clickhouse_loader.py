"""Tests for the ClickHouse HTTP loader."""

import json
import socket
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from unittest.mock import MagicMock

import pytest
import requests

from backfill.errors import ConfigError, ConnectivityError, WriteError
from backfill.loaders.clickhouse_loader import ClickHouseLoader, quote_identifier
from backfill.models.migration import DestinationSettings
from backfill.models.record import DestinationRecord
from backfill.models.schema import DestinationSchema


def response(status=200, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = status < 400
    resp.text = text
    resp.reason = "Internal Server Error" if status >= 400 else "OK"
    return resp


@pytest.fixture
def session():
    session = requests.Session()
    session.post = MagicMock(return_value=response())
    return session


@pytest.fixture
def settings():
    return DestinationSettings(
        url="http://ch:8123/", user="writer", password="secret", database="reporting", timeout=15.0
    )


@pytest.fixture
def loader(settings, session):
    return ClickHouseLoader(settings, session=session)


def test_auth_headers(loader, session):
    assert session.headers["X-ClickHouse-User"] == "writer"
    assert session.headers["X-ClickHouse-Key"] == "secret"


def test_insert_sends_json_each_row(loader, session):
    loader.write("invoice_details_1", [
        DestinationRecord(1, {"id": 1, "notes": "a"}),
        DestinationRecord(2, {"id": 2, "notes": None}),
    ])

    _, kwargs = session.post.call_args
    assert session.post.call_args[0][0] == "http://ch:8123/"
    assert kwargs["params"]["query"] == "INSERT INTO `reporting`.`invoice_details_1` FORMAT JSONEachRow"
    assert kwargs["params"]["database"] == "reporting"
    assert kwargs["timeout"] == (10.0, 15.0)
    lines = kwargs["data"].decode("utf-8").split("\n")
    assert [json.loads(line) for line in lines] == [{"id": 1, "notes": "a"}, {"id": 2, "notes": None}]


def test_empty_insert_sends_nothing(loader, session):
    loader.insert_rows("t", [])
    session.post.assert_not_called()


def test_dry_run_skips_requests(settings, session):
    loader = ClickHouseLoader(settings, dry_run=True, session=session)

    loader.insert_rows("t", [{"id": 1}])
    loader.ensure_collection(DestinationSchema("t", (("id", "Int64"),)))
    loader.drop_collection("t")

    session.post.assert_not_called()


def test_rejected_insert_is_write_error(loader, session):
    session.post.return_value = response(500, "Code: 27. DB::Exception: Cannot parse input")

    with pytest.raises(WriteError) as exc:
        loader.insert_rows("t", [{"id": 1}])

    assert exc.value.details["status_code"] == 500
    assert "Cannot parse input" in exc.value.message


@pytest.mark.parametrize("error,expected", [
    (requests.exceptions.ConnectTimeout("slow"), ConnectivityError),
    (requests.exceptions.ConnectionError("refused"), ConnectivityError),
    (requests.exceptions.ReadTimeout("slow"), WriteError),
    (requests.exceptions.TooManyRedirects("loop"), WriteError),
])
def test_transport_errors(loader, session, error, expected):
    session.post.side_effect = error

    with pytest.raises(expected):
        loader.insert_rows("t", [{"id": 1}])


def test_query_binds_typed_params_and_parses_rows(loader, session):
    session.post.return_value = response(text='{"n": "1"}\n{"n": "2"}\n')

    rows = loader.query("SELECT n FROM t WHERE k = {k:String}", {"k": "x"})

    _, kwargs = session.post.call_args
    assert kwargs["params"]["param_k"] == "x"
    assert kwargs["data"] == b"SELECT n FROM t WHERE k = {k:String} FORMAT JSONEachRow"
    assert rows == [{"n": "1"}, {"n": "2"}]


def test_ensure_collection_ddl(loader, session):
    schema = DestinationSchema(
        "customers_4",
        (("id", "Int64"), ("name", "String"), ("deleted_at", "Nullable(DateTime)")),
        ("id",),
    )

    loader.ensure_collection(schema)

    ddl = session.post.call_args[1]["data"].decode("utf-8")
    assert ddl.startswith("CREATE TABLE IF NOT EXISTS `reporting`.`customers_4`")
    assert "`deleted_at` Nullable(DateTime)" in ddl
    assert "ENGINE = ReplacingMergeTree" in ddl
    assert ddl.endswith("ORDER BY (`id`)")


def test_drop_and_list(loader, session):
    loader.drop_collection("customers_4")
    assert session.post.call_args[1]["data"] == b"DROP TABLE IF EXISTS `reporting`.`customers_4`"

    session.post.return_value = response(text='{"name": "customers_4"}\n{"name": "customers_12"}\n')
    assert loader.list_collections("customers_") == ["customers_4", "customers_12"]
    assert session.post.call_args[1]["params"]["param_prefix"] == "customers_"


def test_validate_connection(loader, session):
    session.post.return_value = response(text='{"ok": 1}\n')
    assert loader.validate_connection()

    session.post.side_effect = requests.exceptions.ConnectionError("refused")
    assert not loader.validate_connection()


def test_unserializable_row_is_write_error(loader):
    class Opaque:
        def __str__(self):
            raise ValueError("no text form")

    with pytest.raises(WriteError):
        loader.insert_rows("t", [{"id": 1, "x": Opaque()}])


@pytest.mark.parametrize("name", ["", "1abc", "a-b", "x; DROP TABLE y", "`t`"])
def test_quote_identifier_rejects_unsafe_names(name):
    with pytest.raises(ConfigError):
        quote_identifier(name)


def test_session_has_retrying_adapter(settings):
    loader = ClickHouseLoader(settings)
    retries = loader._session.get_adapter("http://ch:8123/").max_retries

    assert retries.total == settings.max_retries
    assert 503 in retries.status_forcelist
    assert "POST" not in retries.allowed_methods
    assert not retries.raise_on_status


class TestOverHTTP:
    """Requests go through the loader's own session and retrying adapter."""

    @pytest.fixture
    def rejecting_server(self):
        calls = []

        class Handler(BaseHTTPRequestHandler):
            def do_POST(self):
                self.rfile.read(int(self.headers.get("Content-Length", 0)))
                calls.append(self.path)
                body = b"Code: 27. DB::Exception: Cannot parse input: expected '\"' before: 'x'"
                self.send_response(500)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, *args):
                pass

        server = HTTPServer(("127.0.0.1", 0), Handler)
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        yield f"http://127.0.0.1:{server.server_port}/", calls
        server.shutdown()
        server.server_close()

    @pytest.fixture
    def silent_server(self):
        """Accepts connections and never answers."""
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen(8)
        yield f"http://127.0.0.1:{listener.getsockname()[1]}/"
        listener.close()

    def test_rejected_insert_is_sent_once_with_reason(self, rejecting_server):
        url, calls = rejecting_server
        loader = ClickHouseLoader(DestinationSettings(url=url, max_retries=3, backoff_factor=0))

        with pytest.raises(WriteError) as exc_info:
            loader.insert_rows("t", [{"id": 1}])

        assert len(calls) == 1
        assert exc_info.value.details["status_code"] == 500
        assert "Cannot parse input" in exc_info.value.message

    def test_read_timeout_is_write_error(self, silent_server):
        loader = ClickHouseLoader(
            DestinationSettings(url=silent_server, timeout=0.3, max_retries=1, backoff_factor=0)
        )

        with pytest.raises(WriteError) as exc_info:
            loader.insert_rows("t", [{"id": 1}])

        assert not isinstance(exc_info.value, ConnectivityError)
        assert "timed out" in exc_info.value.message

    def test_refused_connection_is_connectivity_error(self):
        free_port = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        free_port.bind(("127.0.0.1", 0))
        port = free_port.getsockname()[1]
        free_port.close()
        loader = ClickHouseLoader(
            DestinationSettings(url=f"http://127.0.0.1:{port}/", max_retries=1, backoff_factor=0)
        )

        with pytest.raises(ConnectivityError):
            loader.insert_rows("t", [{"id": 1}])
