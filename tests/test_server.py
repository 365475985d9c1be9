"""Tests for the embedded HTTP gateway."""

import io
import json
import socket
from datetime import timedelta

import httpx
import pytest

from kvnotes.config import ServerSettings
from kvnotes.entry_store import EntryStore
from kvnotes.errors import InvalidInputError, KvIOError, PayloadTooLargeError, StorageError
from kvnotes.server import (
    HttpRequest,
    HttpResponse,
    ViewerServer,
    dispatch,
    encode_response,
    read_request,
)
from kvnotes.types import MAX_TTL_MINUTES, Entry, utc_now


def _request(method, path, body=None):
    raw = b"" if body is None else json.dumps(body).encode()
    return HttpRequest(method=method, path=path, body=raw)


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------


class TestReadRequest:
    def test_basic_post(self):
        reader = io.BytesIO(
            b"POST /api/records/delete?x=1 HTTP/1.1\r\n"
            b"Host: localhost\r\n"
            b"Content-Type: application/json\r\n"
            b"Content-Length: 11\r\n"
            b"\r\n"
            b'{"key":"a"}'
        )
        request = read_request(reader, 1024)
        assert request.method == "POST"
        assert request.path == "/api/records/delete"
        assert request.headers["content-type"] == "application/json"
        assert request.text == '{"key":"a"}'

    def test_no_content_length_means_empty_body(self):
        request = read_request(io.BytesIO(b"GET /data HTTP/1.1\r\n\r\nleftover"), 1024)
        assert request.body == b""

    def test_closed_before_anything_sent(self):
        assert read_request(io.BytesIO(b""), 1024) is None

    @pytest.mark.parametrize("value", ["abc", "-1", "1e3", "١٢"])
    def test_invalid_content_length(self, value):
        reader = io.BytesIO(f"POST / HTTP/1.1\r\nContent-Length: {value}\r\n\r\n".encode())
        with pytest.raises(InvalidInputError, match="invalid content-length header"):
            read_request(reader, 1024)

    def test_oversized_body_is_not_read(self):
        head = b"POST /api/records/upsert HTTP/1.1\r\nContent-Length: 5000\r\n\r\n"
        reader = io.BytesIO(head + b"x" * 5000)
        with pytest.raises(PayloadTooLargeError):
            read_request(reader, 100)
        assert reader.tell() == len(head)

    def test_short_body(self):
        reader = io.BytesIO(b"POST / HTTP/1.1\r\nContent-Length: 10\r\n\r\nabc")
        with pytest.raises(InvalidInputError, match="shorter"):
            read_request(reader, 1024)

    def test_request_line_too_long(self):
        reader = io.BytesIO(b"GET /" + b"a" * 9000 + b" HTTP/1.1\r\n\r\n")
        with pytest.raises(InvalidInputError, match="request line too long"):
            read_request(reader, 1024)


def test_encode_response_headers():
    raw = encode_response(HttpResponse("200 OK", "text/plain; charset=utf-8", "héllo\n"))
    head, _, body = raw.partition(b"\r\n\r\n")
    assert head.startswith(b"HTTP/1.1 200 OK\r\n")
    assert b"Content-Length: 7" in head
    assert b"Cache-Control: no-store" in head
    assert b"Connection: close" in head
    assert body == "héllo\n".encode()


# ---------------------------------------------------------------------------
# Routing and payload validation
# ---------------------------------------------------------------------------


class TestDispatch:
    def test_unknown_route(self, store):
        response = dispatch(store, _request("GET", "/nope"))
        assert response.status == "404 Not Found"
        assert response.body == "not found\n"

    def test_wrong_method_is_unknown_route(self, store):
        assert dispatch(store, _request("GET", "/api/records/upsert")).status.startswith("404")

    def test_health(self, store):
        response = dispatch(store, _request("GET", "/health"))
        assert (response.status, response.body) == ("200 OK", "ok\n")

    @pytest.mark.parametrize("path,body,message", [
        ("/api/records/upsert", {"key": "  ", "value": "v"}, "field 'key' cannot be empty"),
        ("/api/records/upsert", {"value": "v"}, "missing field 'key'"),
        ("/api/records/upsert", {"key": "k", "value": "v", "ttl_minutes": 0},
         "field 'ttl_minutes' must be greater than 0"),
        ("/api/records/ttl/extend", {"key": "k", "ttl_minutes": -3},
         "field 'ttl_minutes' must be greater than 0"),
        ("/api/records/upsert", {"key": "k", "value": "v", "ttl_minutes": 10**10},
         f"field 'ttl_minutes' must be at most {MAX_TTL_MINUTES}"),
        ("/api/records/ttl/extend", {"key": "k", "ttl_minutes": 10**13},
         f"field 'ttl_minutes' must be at most {MAX_TTL_MINUTES}"),
        ("/api/records/tags/add", {"key": "k", "tag": ""}, "field 'tag' cannot be empty"),
        ("/api/tags/rename", {"from": "a"}, "missing field 'to'"),
    ])
    def test_payload_validation(self, store, path, body, message):
        response = dispatch(store, _request("POST", path, body))
        assert response.status == "400 Bad Request"
        assert response.body == f"{message}\n"

    def test_invalid_json(self, store):
        request = HttpRequest("POST", "/api/records/upsert", body=b"{not json")
        response = dispatch(store, request)
        assert response.status == "400 Bad Request"
        assert response.body.startswith("invalid json body")

    def test_rename_to_same_tag(self, store):
        response = dispatch(store, _request("POST", "/api/tags/rename", {"from": "a", "to": "a"}))
        assert response.status == "400 Bad Request"

    def test_storage_failure_is_500(self, store, monkeypatch, caplog):
        def broken():
            raise StorageError("database error: disk full")

        monkeypatch.setattr(store, "load_all", broken)
        response = dispatch(store, _request("GET", "/data"))
        assert response.status == "500 Internal Server Error"
        assert response.body == "database error: disk full\n"
        assert "GET /data failed" in caplog.text


# ---------------------------------------------------------------------------
# Sweep scheduling
# ---------------------------------------------------------------------------


class TestMaybeSweep:
    @pytest.fixture
    def server(self, store):
        with ViewerServer(store, ServerSettings(port=0)) as server:
            yield server

    def test_first_call_sweeps_then_waits_for_interval(self, server):
        assert server.maybe_sweep(now=100.0) == 0
        assert server.maybe_sweep(now=101.0) is None
        assert server.maybe_sweep(now=100.0 + 3599) is None
        assert server.maybe_sweep(now=100.0 + 3600) == 0

    def test_failed_sweep_still_waits(self, server, store, monkeypatch, caplog):
        def broken(now=None):
            raise StorageError("database error: locked")

        monkeypatch.setattr(store, "sweep_expired", broken)
        assert server.maybe_sweep(now=100.0) is None
        assert server.maybe_sweep(now=200.0) is None
        assert caplog.text.count("ttl sweep failed") == 1


def test_oversized_request_gets_413(store):
    settings = ServerSettings(port=0, max_body_bytes=16, request_timeout_seconds=5)
    with ViewerServer(store, settings) as server:
        client, server_end = socket.socketpair()
        with client:
            client.sendall(b"POST /api/records/upsert HTTP/1.1\r\nContent-Length: 1000\r\n\r\n")
            with server_end:
                server.handle_connection(server_end)
            client.settimeout(5)
            response = b""
            while True:
                chunk = client.recv(4096)
                if not chunk:
                    break
                response += chunk
    assert response.startswith(b"HTTP/1.1 413 Payload Too Large\r\n")


def test_bind_failure_is_io_error(store):
    with ViewerServer(store, ServerSettings(port=0)) as first:
        _, port = first.server_address
        with pytest.raises(KvIOError, match="binding viewer server"):
            ViewerServer(store, ServerSettings(port=port))


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------


class TestLiveServer:
    @pytest.fixture
    def client(self, live_server):
        with httpx.Client(base_url=live_server.url, timeout=5) as client:
            yield client

    def _post(self, client, path, body):
        return client.post(path, json=body)

    def test_health_and_headers(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.text == "ok\n"
        assert response.headers["cache-control"] == "no-store"

    def test_index_embeds_records_and_endpoints(self, client):
        self._post(client, "/api/records/upsert", {"key": "x", "value": "</script>"})
        response = client.get("/")
        assert response.headers["content-type"].startswith("text/html")
        assert '<script id="kv-data" type="application/json">' in response.text
        assert 'const liveEndpoint = "/data";' in response.text
        assert 'const apiEndpoint = "/api";' in response.text
        assert "\\u003c/script>" in response.text

    def test_record_lifecycle(self, client, store):
        assert client.get("/data").json() == []

        response = self._post(client, "/api/records/upsert", {"key": "x", "value": "1"})
        assert (response.status_code, response.text) == (200, "created 'x'\n")
        response = self._post(client, "/api/records/upsert",
                              {"key": "x", "value": "2", "tags": ["b", "a"]})
        assert response.text == "updated 'x'\n"

        (record,) = client.get("/data").json()
        assert record["key"] == "x"
        assert record["value"] == "2"
        assert record["tags"] == ["a", "b"]
        assert record["expires_at"] is None

        response = self._post(client, "/api/records/ttl/extend", {"key": "x", "ttl_minutes": 5})
        assert response.text == "extended ttl for 'x' by 5 minute(s)\n"
        assert client.get("/data").json()[0]["expires_at"] is not None

        assert store.sweep_expired() == 0
        assert len(client.get("/data").json()) == 1

        assert store.sweep_expired(now=utc_now() + timedelta(hours=2)) == 1
        assert client.get("/data").json() == []

    def test_tag_operations(self, client):
        self._post(client, "/api/records/upsert", {"key": "k1", "value": "v", "tags": ["old"]})
        self._post(client, "/api/records/upsert", {"key": "k2", "value": "v", "tags": ["old"]})

        response = self._post(client, "/api/records/tags/add", {"key": "k1", "tag": "new"})
        assert response.text == "added tag 'new' to 'k1'\n"
        response = self._post(client, "/api/records/tags/add", {"key": "k1", "tag": "new"})
        assert response.text == "tag 'new' already exists on 'k1'\n"

        response = self._post(client, "/api/records/tags/remove", {"key": "k1", "tag": "new"})
        assert response.text == "removed tag 'new' from 'k1'\n"
        response = self._post(client, "/api/records/tags/remove", {"key": "k1", "tag": "new"})
        assert response.status_code == 404

        response = self._post(client, "/api/tags/rename", {"from": "old", "to": "renamed"})
        assert response.text == "renamed tag 'old' to 'renamed' on 2 record(s)\n"
        response = self._post(client, "/api/tags/delete", {"tag": "renamed"})
        assert response.text == "deleted tag 'renamed' from 2 record(s)\n"
        response = self._post(client, "/api/tags/delete", {"tag": "renamed"})
        assert response.status_code == 404

        assert all(r["tags"] == [] for r in client.get("/data").json())

    def test_delete(self, client):
        self._post(client, "/api/records/upsert", {"key": "x", "value": "1"})
        response = self._post(client, "/api/records/delete", {"key": "x"})
        assert (response.status_code, response.text) == (200, "deleted 'x'\n")

        response = self._post(client, "/api/records/delete", {"key": "x"})
        assert (response.status_code, response.text) == (404, "key not found: x\n")

    def test_bad_requests(self, client):
        response = client.post("/api/records/upsert", content=b"{nope")
        assert response.status_code == 400
        response = client.get("/missing")
        assert (response.status_code, response.text) == (404, "not found\n")
        assert client.get("/favicon.ico").status_code == 204

    def test_sees_writes_from_other_connections(self, client, store):
        with EntryStore.connect(store.path) as other:
            other.upsert("from-cli", Entry.new("v"))
        keys = [r["key"] for r in client.get("/data").json()]
        assert keys == ["from-cli"]
