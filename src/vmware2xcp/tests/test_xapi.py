"""Tests for the XAPI disk content handlers."""

import io
from urllib.parse import parse_qs, urlparse

import pytest
import requests
from requests.adapters import BaseAdapter

from vmware2xcp.converter.disk import SizedStream


class RecordingAdapter(BaseAdapter):
    """Answers every request locally and keeps what was sent."""

    def __init__(self, body=b"", headers=None):
        super().__init__()
        self.body = body
        self.headers = headers or {}
        self.requests = []
        self.bodies = []

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        self.requests.append(request)
        if request.body is None or isinstance(request.body, bytes):
            self.bodies.append(request.body)
        else:
            self.bodies.append(b"".join(request.body))
        response = requests.Response()
        response.status_code = 200
        response.headers.update(self.headers)
        response.raw = io.BytesIO(self.body)
        response.request = request
        response.url = request.url
        return response

    def close(self):
        pass


@pytest.fixture
def client():
    from vmware2xcp.xapi.client import XapiClient
    xapi = XapiClient("https://xcp-master.lan", "root", "secret")
    xapi._session_id = "OpaqueRef:session"
    return xapi


def _mount(client, adapter):
    client.session.mount("https://", adapter)
    return adapter


class TestImportContent:
    def test_length_announced_not_chunked(self, client):
        adapter = _mount(client, RecordingAdapter())
        stream = SizedStream(iter([b"abc", b"defg"]), 7)

        assert client.import_content("OpaqueRef:vdi-1", stream, "raw") == 7

        request, = adapter.requests
        assert request.method == "PUT"
        assert request.headers["Content-Length"] == "7"
        assert "Transfer-Encoding" not in request.headers
        assert adapter.bodies == [b"abcdefg"]
        query = parse_qs(urlparse(request.url).query)
        assert query == {"session_id": ["OpaqueRef:session"], "vdi": ["OpaqueRef:vdi-1"], "format": ["raw"]}

    def test_short_stream_is_an_error(self, client):
        from vmware2xcp.errors import XapiError
        _mount(client, RecordingAdapter())
        with pytest.raises(XapiError, match="announced 5"):
            client.import_content("OpaqueRef:vdi-1", SizedStream(iter([b"abc"]), 5), "vhd")


class TestExportContent:
    def test_length_from_response(self, client):
        adapter = _mount(client, RecordingAdapter(b"abcdef", {"Content-Length": "6"}))

        stream = client.export_content("OpaqueRef:vdi-1", base="OpaqueRef:vdi-0")

        assert len(stream) == 6
        assert b"".join(stream) == b"abcdef"
        query = parse_qs(urlparse(adapter.requests[0].url).query)
        assert query["base"] == ["OpaqueRef:vdi-0"]
        assert query["format"] == ["vhd"]

    def test_no_length_spooled(self, client):
        _mount(client, RecordingAdapter(b"x" * 3000))

        stream = client.export_content("OpaqueRef:vdi-1")

        assert len(stream) == 3000
        assert b"".join(stream) == b"x" * 3000

    def test_export_length_forwarded_to_import(self, client):
        adapter = _mount(client, RecordingAdapter(b"delta!", {"Content-Length": "6"}))

        stream = client.export_content("OpaqueRef:vdi-1", base="OpaqueRef:vdi-0")
        client.import_content("OpaqueRef:vdi-2", stream, "vhd")

        put = adapter.requests[-1]
        assert put.headers["Content-Length"] == "6"
        assert "Transfer-Encoding" not in put.headers
        assert adapter.bodies[-1] == b"delta!"
