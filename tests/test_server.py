"""Dispatcher tests against an in-memory backend."""

import io
import json

import pytest

from tests.conftest import FakeBackend
from wingman_mcp.backends import BackendUnavailable
from wingman_mcp.protocol import PROTOCOL_VERSION, SERVER_NAME, TransportError, decode_request
from wingman_mcp.server import StartupError, WingmanServer, scrollback_lines


def call(server, method, params=None, request_id=1):
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    response = server.handle_request(decode_request(json.dumps(message)))
    return response.to_wire()


def call_tool(server, name, arguments=None, request_id=1):
    params = {"name": name}
    if arguments is not None:
        params["arguments"] = arguments
    return call(server, "tools/call", params, request_id)


def text_of(message):
    return message["result"]["content"][0]["text"]


class TestInitialize:
    @pytest.mark.parametrize("request_id", [1, "init-1"])
    def test_static_result_echoes_id(self, server, request_id):
        message = call(server, "initialize", {"protocolVersion": "whatever", "capabilities": {}}, request_id)
        assert message["id"] == request_id
        result = message["result"]
        assert result["protocolVersion"] == PROTOCOL_VERSION
        assert result["serverInfo"] == {"name": SERVER_NAME, "version": "1.2.3"}
        assert result["capabilities"]["tools"]["listChanged"] is False
        assert result["capabilities"]["resources"]["subscribe"] is False


class TestDispatch:
    def test_tools_list(self, server):
        tools = call(server, "tools/list")["result"]["tools"]
        names = {t["name"] for t in tools}
        assert {"read_terminal", "read_scrollback", "get_terminal_info"} <= names

    def test_resources_list(self, server):
        resources = call(server, "resources/list")["result"]["resources"]
        assert resources
        assert all(r["uri"].startswith("terminal://") for r in resources)

    def test_unknown_method(self, server):
        message = call(server, "prompts/list", request_id=9)
        assert message["id"] == 9
        assert message["error"]["code"] == -32601
        assert "prompts/list" in message["error"]["message"]
        assert "result" not in message

    def test_notification_gets_no_response(self, server):
        request = decode_request('{"jsonrpc":"2.0","method":"notifications/initialized"}')
        assert server.handle_request(request) is None


class TestTools:
    def test_read_terminal(self, server, backend):
        message = call_tool(server, "read_terminal")
        assert text_of(message) == backend.content
        assert message["result"]["isError"] is False

    def test_read_terminal_backend_error_is_soft(self, server, backend):
        backend.fail_capture = True
        message = call_tool(server, "read_terminal")
        assert "error" not in message
        assert message["result"]["isError"] is True
        assert "failed to capture pane" in text_of(message)

    def test_read_scrollback_default(self, server, backend):
        assert text_of(call_tool(server, "read_scrollback")) == backend.history
        assert backend.scrollback_requests == [100]

    def test_read_scrollback_int_and_float_agree(self, server, backend):
        call_tool(server, "read_scrollback", {"lines": 100})
        call_tool(server, "read_scrollback", {"lines": 100.0})
        call_tool(server, "read_scrollback", {"lines": 42.9})
        assert backend.scrollback_requests == [100, 100, 42]

    def test_read_scrollback_rejects_non_positive(self, server, backend):
        message = call_tool(server, "read_scrollback", {"lines": 0})
        assert message["result"]["isError"] is True
        assert backend.scrollback_requests == []

    @pytest.mark.parametrize("raw", ["1e400", "-1e400", "NaN", "Infinity"])
    def test_read_scrollback_non_finite_is_tool_error(self, server, backend, raw):
        line = '{"jsonrpc":"2.0","id":1,"method":"tools/call",' \
            '"params":{"name":"read_scrollback","arguments":{"lines":' + raw + '}}}'
        message = server.handle_request(decode_request(line)).to_wire()
        assert message["result"]["isError"] is True
        assert "positive finite number" in text_of(message)
        assert backend.scrollback_requests == []

    def test_read_scrollback_backend_error_is_soft(self, server, backend):
        backend.fail_capture = True
        message = call_tool(server, "read_scrollback", {"lines": 5})
        assert message["result"]["isError"] is True

    def test_get_terminal_info(self, server):
        text = text_of(call_tool(server, "get_terminal_info"))
        assert text.startswith("Terminal Info (tmux):")
        assert "- Width: 120" in text
        assert "- Height: 40" in text
        assert "- Current Path: /home/dev" in text

    def test_list_windows(self, server):
        text = text_of(call_tool(server, "list_windows"))
        assert "Available windows/panes in tmux session:" in text
        assert "- ID: 0, Name: bash" in text
        assert "- ID: 1, Name: vim" in text

    def test_set_window_then_info(self, server, backend):
        line = '{"jsonrpc":"2.0","id":1,"method":"tools/call","params":{"name":"set_window","arguments":{"window_id":"2"}}}'
        message = server.handle_request(decode_request(line)).to_wire()
        assert message["id"] == 1
        assert message["result"]["isError"] is False
        assert "2" in text_of(message)
        assert backend.get_window() == "2"
        assert "Window/Pane ID: 2" in text_of(call_tool(server, "get_terminal_info", request_id=2))

    @pytest.mark.parametrize("arguments", [{}, {"window_id": 2}, {"window_id": None}])
    def test_set_window_requires_string(self, server, backend, arguments):
        message = call_tool(server, "set_window", arguments)
        assert message["result"]["isError"] is True
        assert "window_id must be a string" in text_of(message)
        assert backend.get_window() == ""

    def test_unknown_tool(self, server):
        message = call_tool(server, "unknown_tool")
        assert message["error"]["code"] == -32603
        assert "unknown tool" in message["error"]["message"]

    def test_invalid_params(self, server):
        message = call(server, "tools/call", "invalid params")
        assert message["error"]["code"] == -32603
        assert "failed to decode tool request" in message["error"]["message"]


class TestResources:
    def test_read_current(self, server, backend):
        message = call(server, "resources/read", {"uri": "terminal://current"})
        contents = message["result"]["contents"]
        assert contents[0]["text"] == backend.content
        assert contents[0]["mimeType"] == "text/plain"

    def test_read_info(self, server):
        text = call(server, "resources/read", {"uri": "terminal://info"})["result"]["contents"][0]["text"]
        assert text.startswith("Terminal Information (tmux):")
        assert "Dimensions: 120x40" in text

    def test_backend_error_is_hard(self, server, backend):
        backend.fail_capture = True
        message = call(server, "resources/read", {"uri": "terminal://current"})
        assert message["error"]["code"] == -32603
        assert "failed to capture pane" in message["error"]["message"]

    def test_unknown_resource(self, server):
        message = call(server, "resources/read", {"uri": "terminal://nope"})
        assert message["error"]["code"] == -32603
        assert "unknown resource" in message["error"]["message"]
        assert "terminal://nope" in message["error"]["message"]

    def test_invalid_params(self, server):
        message = call(server, "resources/read", "invalid params")
        assert message["error"]["code"] == -32603


class TestScrollbackLines:
    @pytest.mark.parametrize("value, expected", [
        (None, 100), ("50", 100), (True, 100), (7, 7), (7.0, 7), (7.99, 7), (-3.5, -3),
    ])
    def test_values(self, value, expected):
        assert scrollback_lines({"lines": value}) == expected

    @pytest.mark.parametrize("value", [float("inf"), float("-inf"), float("nan")])
    def test_non_finite_values(self, value):
        assert scrollback_lines({"lines": value}) is None


class TestLoop:
    def make_server(self, lines, backend=None):
        reader = io.StringIO("".join(line + "\n" for line in lines))
        writer = io.StringIO()
        return WingmanServer(backend or FakeBackend(), reader, writer), writer

    def responses(self, writer):
        return [json.loads(line) for line in writer.getvalue().splitlines()]

    def test_eof_ends_cleanly(self):
        server, writer = self.make_server([])
        server.start()
        assert writer.getvalue() == ""

    def test_one_response_per_request_in_order(self):
        server, writer = self.make_server([
            '{"jsonrpc":"2.0","id":1,"method":"initialize","params":{}}',
            '{"jsonrpc":"2.0","method":"notifications/initialized"}',
            "",
            '{"jsonrpc":"2.0","id":"two","method":"tools/list"}',
            '{"jsonrpc":"2.0","id":3,"method":"nope"}',
        ])
        server.start()
        responses = self.responses(writer)
        assert [r["id"] for r in responses] == [1, "two", 3]
        assert responses[2]["error"]["code"] == -32601

    def test_invalid_params_does_not_stop_loop(self):
        server, writer = self.make_server([
            '{"jsonrpc":"2.0","id":1,"method":"tools/call","params":"invalid params"}',
            '{"jsonrpc":"2.0","id":2,"method":"tools/list"}',
        ])
        server.start()
        responses = self.responses(writer)
        assert "error" in responses[0]
        assert "result" in responses[1]

    def test_non_finite_lines_do_not_stop_loop(self):
        server, writer = self.make_server([
            '{"jsonrpc":"2.0","id":1,"method":"tools/call",'
            '"params":{"name":"read_scrollback","arguments":{"lines":1e400}}}',
            '{"jsonrpc":"2.0","id":2,"method":"tools/list"}',
        ])
        server.start()
        responses = self.responses(writer)
        assert [r["id"] for r in responses] == [1, 2]
        assert responses[0]["result"]["isError"] is True

    def test_invalid_utf8_is_a_transport_error(self):
        raw = b'\xff\xfe\xfa\n'
        reader = io.TextIOWrapper(io.BytesIO(raw), encoding="utf-8")
        writer = io.StringIO()
        server = WingmanServer(FakeBackend(), reader, writer)
        with pytest.raises(TransportError, match="failed to decode request"):
            server.start()
        assert writer.getvalue() == ""

    def test_malformed_json_is_fatal(self):
        server, writer = self.make_server([
            '{"jsonrpc":"2.0","id":1,"method":"tools/list"}',
            "{this is not json",
            '{"jsonrpc":"2.0","id":2,"method":"tools/list"}',
        ])
        with pytest.raises(TransportError):
            server.start()
        assert [r["id"] for r in self.responses(writer)] == [1]

    def test_ensure_session_runs_before_serving(self):
        backend = FakeBackend(session_name="fresh")
        server, _ = self.make_server([], backend)
        server.start()
        assert backend.ensure_calls == 1
        assert backend.session_exists()

    def test_startup_failure(self):
        backend = FakeBackend()

        def unavailable():
            raise BackendUnavailable("tmux is not installed or not on PATH")

        backend.ensure_session = unavailable
        server, _ = self.make_server(['{"jsonrpc":"2.0","id":1,"method":"tools/list"}'], backend)
        with pytest.raises(StartupError, match="failed to setup terminal session"):
            server.start()
