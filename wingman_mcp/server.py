"""MCP SSH Wingman server - read-only terminal observation over stdio JSON-RPC.

One request per line in, one response per line out, strictly in order.
Tools soft-fail (a normal result flagged isError) while resources and
malformed requests hard-fail with a JSON-RPC error.
"""

import logging
import math
from typing import Any, Callable, Optional, TextIO

from pydantic import ValidationError

from .backends import BackendError, TerminalBackend
from .protocol import (
    CURRENT_URI,
    INFO_URI,
    INTERNAL_ERROR,
    METHOD_NOT_FOUND,
    CallToolParams,
    Method,
    ReadResourceParams,
    RPCRequest,
    RPCResponse,
    SetWindowArguments,
    TransportError,
    decode_request,
    dump,
    encode_response,
    initialize_result,
    resource_text,
    terminal_resources,
    terminal_tools,
    text_result,
)

logger = logging.getLogger(__name__)

DEFAULT_SCROLLBACK_LINES = 100


class StartupError(Exception):
    """The terminal session could not be set up before serving."""


class RequestError(Exception):
    """Raised by a handler to answer with a JSON-RPC error."""

    def __init__(self, message: str, code: int = INTERNAL_ERROR):
        super().__init__(message)
        self.code = code


def scrollback_lines(arguments: dict[str, Any]) -> Optional[int]:
    """Line count for read_scrollback: numbers truncate toward zero, anything else means the default.

    Infinity and NaN (both valid input to json.loads) give None.
    """
    value = arguments.get("lines")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_SCROLLBACK_LINES
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


class WingmanServer:
    """Dispatches MCP requests to a terminal backend."""

    def __init__(self, backend: TerminalBackend, reader: TextIO, writer: TextIO, version: str = "dev"):
        self.backend = backend
        self.reader = reader
        self.writer = writer
        self.version = version
        self._tools: dict[str, Callable[[dict[str, Any]], Any]] = {
            "read_terminal": self._tool_read_terminal,
            "read_scrollback": self._tool_read_scrollback,
            "get_terminal_info": self._tool_get_terminal_info,
            "list_windows": self._tool_list_windows,
            "set_window": self._tool_set_window,
        }
        self._resources: dict[str, Callable[[], str]] = {
            CURRENT_URI: self._resource_current,
            INFO_URI: self._resource_info,
        }

    @property
    def terminal_type(self) -> str:
        return self.backend.kind

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """Ensure the session exists, then serve until end of input."""
        try:
            self.backend.ensure_session()
        except BackendError as e:
            raise StartupError(f"failed to setup terminal session: {e}") from e
        logger.info("serving %s session %r", self.terminal_type, self.backend.session_name)
        self.serve()

    def serve(self) -> None:
        """Run the request loop. Returns on EOF; TransportError on an undecodable line."""
        lines = iter(self.reader)
        while True:
            try:
                line = next(lines)
            except StopIteration:
                return
            except UnicodeDecodeError as e:
                raise TransportError(f"failed to decode request: {e}") from e
            if not line.strip():
                continue
            request = decode_request(line)
            response = self.handle_request(request)
            if response is not None:
                self.send(response)

    def send(self, response: RPCResponse) -> None:
        self.writer.write(encode_response(response) + "\n")
        self.writer.flush()

    # =========================================================================
    # DISPATCH
    # =========================================================================

    def handle_request(self, request: RPCRequest) -> Optional[RPCResponse]:
        response = self._dispatch(request)
        if request.is_notification:
            logger.debug("notification %s handled, no response sent", request.method)
            return None
        return response

    def _dispatch(self, request: RPCRequest) -> RPCResponse:
        method = Method.parse(request.method)
        logger.debug("request id=%r method=%s", request.id, request.method)
        try:
            if method is Method.INITIALIZE:
                result = dump(initialize_result(self.version))
            elif method is Method.TOOLS_LIST:
                result = dump(terminal_tools(self.terminal_type))
            elif method is Method.TOOLS_CALL:
                result = self.call_tool(request.params)
            elif method is Method.RESOURCES_LIST:
                result = dump(terminal_resources())
            elif method is Method.RESOURCES_READ:
                result = self.read_resource(request.params)
            else:
                return RPCResponse.failure(request.id, METHOD_NOT_FOUND, f"Method not found: {request.method}")
        except RequestError as e:
            logger.warning("%s failed: %s", request.method, e)
            return RPCResponse.failure(request.id, e.code, str(e))
        return RPCResponse.success(request.id, result)

    # =========================================================================
    # TOOLS
    # =========================================================================

    def call_tool(self, params: Any) -> dict[str, Any]:
        try:
            call = CallToolParams.model_validate(params)
        except ValidationError as e:
            raise RequestError(f"failed to decode tool request: {e}") from e
        handler = self._tools.get(call.name)
        if handler is None:
            raise RequestError(f"unknown tool: {call.name}")
        try:
            result = handler(call.args)
        except BackendError as e:
            logger.warning("tool %s failed: %s", call.name, e)
            result = text_result(f"Error: {e}", is_error=True)
        return dump(result)

    def _tool_read_terminal(self, arguments: dict[str, Any]):
        return text_result(self.backend.capture_pane())

    def _tool_read_scrollback(self, arguments: dict[str, Any]):
        lines = scrollback_lines(arguments)
        if lines is None or lines < 1:
            return text_result(f"Error: lines must be a positive finite number, got {arguments.get('lines')}", is_error=True)
        return text_result(self.backend.get_scrollback_history(lines))

    def _tool_get_terminal_info(self, arguments: dict[str, Any]):
        info = self.backend.get_pane_info()
        return text_result(
            f"Terminal Info ({self.terminal_type}):\n"
            f"- Width: {info.get('width', '')}\n"
            f"- Height: {info.get('height', '')}\n"
            f"- Current Path: {info.get('current_path', '')}\n"
            f"- Window/Pane ID: {self.backend.get_window()}"
        )

    def _tool_list_windows(self, arguments: dict[str, Any]):
        windows = self.backend.list_windows()
        lines = [f"Available windows/panes in {self.terminal_type} session:"]
        lines.extend(f"- ID: {w['id']}, Name: {w['name']}" for w in windows)
        return text_result("\n".join(lines) + "\n")

    def _tool_set_window(self, arguments: dict[str, Any]):
        try:
            window_id = SetWindowArguments.model_validate(arguments).window_id
        except ValidationError:
            return text_result("Error: window_id must be a string", is_error=True)
        self.backend.set_window(window_id)
        logger.info("switched to window/pane %r", window_id)
        return text_result(f"Switched to window/pane: {window_id}")

    # =========================================================================
    # RESOURCES
    # =========================================================================

    def read_resource(self, params: Any) -> dict[str, Any]:
        try:
            uri = ReadResourceParams.model_validate(params).uri
        except ValidationError as e:
            raise RequestError(f"failed to decode resource request: {e}") from e
        handler = self._resources.get(uri)
        if handler is None:
            raise RequestError(f"unknown resource: {uri}")
        try:
            text = handler()
        except BackendError as e:
            raise RequestError(f"failed to read {uri}: {e}") from e
        return dump(resource_text(uri, text))

    def _resource_current(self) -> str:
        return self.backend.capture_pane()

    def _resource_info(self) -> str:
        info = self.backend.get_pane_info()
        return (
            f"Terminal Information ({self.terminal_type}):\n\n"
            f"Dimensions: {info.get('width', '')}x{info.get('height', '')}\n"
            f"Current Path: {info.get('current_path', '')}\n"
            f"Window/Pane ID: {self.backend.get_window()}"
        )
