"""JSON-RPC 2.0 envelope and MCP payload types for the stdio transport.

MCP result payloads reuse the pydantic models shipped with the ``mcp`` SDK.
The envelope is modelled here because requests on this transport may carry
any params value, and the dispatcher must answer malformed params itself.
"""

import json
from enum import Enum
from typing import Any, Optional, Union

from mcp.types import (
    CallToolResult,
    Implementation,
    InitializeResult,
    ListResourcesResult,
    ListToolsResult,
    ReadResourceResult,
    Resource,
    ResourcesCapability,
    ServerCapabilities,
    TextContent,
    TextResourceContents,
    Tool,
    ToolsCapability,
)
from pydantic import BaseModel, Field, StrictStr, ValidationError, model_validator

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "mcp-ssh-wingman"

METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

RequestId = Union[int, float, str, None]


class TransportError(Exception):
    """A line on the input stream could not be decoded into a request."""


class Method(str, Enum):
    """The fixed set of methods this server answers."""

    INITIALIZE = "initialize"
    TOOLS_LIST = "tools/list"
    TOOLS_CALL = "tools/call"
    RESOURCES_LIST = "resources/list"
    RESOURCES_READ = "resources/read"

    @classmethod
    def parse(cls, name: str) -> Optional["Method"]:
        """Exact, case-sensitive lookup. Unknown names give None."""
        try:
            return cls(name)
        except ValueError:
            return None


# =============================================================================
# ENVELOPE
# =============================================================================

class RPCRequest(BaseModel):
    jsonrpc: str = JSONRPC_VERSION
    id: RequestId = None
    method: StrictStr = ""
    params: Any = None

    @property
    def is_notification(self) -> bool:
        """True when the request has no id member at all (an explicit null still gets a reply)."""
        return "id" not in self.model_fields_set


class RPCError(BaseModel):
    code: int
    message: str
    data: Any = None

    def to_wire(self) -> dict[str, Any]:
        err: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            err["data"] = self.data
        return err


class RPCResponse(BaseModel):
    jsonrpc: str = JSONRPC_VERSION
    id: RequestId = None
    result: Any = None
    error: Optional[RPCError] = None

    @model_validator(mode="after")
    def _result_xor_error(self) -> "RPCResponse":
        if (self.result is None) == (self.error is None):
            raise ValueError("a response carries exactly one of result or error")
        return self

    @classmethod
    def success(cls, request_id: RequestId, result: Any) -> "RPCResponse":
        return cls(id=request_id, result=result)

    @classmethod
    def failure(cls, request_id: RequestId, code: int, message: str, data: Any = None) -> "RPCResponse":
        return cls(id=request_id, error=RPCError(code=code, message=message, data=data))

    def to_wire(self) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            message["error"] = self.error.to_wire()
        else:
            message["result"] = self.result
        return message


def decode_request(line: str) -> RPCRequest:
    """Decode one line of the input stream into a request."""
    try:
        raw = json.loads(line)
    except json.JSONDecodeError as e:
        raise TransportError(f"failed to decode request: {e}") from e
    if not isinstance(raw, dict):
        raise TransportError(f"failed to decode request: expected a JSON object, got {type(raw).__name__}")
    try:
        return RPCRequest.model_validate(raw)
    except ValidationError as e:
        raise TransportError(f"failed to decode request: {e}") from e


def encode_response(response: RPCResponse) -> str:
    return json.dumps(response.to_wire(), ensure_ascii=False)


# =============================================================================
# PARAMS
# =============================================================================

class CallToolParams(BaseModel):
    name: StrictStr
    arguments: Optional[dict[str, Any]] = Field(default=None)

    @property
    def args(self) -> dict[str, Any]:
        return self.arguments or {}


class ReadResourceParams(BaseModel):
    uri: StrictStr


class SetWindowArguments(BaseModel):
    window_id: StrictStr


# =============================================================================
# MCP PAYLOADS
# =============================================================================

def dump(model: BaseModel) -> dict[str, Any]:
    """Serialise an MCP model the way it goes on the wire."""
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def text_result(text: str, is_error: bool = False) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=is_error)


def initialize_result(version: str) -> InitializeResult:
    return InitializeResult(
        protocolVersion=PROTOCOL_VERSION,
        capabilities=ServerCapabilities(
            tools=ToolsCapability(listChanged=False),
            resources=ResourcesCapability(subscribe=False, listChanged=False),
        ),
        serverInfo=Implementation(name=SERVER_NAME, version=version),
    )


def _schema(properties: Optional[dict[str, Any]] = None, required: Optional[list[str]] = None) -> dict[str, Any]:
    return {"type": "object", "properties": properties or {}, "required": required or []}


def terminal_tools(terminal_type: str) -> ListToolsResult:
    """Tool descriptors; descriptions name the active backend."""
    return ListToolsResult(tools=[
        Tool(
            name="read_terminal",
            description=f"Read the current terminal content from the {terminal_type} session",
            inputSchema=_schema(),
        ),
        Tool(
            name="read_scrollback",
            description=f"Read scrollback history from the {terminal_type} session",
            inputSchema=_schema({
                "lines": {
                    "type": "number",
                    "description": "Number of lines of scrollback history to retrieve (default: 100)",
                },
            }),
        ),
        Tool(
            name="get_terminal_info",
            description=f"Get information about the {terminal_type} terminal (dimensions, current path, etc.)",
            inputSchema=_schema(),
        ),
        Tool(
            name="list_windows",
            description=f"List all windows/panes in the {terminal_type} session",
            inputSchema=_schema(),
        ),
        Tool(
            name="set_window",
            description=f"Set the active window/pane in the {terminal_type} session",
            inputSchema=_schema(
                {"window_id": {"type": "string", "description": "The window/pane ID to switch to"}},
                required=["window_id"],
            ),
        ),
    ])


CURRENT_URI = "terminal://current"
INFO_URI = "terminal://info"


def terminal_resources() -> ListResourcesResult:
    return ListResourcesResult(resources=[
        Resource(
            uri=CURRENT_URI,
            name="Current Terminal",
            description="Current terminal content",
            mimeType="text/plain",
        ),
        Resource(
            uri=INFO_URI,
            name="Terminal Information",
            description="Terminal dimensions and metadata",
            mimeType="text/plain",
        ),
    ])


def resource_text(uri: str, text: str) -> ReadResourceResult:
    return ReadResourceResult(contents=[TextResourceContents(uri=uri, mimeType="text/plain", text=text)])
