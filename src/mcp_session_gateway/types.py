"""JSON-RPC base models used on the wire by both gateway transports."""

from typing import Annotated, Any, Final, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

JSONRPC_VERSION: Final[str] = "2.0"

# Standard JSON-RPC error codes
PARSE_ERROR: Final[int] = -32700
INVALID_REQUEST: Final[int] = -32600
METHOD_NOT_FOUND: Final[int] = -32601
INVALID_PARAMS: Final[int] = -32602
INTERNAL_ERROR: Final[int] = -32603

# Implementation-defined server error, used for session rejections
CONNECTION_CLOSED: Final[int] = -32000

RequestId = Annotated[int, Field(strict=True)] | str


class JSONRPCBase(BaseModel):
    """Base class for all JSON-RPC messages."""

    model_config = ConfigDict(extra="allow")

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION


class JSONRPCRequest(JSONRPCBase):
    """A request that expects a response."""

    id: RequestId
    method: str
    params: dict[str, Any] | None = None


class JSONRPCNotification(JSONRPCBase):
    """A notification which does not expect a response."""

    method: str
    params: dict[str, Any] | None = None


class ErrorData(BaseModel):
    """Error information in a JSON-RPC error response."""

    model_config = ConfigDict(extra="allow")

    code: int
    message: str
    data: Any | None = None


class JSONRPCResultResponse(JSONRPCBase):
    """A successful (non-error) response to a request."""

    id: RequestId
    result: dict[str, Any]


class JSONRPCErrorResponse(JSONRPCBase):
    """A response to a request that indicates an error occurred."""

    id: RequestId | None = None
    error: ErrorData


JSONRPCResponse = JSONRPCResultResponse | JSONRPCErrorResponse
JSONRPCMessage = JSONRPCRequest | JSONRPCNotification | JSONRPCResultResponse | JSONRPCErrorResponse

JSONRPCMessageAdapter: TypeAdapter[JSONRPCMessage] = TypeAdapter(JSONRPCMessage)
JSONRPCBatchAdapter: TypeAdapter[list[JSONRPCMessage]] = TypeAdapter(list[JSONRPCMessage])


class Implementation(BaseModel):
    """Name and version of an MCP implementation."""

    model_config = ConfigDict(extra="allow")

    name: str
    version: str


class InitializeRequestParams(BaseModel):
    """Parameters for the initialize request."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    protocol_version: Annotated[str, Field(alias="protocolVersion")]
    capabilities: dict[str, Any]
    client_info: Annotated[Implementation, Field(alias="clientInfo")]


def is_initialize_request(value: Any) -> bool:
    """Whether ``value`` is a single, well-formed ``initialize`` request.

    Accepts either an already validated message or raw decoded JSON.
    """
    if isinstance(value, dict):
        try:
            value = JSONRPCMessageAdapter.validate_python(value)
        except ValidationError:
            return False

    if not isinstance(value, JSONRPCRequest) or value.method != "initialize":
        return False

    try:
        InitializeRequestParams.model_validate(value.params or {})
    except ValidationError:
        return False
    return True


def dump_message(message: JSONRPCMessage) -> dict[str, Any]:
    """Serialize a message the way it goes on the wire."""
    return message.model_dump(by_alias=True, exclude_none=True, mode="json")


def error_body(code: int, message: str, request_id: RequestId | None = None) -> dict[str, Any]:
    """Build a JSON-RPC error response body.

    The ``id`` member is always present, ``null`` when the error cannot be
    correlated with a request.
    """
    body = dump_message(JSONRPCErrorResponse(id=request_id, error=ErrorData(code=code, message=message)))
    body["id"] = request_id
    return body
