import random
from typing import Any

# JSON-RPC 2.0 error-codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_METHOD_PARAMS = -32602  # invalid number/type of parameters
INTERNAL_ERROR = -32603

# human-readable messages
ERROR_MESSAGE = {
    PARSE_ERROR: "Parse error.",
    INVALID_REQUEST: "Invalid Request.",
    METHOD_NOT_FOUND: "Method not found.",
    INVALID_METHOD_PARAMS: "Invalid parameters.",
    INTERNAL_ERROR: "Internal error.",
}


class RPCInvalidResponse(ValueError):
    """Invalid rpc response package."""


def build_json_rpc_request(
    method: str, params: list | None = None, request_id: int | None = None
) -> dict[str, Any]:
    if request_id is None:
        request_id = random.randint(1, 2**31 - 1)
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": method,
        "params": params if params is not None else [],
    }


def validate_json_rpc_response(data: Any) -> tuple[Any, dict | None]:
    """
    Check the shape of a decoded JSON-RPC 2.0 response.

    :returns: the (result, error) pair, exactly one of them is meaningful.
        A null result is returned as None.
    :raises RPCInvalidResponse: when the package is not a response object.
    """
    if not isinstance(data, dict):
        raise RPCInvalidResponse("No valid RPC-package.")
    if "jsonrpc" in data and data["jsonrpc"] != "2.0":
        raise RPCInvalidResponse("Invalid jsonrpc version.")
    if "error" in data and data["error"] is not None:
        error = data["error"]
        if not isinstance(error, dict):
            raise RPCInvalidResponse(
                "Invalid Response, 'error' must be an object.")
        if "code" in error and not isinstance(error["code"], int):
            raise RPCInvalidResponse(
                "Invalid Response, 'error.code' must be an integer.")
        return None, error
    if "result" not in data:
        raise RPCInvalidResponse("Missing result field.")
    return data["result"], None


def get_error_message(error: dict) -> str:
    code = error.get("code")
    if "message" in error and isinstance(error["message"], str):
        return error["message"]
    return ERROR_MESSAGE.get(code, "Unknown error")
