"""Clients bound to a running router.

Both clients treat payloads as plain JSON; product-specific schemas are the
tests' business.

RouterClient endpoints:
- POST   /api/v1/tools/add                     register a tool
- GET    /api/v1/tools/list                    list tools
- POST   /api/v1/tools?name={name}             get tool by name
- PUT    /api/v1/tools/remove?tool={name}      remove a tool
- DELETE /api/v1/tools?labelExpression={expr}  remove tools by label
- GET    /api/v1/capabilities/list             list registered capabilities

ProtocolClient speaks JSON-RPC over the router's streamable HTTP endpoint
(/mcp/), keeping the session id the server assigns on initialize.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen


logger = logging.getLogger(__name__)

API_BASE_PATH = "/api/v1"
TOOLS_PATH = API_BASE_PATH + "/tools"
CAPABILITIES_PATH = API_BASE_PATH + "/capabilities"
MCP_PATH = "/mcp/"
TEST_LABELS = {"test": "true"}
DEFAULT_REQUEST_TIMEOUT = 30
PROTOCOL_VERSION = "2025-03-26"
SESSION_HEADER = "Mcp-Session-Id"


class RouterClientError(RuntimeError):
    """Raised when a router API call fails."""


class ToolExistsError(RouterClientError):
    pass


class ToolNotFoundError(RouterClientError):
    pass


class ProtocolClientError(RuntimeError):
    """Raised when a protocol session cannot be established or used."""


def _decode(body: bytes) -> Any:
    text = body.decode("utf-8", errors="replace")
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


def _unwrap(payload: Any) -> Any:
    """Strip the router's {"data": ...} response envelope if present."""
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


class RouterClient:
    """REST client for router management operations."""

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout

    def _request(
        self,
        method: str,
        path: str,
        body: Optional[Mapping[str, Any]] = None,
        query: Optional[Mapping[str, str]] = None,
    ) -> Tuple[int, Any]:
        url = self.base_url + path
        if query:
            url = f"{url}?{urlencode(query)}"

        headers = {"Accept": "application/json"}
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"

        request = Request(url, data=data, headers=headers, method=method)
        try:
            with urlopen(request, timeout=self.timeout) as response:
                status, payload = response.status, _decode(response.read())
        except HTTPError as e:
            status, payload = e.code, _decode(e.read())
        except (URLError, OSError) as e:
            raise RouterClientError(f"{method} {path} failed: {e}") from e

        logger.debug("%s %s -> %d", method, path, status)
        return status, payload

    def register_tool(
        self,
        name: str,
        uri: str,
        description: str = "",
        tool_type: str = "http",
        input_schema: Optional[Dict[str, Any]] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Register a tool.

        Tools are labelled test=true unless other labels are given, so
        clear_all_tools() can remove them in one call.

        Raises:
            ToolExistsError: If a tool with the same name exists.
        """
        body = {
            "name": name,
            "description": description,
            "type": tool_type,
            "uri": uri,
            "inputSchema": input_schema or {"type": "object", "properties": {}},
            "labels": labels if labels is not None else dict(TEST_LABELS),
        }
        status, payload = self._request("POST", TOOLS_PATH + "/add", body=body)
        if status in (200, 201):
            return _unwrap(payload) or {}
        if status == 409:
            raise ToolExistsError(f"Tool '{name}' already exists")
        raise RouterClientError(f"Failed to register tool: {status} - {payload}")

    def list_tools(self) -> List[Dict[str, Any]]:
        status, payload = self._request("GET", TOOLS_PATH + "/list")
        if status != 200:
            raise RouterClientError(f"Failed to list tools: {status}")
        data = _unwrap(payload)
        return data if isinstance(data, list) else []

    def get_tool(self, name: str) -> Dict[str, Any]:
        """Get a tool by name.

        Raises:
            ToolNotFoundError: If the tool does not exist.
        """
        status, payload = self._request("POST", TOOLS_PATH, query={"name": name})
        if status == 200:
            data = _unwrap(payload)
            if data is None:
                raise ToolNotFoundError(f"Tool '{name}' not found")
            return data
        if status == 404 or "not found" in json.dumps(payload):
            raise ToolNotFoundError(f"Tool '{name}' not found")
        raise RouterClientError(f"Failed to get tool: {status}")

    def tool_exists(self, name: str) -> bool:
        try:
            self.get_tool(name)
            return True
        except ToolNotFoundError:
            return False

    def remove_tool(self, name: str) -> bool:
        """Remove a tool.

        Returns:
            True if removed, False if it did not exist.
        """
        status, _ = self._request("PUT", TOOLS_PATH + "/remove", query={"tool": name})
        if status in (200, 204):
            logger.debug("Tool removed: %s", name)
            return True
        if status == 404:
            return False
        raise RouterClientError(f"Failed to remove tool: {status}")

    def clear_all_tools(self) -> None:
        """Remove every registered tool.

        Test-labelled tools go in one call; anything left over is removed
        one by one.
        """
        self._request("DELETE", TOOLS_PATH, query={"labelExpression": "test=true"})
        for tool in self.list_tools():
            name = tool.get("name") if isinstance(tool, dict) else None
            if not name:
                continue
            try:
                self.remove_tool(name)
            except RouterClientError as e:
                logger.warning("Failed to remove tool %s: %s", name, e)
        logger.debug("All tools cleared")

    def list_capabilities(self) -> List[Dict[str, Any]]:
        status, payload = self._request("GET", CAPABILITIES_PATH + "/list")
        if status != 200:
            raise RouterClientError(f"Failed to list capabilities: {status}")
        data = _unwrap(payload)
        return data if isinstance(data, list) else []


def _parse_rpc_body(content_type: str, body: bytes) -> Any:
    """Decode a JSON-RPC response sent as JSON or as an SSE stream."""
    if "text/event-stream" in content_type:
        message = None
        for line in body.decode("utf-8", errors="replace").splitlines():
            if line.startswith("data:"):
                try:
                    message = json.loads(line[len("data:"):].strip())
                except ValueError as e:
                    raise ProtocolClientError(f"Malformed event-stream data: {line!r}") from e
        return message
    return _decode(body)


class ProtocolClient:
    """Session-oriented JSON-RPC client for the router's protocol endpoint."""

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self.session_id: Optional[str] = None
        self._next_id = 1

    @property
    def endpoint(self) -> str:
        return self.base_url + MCP_PATH

    @property
    def connected(self) -> bool:
        return self.session_id is not None

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    def _post(self, message: Dict[str, Any]) -> Tuple[Any, Optional[str]]:
        request = Request(
            self.endpoint,
            data=json.dumps(message).encode("utf-8"),
            headers=self._headers(),
            method="POST",
        )
        try:
            with urlopen(request, timeout=self.timeout) as response:
                session_id = response.headers.get(SESSION_HEADER)
                payload = _parse_rpc_body(response.headers.get("Content-Type", ""), response.read())
        except HTTPError as e:
            raise ProtocolClientError(f"{message.get('method')} failed: {e.code}") from e
        except (URLError, OSError) as e:
            raise ProtocolClientError(f"{message.get('method')} failed: {e}") from e
        return payload, session_id

    def connect(self) -> Any:
        """Open a session (initialize + initialized notification)."""
        logger.debug("Connecting protocol client to %s", self.endpoint)
        result = self.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": "itharness", "version": "0.1.0"},
        })
        if self.session_id is None:
            raise ProtocolClientError("Server did not assign a session id")
        self._post({"jsonrpc": "2.0", "method": "notifications/initialized"})
        logger.debug("Protocol client connected, session: %s", self.session_id)
        return result

    def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Send a JSON-RPC request and return its result.

        Raises:
            ProtocolClientError: On transport failure or a JSON-RPC error.
        """
        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": self._next_id, "method": method}
        if params is not None:
            message["params"] = params
        self._next_id += 1

        payload, session_id = self._post(message)
        if session_id and self.session_id is None:
            self.session_id = session_id

        if not isinstance(payload, dict):
            raise ProtocolClientError(f"{method}: unexpected response {payload!r}")
        if payload.get("error"):
            raise ProtocolClientError(f"{method}: {payload['error']}")
        return payload.get("result")

    def list_tools(self) -> Any:
        return self.request("tools/list")

    def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("tools/call", {"name": name, "arguments": arguments or {}})

    def disconnect(self) -> None:
        """Terminate the session. A server that refuses DELETE is tolerated."""
        if self.session_id is None:
            return
        logger.debug("Disconnecting protocol client")
        request = Request(self.endpoint, headers=self._headers(), method="DELETE")
        try:
            with urlopen(request, timeout=self.timeout):
                pass
        except HTTPError as e:
            if e.code not in (404, 405):
                raise ProtocolClientError(f"Disconnect failed: {e.code}") from e
        except (URLError, OSError) as e:
            raise ProtocolClientError(f"Disconnect failed: {e}") from e
        finally:
            self.session_id = None
