"""HTTP request and outbound webhook tasks.

Both use httpx. Non-2xx responses raise HttpStatusError so the retry
coordinator can tell a retryable 503 from a final 404.
"""

import base64
import ipaddress
import json
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx
import structlog

from core.exceptions import HttpStatusError, InvalidConfiguration
from core.webhook_signing import sign_webhook_payload
from tasks.base_task import BaseTask, TaskResult

logger = structlog.get_logger(__name__)

FORBIDDEN_PORTS = (5432, 6379)  # postgres, redis


def validate_url(url: Any, allow_private: bool = False) -> str:
    """Reject malformed or unsafe target URLs.

    Raises:
        InvalidConfiguration: If the URL is missing, malformed or unsafe
    """
    if not url or not isinstance(url, str):
        raise InvalidConfiguration("Missing required config: url")
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ("http", "https"):
        raise InvalidConfiguration(f"Unsupported URL scheme in '{url}'. Only HTTP and HTTPS allowed.")
    hostname = parsed.hostname
    if not hostname:
        raise InvalidConfiguration(f"URL must have a valid hostname: '{url}'")

    if not allow_private:
        if hostname.lower() == "localhost":
            raise InvalidConfiguration("Connections to localhost are not allowed")
        try:
            ip = ipaddress.ip_address(hostname)
        except ValueError:
            ip = None  # a domain name
        if ip is not None and (ip.is_private or ip.is_loopback or ip.is_reserved):
            raise InvalidConfiguration(f"Connections to private IP {hostname} are not allowed")
        try:
            port = parsed.port
        except ValueError:
            raise InvalidConfiguration(f"Invalid port in URL '{url}'")
        if port in FORBIDDEN_PORTS:
            raise InvalidConfiguration(f"Connections to internal port {port} are not allowed")
    return url


def _response_data(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class HttpRequestTask(BaseTask):
    """Execute HTTP requests to external services.

    Config:
        url: Target URL (required)
        method: GET, POST, PUT, PATCH, DELETE (default: GET)
        headers: Dict of HTTP headers
        params: URL query parameters
        body: Request body (for POST/PUT/PATCH)
        body_type: "json" | "form" | "text" (default: json)
        auth: {"type": "bearer|basic|api_key", "token|username|key": "..."}
        timeout: Request timeout in seconds
    """

    task_type = "http_request"
    display_name = "HTTP Request"
    description = "Make HTTP requests to APIs and web services"

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
        allow_private: bool = False,
    ):
        self.transport = transport
        self.timeout = timeout
        self.allow_private = allow_private

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=timeout, follow_redirects=True)

    async def execute(self, config: Dict[str, Any], context=None) -> TaskResult:
        url = validate_url(config.get("url"), self.allow_private)
        method = str(config.get("method", "GET")).upper()
        if method not in ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"):
            raise InvalidConfiguration(f"Unsupported HTTP method: {method}")

        headers = dict(config.get("headers") or {})
        self._apply_auth(headers, config.get("auth") or {})

        kwargs: Dict[str, Any] = {"headers": headers, "params": config.get("params") or {}}
        body = config.get("body")
        if body is not None and method in ("POST", "PUT", "PATCH"):
            body_type = config.get("body_type", "json")
            if body_type == "json":
                kwargs["json"] = json.loads(body) if isinstance(body, str) else body
            elif body_type == "form":
                kwargs["data"] = body
            else:
                kwargs["content"] = str(body)

        async with self._client(float(config.get("timeout", self.timeout))) as client:
            response = await client.request(method, url, **kwargs)

        if not response.is_success:
            raise HttpStatusError(response.status_code, response.reason_phrase)

        return TaskResult(
            output={
                "status_code": response.status_code,
                "headers": dict(response.headers),
                "data": _response_data(response),
                "url": str(response.url),
            }
        )

    @staticmethod
    def _apply_auth(headers: Dict[str, str], auth: Dict[str, Any]) -> None:
        auth_type = auth.get("type")
        if not auth_type:
            return
        try:
            if auth_type == "bearer":
                headers["Authorization"] = f"Bearer {auth['token']}"
            elif auth_type == "basic":
                creds = base64.b64encode(f"{auth['username']}:{auth['password']}".encode()).decode()
                headers["Authorization"] = f"Basic {creds}"
            elif auth_type == "api_key":
                headers[auth.get("header", "X-API-Key")] = auth["key"]
            else:
                raise InvalidConfiguration(f"Unknown auth type: {auth_type}")
        except KeyError as e:
            raise InvalidConfiguration(f"Auth config '{auth_type}' is missing {e}")

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["url"],
            "properties": {
                "url": {"type": "string", "description": "Target URL"},
                "method": {"type": "string", "enum": ["GET", "POST", "PUT", "PATCH", "DELETE"]},
                "headers": {"type": "object"},
                "params": {"type": "object"},
                "body": {"description": "Request body"},
                "body_type": {"type": "string", "enum": ["json", "form", "text"]},
                "auth": {"type": "object"},
                "timeout": {"type": "number", "default": 30},
            },
        }


class WebhookTask(HttpRequestTask):
    """POST a JSON payload to a webhook, signed when a secret is configured.

    Config:
        url: Receiver URL (required)
        payload: JSON-serializable body
        secret: Optional signing secret (adds X-Webhook-Signature headers)
        headers: Extra headers
    """

    task_type = "webhook"
    display_name = "Send Webhook"
    description = "Deliver a signed JSON payload to a webhook receiver"

    async def execute(self, config: Dict[str, Any], context=None) -> TaskResult:
        url = validate_url(config.get("url"), self.allow_private)
        body = json.dumps(config.get("payload", {}), default=str).encode()

        headers = {"Content-Type": "application/json", **(config.get("headers") or {})}
        if config.get("secret"):
            headers.update(sign_webhook_payload(body, str(config["secret"])))

        async with self._client(float(config.get("timeout", self.timeout))) as client:
            response = await client.post(url, content=body, headers=headers)

        if not response.is_success:
            raise HttpStatusError(response.status_code, response.reason_phrase)

        logger.info("Webhook delivered", url=url, status_code=response.status_code)
        return TaskResult(
            output={
                "status_code": response.status_code,
                "delivered": True,
                "data": _response_data(response),
            }
        )

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["url"],
            "properties": {
                "url": {"type": "string"},
                "payload": {"type": "object"},
                "secret": {"type": "string"},
                "headers": {"type": "object"},
            },
        }


HTTP_TASK_TYPES = {
    "http_request": HttpRequestTask,
    "webhook": WebhookTask,
}
