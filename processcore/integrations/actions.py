"""Action handlers run by the trigger dispatcher.

Each handler performs a single attempt and raises ``IntegrationError`` on
failure; retries are applied by the caller according to the action's
retry policy.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional
from urllib.parse import urlparse

import httpx

from ..constants import DEFAULT_WEBHOOK_TIMEOUT, USER_AGENT
from ..errors import IntegrationError
from .context import resolve_object, resolve_template

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

REQUIRED_FIELDS: Dict[str, List[str]] = {
    "webhook": ["url"],
    "http_request": ["url", "method"],
    "slack_message": ["channel", "message"],
    "send_email": ["to", "subject", "body"],
    "log": ["message"],
    "delay": ["delay_ms"],
    "transform_data": ["transform_script", "output_variable"],
}

Handler = Callable[[Dict[str, Any], Mapping[str, Any]], Awaitable[Dict[str, Any]]]


def validate_action_config(action_type: str, config: Mapping[str, Any]) -> List[str]:
    """Return a list of problems; empty when the config is usable."""
    required = REQUIRED_FIELDS.get(action_type)
    if required is None:
        return [f"Unknown action type: {action_type}"]
    return [
        f"Missing required field: {field}"
        for field in required
        if config.get(field) in (None, "")
    ]


def sign_body(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _apply_auth(
    auth: Optional[Mapping[str, Any]],
    headers: Dict[str, str],
    body: bytes,
    context: Mapping[str, Any],
) -> Optional[httpx.Auth]:
    if not auth or auth.get("type", "none") == "none":
        return None
    credentials = resolve_object(dict(auth.get("credentials") or {}), context)
    kind = auth["type"]
    if kind == "bearer":
        headers["Authorization"] = f"Bearer {credentials.get('token', '')}"
    elif kind == "basic":
        return httpx.BasicAuth(
            credentials.get("username", ""), credentials.get("password", "")
        )
    elif kind == "api_key":
        headers[credentials.get("header_name") or "X-API-Key"] = credentials.get(
            "api_key", ""
        )
    elif kind == "hmac":
        header = credentials.get("header_name") or "X-Signature-256"
        headers[header] = sign_body(credentials.get("secret", ""), body)
    else:
        raise IntegrationError(f"Unsupported auth type: {kind}", retryable=False)
    return None


def _encode_payload(payload: Any, context: Mapping[str, Any]) -> bytes:
    if isinstance(payload, str):
        resolved = resolve_template(payload, context)
        try:
            json.loads(resolved)
        except ValueError:
            return json.dumps({"data": resolved}).encode("utf-8")
        return resolved.encode("utf-8")
    return json.dumps(resolve_object(payload, context), default=str).encode("utf-8")


def _response_data(response: httpx.Response) -> Any:
    if "application/json" in response.headers.get("content-type", ""):
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


class ActionExecutor:
    """Route actions to their handlers.

    The executor shares one ``httpx.AsyncClient`` between handlers. Pass a
    client built on ``httpx.MockTransport`` to run without a network.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_WEBHOOK_TIMEOUT,
        slack_webhook_url: Optional[str] = None,
        resend_api_key: Optional[str] = None,
        email_from: str = "ProcessCore <noreply@example.com>",
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._slack_webhook_url = slack_webhook_url
        self._resend_api_key = resend_api_key
        self._email_from = email_from
        self._handlers: Dict[str, Handler] = {
            "webhook": self._http,
            "http_request": self._http,
            "slack_message": self._slack,
            "send_email": self._email,
            "log": self._log,
            "delay": self._delay,
            "transform_data": self._transform,
        }

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def execute(
        self, action_type: str, config: Dict[str, Any], context: Mapping[str, Any]
    ) -> Dict[str, Any]:
        handler = self._handlers.get(action_type)
        if handler is None:
            raise IntegrationError(
                f"Unknown action type: {action_type}", retryable=False
            )
        return await handler(config, context)

    # ------------------------------------------------------------------
    async def _http(
        self, config: Dict[str, Any], context: Mapping[str, Any]
    ) -> Dict[str, Any]:
        url = resolve_template(config.get("url") or "", context)
        if not url:
            raise IntegrationError("Webhook URL is required", retryable=False)
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise IntegrationError(f"Invalid URL: {url}", retryable=False)

        method = str(config.get("method") or "POST").upper()
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        headers.update(
            {k: str(v) for k, v in resolve_object(config.get("headers") or {}, context).items()}
        )
        body = b""
        if config.get("payload") is not None and method not in ("GET", "HEAD"):
            body = _encode_payload(config["payload"], context)
        auth = _apply_auth(config.get("authentication"), headers, body, context)
        timeout = float(config.get("timeout") or self._timeout)

        try:
            response = await self.client.request(
                method,
                url,
                content=body or None,
                headers=headers,
                auth=auth,
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise IntegrationError(f"Request timeout after {timeout}s") from exc
        except httpx.HTTPError as exc:
            raise IntegrationError(f"Request failed: {exc}") from exc

        data = _response_data(response)
        if not response.is_success:
            raise IntegrationError(
                f"HTTP {response.status_code}",
                status_code=response.status_code,
                response=data,
            )
        return {"status_code": response.status_code, "response": data}

    async def _slack(
        self, config: Dict[str, Any], context: Mapping[str, Any]
    ) -> Dict[str, Any]:
        webhook_url = config.get("webhook_url") or self._slack_webhook_url
        if not webhook_url:
            raise IntegrationError("Slack webhook URL not configured", retryable=False)
        message = resolve_template(config.get("message") or "", context)
        blocks = config.get("blocks") or []
        if not message and not blocks:
            raise IntegrationError("Message or blocks required", retryable=False)

        payload: Dict[str, Any] = {"unfurl_links": False, "unfurl_media": True}
        if message:
            payload["text"] = message
        if config.get("channel"):
            payload["channel"] = resolve_template(config["channel"], context)
        if blocks:
            payload["blocks"] = resolve_object(blocks, context)

        try:
            response = await self.client.post(webhook_url, json=payload)
        except httpx.HTTPError as exc:
            raise IntegrationError(f"Failed to post to Slack: {exc}") from exc
        # Incoming webhooks answer with a plain "ok" body.
        if not response.is_success or response.text != "ok":
            raise IntegrationError(
                response.text or f"HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return {"posted": True}

    async def _email(
        self, config: Dict[str, Any], context: Mapping[str, Any]
    ) -> Dict[str, Any]:
        if not self._resend_api_key:
            raise IntegrationError("RESEND_API_KEY not configured", retryable=False)
        to = resolve_template(config.get("to") or "", context)
        subject = resolve_template(config.get("subject") or "", context)
        if not to:
            raise IntegrationError("Email recipient (to) is required", retryable=False)
        if not subject:
            raise IntegrationError("Email subject is required", retryable=False)

        payload: Dict[str, Any] = {
            "from": self._email_from,
            "to": [address.strip() for address in to.split(",") if address.strip()],
            "subject": subject,
            "html": resolve_template(config.get("body") or "", context),
        }
        for field in ("cc", "bcc"):
            if config.get(field):
                payload[field] = [resolve_template(a, context) for a in config[field]]

        try:
            response = await self.client.post(
                RESEND_API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self._resend_api_key}"},
            )
        except httpx.HTTPError as exc:
            raise IntegrationError(f"Failed to send email: {exc}") from exc
        data = _response_data(response)
        if not response.is_success:
            message = data.get("message") if isinstance(data, dict) else None
            raise IntegrationError(
                message or f"HTTP {response.status_code}",
                status_code=response.status_code,
                response=data,
            )
        return {"message_id": data.get("id") if isinstance(data, dict) else None}

    async def _log(
        self, config: Dict[str, Any], context: Mapping[str, Any]
    ) -> Dict[str, Any]:
        message = resolve_template(config.get("message") or "", context)
        logger.info(f"[action log] {message}")
        return {"logged": message}

    async def _delay(
        self, config: Dict[str, Any], context: Mapping[str, Any]
    ) -> Dict[str, Any]:
        delay_ms = int(config.get("delay_ms", 1000))
        await asyncio.sleep(delay_ms / 1000.0)
        return {"delayed_ms": delay_ms}

    async def _transform(
        self, config: Dict[str, Any], context: Mapping[str, Any]
    ) -> Dict[str, Any]:
        output_variable = config.get("output_variable") or "result"
        result = resolve_template(config.get("transform_script") or "", context)
        return {output_variable: result}
