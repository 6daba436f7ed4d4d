from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from opentelemetry import trace

from app.context import get_correlation_id
from app.core.config import get_settings


tracer = trace.get_tracer("app.automations.delivery")


class DeliveryError(Exception):
    def __init__(self, code: str, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


@dataclass(frozen=True)
class EmailMessage:
    from_address: str
    to: list[str]
    subject: str
    html: str
    reply_to: str | None = None


class EmailDeliveryClient(Protocol):
    def send(self, message: EmailMessage) -> str | None: ...


class WebhookClient:
    def __init__(self, timeout: float, transport: httpx.BaseTransport | None = None) -> None:
        self.timeout = timeout
        self.transport = transport

    def post(self, url: str, payload: dict[str, Any]) -> int:
        headers = {"content-type": "application/json"}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["x-correlation-id"] = correlation_id

        with tracer.start_as_current_span("automation.webhook") as span:
            span.set_attribute("http.url", url)
            try:
                with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                    response = client.post(url, json=payload, headers=headers)
            except httpx.TimeoutException as exc:
                raise DeliveryError("webhook_timeout", f"webhook timed out after {self.timeout}s") from exc
            except httpx.HTTPError as exc:
                raise DeliveryError("webhook_unreachable", f"webhook request failed: {exc}") from exc

            span.set_attribute("http.status_code", response.status_code)
            if not 200 <= response.status_code < 300:
                raise DeliveryError(
                    "webhook_rejected",
                    f"webhook responded with status {response.status_code}",
                    status_code=response.status_code,
                )
            return response.status_code


class ResendEmailClient:
    def __init__(
        self,
        api_key: str,
        api_url: str,
        timeout: float,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.timeout = timeout
        self.transport = transport

    def send(self, message: EmailMessage) -> str | None:
        body: dict[str, Any] = {
            "from": message.from_address,
            "to": message.to,
            "subject": message.subject,
            "html": message.html,
        }
        if message.reply_to:
            body["reply_to"] = message.reply_to

        with tracer.start_as_current_span("automation.email.send") as span:
            try:
                with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                    response = client.post(
                        self.api_url,
                        json=body,
                        headers={"authorization": f"Bearer {self.api_key}"},
                    )
            except httpx.TimeoutException as exc:
                raise DeliveryError("email_timeout", f"email provider timed out after {self.timeout}s") from exc
            except httpx.HTTPError as exc:
                raise DeliveryError("email_unreachable", f"email provider request failed: {exc}") from exc

            span.set_attribute("http.status_code", response.status_code)
            if not 200 <= response.status_code < 300:
                raise DeliveryError(
                    "email_rejected",
                    f"email provider responded with status {response.status_code}",
                    status_code=response.status_code,
                )
            try:
                body = response.json()
            except ValueError:
                body = None
            message_id = body.get("id") if isinstance(body, dict) else None
            return str(message_id) if message_id else None


def get_webhook_client() -> WebhookClient:
    return WebhookClient(timeout=get_settings().webhook_timeout_seconds)


def get_email_client() -> EmailDeliveryClient:
    settings = get_settings()
    if not settings.resend_api_key:
        raise DeliveryError("email_not_configured", "email delivery is not configured")
    return ResendEmailClient(
        api_key=settings.resend_api_key,
        api_url=settings.resend_api_url,
        timeout=settings.email_timeout_seconds,
    )
