"""
Job handlers.

A handler takes a job's decoded payload and performs one external effect. Handlers can
run more than once for the same payload (a timeout after the provider accepted the
request looks like a failure), so none of them may assume exactly-once delivery.

Raising means "retry me"; returning means done.
"""

from typing import Any, Callable, Dict, Optional

import httpx
import structlog

from .config import Settings
from .realtime import ConnectionHub

logger = structlog.get_logger(__name__)

Handler = Callable[[Dict[str, Any]], Any]

# Provider answers meaning "accepted but will not deliver": quota or rate limiting.
DROP_STATUSES = frozenset({403, 429})


class UnknownJobType(LookupError):
    """No handler registered for a job_type; never worth retrying."""


class ProviderError(Exception):
    """Error from an external delivery provider."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.status_code = status_code


class HandlerRegistry:
    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register(self, job_type: str, fn: Optional[Handler] = None):
        """Register fn for job_type; usable as a decorator when fn is omitted."""
        if fn is None:
            def decorator(f: Handler) -> Handler:
                self.register(job_type, f)
                return f
            return decorator
        if job_type in self._handlers:
            raise ValueError(f"Handler for {job_type!r} already registered")
        self._handlers[job_type] = fn
        return fn

    def get(self, job_type: str) -> Handler:
        try:
            return self._handlers[job_type]
        except KeyError:
            raise UnknownJobType(f"Unknown handler {job_type}") from None

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    def job_types(self):
        return sorted(self._handlers)


# ---------- send_email ----------
def compose_email(payload: Dict[str, Any]):
    """Subject and plain-text body for a bridged email event."""
    event_name = payload.get("event_name")
    token = payload.get("token")
    if event_name == "verification_email":
        return "Verify your account - DriverFlow", f"Your verification code is: {token}"
    if event_name == "recovery_email":
        return "Reset your password - DriverFlow", f"Use this token to reset your password: {token}"
    return (
        payload.get("subject") or "DriverFlow Notification",
        payload.get("body") or "Notification",
    )


class EmailHandler:
    """
    Sends one transactional email through a SendGrid-compatible HTTP API.

    2xx is success. 403/429 are quota or rate-limit rejections: retrying would only
    burn the job's attempts on an outage it cannot fix, so they are logged and treated
    as done. Everything else raises ProviderError and goes through the retry path.
    """

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None,
                 timeout: float = 15.0):
        self.settings = settings
        self._client = client
        self.timeout = timeout

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            self._client.close()

    def __call__(self, payload: Dict[str, Any]) -> None:
        to = payload.get("email")
        if not to:
            raise ProviderError("send_email payload has no recipient")
        subject, body = compose_email(payload)

        if self.settings.dry_run:
            logger.info("dry run, email not sent", to=to, subject=subject)
            return
        if not self.settings.sendgrid_api_key:
            raise ProviderError("Missing SENDGRID_API_KEY")

        request_body = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.settings.from_email},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        try:
            response = self._get_client().post(
                self.settings.email_api_url,
                headers={
                    "Authorization": f"Bearer {self.settings.sendgrid_api_key}",
                    "Content-Type": "application/json",
                },
                json=request_body,
            )
        except httpx.RequestError as e:
            raise ProviderError(f"Email request failed: {e}") from e

        if response.is_success:
            logger.info("email sent", to=to, subject=subject, status=response.status_code)
            return
        if response.status_code in DROP_STATUSES:
            logger.warning("email provider refused (quota/rate limit), dropping",
                           to=to, status=response.status_code, response=response.text[:200])
            return
        raise ProviderError(
            f"SendGrid Error {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )


# ---------- realtime_push ----------
class RealtimePushHandler:
    def __init__(self, hub: ConnectionHub):
        self.hub = hub

    def __call__(self, payload: Dict[str, Any]) -> int:
        message = {
            "event_id": payload.get("event_id"),
            "event_key": payload.get("event_key"),
            "data": payload.get("data") or {},
        }
        delivered = self.hub.publish(message, payload.get("audience_type"), payload.get("audience_id"))
        logger.debug("realtime push delivered", event_key=message["event_key"],
                     audience_type=payload.get("audience_type"), delivered=delivered)
        return delivered


def build_default_registry(settings: Settings, hub: Optional[ConnectionHub] = None,
                           email_client: Optional[httpx.Client] = None) -> HandlerRegistry:
    """Pass the host process's hub to deliver realtime pushes; without one they reach nobody."""
    if hub is None:
        logger.info("no realtime hub given, realtime_push will have no listeners")
        hub = ConnectionHub()
    registry = HandlerRegistry()
    registry.register("send_email", EmailHandler(settings, client=email_client))
    registry.register("realtime_push", RealtimePushHandler(hub))
    return registry
