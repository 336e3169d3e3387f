from __future__ import annotations
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
import httpx
from dashboard.core.config import settings
from dashboard.core.errors import RejectedByRemote, TransportError
from dashboard.core.logging import ctx

log = logging.getLogger(__name__)

JSON = "application/json"
FORM = "application/x-www-form-urlencoded"


@dataclass
class HttpResponse:
    status_code: int
    body: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass
class ResilientHttpClient:
    """Outbound HTTP with a bounded retry budget.

    Connection failures, timeouts, 5xx and other non-2xx/non-4xx answers are
    retried; a 4xx is returned to the caller at once as RejectedByRemote.
    """
    attempts: int = settings.http_retry_attempts
    delay: float = settings.http_retry_delay
    timeout: float = settings.http_timeout
    backoff: str = settings.http_backoff
    transport: Optional[httpx.BaseTransport] = None
    sleep: Callable[[float], None] = field(default=time.sleep)

    def _delay_for(self, attempt: int) -> float:
        if self.backoff == "exponential":
            return self.delay * (2 ** (attempt - 1)) + random.uniform(0, self.delay / 2)
        return self.delay

    @staticmethod
    def _safe_url(url: str, redact: tuple = ()) -> str:
        for secret in redact:
            if secret:
                url = url.replace(secret, "***")
        return url

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def _request_kwargs(self, method: str, payload: Any, content_type: str) -> dict:
        if payload is None:
            return {}
        if method in ("GET", "DELETE", "HEAD"):
            return {"params": payload}
        if content_type == FORM:
            return {"data": payload}
        if content_type == JSON:
            return {"json": payload}
        return {"content": payload, "headers": {"Content-Type": content_type}}

    def send(self, method: str, url: str, payload: Any = None, content_type: str = JSON,
             redact: tuple = ()) -> HttpResponse:
        method = method.upper()
        kwargs = self._request_kwargs(method, payload, content_type)
        last_error = "no attempt made"
        last_status: Optional[int] = None

        with httpx.Client(timeout=self.timeout, transport=self.transport, follow_redirects=True) as client:
            for attempt in range(1, self.attempts + 1):
                try:
                    response = client.request(method, url, **kwargs)
                except httpx.HTTPError as e:
                    last_error = f"{type(e).__name__}: {e}"
                    last_status = None
                    log.warning("HTTP %s %s attempt %d/%d failed: %s", method, self._safe_url(url, redact),
                                attempt, self.attempts, last_error, extra=ctx(stage="http"))
                else:
                    status = response.status_code
                    log.info("HTTP %s %s attempt %d/%d -> %d", method, self._safe_url(url, redact),
                             attempt, self.attempts, status, extra=ctx(stage="http"))
                    if 200 <= status < 300:
                        return HttpResponse(status_code=status, body=self._decode(response))
                    if 400 <= status < 500:
                        raise RejectedByRemote(self._safe_url(url, redact), status, self._decode(response))
                    last_error = f"HTTP {status}"
                    last_status = status

                if attempt < self.attempts:
                    self.sleep(self._delay_for(attempt))

        raise TransportError(self._safe_url(url, redact), self.attempts, f"Request failed: {last_error}", last_status)
