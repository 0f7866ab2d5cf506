"""
Common HTTP plumbing for action sinks.
"""

from typing import Any, Dict, Optional

import httpx

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException, get_circuit_breaker
from shared.errors import ExternalServiceError, ExternalServiceRejection
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception


class HttpSinkClient:
    """Base client: per-call httpx session, retry on transport errors, circuit breaker.

    4xx responses raise ExternalServiceRejection and never trip the breaker;
    5xx responses raise ExternalServiceError. Only transport errors are retried.
    """

    service_name = "sink"

    def __init__(self,
                 base_url: str = "",
                 timeout: float = 10.0,
                 circuit_breaker: Optional[CircuitBreaker] = None,
                 retry_config: Optional[RetryConfig] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.logger = get_logger(f"business_rules.{self.service_name}_client")
        self.circuit_breaker = circuit_breaker or get_circuit_breaker(
            self.service_name,
            failure_threshold=5,
            recovery_timeout=30.0,
            ignored_exceptions=(ExternalServiceRejection,)
        )
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)

    async def request(self,
                      method: str,
                      url: str,
                      json: Optional[Any] = None,
                      headers: Optional[Dict[str, str]] = None,
                      circuit_breaker: Optional[CircuitBreaker] = None) -> httpx.Response:
        """Send one request and return the 2xx response."""
        breaker = circuit_breaker or self.circuit_breaker

        async def _send() -> httpx.Response:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, json=json, headers=headers)
            self._raise_for_status(response, method, url)
            return response

        @retry_on_exception((httpx.TransportError,), config=self.retry_config)
        async def _call() -> httpx.Response:
            return await breaker.call(_send)

        try:
            return await _call()
        except RetryError as e:
            self.logger.error(
                "Sink unreachable",
                method=method,
                url=url,
                attempts=e.attempts,
                error=str(e.last_exception)
            )
            raise ExternalServiceError(
                self.service_name,
                f"unreachable after {e.attempts} attempts: {e.last_exception}",
                details={"url": url, "attempts": e.attempts}
            ) from e
        except CircuitBreakerOpenException as e:
            raise ExternalServiceError(
                self.service_name,
                "circuit breaker open",
                details={"url": url, "circuit_breaker": breaker.name}
            ) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError(
                self.service_name,
                f"HTTP error: {e}",
                details={"url": url}
            ) from e

    def _raise_for_status(self, response: httpx.Response, method: str, url: str):
        status = response.status_code
        if 200 <= status < 300:
            return

        details = {"status_code": status, "method": method, "url": url, "body": response.text[:500]}
        if 400 <= status < 500:
            self.logger.warning("Sink rejected request", **details)
            raise ExternalServiceRejection(self.service_name, f"rejected with HTTP {status}", details=details)

        self.logger.error("Sink returned an error", **details)
        raise ExternalServiceError(self.service_name, f"HTTP {status}", details=details)

    def json_body(self, response: httpx.Response) -> Dict[str, Any]:
        """Decode a JSON object body; an empty body is an empty dict."""
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise ExternalServiceError(
                self.service_name,
                "response body is not JSON",
                details={"status_code": response.status_code}
            ) from e
        return body if isinstance(body, dict) else {"value": body}
