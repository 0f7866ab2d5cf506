"""
Outbound webhook client.
"""

from collections import OrderedDict
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from shared.circuit_breaker import CircuitBreaker
from shared.errors import ExternalServiceRejection
from shared.retry import RetryConfig
from .http import HttpSinkClient


class WebhookClient(HttpSinkClient):
    """Calls tenant-configured URLs. Webhooks are not retried.

    Each host gets its own circuit breaker so a failing endpoint only blocks
    itself. The least recently used breakers are dropped beyond
    ``max_host_breakers`` hosts.
    """

    service_name = "webhook"

    def __init__(self, timeout: float = 10.0, max_host_breakers: int = 256, **kwargs):
        kwargs.setdefault("retry_config", RetryConfig(max_attempts=1))
        super().__init__(base_url="", timeout=timeout, **kwargs)
        self.max_host_breakers = max_host_breakers
        self._host_breakers: "OrderedDict[str, CircuitBreaker]" = OrderedDict()

    def _breaker_for(self, host: str) -> CircuitBreaker:
        breaker = self._host_breakers.get(host)
        if breaker is not None:
            self._host_breakers.move_to_end(host)
            return breaker

        breaker = CircuitBreaker(
            name=f"webhook:{host}",
            failure_threshold=5,
            recovery_timeout=30.0,
            ignored_exceptions=(ExternalServiceRejection,)
        )
        self._host_breakers[host] = breaker
        while len(self._host_breakers) > self.max_host_breakers:
            evicted, _ = self._host_breakers.popitem(last=False)
            self.logger.debug("Evicted webhook circuit breaker", host=evicted)
        return breaker

    async def send(self,
                   url: str,
                   method: str = "POST",
                   payload: Optional[Dict[str, Any]] = None,
                   headers: Optional[Dict[str, str]] = None) -> int:
        """Send the webhook and return the HTTP status code."""
        response = await self.request(
            method,
            url,
            json=payload if method != "GET" else None,
            headers=headers,
            circuit_breaker=self._breaker_for(urlsplit(url).netloc)
        )
        self.logger.info("Webhook delivered", url=url, method=method, status_code=response.status_code)
        return response.status_code
