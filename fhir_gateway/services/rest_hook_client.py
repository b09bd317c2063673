"""
Rest-hook delivery client

POSTs notification bundles to subscriber endpoints with bounded connect/read
timeouts. Delivery never raises: every outcome, including transport errors,
is returned as a DeliveryResult.
"""

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from fhir_gateway.core.logging import get_logger
from fhir_gateway.core.metrics import notification_delivery_total
from fhir_gateway.integrations.fhir import FHIR_JSON

logger = get_logger(__name__)


@dataclass
class DeliveryResult:
    """Outcome of one rest-hook POST"""

    endpoint: str
    ok: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    latency_ms: float = 0.0


class RestHookClient:
    """Thread-safe wrapper around a shared ``httpx.Client``."""

    def __init__(
        self,
        connect_timeout: float = 5.0,
        read_timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.timeout = httpx.Timeout(connect=connect_timeout, read=read_timeout, write=read_timeout, pool=connect_timeout)
        self._client = httpx.Client(timeout=self.timeout, transport=transport, follow_redirects=False)

    def post_bundle(
        self,
        endpoint: str,
        bundle: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> DeliveryResult:
        """
        POST a bundle as ``application/fhir+json``.

        Returns:
            DeliveryResult with ok=True only for a 2xx response
        """
        request_headers = dict(headers or {})
        request_headers["Content-Type"] = FHIR_JSON

        start = time.time()
        try:
            response = self._client.post(endpoint, content=json.dumps(bundle), headers=request_headers)
        except httpx.HTTPError as e:
            latency_ms = (time.time() - start) * 1000
            notification_delivery_total.labels(result="failed").inc()
            logger.warning(
                "rest_hook_delivery_error",
                endpoint=endpoint,
                error=str(e),
                error_type=type(e).__name__,
            )
            return DeliveryResult(endpoint=endpoint, ok=False, error=str(e) or type(e).__name__, latency_ms=latency_ms)

        latency_ms = (time.time() - start) * 1000
        ok = response.is_success
        notification_delivery_total.labels(result="ok" if ok else "failed").inc()
        logger.info(
            "rest_hook_delivered",
            endpoint=endpoint,
            http_status=response.status_code,
            latency_ms=round(latency_ms, 1),
        )
        return DeliveryResult(endpoint=endpoint, ok=ok, status_code=response.status_code, latency_ms=latency_ms)

    def close(self) -> None:
        self._client.close()
