"""
Central Hierarchy Integration Gateway.

All outbound HTTP calls to the central hierarchy system of record go through
this class. Direct `requests` calls in services or jobs are FORBIDDEN.

  - Authentication: static API key sent as the ``x-api-key`` header
  - Retry: delegated to RetryHelper; network errors and 5xx are retried,
    4xx is returned as-is (retrying will not fix a bad key or URL)
  - Timeout: 30 s (configurable per call)
  - Structured result returned to the caller; the gateway never raises

Testability: pass a mock `session` (and a RetryHelper with a no-op sleep)
to CentralHierarchyGateway() in tests instead of letting it create a real
requests.Session internally.
"""

from __future__ import annotations

import logging
import time

import requests

from kpi_dashboard.utils.retry import RetryHelper

logger = logging.getLogger(__name__)

# ── Default request timeout ────────────────────────────────────────────────
_DEFAULT_TIMEOUT = 30

API_KEY_HEADER = "x-api-key"


class GatewayResult:
    """Structured return value from CentralHierarchyGateway calls.

    Attributes:
        ok:          True if the call succeeded (HTTP 2xx + no exception).
        status_code: HTTP status code (None if network-level failure).
        body:        Raw response text; parsing is the parser's job.
        error:       Human-readable error message or None.
        duration_ms: Round-trip latency in milliseconds, retries included.
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        body: str | None,
        error: str | None,
        duration_ms: int,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.body = body
        self.error = error
        self.duration_ms = duration_ms

    def to_log_dict(self) -> dict:
        """Return fields suitable for a job run summary."""
        return {
            "http_status_code": self.status_code,
            "error_message": self.error,
            "duration_ms": self.duration_ms,
            "fetch_status": "success" if self.ok else "error",
        }

    def __repr__(self):
        return f"<GatewayResult ok={self.ok} status={self.status_code}>"


class CentralHierarchyGateway:
    """Central hierarchy REST gateway.

    Instantiate once at module level (module-level singleton pattern).

    Usage:
        from kpi_dashboard.integrations.central_hierarchy_gateway import central_hierarchy_gateway
        result = central_hierarchy_gateway.fetch_hierarchy(url, api_key, retry_helper=helper)
    """

    def __init__(self, session: requests.Session | None = None) -> None:
        # Inject custom session for testing; create real one lazily otherwise.
        self._session: requests.Session | None = session

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    @staticmethod
    def build_headers(api_key: str) -> dict:
        """Return the request headers for the central hierarchy API."""
        return {
            API_KEY_HEADER: api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _get_once(self, url: str, headers: dict, timeout: int) -> requests.Response:
        """Execute a single GET. 5xx is raised so the retry helper retries it."""
        resp = self.session.get(url, headers=headers, timeout=timeout)
        if resp.status_code >= 500:
            logger.warning("Central hierarchy returned status=%d url=%s", resp.status_code, url)
            resp.raise_for_status()
        return resp

    def fetch_hierarchy(
        self,
        url: str,
        api_key: str,
        *,
        retry_helper: RetryHelper | None = None,
        timeout: int = _DEFAULT_TIMEOUT,
    ) -> GatewayResult:
        """GET the full hierarchy payload from the central system.

        Args:
            url:          Central hierarchy endpoint.
            api_key:      Value for the ``x-api-key`` header.
            retry_helper: Retry policy; defaults to 3 attempts (1 s, 4 s).
            timeout:      Per-request timeout in seconds.

        Returns:
            GatewayResult; ``body`` carries the raw text on 2xx.
        """
        helper = retry_helper or RetryHelper(retry_on=(requests.RequestException,))
        headers = self.build_headers(api_key)

        t0 = time.perf_counter()
        try:
            resp = helper.execute_with_retry(lambda: self._get_once(url, headers, timeout))
        except requests.RequestException as exc:
            duration_ms = int((time.perf_counter() - t0) * 1000)
            status = exc.response.status_code if exc.response is not None else None
            logger.error("Central hierarchy fetch failed url=%s error=%s", url, exc)
            return GatewayResult(
                ok=False,
                status_code=status,
                body=None,
                error=str(exc)[:500],
                duration_ms=duration_ms,
            )

        duration_ms = int((time.perf_counter() - t0) * 1000)
        if not resp.ok:
            return GatewayResult(
                ok=False,
                status_code=resp.status_code,
                body=None,
                error=f"HTTP {resp.status_code}: {resp.text[:500]}",
                duration_ms=duration_ms,
            )

        logger.info(
            "Central hierarchy fetched status=%d bytes=%d in %dms",
            resp.status_code, len(resp.content or b""), duration_ms,
        )
        return GatewayResult(
            ok=True,
            status_code=resp.status_code,
            body=resp.text,
            error=None,
            duration_ms=duration_ms,
        )


# Module-level singleton - import this instance in services.
# In tests, override via:
#   from kpi_dashboard.integrations import central_hierarchy_gateway as gw_module
#   gw_module.central_hierarchy_gateway = CentralHierarchyGateway(session=mock_session)
central_hierarchy_gateway = CentralHierarchyGateway()
