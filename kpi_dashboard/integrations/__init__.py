"""kpi_dashboard.integrations - External service gateway modules.

All outbound HTTP calls to third-party APIs must go through a gateway in this
package, never via bare `requests` calls in services or jobs.

Every gateway call is:
  - Authenticated (credentials injected by the gateway)
  - Retried with backoff through utils.retry.RetryHelper
  - Returned as a structured result instead of raising

Current gateways:
  central_hierarchy_gateway.CentralHierarchyGateway - organization hierarchy source
"""
