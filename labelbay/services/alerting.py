"""
Alerting Service

PagerDuty integration for failures that need an operator:
- Compensating refund could not be completed (balance debited, no shipment)
- Shipment exists but its debit transaction is missing or failed

All alerts fall back to CRITICAL log lines when PagerDuty is disabled or
unreachable, so nothing is silently dropped.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from labelbay.core.config import settings

logger = logging.getLogger(__name__)

PAGERDUTY_EVENTS_API = "https://events.pagerduty.com/v2/enqueue"

SEVERITY_MAPPING = {
    "critical": "critical",
    "high": "error",
    "warning": "warning",
    "info": "info",
}


async def send_pagerduty_alert(
    severity: str,
    summary: str,
    details: Optional[Dict[str, Any]] = None,
    source: str = "labelbay",
    component: str = "ledger",
    group: str = "purchase",
    dedup_key: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """
    Send an alert to PagerDuty.

    Args:
        severity: Alert severity (critical, high, warning, info)
        summary: Short summary of the alert
        details: Additional details for the alert
        source: Source of the alert
        component: Component that generated the alert
        group: Logical grouping for the alert
        dedup_key: Deduplication key (optional)
        client: Optional shared httpx client

    Returns:
        True if alert was sent successfully
    """
    pd_severity = SEVERITY_MAPPING.get(severity.lower(), "warning")

    if not settings.PAGERDUTY_ENABLED:
        logger.critical(f"[ALERT] {summary} (severity: {pd_severity})")
        if details:
            logger.critical(f"[ALERT] Details: {json.dumps(details, default=str)}")
        return False

    payload = {
        "routing_key": settings.PAGERDUTY_ROUTING_KEY,
        "event_action": "trigger",
        "payload": {
            "summary": summary[:1024],  # PagerDuty limit
            "severity": pd_severity,
            "source": source,
            "component": component,
            "group": group,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "custom_details": details or {},
        },
    }

    if dedup_key:
        payload["dedup_key"] = dedup_key

    if settings.ALERT_DRY_RUN:
        logger.info(f"[DRY RUN] PagerDuty alert: {summary} (severity: {pd_severity})")
        return True

    if not payload["routing_key"]:
        logger.warning(f"No PAGERDUTY_ROUTING_KEY set, logging alert only: {summary}")
        logger.critical(f"[ALERT] {summary}")
        return False

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=10.0)
    try:
        response = await client.post(
            PAGERDUTY_EVENTS_API,
            content=json.dumps(payload, default=str),
            headers={"Content-Type": "application/json"},
        )
        if response.status_code == 202:
            logger.info(f"PagerDuty alert sent: {summary}")
            return True
        logger.error(f"PagerDuty API error: {response.status_code} - {response.text}")
        return False
    except httpx.HTTPError as e:
        logger.error(f"Failed to send PagerDuty alert: {e}")
        logger.critical(f"[ALERT FAILED] {summary}")
        if details:
            logger.critical(f"[ALERT FAILED] Details: {json.dumps(details, default=str)}")
        return False
    finally:
        if owns_client:
            await client.aclose()


async def alert_refund_failure(
    user_id: str,
    shipment_id: str,
    amount: str,
    error: str,
) -> bool:
    """Balance was debited for a shipment that was never recorded and the refund failed."""
    return await send_pagerduty_alert(
        severity="critical",
        summary=f"[REFUND FAILURE] User {user_id} debited {amount} for unrecorded shipment {shipment_id}",
        details={
            "user_id": user_id,
            "shipment_id": shipment_id,
            "debit_reference": f"ship_{shipment_id}",
            "refund_reference": f"refund_{shipment_id}",
            "amount": amount,
            "error": error[:500],
            "action": "Credit the user manually with the refund reference and mark the debit failed",
        },
        component="compensation",
        dedup_key=f"refund-failure-{shipment_id}",
    )


async def alert_reconciliation_failure(
    shipment_id: str,
    user_id: str,
    reason: str,
) -> bool:
    """Shipment exists but its debit transaction cannot be linked."""
    return await send_pagerduty_alert(
        severity="high",
        summary=f"[RECONCILIATION] Shipment {shipment_id} has no usable debit transaction",
        details={
            "shipment_id": shipment_id,
            "user_id": user_id,
            "reason": reason[:500],
            "action": "Review the ship_ transaction for this shipment",
        },
        component="reconciliation",
        dedup_key=f"reconciliation-{shipment_id}",
    )
