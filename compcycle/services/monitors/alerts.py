"""
Monitor alert sink.

Alerts are not a table of their own: each one becomes a Notification for the
tenant's first ADMIN, linked to the cycle. Listing reads them back from there.
"""

from __future__ import annotations

import logging

from compcycle.core.exceptions import ValidationError
from compcycle.models.auth import find_tenant_admin
from compcycle.models.cycle import CompCycle
from compcycle.models.notification import Notification
from compcycle.services.helpers.scoped_queries import get_scoped
from compcycle.services.monitors.types import ALERT_TYPES, SEVERITIES, MonitorAlert
from compcycle.services.notification import NotificationService
from compcycle.utils.helpers import paginate_query

logger = logging.getLogger(__name__)

ALERT_ENTITY_TYPE = "comp_cycle"


def persist_alerts(tenant_id: int, cycle_id: str, alerts: list[MonitorAlert]) -> int:
    """Write one notification per alert. Flushes only. Returns the count written."""
    if not alerts:
        return 0

    admin = find_tenant_admin(tenant_id)
    if admin is None:
        logger.warning("No admin user found, skipping alert persistence",
                       extra={"tenant_id": tenant_id, "cycle_id": cycle_id})
        return 0

    for alert in alerts:
        NotificationService.create(
            tenant_id=tenant_id,
            user_id=admin.id,
            type=alert.alert_type,
            title=alert.title,
            body=f"Severity: {alert.severity}",
            metadata={
                "cycle_id": cycle_id,
                "alert_type": alert.alert_type,
                "severity": alert.severity,
                **alert.details,
            },
            entity_type=ALERT_ENTITY_TYPE,
            entity_id=cycle_id,
        )
    return len(alerts)


def list_alerts(
    tenant_id: int,
    cycle_id: str,
    *,
    alert_type: str | None = None,
    severity: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    """Paginated monitor alerts for a cycle, newest first."""
    cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)

    q = NotificationService.list_for_entity(tenant_id, ALERT_ENTITY_TYPE, cycle.id)
    if alert_type:
        alert_type = alert_type.upper()
        if alert_type not in ALERT_TYPES:
            raise ValidationError(f"alert_type must be one of: {', '.join(ALERT_TYPES)}")
        q = q.filter(Notification.type == alert_type)
    else:
        q = q.filter(Notification.type.in_(ALERT_TYPES))
    if severity:
        severity = severity.upper()
        if severity not in SEVERITIES:
            raise ValidationError(f"severity must be one of: {', '.join(SEVERITIES)}")
        q = q.filter(Notification.meta["severity"].as_string() == severity)

    page_data = paginate_query(q, page, limit)
    page_data["items"] = [n.to_dict() for n in page_data["items"]]
    return page_data
