"""
Shared column defaults and the tenant-scoped abstract model.

Every cycle table carries ``tenant_id``; services never query one of them
without it, so the filter lives on the base class.
"""

import uuid
from datetime import datetime, timezone

from compcycle.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


class TenantModel(db.Model):
    __abstract__ = True

    # Deleting a tenant removes its cycles, employees and rule sets
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )

    @classmethod
    def query_for_tenant(cls, tenant_id):
        return cls.query.filter(cls.tenant_id == tenant_id)
