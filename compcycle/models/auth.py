"""
Tenants and the people who act inside them.

Login is handled by the gateway in front of this service. Users are stored
only so approvals, nudges and alerts have someone to point at.
"""

from compcycle.models import db
from compcycle.models.base import _utcnow, _uuid

ROLE_ADMIN = "ADMIN"
ROLE_HR_MANAGER = "HR_MANAGER"
ROLE_MANAGER = "MANAGER"
ROLE_EMPLOYEE = "EMPLOYEE"

USER_ACTIVE = "active"


class Tenant(db.Model):
    """Isolation boundary; every scoped row hangs off one of these."""

    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    plan = db.Column(db.String(50), default="trial")
    is_active = db.Column(db.Boolean, default=True)
    settings = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    members = db.relationship("User", back_populates="tenant", lazy="dynamic")

    def __repr__(self):
        return f"<Tenant {self.slug} #{self.id}>"


class User(db.Model):
    __tablename__ = "users"
    __table_args__ = (
        # An email is unique per tenant, not globally
        db.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        db.Index("ix_users_tenant_role", "tenant_id", "role"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    email = db.Column(db.String(200), nullable=False)
    full_name = db.Column(db.String(200))
    role = db.Column(db.String(20), nullable=False, default=ROLE_EMPLOYEE)
    status = db.Column(db.String(20), default=USER_ACTIVE)
    created_at = db.Column(db.DateTime, default=_utcnow)

    tenant = db.relationship("Tenant", back_populates="members")

    def __repr__(self):
        return f"<User {self.role} {self.email}>"


def find_tenant_admin(tenant_id: int) -> User | None:
    """Oldest active ADMIN of the tenant; alerts are addressed to them."""
    q = User.query.filter(
        User.tenant_id == tenant_id,
        User.role == ROLE_ADMIN,
        User.status == USER_ACTIVE,
    )
    return q.order_by(User.created_at).first()
