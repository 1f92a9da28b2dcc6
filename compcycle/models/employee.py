"""
Compensation Cycle Platform
Employee master data.

Employees are owned by the HRIS sync; the cycle engine only reads them to
group recommendations by department / level and to feed rule evaluation.
"""

from compcycle.models import db
from compcycle.models.base import TenantModel, _utcnow, _uuid


class Employee(TenantModel):
    __tablename__ = "employees"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "employee_code", name="uq_employee_tenant_code"),
        db.Index("ix_employees_tenant_department", "tenant_id", "department"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    employee_code = db.Column(db.String(50), nullable=False)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    department = db.Column(db.String(100), nullable=False)
    level = db.Column(db.String(50), nullable=False, default="")
    location = db.Column(db.String(100), nullable=True)
    base_salary = db.Column(db.Float, nullable=False, default=0.0)
    total_comp = db.Column(db.Float, nullable=True)
    compa_ratio = db.Column(db.Float, nullable=True)
    performance_rating = db.Column(db.Float, nullable=True)
    currency = db.Column(db.String(3), default="USD")
    manager_id = db.Column(db.String(36), nullable=True)
    hire_date = db.Column(db.Date, nullable=True)
    termination_date = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def to_snapshot(self) -> dict:
        """Flat view used as the subject of rule evaluation."""
        return {
            "id": self.id,
            "employee_code": self.employee_code,
            "department": self.department,
            "level": self.level,
            "location": self.location,
            "base_salary": float(self.base_salary or 0),
            "total_comp": self.total_comp,
            "compa_ratio": self.compa_ratio,
            "performance_rating": self.performance_rating,
            "currency": self.currency,
            "manager_id": self.manager_id,
            "hire_date": self.hire_date.isoformat() if self.hire_date else None,
            "termination_date": (
                self.termination_date.isoformat() if self.termination_date else None
            ),
        }

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "employee_code": self.employee_code,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "department": self.department,
            "level": self.level,
            "location": self.location,
            "base_salary": self.base_salary,
            "total_comp": self.total_comp,
            "compa_ratio": self.compa_ratio,
            "manager_id": self.manager_id,
        }

    def __repr__(self):
        return f"<Employee {self.employee_code}: {self.department}/{self.level}>"
