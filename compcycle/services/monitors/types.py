"""
Monitor result types shared by the drift, policy, outlier and summary monitors.

Result objects serialise with ``to_dict()`` (snake_case, for API responses).
Alert ``details`` stay camelCase because they are persisted verbatim into
notification metadata and cycle settings.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass, field
from enum import Enum


class AlertType(str, Enum):
    BUDGET_DRIFT = "BUDGET_DRIFT"
    POLICY_VIOLATION = "POLICY_VIOLATION"
    OUTLIER = "OUTLIER"
    EXEC_SUMMARY = "EXEC_SUMMARY"


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"


ALERT_TYPES = tuple(t.value for t in AlertType)
SEVERITIES = tuple(s.value for s in Severity)

# How many violations / outliers an alert or summary carries
TOP_N = 10


def count_by(items, attr: str) -> dict[str, int]:
    return dict(Counter(str(getattr(item, attr)) for item in items))


@dataclass
class MonitorAlert:
    cycle_id: str
    alert_type: str
    severity: str
    title: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


# ── Budget drift ─────────────────────────────────────────────────────────────


@dataclass
class DepartmentDrift:
    department: str
    manager_id: str | None
    allocated: float
    spent: float
    remaining: float
    drift_pct: float
    exceeded: bool


@dataclass
class BudgetProjection:
    projected_total: float
    budget_total: float
    projected_overage: float
    days_remaining: int
    daily_burn_rate: float

    def to_details(self) -> dict:
        return {
            "projectedTotal": self.projected_total,
            "budgetTotal": self.budget_total,
            "projectedOverage": self.projected_overage,
            "daysRemaining": self.days_remaining,
            "dailyBurnRate": self.daily_burn_rate,
        }


@dataclass
class BudgetDriftResult:
    cycle_id: str
    overall_drift_pct: float
    threshold_pct: float
    exceeded: bool
    department_drifts: list[DepartmentDrift]
    projection: BudgetProjection

    def to_dict(self) -> dict:
        return asdict(self)


# ── Policy violations ────────────────────────────────────────────────────────


@dataclass
class PolicyViolation:
    recommendation_id: str
    employee_id: str
    employee_name: str
    department: str
    violation_type: str
    rule_name: str
    rule_id: str
    details: str
    severity: str


@dataclass
class PolicyViolationResult:
    cycle_id: str
    violations: list[PolicyViolation] = field(default_factory=list)
    # Rule-set evaluations that raised and were skipped
    evaluation_errors: int = 0

    @property
    def total_violations(self) -> int:
        return len(self.violations)

    @property
    def by_severity(self) -> dict[str, int]:
        return count_by(self.violations, "severity")

    @property
    def by_type(self) -> dict[str, int]:
        return count_by(self.violations, "violation_type")

    def to_dict(self) -> dict:
        return {
            "cycle_id": self.cycle_id,
            "total_violations": self.total_violations,
            "violations": [asdict(v) for v in self.violations],
            "by_severity": self.by_severity,
            "by_type": self.by_type,
            "evaluation_errors": self.evaluation_errors,
        }


# ── Outliers ─────────────────────────────────────────────────────────────────


@dataclass
class OutlierRecord:
    recommendation_id: str
    employee_id: str
    employee_name: str
    department: str
    level: str
    outlier_type: str
    value: float
    cohort_mean: float
    cohort_std_dev: float
    z_score: float
    details: str
    severity: str


@dataclass
class OutlierResult:
    cycle_id: str
    outliers: list[OutlierRecord] = field(default_factory=list)

    @property
    def total_outliers(self) -> int:
        return len(self.outliers)

    @property
    def by_severity(self) -> dict[str, int]:
        return count_by(self.outliers, "severity")

    @property
    def by_type(self) -> dict[str, int]:
        return count_by(self.outliers, "outlier_type")

    def to_dict(self) -> dict:
        return {
            "cycle_id": self.cycle_id,
            "total_outliers": self.total_outliers,
            "outliers": [asdict(o) for o in self.outliers],
            "by_severity": self.by_severity,
            "by_type": self.by_type,
        }


# ── Executive summary ────────────────────────────────────────────────────────


@dataclass
class CycleProgress:
    status: str
    total_recommendations: int
    by_status: dict[str, int]
    completion_pct: float
    days_elapsed: int
    days_remaining: int


@dataclass
class ExecSummary:
    cycle_id: str
    cycle_name: str
    generated_at: str
    budget_status: BudgetDriftResult
    top_violations: list[PolicyViolation]
    outlier_list: list[OutlierRecord]
    cycle_progress: CycleProgress
    blockers: list[str]
    action_items: list[str]
    total_violations: int = 0
    total_outliers: int = 0

    def to_dict(self) -> dict:
        return asdict(self)
