"""
Shared pytest fixtures for the compensation cycle test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - tenant / admin_user: Pre-created Tenant and its ADMIN
    - make_cycle / make_employee / make_rec / make_rule_set: ORM factories
      that bypass the API so tests can start from any status
"""

from datetime import timedelta

import pytest

from compcycle import create_app
from compcycle.models import db as _db
from compcycle.models.auth import ROLE_ADMIN, Tenant, User
from compcycle.models.cycle import CompCycle, CompRecommendation, CycleBudget
from compcycle.models.employee import Employee
from compcycle.models.rules import Rule, RuleSet
from compcycle.utils.helpers import utcnow


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        app.extensions.pop("budget_advisor", None)
        app.extensions.pop("rule_evaluator", None)
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Tenancy ──────────────────────────────────────────────────────────────


@pytest.fixture()
def tenant():
    t = Tenant(name="Acme Corp", slug="acme")
    _db.session.add(t)
    _db.session.commit()
    return t


@pytest.fixture()
def admin_user(tenant):
    u = User(tenant_id=tenant.id, email="admin@acme.test", full_name="Ada Admin", role=ROLE_ADMIN)
    _db.session.add(u)
    _db.session.commit()
    return u


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_cycle(tenant):
    """Create a cycle at any status (bypasses lifecycle guards)."""

    def _make(*, status="DRAFT", budget_total=500000.0, name="2026 Merit Cycle",
              start=None, end=None, settings=None, tenant_id=None):
        now = utcnow()
        cycle = CompCycle(
            tenant_id=tenant_id or tenant.id,
            name=name,
            cycle_type="MERIT",
            status=status,
            budget_total=budget_total,
            currency="USD",
            start_date=start or now - timedelta(days=30),
            end_date=end or now + timedelta(days=60),
            settings=settings or {},
        )
        _db.session.add(cycle)
        _db.session.commit()
        return cycle

    return _make


@pytest.fixture()
def make_employee(tenant):
    counter = {"n": 0}

    def _make(*, department="Engineering", level="L3", base_salary=100000.0,
              first_name=None, last_name="Tester", manager_id=None, compa_ratio=None,
              tenant_id=None):
        counter["n"] += 1
        emp = Employee(
            tenant_id=tenant_id or tenant.id,
            employee_code=f"E{counter['n']:04d}",
            first_name=first_name or f"Emp{counter['n']}",
            last_name=last_name,
            department=department,
            level=level,
            base_salary=base_salary,
            compa_ratio=compa_ratio,
            manager_id=manager_id,
        )
        _db.session.add(emp)
        _db.session.commit()
        return emp

    return _make


@pytest.fixture()
def make_rec():
    def _make(cycle, employee, *, rec_type="MERIT_INCREASE", current=100000.0,
              proposed=105000.0, status="DRAFT", approver_user_id=None, locked=False):
        rec = CompRecommendation(
            cycle_id=cycle.id,
            employee_id=employee.id,
            rec_type=rec_type,
            current_value=current,
            proposed_value=proposed,
            status=status,
            approver_user_id=approver_user_id,
            locked=locked,
        )
        _db.session.add(rec)
        _db.session.commit()
        return rec

    return _make


@pytest.fixture()
def make_budget():
    def _make(cycle, department, *, allocated, spent=0.0, manager_id=None):
        row = CycleBudget(
            cycle_id=cycle.id,
            department=department,
            manager_id=manager_id,
            allocated=allocated,
            spent=spent,
            remaining=allocated - spent,
            drift_pct=0.0,
        )
        _db.session.add(row)
        _db.session.commit()
        return row

    return _make


@pytest.fixture()
def make_rule_set(tenant):
    """Create a rule set from plain rule dicts: {name, priority, conditions, actions}."""

    def _make(rules, *, name="Merit Guidelines", status="ACTIVE"):
        rs = RuleSet(tenant_id=tenant.id, name=name, status=status)
        _db.session.add(rs)
        _db.session.flush()
        for i, r in enumerate(rules):
            _db.session.add(Rule(
                rule_set_id=rs.id,
                name=r.get("name", f"Rule {i + 1}"),
                rule_type=r.get("rule_type", "CUSTOM"),
                priority=r.get("priority", i),
                conditions=r.get("conditions", []),
                actions=r.get("actions", []),
                enabled=r.get("enabled", True),
            ))
        _db.session.commit()
        return rs

    return _make
