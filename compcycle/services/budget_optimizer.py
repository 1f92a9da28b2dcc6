"""
Compensation Cycle Platform
Budget Optimizer.

Suggests a department split of a cycle budget and applies an accepted split.

Pipeline:
    1. Load department stats, current allocations and recent utilisation from DB
    2. Build a prompt (system + user messages)
    3. Call the injected BudgetAdvisor → JSON allocation
    4. Return the parsed allocation; unparsable output comes back as raw text

The advisor is opaque: any object with ``chat(messages, *, purpose)``
returning ``{"content": str}``. It is passed in directly or registered on the
app as ``app.extensions["budget_advisor"]``.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod

from flask import current_app
from sqlalchemy import select

from compcycle.core.exceptions import ValidationError
from compcycle.models import db
from compcycle.models.cycle import CompCycle
from compcycle.models.employee import Employee
from compcycle.services.budget_ledger import set_budgets
from compcycle.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)

# Completed cycles fed to the advisor as utilisation history
_HISTORY_CYCLES = 5


class BudgetAdvisor(ABC):
    """Narrow interface over whatever model backs the optimizer."""

    @abstractmethod
    def chat(self, messages: list[dict], *, purpose: str) -> dict:
        """Return ``{"content": str}`` for a list of role/content messages."""


class BudgetOptimizer:
    """Department budget allocation advisor for a compensation cycle."""

    def __init__(self, advisor: BudgetAdvisor | None = None):
        self.advisor = advisor

    def _resolve_advisor(self) -> BudgetAdvisor:
        advisor = self.advisor or current_app.extensions.get("budget_advisor")
        if advisor is None:
            raise ValidationError("Budget optimizer is not configured")
        return advisor

    # ── Optimisation ───────────────────────────────────────────────────────

    def optimize(
        self,
        tenant_id: int,
        cycle_id: str,
        total_budget: float,
        constraints: dict | None = None,
    ) -> dict:
        """
        Ask the advisor for a department allocation of ``total_budget``.

        Args:
            constraints: optional ``minPerDept``, ``maxPerDept``,
                ``priorityDepartments``.

        Returns:
            dict with ``cycle_id``, ``total_budget``, ``raw`` and, when the
            advisor answered with JSON, its keys merged in (typically
            ``allocations``, ``rationale``).
        """
        cycle = get_scoped(CompCycle, cycle_id, tenant_id=tenant_id)
        try:
            total_budget = float(total_budget)
        except (TypeError, ValueError):
            raise ValidationError("total_budget must be a number") from None
        if total_budget <= 0:
            raise ValidationError("total_budget must be greater than zero")
        if constraints is not None and not isinstance(constraints, dict):
            raise ValidationError("constraints must be an object")

        advisor = self._resolve_advisor()
        logger.info("Budget optimize requested: budget=%.2f", total_budget,
                    extra={"tenant_id": tenant_id, "cycle_id": cycle.id})

        context = {
            "cycle": {"name": cycle.name, "cycle_type": cycle.cycle_type,
                      "currency": cycle.currency},
            "total_budget": total_budget,
            "constraints": constraints or {},
            "departments": self.department_stats(tenant_id),
            "current_allocations": [
                {"department": b.department, "allocated": b.allocated, "spent": b.spent,
                 "manager_id": b.manager_id}
                for b in cycle.budgets
            ],
            "history": self._historical_utilization(tenant_id),
        }

        response = advisor.chat(messages=self._build_prompt(context), purpose="budget_optimizer")
        raw = (response or {}).get("content", "") or ""
        parsed = self._parse_response(raw)
        if not parsed:
            logger.warning("Could not parse structured response from budget advisor",
                           extra={"tenant_id": tenant_id, "cycle_id": cycle.id})

        return {"cycle_id": cycle.id, "total_budget": total_budget, "raw": raw, **parsed}

    def apply_allocation(
        self,
        tenant_id: int,
        cycle_id: str,
        allocations: list[dict],
        acting_user_id: str | None = None,
    ) -> list[dict]:
        """Write an accepted allocation through the budget ledger."""
        if not isinstance(allocations, list) or not allocations:
            raise ValidationError("allocations must be a non-empty list")
        budgets = []
        for item in allocations:
            if not isinstance(item, dict):
                raise ValidationError("Each allocation must be an object")
            budgets.append({"department": item.get("department"), "allocated": item.get("amount")})

        logger.info("Applying budget allocation for %d department(s)", len(budgets),
                    extra={"tenant_id": tenant_id, "cycle_id": cycle_id})
        return set_budgets(tenant_id, cycle_id, budgets, acting_user_id=acting_user_id)

    # ── Context ────────────────────────────────────────────────────────────

    @staticmethod
    def department_stats(tenant_id: int) -> list[dict]:
        """Headcount, average salary, average compa-ratio and payroll per department."""
        rows = db.session.execute(
            select(Employee.department, Employee.base_salary, Employee.compa_ratio)
            .where(Employee.tenant_id == tenant_id, Employee.termination_date.is_(None))
        ).all()

        depts: dict[str, dict] = {}
        for department, salary, compa_ratio in rows:
            d = depts.setdefault(department, {"count": 0, "salary": 0.0, "cr": 0.0, "cr_count": 0})
            d["count"] += 1
            d["salary"] += float(salary or 0)
            if compa_ratio:
                d["cr"] += float(compa_ratio)
                d["cr_count"] += 1

        return [
            {
                "department": name,
                "headcount": d["count"],
                "avg_salary": round(d["salary"] / d["count"]),
                "avg_compa_ratio": round(d["cr"] / d["cr_count"], 2) if d["cr_count"] else None,
                "total_payroll": round(d["salary"]),
            }
            for name, d in sorted(depts.items())
        ]

    @staticmethod
    def _historical_utilization(tenant_id: int) -> list[dict]:
        cycles = db.session.execute(
            select(CompCycle)
            .where(CompCycle.tenant_id == tenant_id, CompCycle.status == "COMPLETED")
            .order_by(CompCycle.end_date.desc())
            .limit(_HISTORY_CYCLES)
        ).scalars().all()

        history = []
        for cycle in cycles:
            spent = sum(float(b.spent or 0) for b in cycle.budgets)
            budget_total = float(cycle.budget_total or 0)
            history.append({
                "cycle_name": cycle.name,
                "total_budget": budget_total,
                "total_spent": spent,
                "utilization_pct": round(spent / budget_total * 100) if budget_total > 0 else 0,
                "departments": {b.department: {"allocated": b.allocated, "spent": b.spent}
                                for b in cycle.budgets},
            })
        return history

    @staticmethod
    def _build_prompt(context: dict) -> list[dict]:
        return [
            {
                "role": "system",
                "content": (
                    "You are a compensation planning analyst. Split the given budget "
                    "across departments using headcount, payroll, compa-ratio and past "
                    "utilisation. Respect every constraint. Respond ONLY with JSON: "
                    '{"allocations": [{"department": str, "amount": number, '
                    '"rationale": str}], "summary": str}'
                ),
            },
            {
                "role": "user",
                "content": json.dumps(context, indent=2, default=str),
            },
        ]

    @staticmethod
    def _parse_response(content: str) -> dict:
        cleaned = content.strip()
        if cleaned.startswith("```"):
            cleaned = re.sub(r"^```\w*\n?", "", cleaned)
            cleaned = re.sub(r"\n?```$", "", cleaned)
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError:
            match = re.search(r"\{.*\}", cleaned, re.DOTALL)
            if not match:
                return {}
            try:
                parsed = json.loads(match.group())
            except json.JSONDecodeError:
                return {}
        return parsed if isinstance(parsed, dict) else {}
