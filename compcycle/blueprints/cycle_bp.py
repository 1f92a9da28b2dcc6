"""Compensation cycle blueprint.

REST API for cycles, their lifecycle, budgets and recommendations.

Endpoint groups:
  Cycles              GET/POST   /api/v1/cycles
                      GET/PATCH  /api/v1/cycles/<id>
  Lifecycle           PATCH      /api/v1/cycles/<id>/transition
  Budgets             GET/POST   /api/v1/cycles/<id>/budgets
                      POST       /api/v1/cycles/<id>/budgets/request
                      POST       /api/v1/cycles/<id>/budgets/optimize
                      POST       /api/v1/cycles/<id>/budgets/apply
  Recommendations     GET/POST   /api/v1/cycles/<id>/recommendations
                      PATCH      /api/v1/cycles/<id>/recommendations/<rec_id>/status
  Dashboard           GET        /api/v1/cycles/<id>/summary

Service layer owns all business logic and commits.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

import compcycle.services.budget_ledger as ledger
import compcycle.services.cycle_service as cycles
import compcycle.services.recommendation_service as recs
from compcycle.blueprints.request_context import (
    acting_role,
    acting_user_id,
    json_body,
    page_args,
    tenant_required,
)
from compcycle.services.budget_optimizer import BudgetOptimizer
from compcycle.services.cycle_lifecycle import transition
from compcycle.utils.errors import E, api_error, register_error_handlers

cycle_bp = Blueprint("cycles", __name__, url_prefix="/api/v1")
register_error_handlers(cycle_bp)


# ═════════════════════════════════════════════════════════════════════════
# Cycles  (/api/v1/cycles)
# ═════════════════════════════════════════════════════════════════════════


@cycle_bp.route("/cycles", methods=["POST"])
def create_cycle():
    """Create a cycle in DRAFT.

    Body: {tenant_id, name, cycle_type?, budget_total?, currency?,
           start_date, end_date, settings?}
    """
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(cycles.create_cycle(tenant_id, json_body(), acting_user_id())), 201


@cycle_bp.route("/cycles", methods=["GET"])
def list_cycles():
    """Query params: tenant_id, status?, cycle_type?, page?, limit?"""
    tenant_id, err = tenant_required()
    if err:
        return err
    result = cycles.list_cycles(
        tenant_id,
        status=request.args.get("status"),
        cycle_type=request.args.get("cycle_type"),
        **page_args(),
    )
    return jsonify(result), 200


@cycle_bp.route("/cycles/<cycle_id>", methods=["GET"])
def get_cycle(cycle_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(cycles.get_cycle(tenant_id, cycle_id)), 200


@cycle_bp.route("/cycles/<cycle_id>", methods=["PATCH"])
def update_cycle(cycle_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    data = {k: v for k, v in json_body().items() if k != "tenant_id"}
    return jsonify(cycles.update_cycle(tenant_id, cycle_id, data, acting_user_id())), 200


@cycle_bp.route("/cycles/<cycle_id>/transition", methods=["PATCH"])
def transition_cycle(cycle_id):
    """Move a cycle along its lifecycle.

    Body: {tenant_id, status, reason?}
    Headers: X-User-Role (required), X-User-Id
    """
    tenant_id, err = tenant_required()
    if err:
        return err
    role = acting_role()
    if not role:
        return api_error(E.VALIDATION_REQUIRED, "X-User-Role header is required")
    data = json_body()
    target = (data.get("status") or "").strip().upper()
    if not target:
        return api_error(E.VALIDATION_REQUIRED, "status is required")

    cycle = transition(
        tenant_id, cycle_id, target, role, data.get("reason"),
        acting_user_id=acting_user_id(),
    )
    return jsonify(cycle), 200


@cycle_bp.route("/cycles/<cycle_id>/summary", methods=["GET"])
def cycle_summary(cycle_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(cycles.get_cycle_summary(tenant_id, cycle_id)), 200


# ═════════════════════════════════════════════════════════════════════════
# Budgets  (/api/v1/cycles/<id>/budgets)
# ═════════════════════════════════════════════════════════════════════════


@cycle_bp.route("/cycles/<cycle_id>/budgets", methods=["GET"])
def list_budgets(cycle_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify({"items": ledger.list_budgets(tenant_id, cycle_id)}), 200


@cycle_bp.route("/cycles/<cycle_id>/budgets", methods=["POST"])
def set_budgets(cycle_id):
    """Top-down allocation.

    Body: {tenant_id, budgets: [{department, allocated, manager_id?}]}
    """
    tenant_id, err = tenant_required()
    if err:
        return err
    budgets = json_body().get("budgets")
    if not isinstance(budgets, list) or not budgets:
        return api_error(E.VALIDATION_REQUIRED, "budgets must be a non-empty list")
    items = ledger.set_budgets(tenant_id, cycle_id, budgets, acting_user_id())
    return jsonify({"items": items}), 200


@cycle_bp.route("/cycles/<cycle_id>/budgets/request", methods=["POST"])
def request_budget(cycle_id):
    """Bottom-up request. Body: {tenant_id, department, allocated, manager_id?}"""
    tenant_id, err = tenant_required()
    if err:
        return err
    data = json_body()
    budget = {k: data.get(k) for k in ("department", "allocated", "manager_id")}
    return jsonify(ledger.request_budget(tenant_id, cycle_id, budget, acting_user_id())), 201


@cycle_bp.route("/cycles/<cycle_id>/budgets/optimize", methods=["POST"])
def optimize_budget(cycle_id):
    """Body: {tenant_id, total_budget, constraints?: {minPerDept, maxPerDept, priorityDepartments}}"""
    tenant_id, err = tenant_required()
    if err:
        return err
    data = json_body()
    if data.get("total_budget") is None:
        return api_error(E.VALIDATION_REQUIRED, "total_budget is required")
    result = BudgetOptimizer().optimize(
        tenant_id, cycle_id, data["total_budget"], data.get("constraints"),
    )
    return jsonify(result), 200


@cycle_bp.route("/cycles/<cycle_id>/budgets/apply", methods=["POST"])
def apply_budget_allocation(cycle_id):
    """Body: {tenant_id, allocations: [{department, amount}]}"""
    tenant_id, err = tenant_required()
    if err:
        return err
    items = BudgetOptimizer().apply_allocation(
        tenant_id, cycle_id, json_body().get("allocations"), acting_user_id(),
    )
    return jsonify({"items": items}), 200


# ═════════════════════════════════════════════════════════════════════════
# Recommendations  (/api/v1/cycles/<id>/recommendations)
# ═════════════════════════════════════════════════════════════════════════


@cycle_bp.route("/cycles/<cycle_id>/recommendations", methods=["POST"])
def bulk_create_recommendations(cycle_id):
    """Batch upsert.

    Body: {tenant_id, recommendations: [{employee_id, rec_type, current_value,
           proposed_value, justification?, approver_user_id?}]}
    """
    tenant_id, err = tenant_required()
    if err:
        return err
    items = json_body().get("recommendations")
    if not isinstance(items, list) or not items:
        return api_error(E.VALIDATION_REQUIRED, "recommendations must be a non-empty list")
    result = recs.bulk_create_recommendations(tenant_id, cycle_id, items, acting_user_id())
    return jsonify(result), 200


@cycle_bp.route("/cycles/<cycle_id>/recommendations", methods=["GET"])
def list_recommendations(cycle_id):
    """Query params: tenant_id, status?, rec_type?, department?, level?, page?, limit?"""
    tenant_id, err = tenant_required()
    if err:
        return err
    result = recs.list_recommendations(
        tenant_id, cycle_id,
        status=request.args.get("status"),
        rec_type=request.args.get("rec_type"),
        department=request.args.get("department"),
        level=request.args.get("level"),
        **page_args(default_limit=50),
    )
    return jsonify(result), 200


@cycle_bp.route("/cycles/<cycle_id>/recommendations/<rec_id>/status", methods=["PATCH"])
def update_recommendation_status(cycle_id, rec_id):
    """Body: {tenant_id, status, justification?}"""
    tenant_id, err = tenant_required()
    if err:
        return err
    data = json_body()
    if not data.get("status"):
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    rec = recs.update_recommendation_status(
        tenant_id, cycle_id, rec_id, data["status"],
        acting_user_id=acting_user_id(),
        justification=data.get("justification"),
    )
    return jsonify(rec), 200
