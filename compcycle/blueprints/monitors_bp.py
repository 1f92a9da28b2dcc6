"""Cycle monitors blueprint.

Endpoints (all under /api/v1/cycles/<id>/monitors):
  GET  /alerts                 persisted alerts (alert_type?, severity?, page?, limit?)
  POST /run                    queue a monitor run, 202
  GET  /budget-drift           live drift analysis (threshold_pct?)
  GET  /policy-violations      live policy check
  GET  /outliers               live outlier scan
  GET  /exec-summary           executive summary (JSON)
  GET  /exec-summary/markdown  executive summary rendered as Markdown

The GET analyses run on demand and persist nothing.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from compcycle.blueprints.request_context import page_args, tenant_required
from compcycle.services.monitors import (
    alerts,
    budget_drift,
    exec_summary,
    monitor_scheduler,
    outlier_detector,
    policy_violation,
)
from compcycle.utils.errors import E, api_error, register_error_handlers

monitors_bp = Blueprint("monitors", __name__, url_prefix="/api/v1/cycles/<cycle_id>/monitors")
register_error_handlers(monitors_bp)


@monitors_bp.route("/alerts", methods=["GET"])
def list_alerts(cycle_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    result = alerts.list_alerts(
        tenant_id, cycle_id,
        alert_type=request.args.get("alert_type"),
        severity=request.args.get("severity"),
        **page_args(),
    )
    return jsonify(result), 200


@monitors_bp.route("/run", methods=["POST"])
def trigger_run(cycle_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(monitor_scheduler.trigger_manual_run(tenant_id, cycle_id)), 202


@monitors_bp.route("/budget-drift", methods=["GET"])
def get_budget_drift(cycle_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    threshold = request.args.get("threshold_pct", type=float)
    if threshold is not None and not 0 <= threshold <= 100:
        return api_error(E.VALIDATION_INVALID, "threshold_pct must be between 0 and 100")
    return jsonify(budget_drift.detect(tenant_id, cycle_id, threshold).to_dict()), 200


@monitors_bp.route("/policy-violations", methods=["GET"])
def get_policy_violations(cycle_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(policy_violation.detect(tenant_id, cycle_id).to_dict()), 200


@monitors_bp.route("/outliers", methods=["GET"])
def get_outliers(cycle_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(outlier_detector.detect(tenant_id, cycle_id).to_dict()), 200


@monitors_bp.route("/exec-summary", methods=["GET"])
def get_exec_summary(cycle_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(exec_summary.generate(tenant_id, cycle_id).to_dict()), 200


@monitors_bp.route("/exec-summary/markdown", methods=["GET"])
def get_exec_summary_markdown(cycle_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    summary = exec_summary.generate(tenant_id, cycle_id)
    return jsonify({"markdown": exec_summary.to_markdown(summary)}), 200
