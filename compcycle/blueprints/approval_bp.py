"""Approval & calibration blueprint.

Endpoint groups:
  Approvals     GET   /api/v1/cycles/<id>/approvals/pending
                POST  /api/v1/cycles/<id>/approvals/bulk
                POST  /api/v1/cycles/<id>/approvals/escalate
                GET   /api/v1/cycles/<id>/approvals/chain
                POST  /api/v1/cycles/<id>/nudge
  Calibration   GET/POST   /api/v1/cycles/<id>/calibration
                GET/PATCH  /api/v1/cycles/<id>/calibration/<sid>
                POST       /api/v1/cycles/<id>/calibration/<sid>/lock
                POST       /api/v1/cycles/<id>/calibration/<sid>/unlock

Partial batch failures come back in the 200 body, never as an error status.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

import compcycle.services.approval_service as approvals
import compcycle.services.calibration_service as calibration
from compcycle.blueprints.request_context import acting_user_id, json_body, page_args, tenant_required
from compcycle.utils.errors import E, api_error, register_error_handlers

approval_bp = Blueprint("approvals", __name__, url_prefix="/api/v1")
register_error_handlers(approval_bp)


# ═════════════════════════════════════════════════════════════════════════
# Approvals
# ═════════════════════════════════════════════════════════════════════════


@approval_bp.route("/cycles/<cycle_id>/approvals/pending", methods=["GET"])
def pending_approvals(cycle_id):
    """Query params: tenant_id, department?, status? (SUBMITTED|ESCALATED), page?, limit?"""
    tenant_id, err = tenant_required()
    if err:
        return err
    result = approvals.get_pending_approvals(
        tenant_id, cycle_id,
        department=request.args.get("department"),
        status=request.args.get("status"),
        **page_args(default_limit=50),
    )
    return jsonify(result), 200


@approval_bp.route("/cycles/<cycle_id>/approvals/bulk", methods=["POST"])
def bulk_approve(cycle_id):
    """Body: {tenant_id, decisions: [{recommendation_id, decision, comment?, override_justification?}]}"""
    tenant_id, err = tenant_required()
    if err:
        return err
    decisions = json_body().get("decisions")
    if not isinstance(decisions, list) or not decisions:
        return api_error(E.VALIDATION_REQUIRED, "decisions must be a non-empty list")
    result = approvals.bulk_approve_reject(tenant_id, cycle_id, acting_user_id(), decisions)
    return jsonify(result), 200


@approval_bp.route("/cycles/<cycle_id>/approvals/escalate", methods=["POST"])
def schedule_escalation(cycle_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(approvals.schedule_escalation(tenant_id, cycle_id, acting_user_id())), 200


@approval_bp.route("/cycles/<cycle_id>/approvals/chain", methods=["GET"])
def approval_chain(cycle_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify({"chain": approvals.get_approval_chain(tenant_id, cycle_id)}), 200


@approval_bp.route("/cycles/<cycle_id>/nudge", methods=["POST"])
def send_nudge(cycle_id):
    """Body: {tenant_id, target_user_ids?, message?}"""
    tenant_id, err = tenant_required()
    if err:
        return err
    data = json_body()
    result = approvals.send_nudge(
        tenant_id, cycle_id, acting_user_id(),
        target_user_ids=data.get("target_user_ids"),
        message=data.get("message"),
    )
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# Calibration sessions
# ═════════════════════════════════════════════════════════════════════════


@approval_bp.route("/cycles/<cycle_id>/calibration", methods=["POST"])
def create_session(cycle_id):
    """Body: {tenant_id, name, recommendation_ids? | department?, level?}"""
    tenant_id, err = tenant_required()
    if err:
        return err
    data = json_body()
    if not (data.get("name") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    session = calibration.create_session(
        tenant_id, cycle_id, acting_user_id(), data["name"],
        recommendation_ids=data.get("recommendation_ids"),
        department=data.get("department"),
        level=data.get("level"),
    )
    return jsonify(session), 201


@approval_bp.route("/cycles/<cycle_id>/calibration", methods=["GET"])
def list_sessions(cycle_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify({"items": calibration.list_sessions(tenant_id, cycle_id)}), 200


@approval_bp.route("/cycles/<cycle_id>/calibration/<session_id>", methods=["GET"])
def get_session(cycle_id, session_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(calibration.get_session(tenant_id, cycle_id, session_id)), 200


@approval_bp.route("/cycles/<cycle_id>/calibration/<session_id>", methods=["PATCH"])
def update_session(cycle_id, session_id):
    """Body: {tenant_id, outcomes?, status?, metadata?, name?}"""
    tenant_id, err = tenant_required()
    if err:
        return err
    data = json_body()
    session = calibration.update_session(
        tenant_id, cycle_id, session_id, acting_user_id(),
        outcomes=data.get("outcomes"),
        status=data.get("status"),
        metadata=data.get("metadata"),
        name=data.get("name"),
    )
    return jsonify(session), 200


@approval_bp.route("/cycles/<cycle_id>/calibration/<session_id>/lock", methods=["POST"])
def lock_session(cycle_id, session_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    count = calibration.lock_recommendations(tenant_id, cycle_id, session_id, acting_user_id())
    return jsonify({"locked": count}), 200


@approval_bp.route("/cycles/<cycle_id>/calibration/<session_id>/unlock", methods=["POST"])
def unlock_session(cycle_id, session_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    count = calibration.unlock_recommendations(tenant_id, cycle_id, session_id, acting_user_id())
    return jsonify({"unlocked": count}), 200
