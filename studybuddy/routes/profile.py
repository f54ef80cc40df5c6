from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user
from studybuddy.services.knowledge_service import analyze_profile, get_profile, update_profile

profile_bp = Blueprint("profile", __name__, url_prefix="/api/profile")


@profile_bp.route("", methods=["GET"])
@login_required
def show_profile():
    return jsonify(get_profile(current_user.id).to_dict())


@profile_bp.route("", methods=["PATCH"])
@login_required
def patch_profile():
    data = request.get_json() or {}
    if not isinstance(data, dict):
        return jsonify({"error": "Expected a JSON object"}), 400
    try:
        profile = update_profile(current_user.id, data)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(profile.to_dict())


@profile_bp.route("/analyze", methods=["POST"])
@login_required
def analyze():
    return jsonify(analyze_profile(current_user.id).to_dict())
