from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.review.errors import ForbiddenError, NotFoundError, NotificationError, PersistenceError
from app.review.models import User
from app.review.modules.changes.abandon import abandon_change_factory
from app.review.modules.changes.control import ChangeControlFactory
from app.review.modules.changes.detail import ChangeDetailFactory
from app.review.rbac import require_login

bp = Blueprint("changes", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        # require_login should prevent this.
        raise RuntimeError("No current user")
    return u


def _request_message() -> str:
    if request.is_json:
        data = request.get_json(silent=True) or {}
        raw = data.get("message")
    else:
        raw = request.form.get("message")
    text = str(raw or "")
    # Whitespace-only counts as no message; anything else is kept as typed.
    return text if text.strip() else ""


@bp.errorhandler(NotFoundError)
def _not_found(e: NotFoundError):
    return jsonify({"error": str(e)}), 404


@bp.errorhandler(ForbiddenError)
def _forbidden(e: ForbiddenError):
    return jsonify({"error": str(e)}), 403


@bp.errorhandler(PersistenceError)
def _persistence(e: PersistenceError):
    current_app.logger.error("Persistence failure (request_id=%s): %s", getattr(g, "request_id", None), e)
    return jsonify({"error": "The change could not be updated. Try again."}), 503


@bp.errorhandler(NotificationError)
def _notification(e: NotificationError):
    payload: dict = {"error": "Change abandoned, but notification mail could not be sent.", "abandoned": True}
    if e.detail is not None:
        payload["change"] = e.detail.to_dict()
    return jsonify(payload), 502


@bp.get("/<int:change_id>")
@require_login
def change_detail(change_id: int):
    u = _current_user()
    sm = current_app.extensions["sqlalchemy_sessionmaker"]
    ChangeControlFactory(sm).validate_for(u, change_id)
    detail = ChangeDetailFactory(sm).create(change_id, u)
    return jsonify({"change": detail.to_dict()})


@bp.post("/<int:change_id>/revisions/<int:sequence>/abandon")
@require_login
def abandon_change(change_id: int, sequence: int):
    u = _current_user()
    result = abandon_change_factory(current_app, u).call(change_id, sequence, _request_message())
    return jsonify({"abandoned": result.applied, "change": result.detail.to_dict()})
