from flask import Blueprint, jsonify

# GENERIC Error


def error(status=400, detail="Bad Request", **extra):
    return jsonify({"status": status, "detail": detail, **extra}), status


endpoints = Blueprint("endpoints", __name__)
import guardapi.routes.api.v1.auth  # noqa: E402, F401
import guardapi.routes.api.v1.security  # noqa: E402, F401
