# Overview: JSON envelopes for the public API.

from __future__ import annotations

import math

from flask import jsonify

from .errors import AppError


def api_success(data, status: int = 200, meta: dict | None = None):
    body = {"data": data}
    if meta:
        body["meta"] = meta
    response = jsonify(body)
    response.status_code = status
    return response


def api_paginated(items: list, page: int, page_size: int, total: int):
    return api_success(items, meta={
        "page": page,
        "pageSize": page_size,
        "total": total,
        "totalPages": max(1, math.ceil(total / page_size)),
    })


def api_error(exc: AppError):
    response = jsonify({"error": exc.to_dict()})
    response.status_code = exc.status_code
    return response


def internal_error():
    return api_error(AppError("Internal server error"))
