"""
caseflow
Blueprint registry and shared request helpers.
"""

from flask import request

from caseflow.core.exceptions import ValidationError
from caseflow.models.workflow import ENTITY_TYPES


def json_body() -> dict:
    """Request JSON as a dict; an empty body is an empty dict."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def require_fields(data: dict, *fields: str) -> None:
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}",
                              details={"missing": missing})


def entity_type_arg(value: str) -> str:
    entity_type = (value or "").upper()
    if entity_type not in ENTITY_TYPES:
        raise ValidationError(f"entity_type must be one of {sorted(ENTITY_TYPES)}")
    return entity_type


def bool_arg(name: str, default: bool = False) -> bool:
    raw = request.args.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def list_arg(name: str) -> list[str]:
    """Accept ``?ids=a,b`` as well as ``?ids=a&ids=b``."""
    values = []
    for raw in request.args.getlist(name):
        values.extend(part.strip() for part in raw.split(",") if part.strip())
    return values


def page_args(default_per_page: int = 50, max_per_page: int = 200) -> tuple[int, int]:
    page = max(1, request.args.get("page", 1, type=int))
    per_page = min(max_per_page, max(1, request.args.get("per_page", default_per_page, type=int)))
    return page, per_page
