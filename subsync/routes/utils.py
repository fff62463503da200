from flask import request

from subsync.errors import Invalid


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise Invalid("Request body must be a JSON object")
    return data


def require_fields(data: dict, *fields):
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise Invalid(f"Missing required fields: {', '.join(missing)}", details={"missing": missing})


def as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes")
