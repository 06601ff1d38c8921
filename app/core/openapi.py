"""OpenAPI metadata customization.

Adds tag descriptions and documents the shared error envelope so clients can
tell rate limiting (429) apart from storage outages (503).
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

_TAGS = [
    {
        "name": "Claps",
        "description": "Read and add claps for a slug.",
    },
    {
        "name": "Health",
        "description": "Liveness and storage mode.",
    },
]

_ERROR_SCHEMA = {
    "type": "object",
    "properties": {
        "error": {
            "type": "object",
            "properties": {
                "code": {"type": "string"},
                "message": {"type": "string"},
                "request_id": {"type": "string", "nullable": True},
                "details": {"type": "object"},
            },
            "required": ["code", "message"],
        }
    },
}


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation with tags and the error schema."""

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        schema = original_openapi()

        components = schema.setdefault("components", {})
        components.setdefault("schemas", {}).setdefault("ErrorResponse", _ERROR_SCHEMA)

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        for tag in _TAGS:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        error_ref = {"$ref": "#/components/schemas/ErrorResponse"}
        for path, methods in schema.get("paths", {}).items():
            if not path.startswith("/claps/"):
                continue
            for method, method_obj in methods.items():
                if not isinstance(method_obj, dict):
                    continue
                responses = method_obj.setdefault("responses", {})
                codes = ["400", "503"] + (["403", "429"] if method == "post" else [])
                for code in codes:
                    entry = responses.setdefault(code, {"description": "Error"})
                    entry["content"] = {"application/json": {"schema": error_ref}}

        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
