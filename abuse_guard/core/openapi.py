"""OpenAPI customization.

Enriches the generated schema with:
- Security schemes for the subject header and the admin API key
- Per-path security requirements (admin paths need the key, rate limit
  checks need the subject, global checks and health need nothing)
- Tags metadata
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

from abuse_guard.core.config import settings

_TAGS = [
    {
        "name": "Rate limits",
        "description": "Check and consume per-user and per-identifier quotas.",
    },
    {
        "name": "Admin",
        "description": "Violation history, top offenders and maintenance.",
    },
    {
        "name": "Health",
        "description": "Liveness and rate limiter health.",
    },
]


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation to add metadata and security."""

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        schema = original_openapi()

        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes.setdefault(
            "AdminApiKey",
            {
                "type": "apiKey",
                "in": "header",
                "name": "X-API-Key",
                "description": "Admin API key required by /v1/admin endpoints.",
            },
        )
        security_schemes.setdefault(
            "SubjectId",
            {
                "type": "apiKey",
                "in": "header",
                "name": settings.app.subject_header,
                "description": "Authenticated subject id set by the upstream auth layer.",
            },
        )

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        for tag in _TAGS:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        for path, methods in schema.get("paths", {}).items():
            if "/admin/" in path:
                security = [{"AdminApiKey": []}]
            elif path.endswith("/rate-limits/check"):
                security = [{"SubjectId": []}]
            else:
                security = []
            for method_obj in methods.values():
                if isinstance(method_obj, dict):
                    method_obj["security"] = security

        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
