from __future__ import annotations

from fastapi import Request

from caseflow.schemas.request_identity import RequestIdentity


def _identity_from_legacy_header(request: Request) -> RequestIdentity:
    email = (
        request.headers.get("X-User-Email")
        or request.headers.get("X-User")
        or "system@local"
    )
    return RequestIdentity(
        email=(email or "").strip().lower() or None,
        auth_source="legacy_header",
    )


def get_request_identity(request: Request) -> RequestIdentity:
    return _identity_from_legacy_header(request)


def get_request_email(request: Request) -> str:
    identity = get_request_identity(request)
    return identity.email or "system@local"
