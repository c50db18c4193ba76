from fastapi import HTTPException, Request, status

from novapulse.core.config import settings


def get_company_id(request: Request) -> str:
    """Company (tenant) id forwarded by the gateway in front of this service."""
    value = (request.headers.get(settings.COMPANY_HEADER_NAME) or "").strip()
    if not value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{settings.COMPANY_HEADER_NAME} header is required",
        )
    return value


def get_actor(request: Request) -> str | None:
    return request.headers.get("X-User-ID")


def get_optional_company_id(request: Request) -> str | None:
    """Tenant id when the caller sent one; internal callers may omit it."""
    value = (request.headers.get(settings.COMPANY_HEADER_NAME) or "").strip()
    return value or None
