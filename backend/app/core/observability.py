import logging

from fastapi import Request

from app.core.api_response import get_request_id

_MASKED_FIELDS = {"password", "code", "otp", "token"}


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()[:64]
    if request.client and request.client.host:
        return request.client.host[:64]
    return None


def log_business_event(
    logger: logging.Logger,
    request: Request,
    *,
    event: str,
    level: int = logging.INFO,
    **fields,
) -> None:
    request_id = get_request_id(request)
    chunks = [f"event={event}", f"request_id={request_id}", f"ip={client_ip(request) or '-'}"]
    for key, value in fields.items():
        if key in _MASKED_FIELDS:
            value = "***"
        chunks.append(f"{key}={value}")
    logger.log(level, "business_event %s", " ".join(chunks))
