from fastapi import Header, HTTPException, Request, status

from app.core.auth import Principal, PrincipalRole, parse_role


async def get_principal(
    request: Request,
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_user_role: str | None = Header(default=None, alias="X-User-Role"),
) -> Principal:
    """Identity is resolved upstream by the session provider and forwarded as headers."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="authenticated session required (X-User-Id)",
        )

    role = parse_role(x_user_role)
    if role is PrincipalRole.ANONYMOUS:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="anonymous sessions cannot search")

    return Principal(user_id=x_user_id.strip(), role=role, client_ip=get_client_ip(request))


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip") or request.headers.get("cf-connecting-ip")
    if real_ip:
        return real_ip.strip()

    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"
