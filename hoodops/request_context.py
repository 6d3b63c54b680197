from contextvars import ContextVar

from fastapi import Request

actor_email_ctx: ContextVar[str | None] = ContextVar("actor_email_ctx", default=None)
actor_role_ctx: ContextVar[str | None] = ContextVar("actor_role_ctx", default=None)


def _header_value(request: Request, name: str) -> str | None:
    return (request.headers.get(name) or "").strip().lower() or None


def current_actor(default: str = "user") -> str:
    """E-mail of the caller bound for this request, or ``default``."""
    return actor_email_ctx.get() or default


async def actor_binding_middleware(request: Request, call_next):
    actor_email_ctx.set(_header_value(request, "x-actor-email"))
    actor_role_ctx.set(_header_value(request, "x-actor-role"))
    return await call_next(request)
