import json

from fastapi import Header, HTTPException, status

# gateway roles -> booking parties
ROLE_ALIASES = {
    "user": "customer",
    "customer": "customer",
    "handyman": "provider",
    "provider": "provider",
    "admin": "admin",
}


class Actor:
    def __init__(self, sub: str, roles: set[str]):
        self.sub = sub
        self.roles = roles

    def has(self, role: str) -> bool:
        return role in self.roles


def get_actor(
    x_user_sub: str | None = Header(default=None),
    x_user_roles: str | None = Header(default=None),
) -> Actor:
    """Identity forwarded by the gateway after it has verified the JWT."""
    if not x_user_sub:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Sub header",
        )

    try:
        token_roles = json.loads(x_user_roles) if x_user_roles else []
    except ValueError:
        token_roles = []

    if not isinstance(token_roles, list) or not token_roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Roles missing in token",
        )

    roles = {ROLE_ALIASES[r.lower()] for r in token_roles if isinstance(r, str) and r.lower() in ROLE_ALIASES}
    return Actor(sub=x_user_sub, roles=roles)


def require_role(actor: Actor, allowed_roles: list[str]):
    if actor.roles.isdisjoint(allowed_roles):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access forbidden for this role",
        )
