from collections.abc import Callable

from pydantic import BaseModel

from caregiver_program.database import ProgramStore
from caregiver_program.errors import ForbiddenError

TokenResolver = Callable[[str], str | None]


class AdminIdentity(BaseModel):
    admin_id: str
    admin_name: str


def store_token_resolver(store: ProgramStore) -> TokenResolver:
    """
    Default bearer token check: the token must belong to a stored admin.
    Deployments behind a real auth service swap this out on app.state.
    """

    def resolve(token: str) -> str | None:
        admin = store.find_admin_by_token(token)
        return admin.id if admin else None

    return resolve


def bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    return token or None


def resolve_admin_id(
    admin_id: str | None,
    authorization: str | None,
    token_resolver: TokenResolver,
) -> str | None:
    """
    An explicit admin id wins; otherwise fall back to the bearer token.
    """
    if admin_id:
        return admin_id

    token = bearer_token(authorization)
    if token is None:
        return None
    return token_resolver(token)


def load_admin(
    store: ProgramStore, admin_id: str, admin_name: str | None
) -> AdminIdentity:
    admin = store.get_admin(admin_id)
    if admin is None:
        raise ForbiddenError("Invalid admin")
    return AdminIdentity(
        admin_id=admin.id, admin_name=admin_name or admin.name
    )
