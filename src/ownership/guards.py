"""Authorization guards for administrative claim decisions."""

from typing import Iterable, Protocol

from config import CFG


class AdminAuthorizer(Protocol):
    def is_admin(self, admin_id: str) -> bool:
        ...


class ConfigAdminAuthorizer:
    """Accepts identities listed in ADMIN_IDS."""

    def __init__(self, admin_ids: Iterable[str] | None = None) -> None:
        source = CFG.admin_ids if admin_ids is None else admin_ids
        self._admin_ids = frozenset(str(item).strip() for item in source if str(item).strip())

    def is_admin(self, admin_id: str) -> bool:
        return bool(admin_id) and str(admin_id).strip() in self._admin_ids
