"""Multi-agent council deliberation over retrieved context."""

from council.engine import Council, CouncilError, CouncilRoleError
from council.models import (
    CouncilContext,
    CouncilNote,
    CouncilResult,
    CouncilRole,
    RoleKind,
    Strategy,
    default_roles,
    roles_from_names,
)

__all__ = [
    "Council",
    "CouncilContext",
    "CouncilError",
    "CouncilNote",
    "CouncilResult",
    "CouncilRole",
    "CouncilRoleError",
    "RoleKind",
    "Strategy",
    "default_roles",
    "roles_from_names",
]
