from dataclasses import dataclass

from ..models.models import UserRole


@dataclass(frozen=True)
class Principal:
    """The authenticated actor behind a request."""

    id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value
