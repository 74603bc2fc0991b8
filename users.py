from dataclasses import dataclass


@dataclass(slots=True)
class User:
    id: int
    username: str
    password_hash: str
    created_at: float
    is_admin: bool = False

    @classmethod
    def from_row(cls, row) -> "User":
        data = dict(row)
        return cls(
            id=data["id"],
            username=data["username"],
            password_hash=data["password_hash"],
            is_admin=bool(data["is_admin"]),
            created_at=data["created_at"],
        )

    def __str__(self) -> str:
        admin_marker = " [ADMIN]" if self.is_admin else ""
        return f"User {self.id}: {self.username}{admin_marker}"
