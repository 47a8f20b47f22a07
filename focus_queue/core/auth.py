from dataclasses import dataclass


@dataclass(slots=True)
class Principal:
    """Authenticated end user; every queue operation is scoped to ``owner_id``."""

    subject: str

    @property
    def owner_id(self) -> str:
        return self.subject


def parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", maxsplit=1)[1].strip()
    return token or None
