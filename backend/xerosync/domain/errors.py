from dataclasses import dataclass


@dataclass
class DomainError(Exception):
    """Rejected admin input, rendered as a 400 problem response."""

    detail: str
    title: str = "Invalid Request"
    type: str = "https://example.com/problems/domain-error"
    errors: list[dict] | None = None

    @classmethod
    def from_code(cls, exc: ValueError, *, field: str | None = None) -> "DomainError":
        code = str(exc)
        return cls(detail=code, errors=[{"field": field, "message": code}] if field else None)
