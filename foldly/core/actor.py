from dataclasses import dataclass
from typing import Optional


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


@dataclass(frozen=True)
class Actor:
    """Caller identity handed to the core by the identity provider.

    ``user_id`` is None for anonymous uploaders, whose ``email`` is only
    claimed and therefore never ``email_verified``.
    """
    user_id: Optional[str] = None
    email: Optional[str] = None
    email_verified: bool = False

    @classmethod
    def anonymous(cls, email: Optional[str] = None) -> "Actor":
        return cls(user_id=None, email=normalize_email(email), email_verified=False)

    @classmethod
    def user(cls, user_id: str, email: str, email_verified: bool = True) -> "Actor":
        return cls(user_id=user_id, email=normalize_email(email), email_verified=email_verified)

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None

    @property
    def verified_email(self) -> Optional[str]:
        return self.email if self.email_verified else None

    def describe(self) -> str:
        return self.user_id or self.email or "anonymous"
