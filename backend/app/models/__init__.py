from .contact import Contact, ContactStatus
from .user import User

__all__ = [
    "User",
    "Contact",
    "ContactStatus",
]
