class ContactError(Exception):
    """Base class for contact relation failures."""


class RelationExistsError(ContactError):
    """A relation between the two users already exists."""


class RelationIntegrityError(ContactError):
    """A write would leave a relation with only one of its two rows."""


class InvalidSearchError(ContactError):
    """The search text is too short to run a candidate search."""
