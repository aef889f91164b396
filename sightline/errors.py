"""
Engine errors.

These are raised internally and mapped to boolean failures or
ErrorResponse values at the public boundaries. Nothing here is fatal to the
host.
"""


class SightlineError(Exception):
    """Base class for engine errors."""


class UnknownTokenError(SightlineError):
    """A token id does not exist in the scene."""

    def __init__(self, token_id: str):
        super().__init__(f"Token {token_id} not found")
        self.token_id = token_id


class InvalidStateError(SightlineError):
    """A value is not one of the four visibility states."""

    def __init__(self, value: object):
        super().__init__(f"Invalid visibility state: {value!r}")
        self.value = value


class OverrideBlockedError(SightlineError):
    """A new override was refused by conflict analysis or policy."""

    def __init__(self, reason: str, errors: list[str] | None = None):
        super().__init__(reason)
        self.errors = errors or []
