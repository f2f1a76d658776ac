"""Error types shared by the intake flow."""


class TransportError(Exception):
    """A conversation call or stream read failed.

    Surfaced to the user once as a non-fatal notice; the transcript stays
    valid up to the last fully applied turn.
    """


class PersistenceError(Exception):
    """A backing-entity create/patch or child-record write failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
