class MalformedMessageError(ValueError):
    """Inbound stream frame that is not a usable trade event."""


class SelectionError(ValueError):
    """Symbol selection that cannot be streamed."""
