"""Conversion error taxonomy. Every failure carries a code and a user-facing message."""


class ConversionError(RuntimeError):
    code = "conversion_failed"

    def __init__(self, message: str, code: str = "") -> None:
        super().__init__(message)
        if code:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(ConversionError):
    """Input rejected before any decode attempt (e.g. media type is not image/*)."""

    code = "invalid_input"


class LoadError(ConversionError):
    """The source byte payload could not be loaded."""

    code = "load_failed"


class DecodeError(ConversionError):
    """The raster backend could not interpret the source bytes."""

    code = "decode_failed"


class EncodeError(ConversionError):
    """The requested output could not be serialized, or produced no output."""

    code = "encode_failed"
