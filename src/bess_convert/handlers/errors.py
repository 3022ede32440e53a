"""Exceptions raised by the conversion pipeline."""


class ConversionFailure(Exception):
    """Base class for failures raised by this package."""

    code = "conversion_failure"


class RowParseError(ConversionFailure, ValueError):
    """A source row could not be turned into a raw record."""

    code = "row_parse_error"


class InvalidResultError(ConversionFailure):
    """A transformation produced a unit that breaks the output invariants."""

    code = "invalid_result"


class ReportNotFoundError(ConversionFailure, KeyError):
    """No conversion report is registered under the given session id."""

    code = "report_not_found"

    def __str__(self) -> str:
        # KeyError would repr() the message
        return str(self.args[0]) if self.args else ""


class HandledFailure(ConversionFailure):
    """A failure already classified and recorded that the active policy will not continue from."""

    code = "handled_failure"

    def __init__(self, original: BaseException):
        super().__init__(str(original))
        self.original = original
