"""Typed failures raised by the input preparation core."""

from __future__ import annotations


class MaskPrepError(Exception):
    """Base class for all maskprep errors."""


class ConstructionError(MaskPrepError):
    """A malformed image or tensor could not be built.

    Fatal to the image being processed; other images are unaffected.
    """


class ConfigurationError(MaskPrepError, ValueError):
    """Invalid pyramid tables, normalization scheme, or other settings."""


class EngineResultError(MaskPrepError):
    """The inference engine returned nothing usable.

    Attributes:
        observed_type: Description of the runtime type that was returned,
            or None when the result was simply empty.
    """

    def __init__(self, message: str, observed_type: str | None = None) -> None:
        super().__init__(message)
        self.observed_type = observed_type
