"""Error taxonomy shared by the extraction and reconciliation subsystems."""


class RegistryError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(RegistryError):
    """Invalid settings or a malformed input table."""


class DriverError(RegistryError):
    """A browser driver call failed."""


class TransientRenderError(DriverError):
    """Popup or spinner race on the map surface; recoverable by a zoom retry."""


class WaitTimeout(TransientRenderError):
    """A bounded wait expired before its predicate held."""


class StaleReferenceError(DriverError):
    """An element handle no longer belongs to the rendered page."""


class PermanentExtractionFailure(RegistryError):
    """Recovery exhausted for one marker."""


class AmbiguousMatchError(RegistryError):
    """Several candidates tie at the minimum distance."""


class DataIntegrityWarning(UserWarning):
    """A record is missing a coordinate and is kept for auditing only."""
