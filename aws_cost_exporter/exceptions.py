"""Error taxonomy for the report synchronization pipeline."""


class ExporterError(Exception):
    """Base class for all exporter failures."""


class MalformedPeriod(ExporterError, ValueError):
    """A remote billing-period prefix could not be parsed."""


class UntrustedManifest(ExporterError):
    """A report manifest failed validation (content type, bucket, parts, period)."""


class IngestionError(ExporterError):
    """A report part could not be turned into records."""


class MissingColumn(IngestionError):
    """A required column is absent from a report part header."""

    def __init__(self, columns, key=None):
        self.columns = list(columns)
        self.key = key
        where = f" in {key}" if key else ""
        super().__init__(f"Report is missing required columns{where}: {', '.join(self.columns)}")


class MalformedRecord(IngestionError):
    """A report part contains rows that cannot be parsed."""


class TransferFailure(ExporterError):
    """A remote call failed or timed out."""


class CorruptState(ExporterError):
    """The persisted exporter state is unreadable or malformed."""


class QueryFailure(ExporterError):
    """An aggregation definition is malformed or failed to execute."""


class StorageFailure(ExporterError):
    """The local record store or state file could not be read or written."""
