class ImportPipelineError(Exception):
    """Base class for errors raised by the import pipeline."""
