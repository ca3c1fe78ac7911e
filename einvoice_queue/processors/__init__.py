from typing import Optional

from ..registry import ProcessorRegistry
from .base import Processor, run_batches
from .cleanup import DataCleanupProcessor
from .csv_import import CsvImportProcessor
from .invoice_batch import (
    BatchHandler, BulkExportProcessor, BulkSubmissionProcessor, BulkValidationProcessor,
)

__all__ = [
    "Processor", "run_batches", "CsvImportProcessor", "DataCleanupProcessor",
    "BulkExportProcessor", "BulkSubmissionProcessor", "BulkValidationProcessor",
    "default_registry",
]


def default_registry(
    db_path: Optional[str] = None,
    export_handler: Optional[BatchHandler] = None,
    submission_handler: Optional[BatchHandler] = None,
    validation_handler: Optional[BatchHandler] = None,
) -> ProcessorRegistry:
    """Registry with the built-in processors.

    Invoice batch processors are only registered when the application hands
    in the handler doing the actual per-batch work.
    """
    registry = ProcessorRegistry()
    registry.register(CsvImportProcessor.job_type, CsvImportProcessor())
    registry.register(DataCleanupProcessor.job_type, DataCleanupProcessor(db_path))
    if export_handler is not None:
        registry.register(BulkExportProcessor.job_type, BulkExportProcessor(export_handler))
    if submission_handler is not None:
        registry.register(BulkSubmissionProcessor.job_type, BulkSubmissionProcessor(submission_handler))
    if validation_handler is not None:
        registry.register(BulkValidationProcessor.job_type, BulkValidationProcessor(validation_handler))
    return registry
