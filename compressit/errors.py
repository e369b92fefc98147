"""
Error Handling Module
Defines the compression error taxonomy and provides centralized categorization,
logging and batch summaries for failed requests.
"""

import logging
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """Categories of request failures surfaced to callers"""
    INVALID_CONFIGURATION = "invalid_configuration"
    PROBE_FAILURE = "probe_failure"
    ENCODE_FAILURE = "encode_failure"
    IO_FAILURE = "io_failure"


class CompressionError(Exception):
    """Base class for request-scoped compression failures"""

    kind = ErrorKind.ENCODE_FAILURE

    def __init__(self, message: str, context: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.context = context

    def describe(self) -> str:
        """Kind plus human-readable reason, as shown to end users"""
        base = f"{self.kind.value}: {self.message}"
        if self.context:
            base += f" ({self.context})"
        return base


class InvalidConfiguration(CompressionError, ValueError):
    """Raised when settings are out of range or name an unknown format/tier.

    Caller error, never retried.
    """

    kind = ErrorKind.INVALID_CONFIGURATION


class ProbeFailure(CompressionError):
    """Raised when the source duration or dimensions cannot be determined"""

    kind = ErrorKind.PROBE_FAILURE


class EncodeFailure(CompressionError):
    """Raised when the encoder exits abnormally for a reason other than cancellation"""

    kind = ErrorKind.ENCODE_FAILURE

    def __init__(self, message: str, context: Optional[str] = None,
                 returncode: Optional[int] = None):
        super().__init__(message, context)
        self.returncode = returncode


class IOFailure(CompressionError):
    """Raised when the source cannot be read or the output cannot be written"""

    kind = ErrorKind.IO_FAILURE


@dataclass
class ProcessingError:
    """Structured representation of a failed request"""
    kind: ErrorKind
    message: str
    source: str
    exception_type: str
    suggestions: List[str] = field(default_factory=list)
    retryable: bool = False
    context: Optional[str] = None

    def get_short_description(self) -> str:
        """Get concise error description for logging"""
        return f"{self.kind.value}: {self.message}"

    def get_detailed_description(self) -> str:
        """Get detailed error description with suggestions"""
        base = f"Error in {self.source}: {self.message}"
        if self.context:
            base += f" (Context: {self.context})"

        if self.suggestions:
            base += "\nSuggestions:\n" + "\n".join(f"  • {s}" for s in self.suggestions)

        return base

    def as_exception(self) -> CompressionError:
        """Rebuild the matching CompressionError, e.g. to wrap it in a failed result"""
        return _ERROR_TYPES[self.kind](self.message, self.context)


_ERROR_TYPES = {
    ErrorKind.INVALID_CONFIGURATION: InvalidConfiguration,
    ErrorKind.PROBE_FAILURE: ProbeFailure,
    ErrorKind.ENCODE_FAILURE: EncodeFailure,
    ErrorKind.IO_FAILURE: IOFailure,
}

_SUGGESTIONS = {
    ErrorKind.INVALID_CONFIGURATION: [
        "Use a quality between 1 and 100",
        "Use a target size of at least 1 byte",
        "Pick a supported output format",
    ],
    ErrorKind.PROBE_FAILURE: [
        "Check that ffprobe is installed and on PATH",
        "Supply a fallback duration for the source",
        "Check video file integrity",
    ],
    ErrorKind.ENCODE_FAILURE: [
        "Check video file integrity",
        "Update FFmpeg installation",
        "Try a larger target size or a lower quality tier",
    ],
    ErrorKind.IO_FAILURE: [
        "Check file permissions",
        "Ensure the output directory is writable",
        "Check free disk space",
    ],
}

# Only encode failures are worth a manual retry; everything else needs a change first
_RETRYABLE = {ErrorKind.ENCODE_FAILURE}


class ErrorHandler:
    """Centralized error handling and categorization for batch processing"""

    def __init__(self):
        self.error_counts = {kind: 0 for kind in ErrorKind}
        self.processed_errors: List[ProcessingError] = []

    def categorize_error(self, exception: Exception, source: str,
                         context: str = None) -> ProcessingError:
        """Categorize an exception into a structured ProcessingError"""
        if isinstance(exception, CompressionError):
            kind = exception.kind
            context = context or exception.context
            message = exception.message
        else:
            kind = self._kind_from_exception(exception)
            message = str(exception)

        return ProcessingError(
            kind=kind,
            message=message,
            source=source,
            exception_type=type(exception).__name__,
            suggestions=list(_SUGGESTIONS[kind]),
            retryable=kind in _RETRYABLE,
            context=context,
        )

    @staticmethod
    def _kind_from_exception(exception: Exception) -> ErrorKind:
        """Map foreign exceptions onto the taxonomy"""
        if isinstance(exception, (OSError, EOFError)):
            return ErrorKind.IO_FAILURE
        if isinstance(exception, ValueError):
            return ErrorKind.INVALID_CONFIGURATION

        error_lower = str(exception).lower()
        if 'permission' in error_lower or 'access denied' in error_lower:
            return ErrorKind.IO_FAILURE
        if 'ffprobe' in error_lower or 'duration' in error_lower:
            return ErrorKind.PROBE_FAILURE
        return ErrorKind.ENCODE_FAILURE

    def handle_error(self, exception: Exception, source: str,
                     context: str = None, continue_processing: bool = True) -> ProcessingError:
        """Handle an error by categorizing it and logging appropriately"""
        error = self.categorize_error(exception, source, context)
        self._record(error, continue_processing)
        return error

    def handle_result(self, result, source: str, continue_processing: bool = True) -> Optional[ProcessingError]:
        """Record a failed CompressionResult; successes and cancellations are ignored"""
        if not result.failed:
            return None

        error = ProcessingError(
            kind=result.error_kind,
            message=result.error_message or "unknown error",
            source=source,
            exception_type=result.error_kind.name,
            suggestions=list(_SUGGESTIONS[result.error_kind]),
            retryable=result.error_kind in _RETRYABLE,
        )
        self._record(error, continue_processing)
        return error

    def _record(self, error: ProcessingError, continue_processing: bool) -> None:
        self.processed_errors.append(error)
        self.error_counts[error.kind] += 1

        if error.kind == ErrorKind.INVALID_CONFIGURATION:
            logger.warning(f"WARNING: {error.get_short_description()}")
        else:
            logger.error(f"ERROR: {error.get_short_description()}")
            logger.info(f"Suggestions: {'; '.join(error.suggestions[:2])}")

        if continue_processing:
            logger.info(f"Continuing batch processing despite {error.kind.value} error")

    def get_error_summary(self) -> Dict[str, Any]:
        """Get comprehensive error summary for batch processing"""
        total_errors = len(self.processed_errors)
        if total_errors == 0:
            return {'total_errors': 0, 'categories': {}}

        category_counts = {kind.value: count for kind, count in self.error_counts.items() if count > 0}
        retryable_count = sum(1 for error in self.processed_errors if error.retryable)

        return {
            'total_errors': total_errors,
            'categories': category_counts,
            'most_common_category': max(category_counts.items(), key=lambda x: x[1])[0],
            'retryable_errors': retryable_count,
            'non_retryable_errors': total_errors - retryable_count,
        }

    def get_top_failures(self, limit: int = 3) -> List[Dict[str, Any]]:
        """Return ranked failure categories with a representative message for reporting."""
        if limit <= 0 or not self.processed_errors:
            return []
        category_counts: Dict[str, int] = {}
        sample_messages: Dict[str, str] = {}
        for error in self.processed_errors:
            key = error.kind.value
            category_counts[key] = category_counts.get(key, 0) + 1
            sample_messages[key] = error.message
        sorted_categories = sorted(category_counts.items(), key=lambda item: item[1], reverse=True)[:limit]
        return [
            {'category': category, 'count': count, 'sample_message': sample_messages.get(category, '')}
            for category, count in sorted_categories
        ]

    def log_batch_summary(self, total_files: int, successful_files: int, cancelled_files: int = 0):
        """Log batch processing summary with error analysis"""
        failed_files = total_files - successful_files - cancelled_files
        success_rate = (successful_files / total_files * 100) if total_files > 0 else 0

        logger.info(f"Total files: {total_files}, Successful: {successful_files}, "
                    f"Failed: {failed_files}, Cancelled: {cancelled_files}")
        logger.info(f"Success rate: {success_rate:.1f}%")

        if failed_files <= 0:
            return

        logger.error("Error breakdown by category:")
        for kind, count in self.error_counts.items():
            if count > 0:
                percentage = (count / failed_files) * 100
                logger.error(f"  • {kind.value}: {count} files ({percentage:.1f}% of failures)")

    def reset(self):
        """Reset error tracking for a new batch"""
        self.error_counts = {kind: 0 for kind in ErrorKind}
        self.processed_errors.clear()
