"""
Error types shared by the Classbook core modules.

Validation errors are raised before any write takes place. Store errors on the
primary entity propagate to the caller unchanged; notification failures never
reach this hierarchy because they are logged and swallowed where they occur.
"""


class ClassbookError(Exception):
    """Base class for all Classbook errors."""


class ValidationError(ClassbookError):
    """Input rejected before any state was written."""


class SessionNotScheduledError(ValidationError):
    """Attendance submitted for a lesson that is not in the timetable."""

    def __init__(self, class_id: str, subject_id: str, day: str, period: int):
        self.class_id = class_id
        self.subject_id = subject_id
        self.day = day
        self.period = period
        super().__init__(
            f"No scheduled session for class {class_id}, subject {subject_id} "
            f"on {day}, period {period}"
        )


class TimetableConflictError(ValidationError):
    """A timetable contains two lessons in the same slot."""

    def __init__(self, message: str, conflicts=None):
        self.conflicts = conflicts or []
        super().__init__(message)


class UnknownNotificationTypeError(ValidationError):
    """No template is registered for the notification type."""


class AuthorizationError(ClassbookError):
    """The acting user's role is not allowed to perform the operation."""


class DocumentNotFoundError(ClassbookError):
    """An update targeted a document that does not exist."""

    def __init__(self, school_id: str, collection: str, doc_id: str):
        self.school_id = school_id
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document not found: schools/{school_id}/{collection}/{doc_id}")


class BatchLimitError(ClassbookError):
    """A write batch exceeded the store's per-commit operation limit."""
