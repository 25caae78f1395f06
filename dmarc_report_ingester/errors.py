from typing import Optional


class IngestionError(Exception):
    pass


class ConfigurationError(IngestionError):
    pass


class MailboxError(IngestionError):
    pass


class ConnectionTimeout(MailboxError):
    def __init__(self, host: str, port: int, timeout_seconds: float):
        self.host = host
        self.port = port
        self.timeout_seconds = timeout_seconds
        super().__init__(host, port, timeout_seconds)

    def __str__(self):
        return (
            f"Connection to {self.host}:{self.port} was not ready within "
            f"{self.timeout_seconds} seconds."
        )


class ConnectionExhausted(MailboxError):
    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(attempts, last_error)

    def __str__(self):
        return (
            f"Mailbox connection failed after {self.attempts} attempts: "
            f"{self.last_error}"
        )


class NotConnected(MailboxError):
    def __str__(self):
        return "Mailbox connection is not established."


class ReportError(IngestionError):
    """Base class for errors concerning a single report attachment."""


class UnsupportedFormat(ReportError):
    pass


class MalformedReport(ReportError):
    pass


class EmptyReport(MalformedReport):
    def __str__(self):
        return "Report does not contain any record."


class ValidationFailed(ReportError):
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(field, message)

    def __str__(self):
        return f"Invalid {self.field}: {self.message}"


class StorageError(IngestionError):
    pass


class DuplicateReportId(StorageError):
    def __init__(self, report_id: str):
        self.report_id = report_id
        super().__init__(report_id)

    def __str__(self):
        return f"Report {self.report_id} already exists."


class PersistenceFailure(StorageError):
    def __init__(self, message: str, report_id: Optional[str] = None):
        self.message = message
        self.report_id = report_id
        super().__init__(message, report_id)

    def __str__(self):
        if self.report_id:
            return f"Failed to store report {self.report_id}: {self.message}"
        return self.message
