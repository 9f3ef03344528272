"""
Exception Hierarchy

Custom exceptions for the care records migration application.
"""


class CareMigrationException(Exception):
    """Base exception for the care records migration application"""

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


# Migration Exceptions
class MigrationException(CareMigrationException):
    """Exception during migration"""
    pass


class PlanValidationException(MigrationException):
    """Exception when a migration plan set is inconsistent"""
    pass


class BatchWriteException(MigrationException):
    """Exception when a transactional batch write fails"""
    pass


class TableMigrationException(MigrationException):
    """Exception when a table migration cannot complete

    ``result`` holds the table's failed MigrationResult with the counts
    reached before the failure.
    """

    def __init__(self, message: str, details: dict = None, result=None):
        super().__init__(message, details)
        self.result = result


class MigrationRunException(MigrationException):
    """Exception when a migration run fails

    ``results`` holds every MigrationResult gathered before the failure.
    """

    def __init__(self, message: str, details: dict = None, results=None):
        super().__init__(message, details)
        self.results = list(results or [])


class MigrationCancelledException(MigrationException):
    """Exception when an operator cancels a running operation"""
    pass


# Backup Exceptions
class BackupException(CareMigrationException):
    """Exception during backup"""
    pass


class BackupStageException(BackupException):
    """Exception when a backup stage (dump, compress, encrypt, checksum, verify) fails"""
    pass


class BackupNotFoundException(BackupException):
    """Exception when no suitable backup exists"""
    pass


# Restore Exceptions
class RestoreException(CareMigrationException):
    """Exception during restore"""
    pass


class IntegrityCheckException(RestoreException):
    """Exception when an integrity check fails"""
    pass


# Import Exceptions
class FileImportException(CareMigrationException):
    """Exception when a data file is rejected or cannot be parsed"""
    pass


# Database Exceptions
class DatabaseException(CareMigrationException):
    """Exception related to database operations"""
    pass


class ConnectionException(DatabaseException):
    """Exception when database connection fails"""
    pass


# Configuration Exceptions
class ConfigurationException(CareMigrationException):
    """Exception related to configuration"""
    pass


class MissingConfigurationException(ConfigurationException):
    """Exception when required configuration is missing"""
    pass


# Crypto Exceptions
class CryptoException(CareMigrationException):
    """Exception when encryption or decryption fails"""
    pass


# Utility functions
def format_exception_details(exception: CareMigrationException) -> str:
    """
    Format exception details for logging

    Args:
        exception: Application exception instance

    Returns:
        Formatted string with exception details
    """
    details_str = f"{exception.__class__.__name__}: {exception.message}"

    if exception.details:
        details_list = [f"  {k}: {v}" for k, v in exception.details.items()]
        details_str += "\nDetails:\n" + "\n".join(details_list)

    return details_str
