"""
CLI Error Handling

Maps CLI and domain errors to user-facing messages and exit codes.
"""

import functools
import logging
import sys
import traceback

import click

from care_migration.cli.config import config
from care_migration.lib.exceptions import (
    BackupException,
    CareMigrationException,
    ConfigurationException,
    FileImportException,
    MigrationException,
    RestoreException,
    format_exception_details,
)

EXIT_FAILURE = 1
EXIT_CONFIGURATION = 2
EXIT_MIGRATION = 3
EXIT_BACKUP = 4
EXIT_RESTORE = 5
EXIT_IMPORT = 6


def handle_exception(exc_type, exc_value, exc_traceback):
    """
    Global exception handler

    Args:
        exc_type: Exception type
        exc_value: Exception value
        exc_traceback: Exception traceback
    """
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return

    logging.error(
        "Uncaught exception",
        exc_info=(exc_type, exc_value, exc_traceback)
    )

    if config.debug_mode:
        traceback.print_exception(exc_type, exc_value, exc_traceback)
    else:
        click.echo(f"❌ An error occurred: {exc_value}", err=True)
        click.echo("   Run with --debug for more details", err=True)


def install_exception_handler():
    """Install global exception handler"""
    sys.excepthook = handle_exception


class CLIError(Exception):
    """Base exception for CLI errors"""
    def __init__(self, message: str, exit_code: int = EXIT_FAILURE):
        self.message = message
        self.exit_code = exit_code
        super().__init__(self.message)


class ConfigurationError(CLIError):
    """Missing or invalid configuration"""
    def __init__(self, message: str):
        super().__init__(message, EXIT_CONFIGURATION)


class MigrationError(CLIError):
    """Error during migration"""
    def __init__(self, message: str):
        super().__init__(message, EXIT_MIGRATION)


class BackupError(CLIError):
    """Error during backup"""
    def __init__(self, message: str):
        super().__init__(message, EXIT_BACKUP)


class RollbackError(CLIError):
    """Error during restore or rollback"""
    def __init__(self, message: str):
        super().__init__(message, EXIT_RESTORE)


def exit_code_for(error: CareMigrationException) -> int:
    if isinstance(error, ConfigurationException):
        return EXIT_CONFIGURATION
    if isinstance(error, MigrationException):
        return EXIT_MIGRATION
    if isinstance(error, BackupException):
        return EXIT_BACKUP
    if isinstance(error, RestoreException):
        return EXIT_RESTORE
    if isinstance(error, FileImportException):
        return EXIT_IMPORT
    return EXIT_FAILURE


def handle_cli_error(error: CLIError):
    """
    Handle CLI-specific errors

    Args:
        error: CLI error instance
    """
    logging.error(f"{error.__class__.__name__}: {error.message}")
    click.echo(f"❌ {error.message}", err=True)
    sys.exit(error.exit_code)


def safe_execute(func):
    """
    Decorator for safe command execution with error handling

    Args:
        func: Function to wrap

    Returns:
        Wrapped function
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CLIError as e:
            handle_cli_error(e)
        except click.Abort:
            click.echo("❌ Operation aborted by user", err=True)
            sys.exit(EXIT_FAILURE)
        except CareMigrationException as e:
            logging.error(f"{func.__name__} failed: {format_exception_details(e)}")

            if config.debug_mode:
                raise
            click.echo(f"❌ {e.message}", err=True)
            sys.exit(exit_code_for(e))
        except Exception as e:
            logging.exception(f"Unexpected error in {func.__name__}")

            if config.debug_mode:
                raise
            click.echo(f"❌ An unexpected error occurred: {str(e)}", err=True)
            click.echo("   Run with --debug for more details", err=True)
            sys.exit(EXIT_FAILURE)

    return wrapper
