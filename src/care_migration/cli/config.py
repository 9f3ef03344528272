"""
Configuration Management

Handles application configuration with environment variable support.
Services never read the environment; the CLI turns these values into
MigrationOptions and BackupSettings and passes them in.
"""

import os
import logging
from pathlib import Path
from typing import Optional, Any, Dict

from dotenv import load_dotenv

from care_migration.contracts.backup_service import BackupSettings, BackupType
from care_migration.contracts.migration_engine_service import MigrationOptions

logger = logging.getLogger(__name__)

TRUE_VALUES = ('true', '1', 'yes')


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in TRUE_VALUES


def service_env_key(service_name: str) -> str:
    """Environment variable holding a service's target database URL"""
    return 'TARGET_DATABASE_URL_' + service_name.upper().replace('-', '_')


class Config:
    """
    Configuration management with environment variable handling

    Loads configuration from environment variables and .env files.
    Provides type-safe access to configuration values with defaults.
    """

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration

        Args:
            env_file: Path to .env file (optional, defaults to .env in current directory)
        """
        if env_file:
            self.load(env_file)
        else:
            for path in [Path('.env'), Path('.env.local')]:
                if path.exists():
                    load_dotenv(path)
                    logger.info(f"Loaded configuration from {path}")
                    break

    def load(self, env_file: str) -> None:
        """Load an explicit .env file, overriding values already set"""
        env_path = Path(env_file)
        if env_path.exists():
            load_dotenv(env_path, override=True)
            logger.info(f"Loaded configuration from {env_file}")
        else:
            logger.warning(f"Configuration file not found: {env_file}")

    # Database Configuration
    @property
    def source_database_url(self) -> str:
        """
        Get the legacy monolith database URL

        Returns:
            Database connection URL
        """
        return os.getenv('SOURCE_DATABASE_URL', 'sqlite:///care_monolith.db')

    def target_database_url(self, service_name: str) -> Optional[str]:
        """
        Get a service's target database URL

        Args:
            service_name: Service name, e.g. ``resident-service``

        Returns:
            Connection URL, or None when the service has no target configured
        """
        return os.getenv(service_env_key(service_name))

    @property
    def audit_database_url(self) -> Optional[str]:
        return os.getenv('AUDIT_DATABASE_URL')

    # Migration Configuration
    @property
    def batch_size(self) -> int:
        return int(os.getenv('MIGRATION_BATCH_SIZE', '1000'))

    @property
    def strict_validation(self) -> bool:
        return _flag('MIGRATION_STRICT_VALIDATION', 'true')

    @property
    def dry_run(self) -> bool:
        return _flag('MIGRATION_DRY_RUN', 'false')

    @property
    def max_workers(self) -> int:
        return int(os.getenv('MIGRATION_MAX_WORKERS', '4'))

    @property
    def pii_encryption_key(self) -> Optional[str]:
        """
        Get the secret used for field-level PII encryption

        Returns:
            Secret string, or None if not configured
        """
        return os.getenv('PII_ENCRYPTION_KEY')

    # Backup Configuration
    @property
    def backup_storage_path(self) -> str:
        return os.getenv('BACKUP_STORAGE_PATH', './backups')

    @property
    def retention_full_days(self) -> int:
        return int(os.getenv('BACKUP_RETENTION_FULL_DAYS', '30'))

    @property
    def retention_incremental_days(self) -> int:
        return int(os.getenv('BACKUP_RETENTION_INCREMENTAL_DAYS', '7'))

    @property
    def retention_differential_days(self) -> int:
        return int(os.getenv('BACKUP_RETENTION_DIFFERENTIAL_DAYS', '14'))

    @property
    def compression_enabled(self) -> bool:
        return _flag('BACKUP_COMPRESSION_ENABLED', 'true')

    @property
    def compression_level(self) -> int:
        return int(os.getenv('BACKUP_COMPRESSION_LEVEL', '6'))

    @property
    def backup_encryption_enabled(self) -> bool:
        return _flag('BACKUP_ENCRYPTION_ENABLED', 'true')

    @property
    def backup_encryption_key(self) -> Optional[str]:
        """
        Get the secret used for backup artifact encryption

        Returns:
            Secret string, or None if not configured
        """
        return os.getenv('BACKUP_ENCRYPTION_KEY')

    @property
    def verification_enabled(self) -> bool:
        return _flag('BACKUP_VERIFICATION_ENABLED', 'true')

    @property
    def retention_sweep_interval_hours(self) -> float:
        return float(os.getenv('RETENTION_SWEEP_INTERVAL_HOURS', '24'))

    # Import Configuration
    @property
    def import_max_file_size_mb(self) -> int:
        return int(os.getenv('FILE_IMPORT_MAX_SIZE_MB', '100'))

    # Logging Configuration
    @property
    def log_level(self) -> str:
        """
        Get logging level

        Returns:
            Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        """
        return os.getenv('LOG_LEVEL', 'INFO').upper()

    @property
    def log_to_file(self) -> bool:
        return _flag('LOG_TO_FILE', 'false')

    @property
    def log_json(self) -> bool:
        return _flag('LOG_JSON', 'false')

    @property
    def log_directory(self) -> str:
        return os.getenv('LOG_DIRECTORY', 'logs')

    # Application Configuration
    @property
    def debug_mode(self) -> bool:
        """
        Check if debug mode is enabled

        Returns:
            True if debug mode is enabled
        """
        return _flag('DEBUG', 'false')

    # Derived settings
    def migration_options(self, **overrides: Any) -> MigrationOptions:
        """
        Build MigrationOptions from the environment

        Args:
            **overrides: Values that win over the environment (None is ignored)

        Returns:
            MigrationOptions instance
        """
        values = {
            'batch_size': self.batch_size,
            'strict_validation': self.strict_validation,
            'dry_run': self.dry_run,
            'max_workers': self.max_workers,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return MigrationOptions(**values)

    def backup_settings(self) -> BackupSettings:
        return BackupSettings(
            storage_path=self.backup_storage_path,
            compression_enabled=self.compression_enabled,
            compression_level=self.compression_level,
            encryption_enabled=self.backup_encryption_enabled,
            verification_enabled=self.verification_enabled,
            retention_days={
                BackupType.FULL.value: self.retention_full_days,
                BackupType.INCREMENTAL.value: self.retention_incremental_days,
                BackupType.DIFFERENTIAL.value: self.retention_differential_days,
            },
        )

    # Helper Methods
    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by key

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value
        """
        return os.getenv(key, default)

    def set(self, key: str, value: Any) -> None:
        """
        Set configuration value

        Args:
            key: Configuration key
            value: Configuration value
        """
        os.environ[key] = str(value)
        logger.debug(f"Set configuration: {key}")

    def to_dict(self) -> Dict[str, Any]:
        """
        Export configuration as dictionary, secrets reduced to set/unset

        Returns:
            Dictionary containing configuration values
        """
        return {
            # Database
            'source_database_url': self.source_database_url,
            'audit_database_url': self.audit_database_url,

            # Migration
            'batch_size': self.batch_size,
            'strict_validation': self.strict_validation,
            'dry_run': self.dry_run,
            'max_workers': self.max_workers,
            'pii_encryption_key_set': bool(self.pii_encryption_key),

            # Backup
            'backup_storage_path': self.backup_storage_path,
            'retention_full_days': self.retention_full_days,
            'retention_incremental_days': self.retention_incremental_days,
            'retention_differential_days': self.retention_differential_days,
            'compression_enabled': self.compression_enabled,
            'compression_level': self.compression_level,
            'backup_encryption_enabled': self.backup_encryption_enabled,
            'backup_encryption_key_set': bool(self.backup_encryption_key),
            'verification_enabled': self.verification_enabled,
            'retention_sweep_interval_hours': self.retention_sweep_interval_hours,

            # Import
            'import_max_file_size_mb': self.import_max_file_size_mb,

            # Logging
            'log_level': self.log_level,
            'log_to_file': self.log_to_file,
            'log_directory': self.log_directory,
            'log_json': self.log_json,

            # Application
            'debug_mode': self.debug_mode,
        }

    def validate(self) -> bool:
        """
        Validate configuration

        Returns:
            True if configuration is valid

        Raises:
            ValueError: If configuration is invalid
        """
        if not self.source_database_url:
            raise ValueError("SOURCE_DATABASE_URL is required")

        valid_log_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        if self.log_level not in valid_log_levels:
            raise ValueError(f"Invalid LOG_LEVEL: {self.log_level}. Must be one of {valid_log_levels}")

        if self.batch_size <= 0:
            raise ValueError("MIGRATION_BATCH_SIZE must be positive")

        if self.max_workers <= 0:
            raise ValueError("MIGRATION_MAX_WORKERS must be positive")

        if not 1 <= self.compression_level <= 9:
            raise ValueError("BACKUP_COMPRESSION_LEVEL must be between 1 and 9")

        if self.import_max_file_size_mb <= 0:
            raise ValueError("FILE_IMPORT_MAX_SIZE_MB must be positive")

        for name, days in [('FULL', self.retention_full_days),
                           ('INCREMENTAL', self.retention_incremental_days),
                           ('DIFFERENTIAL', self.retention_differential_days)]:
            if days <= 0:
                raise ValueError(f"BACKUP_RETENTION_{name}_DAYS must be positive")

        return True


# Global configuration instance
config = Config()
