class ZipBackupError(Exception):
    """Base class for every fatal error raised by the archive engine."""


class ConfigurationError(ZipBackupError):
    pass


class ArchiveError(ZipBackupError):
    pass


class BackupError(ZipBackupError):
    pass


class BackupCancelled(BackupError):
    pass


class RestoreError(ZipBackupError):
    pass


class RestoreCancelled(RestoreError):
    pass


class ScriptError(ZipBackupError):
    pass


class ServiceError(ZipBackupError):
    pass
