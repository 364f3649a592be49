class KeeperError(Exception):
    """Base class for keeper errors.
    """


class LockNotAcquired(KeeperError):
    """Raised when a job lease cannot be acquired.
    """


class ConfigError(KeeperError):
    """Raised for an invalid schedule or backend configuration.
    """
