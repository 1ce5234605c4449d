"""
Directory Realm Errors

Error classification for configuration, connection and directory failures.
Authentication callers never see these: the realm logs them and reports
"not authenticated".
"""

from typing import Optional


class RealmError(Exception):
    """Base exception for directory realm operations"""

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        self.error_code = error_code
        super().__init__(self.message)


class ConfigurationError(RealmError):
    """Malformed template, invalid option or unknown registry identifier. Never retried."""


class ConnectOpenError(RealmError):
    """Raised when no connection could be opened to the primary or alternate URL"""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message, error_code="CONNECT_FAILED")
        self.url = url


class TransientDirectoryError(RealmError):
    """
    Any directory failure during user resolution, credential verification or
    role search. The connection is discarded and the operation retried once.
    """


class DirectoryAuthenticationError(TransientDirectoryError):
    """Bind rejected: invalid credentials, inappropriate authentication or insufficient access"""


class NameNotFoundError(TransientDirectoryError):
    """The named entry does not exist"""


class InvalidNameSyntaxError(TransientDirectoryError):
    """A distinguished name or search result name could not be parsed"""


class PartialResultError(TransientDirectoryError):
    """A search returned continuation references instead of (all) results"""


class ReferralError(TransientDirectoryError):
    """A referral was returned while referrals are configured to throw"""
