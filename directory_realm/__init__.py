"""
Directory Realm - LDAP authentication and role resolution.

Provides:
- User lookup by DN pattern or directory search
- Credential checks by bind or by password attribute comparison
- Role lookup from user attributes and (nested) group searches
- Pooled or single-connection access with alternate URL failover and StartTLS
"""

from directory_realm.config import RealmSettings, load_settings
from directory_realm.models import Principal, User
from directory_realm.realm import DirectoryRealm

__version__ = "1.0.0"

__all__ = ["DirectoryRealm", "Principal", "RealmSettings", "User", "load_settings"]
