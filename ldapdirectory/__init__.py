"""
A small object-oriented facade over python-ldap: bind once, then read, stage,
change and save directory entries as attribute bags.
"""

from .connection import DirectoryConnection, Modlist  # noqa: F401
from .entry import DirectoryEntry  # noqa: F401
from .exceptions import (  # noqa: F401
    ConflictError,
    ConnectSyntaxError,
    DirectoryError,
    LdapDirectoryException,
    NotFoundError,
)

__version__ = "1.0.0"
