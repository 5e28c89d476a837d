"""
Exceptions raised by ldapdirectory.

Every failure surfaces to the caller as one of these; nothing is retried or
swallowed.  :py:class:`DirectoryError` wraps the error python-ldap raised, so
that the server's diagnostic message and result code survive into the logs.
"""

from typing import Any


class LdapDirectoryException(Exception):
    """Base class for all ldapdirectory exceptions."""


class ConnectSyntaxError(LdapDirectoryException):
    """
    The connection settings were rejected before any network connection was
    attempted.

    This means the host, protocol or port make no sense as an LDAP URL; fixing
    it requires changing the configuration, not retrying.

    Args:
        url: the LDAP URL we tried to build from the connection settings

    """

    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(f"Invalid LDAP connection settings for: {url}")


class DirectoryError(LdapDirectoryException):
    """
    An LDAP operation failed: STARTTLS, bind, search, add or modify.

    Args:
        message: the human readable reason, preferably the server's extended
            error string
        code: the numeric LDAP result code

    """

    def __init__(self, message: str, code: int = 0) -> None:
        self.message = message
        self.code = code
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.message} (code {self.code})"

    @classmethod
    def from_ldap_error(cls, exc: Exception) -> "DirectoryError":
        """
        Build a :py:class:`DirectoryError` from an exception raised by
        python-ldap.

        python-ldap puts a dict in ``exc.args[0]``: ``info`` holds the
        extended error string, ``desc`` the generic description of the result
        code and ``result`` the code itself.

        Args:
            exc: the ``ldap.LDAPError`` to translate

        Returns:
            A new :py:class:`DirectoryError`.

        """
        details: dict[str, Any] = {}
        if exc.args and isinstance(exc.args[0], dict):
            details = exc.args[0]
        info = details.get("info")
        if isinstance(info, (tuple, list)):
            info = " ".join(str(i) for i in info)
        if isinstance(info, bytes):
            info = info.decode("utf-8", errors="replace")
        message = info or details.get("desc") or str(exc) or exc.__class__.__name__
        code = details.get("result", 0)
        return cls(str(message).strip(), int(code) if isinstance(code, int) else 0)


class ConflictError(LdapDirectoryException):
    """
    Raised by :py:meth:`DirectoryConnection.create` when an entry with the
    requested dn already exists.
    """

    def __init__(self, dn: str) -> None:
        self.dn = dn
        super().__init__(f"DN already exists: {dn}")


class NotFoundError(LdapDirectoryException):
    """No directory entry matched the query."""
