"""
LDAP directory connection.

This module provides :py:class:`DirectoryConnection`, which owns a single
authenticated python-ldap session and offers entry level read, create and
save operations on top of it, and :py:class:`Modlist`, which turns a
:py:class:`~ldapdirectory.entry.DirectoryEntry` into the modlists python-ldap
wants for ``add_s`` and ``modify_s``.
"""

import logging
from pathlib import Path
from typing import Any, cast

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from ldap import modlist
from ldap_filter import Filter

from ldapdirectory import ldap

from .entry import DECODE_ERRORS, DirectoryEntry
from .exceptions import ConflictError, ConnectSyntaxError, DirectoryError, NotFoundError
from .typing import AddModlist, LDAPData, ReplaceModlist

logger = logging.getLogger("ldapdirectory")

#: Default port for each protocol we know how to speak
DEFAULT_PORTS: dict[str, int] = {"ldap": 389, "ldaps": 636}

#: Keyword options understood by :py:class:`DirectoryConnection`, with defaults
DEFAULT_OPTIONS: dict[str, Any] = {
    "protocol": "ldap",
    "port": None,
    "use_starttls": True,
    "protocol_version": 3,
    "ldap_options": None,
    "timeout": 15.0,
    "follow_referrals": False,
    "tls_verify": "never",
    "tls_ca_certfile": None,
}


def encode_values(values: list[str]) -> list[bytes]:
    return [value.encode("utf-8", DECODE_ERRORS) for value in values]


# -----------------------
# Helper Classes
# -----------------------


class Modlist:
    """
    Helper for constructing LDAP modlists for add and modify operations.
    """

    def add(self, entry: DirectoryEntry) -> AddModlist:
        """
        Convert an entry to a modlist suitable for passing to ``add_s``.

        Attributes with no values are left out; an add request cannot carry
        them.

        Args:
            entry: the entry to add

        Returns:
            The modlist for the add operation.

        """
        data = {
            name: encode_values(values)
            for name, values in entry.attributes.items()
            if values
        }
        return cast("AddModlist", modlist.addModlist(data))

    def update(self, entry: DirectoryEntry) -> ReplaceModlist:
        """
        Build a ``MOD_REPLACE`` modlist from the attributes changed on
        ``entry``.

        Each changed attribute is replaced with its current values as a whole.
        An attribute whose values were all removed is replaced with nothing,
        which deletes it on the server.

        Args:
            entry: the entry with changes to send

        Returns:
            A list of LDAP modifications; empty if nothing changed.

        """
        return [
            (ldap.MOD_REPLACE, name, encode_values(values))  # type: ignore[attr-defined]
            for name, values in entry.get_changed_attributes().items()
        ]


# -----------------------
# Connection
# -----------------------


class DirectoryConnection:
    """
    One authenticated session to an LDAP server.

    The session is opened and bound in the constructor and reused for every
    operation until :py:meth:`close`.  There is no reconnect and no retry: if
    an operation fails with :py:class:`DirectoryError`, discard this object and
    make a new one.

    This class is not thread-safe.  Use one connection per thread.

    Example:
        .. code-block:: python

            with DirectoryConnection(
                "ldap.example.com",
                "cn=admin,dc=example,dc=com",
                "secret",
                basedn="dc=example,dc=com",
            ) as conn:
                user = conn.get_one_by_attribute("uid", "alice")
                user.push_attribute("mail", "alice@example.com")
                user.save()

    Args:
        host: the LDAP server hostname
        bind_dn: the dn to bind as
        password: the password for ``bind_dn``

    Keyword Args:
        basedn: the default base dn for attribute searches
        protocol: ``ldap`` or ``ldaps``
        port: the TCP port; defaults to 636 for ``ldaps`` and 389 otherwise
        use_starttls: negotiate STARTTLS before binding.  Only used with the
            ``ldap`` protocol.
        protocol_version: the LDAP protocol version
        ldap_options: a dict of python-ldap option to value, set on the
            session before binding
        timeout: network timeout in seconds
        follow_referrals: whether to chase referrals
        tls_verify: ``never`` or ``always``
        tls_ca_certfile: path to a CA certificate file

    Raises:
        ConnectSyntaxError: the host, protocol and port do not make a valid
            LDAP URL
        ImproperlyConfigured: an option has an invalid value
        DirectoryError: STARTTLS or the bind failed

    """

    def __init__(
        self,
        host: str,
        bind_dn: str,
        password: str,
        basedn: str | None = None,
        **options: Any,
    ) -> None:
        self.logger = logger
        for key in options:
            if key not in DEFAULT_OPTIONS:
                msg = f"'{key}' is an invalid keyword argument for this function"
                raise TypeError(msg)
        self.options: dict[str, Any] = {**DEFAULT_OPTIONS, **options}
        self.host = host
        self.bind_dn = bind_dn
        self.basedn = basedn
        self.url = self._get_url()
        self._ldap_object: ldap.ldapobject.LDAPObject | None = self._connect(  # type: ignore[name-defined]
            password
        )

    @classmethod
    def from_settings(cls, server: str = "default") -> "DirectoryConnection":
        """
        Build a connection from ``settings.LDAP_SERVERS[server]``.

        The ``host``, ``user`` and ``password`` keys are required; ``basedn``
        and any of the keyword options of :py:class:`DirectoryConnection` may
        also be given.

        Args:
            server: the key in ``settings.LDAP_SERVERS`` to use

        Raises:
            ImproperlyConfigured: ``settings.LDAP_SERVERS`` is missing, has no
                ``server`` key, or that key is missing required settings

        Returns:
            A connected, bound :py:class:`DirectoryConnection`.

        """
        try:
            config = dict(settings.LDAP_SERVERS[server])
        except AttributeError as e:
            msg = "settings.LDAP_SERVERS does not exist!"
            raise ImproperlyConfigured(msg) from e
        except KeyError as e:
            msg = f"settings.LDAP_SERVERS has no key '{server}'"
            raise ImproperlyConfigured(msg) from e
        try:
            host = config.pop("host")
            user = config.pop("user")
            password = config.pop("password")
        except KeyError as e:
            msg = f"settings.LDAP_SERVERS['{server}'] has no {e} key"
            raise ImproperlyConfigured(msg) from e
        basedn = config.pop("basedn", None)
        return cls(host, user, password, basedn=basedn, **config)

    def _get_url(self) -> str:
        """
        Build the LDAP URL from our host, protocol and port.

        Raises:
            ConnectSyntaxError: the protocol is unknown, the port is not a
                valid port number, or the host is empty

        Returns:
            An LDAP URL like ``ldap://ldap.example.com:389``.

        """
        protocol = self.options["protocol"]
        port = self.options["port"]
        if port is None:
            port = DEFAULT_PORTS.get(protocol, DEFAULT_PORTS["ldap"])
            self.options["port"] = port
        url = f"{protocol}://{self.host}:{port}"
        if protocol not in DEFAULT_PORTS:
            raise ConnectSyntaxError(url)
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            raise ConnectSyntaxError(url)
        if not self.host or any(c in self.host for c in "/ ?#@"):
            raise ConnectSyntaxError(url)
        return url

    def _set_options(self, ldap_object: Any) -> None:
        """
        Apply our session options to ``ldap_object``.

        Raises:
            ImproperlyConfigured: ``tls_verify`` is invalid, or
                ``tls_ca_certfile`` is not an existing file
            DirectoryError: python-ldap refused one of the options

        """
        tls_verify = self.options["tls_verify"]
        if tls_verify == "never":
            require_cert = ldap.OPT_X_TLS_NEVER  # type: ignore[attr-defined]
        elif tls_verify == "always":
            require_cert = ldap.OPT_X_TLS_DEMAND  # type: ignore[attr-defined]
        else:
            msg = f"Invalid tls_verify value: {tls_verify}"
            raise ImproperlyConfigured(msg)
        session_options: dict[int, Any] = {
            ldap.OPT_PROTOCOL_VERSION: self.options["protocol_version"],  # type: ignore[attr-defined]
            ldap.OPT_REFERRALS: 1 if self.options["follow_referrals"] else 0,  # type: ignore[attr-defined]
            ldap.OPT_NETWORK_TIMEOUT: float(self.options["timeout"]),  # type: ignore[attr-defined]
            ldap.OPT_X_TLS_REQUIRE_CERT: require_cert,  # type: ignore[attr-defined]
        }
        if tls_ca_certfile := self.options["tls_ca_certfile"]:
            if not Path(tls_ca_certfile).is_file():
                msg = f"CA Certificate file is not a file: {tls_ca_certfile}"
                raise ImproperlyConfigured(msg)
            session_options[ldap.OPT_X_TLS_CACERTFILE] = tls_ca_certfile  # type: ignore[attr-defined]
        session_options.update(self.options["ldap_options"] or {})
        try:
            for option, value in session_options.items():
                ldap_object.set_option(option, value)
            # Make the TLS options above take effect
            ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)  # type: ignore[attr-defined]
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            raise DirectoryError.from_ldap_error(e) from e

    def _connect(self, password: str) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        Create, configure and bind a new python-ldap session.

        Args:
            password: the password for :py:attr:`bind_dn`

        Returns:
            A bound LDAPObject.

        """
        try:
            ldap_object = ldap.initialize(self.url)  # type: ignore[attr-defined]
        except (ldap.LDAPError, ValueError) as e:  # type: ignore[attr-defined]
            raise ConnectSyntaxError(self.url) from e
        self._set_options(ldap_object)
        if self.options["protocol"] == "ldap" and self.options["use_starttls"]:
            try:
                ldap_object.start_tls_s()
            except ldap.LDAPError as e:  # type: ignore[attr-defined]
                self.logger.warning(
                    "ldapdirectory.connection.starttls.failed url=%s", self.url
                )
                raise DirectoryError.from_ldap_error(e) from e
        try:
            ldap_object.simple_bind_s(self.bind_dn, password)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            self.logger.warning(
                "ldapdirectory.connection.bind.failed url=%s dn=%s",
                self.url,
                self.bind_dn,
            )
            raise DirectoryError.from_ldap_error(e) from e
        self.logger.info(
            "ldapdirectory.connection.bind.success url=%s dn=%s", self.url, self.bind_dn
        )
        return ldap_object

    @property
    def connection(self) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        The bound python-ldap session.

        Raises:
            DirectoryError: :py:meth:`close` has been called

        """
        if self._ldap_object is None:
            msg = f"The connection to {self.url} is closed"
            raise DirectoryError(msg)
        return self._ldap_object

    def close(self) -> None:
        """
        Unbind the session.  Calling this more than once is harmless.
        """
        if self._ldap_object is None:
            return
        ldap_object, self._ldap_object = self._ldap_object, None
        try:
            ldap_object.unbind_s()
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            raise DirectoryError.from_ldap_error(e) from e

    def __enter__(self) -> "DirectoryConnection":
        return self

    def __exit__(self, exc_type: Any, exc_value: Any, traceback: Any) -> None:
        if exc_type is None:
            self.close()
            return
        # Don't let an unbind failure hide the exception already on its way out
        try:
            self.close()
        except DirectoryError as e:
            self.logger.warning(
                "ldapdirectory.connection.unbind.failed url=%s error=%s", self.url, e
            )

    def _search(
        self, basedn: str, scope: int, searchfilter: str
    ) -> list[LDAPData]:
        self.logger.debug(
            "ldapdirectory.connection.search basedn=%s scope=%s filter=%s",
            basedn,
            scope,
            searchfilter,
        )
        try:
            data = self.connection.search_s(basedn, scope, filterstr=searchfilter)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            raise DirectoryError.from_ldap_error(e) from e
        # We have to filter out the references that AD puts in
        return [obj for obj in data if isinstance(obj[1], dict)]

    def get_by_dn(self, dn: str) -> DirectoryEntry:
        """
        Get an entry by its dn.  This is a ``SCOPE_BASE`` search on ``dn``,
        which returns either the entry we're looking for or nothing.

        Args:
            dn: the distinguished name to look up

        Raises:
            NotFoundError: no entry with this dn exists
            DirectoryError: the search failed

        Returns:
            The entry.

        """
        try:
            objects = self._search(dn, ldap.SCOPE_BASE, "(objectClass=*)")  # type: ignore[attr-defined]
        except DirectoryError as e:
            if not isinstance(e.__cause__, ldap.NO_SUCH_OBJECT):  # type: ignore[attr-defined]
                raise
            objects = []
        if not objects:
            msg = f"No directory entry with dn '{dn}' exists."
            raise NotFoundError(msg)
        return DirectoryEntry.from_ldap(self, objects[0])

    def get_all_by_attribute(
        self, attribute: str, value: str, basedn: str | None = None
    ) -> list[DirectoryEntry]:
        """
        Return every entry under ``basedn`` whose ``attribute`` equals
        ``value``.

        ``value`` is escaped, so filter metacharacters in it (``*``, ``(``,
        ``)``, ``\\``) are matched literally.

        Args:
            attribute: the attribute name to match on
            value: the value to match

        Keyword Args:
            basedn: where to search; defaults to our :py:attr:`basedn`

        Raises:
            ValueError: no basedn given and none configured
            DirectoryError: the search failed

        Returns:
            The matching entries, possibly none.

        """
        if basedn is None:
            basedn = self.basedn
        if not basedn:
            msg = "basedn is required either as a parameter or on the connection"
            raise ValueError(msg)
        searchfilter = Filter.attribute(attribute).equal_to(value).to_string()
        objects = self._search(basedn, ldap.SCOPE_SUBTREE, searchfilter)  # type: ignore[attr-defined]
        return [DirectoryEntry.from_ldap(self, obj) for obj in objects]

    def get_one_by_attribute(
        self, attribute: str, value: str, basedn: str | None = None
    ) -> DirectoryEntry:
        """
        Return the first entry :py:meth:`get_all_by_attribute` finds.

        Raises:
            NotFoundError: nothing matched

        """
        entries = self.get_all_by_attribute(attribute, value, basedn=basedn)
        if not entries:
            msg = f"No directory entry with {attribute}={value} exists."
            raise NotFoundError(msg)
        return entries[0]

    def create(
        self,
        dn: str,
        attributes: dict[str, Any] | None = None,
        skip_existence_check: bool = False,
    ) -> DirectoryEntry:
        """
        Stage a new entry.  Nothing is sent to the server until the entry is
        saved.

        Args:
            dn: the dn of the new entry
            attributes: initial attributes; a single string value is treated
                as a one element list

        Keyword Args:
            skip_existence_check: don't look up ``dn`` first

        Raises:
            ConflictError: an entry with ``dn`` already exists
            DirectoryError: the existence check failed

        Returns:
            A new, unsaved entry.

        """
        if not skip_existence_check:
            try:
                self.get_by_dn(dn)
            except NotFoundError:
                pass
            else:
                raise ConflictError(dn)
        return DirectoryEntry(self, dn, attributes, new=True)

    def add(self, entry: DirectoryEntry) -> None:
        """
        Add a new entry to the directory.

        Raises:
            DirectoryError: the server rejected the add

        """
        _modlist = Modlist().add(entry)
        self.logger.debug(
            "ldapdirectory.connection.add dn=%s attributes=%s",
            entry.dn,
            [attr for attr, _ in _modlist],
        )
        try:
            self.connection.add_s(entry.dn, _modlist)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            raise DirectoryError.from_ldap_error(e) from e
        entry._mark_saved()

    def modify(self, entry: DirectoryEntry) -> None:
        """
        Send the attributes changed on ``entry`` to the directory.

        Raises:
            DirectoryError: the server rejected the modify

        """
        _modlist = Modlist().update(entry)
        if not _modlist:
            # Only issue the modify_s if we actually have changes
            self.logger.debug(
                "ldapdirectory.connection.modify.no-changes dn=%s", entry.dn
            )
            return
        self.logger.debug(
            "ldapdirectory.connection.modify dn=%s attributes=%s",
            entry.dn,
            [attr for _, attr, _ in _modlist],
        )
        try:
            self.connection.modify_s(entry.dn, _modlist)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            raise DirectoryError.from_ldap_error(e) from e
        entry._mark_saved()

    def save(self, entry: DirectoryEntry) -> None:
        """
        Persist ``entry``: add it if it is new, modify it otherwise.

        Raises:
            DirectoryError: the server rejected the request

        """
        if entry.is_new:
            self.add(entry)
        else:
            self.modify(entry)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self.bind_dn}@{self.url}>"
