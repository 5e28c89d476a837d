"""
In-memory representation of a single LDAP entry.

A :py:class:`DirectoryEntry` is an attribute bag keyed by lower-cased attribute
name, plus a log of which attributes were touched since it was loaded.  The
log is what lets :py:meth:`DirectoryConnection.save` send a minimal modify
request.
"""

import weakref
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, Optional, cast

from django.utils.encoding import force_str

from .typing import AttributeMap, LDAPData

if TYPE_CHECKING:
    from .connection import DirectoryConnection

#: How undecodable bytes are carried in a str so they encode back unchanged
DECODE_ERRORS = "surrogateescape"

#: Keys python-ldap (and friends) put in an attribute map that are not attributes
METADATA_KEYS = ("count", "dn")


def normalize_values(values: Any) -> list[str]:
    """
    Coerce ``values`` into a list of strings.

    A single ``str`` or ``bytes`` value becomes a one element list; ``None``
    becomes an empty list.  ``bytes`` are decoded as UTF-8; bytes that are not
    valid UTF-8 (``objectGUID``, ``jpegPhoto`` and the like) are kept as
    surrogate escapes, so encoding the value again gives back the same bytes.

    Args:
        values: a value or an iterable of values

    Returns:
        A new list of strings.

    """
    if values is None:
        return []
    if isinstance(values, (str, bytes)):
        values = [values]
    return [
        force_str(value, errors=DECODE_ERRORS)
        for value in cast("Iterable[Any]", values)
    ]


def normalize_attributes(attributes: dict[Any, Any] | None) -> AttributeMap:
    """
    Turn a raw attribute map into the canonical form we keep on entries.

    Integer keys, ``count`` and ``dn`` are dropped, names are lower-cased and
    values are decoded to strings.  If the raw map has the same attribute
    under two different cases, the values are merged in order.

    Args:
        attributes: the raw map, e.g. the second element of a python-ldap
            search result

    Returns:
        A new attribute map.

    """
    normalized: AttributeMap = {}
    for key, value in (attributes or {}).items():
        if not isinstance(key, str) or key.lower() in METADATA_KEYS:
            continue
        normalized.setdefault(key.lower(), []).extend(normalize_values(value))
    return normalized


class DirectoryEntry:
    """
    One entry in the directory: its dn, its attributes, and which of those
    attributes changed since it was loaded.

    Entries are normally made by :py:class:`DirectoryConnection`, either by
    loading search results (:py:meth:`from_ldap`) or by staging a new object
    with :py:meth:`DirectoryConnection.create`.

    Args:
        connection: the connection that produced this entry.  Only a weak
            reference is kept.
        dn: the distinguished name of the entry

    Keyword Args:
        attributes: the initial attribute map
        new: ``True`` if this entry does not exist on the server yet

    Raises:
        ValueError: ``dn`` is empty

    """

    def __init__(
        self,
        connection: Optional["DirectoryConnection"],
        dn: str,
        attributes: dict[Any, Any] | None = None,
        new: bool = False,
    ) -> None:
        if not dn:
            msg = "A directory entry needs a non-empty dn"
            raise ValueError(msg)
        self._connection: weakref.ReferenceType | None = (
            weakref.ref(connection) if connection is not None else None
        )
        self._dn: str = force_str(dn)
        self._new: bool = new
        self.attributes: AttributeMap = normalize_attributes(attributes)
        self.changed_attribute_names: set[str] = set()

    @classmethod
    def from_ldap(
        cls, connection: Optional["DirectoryConnection"], data: LDAPData
    ) -> "DirectoryEntry":
        """
        Build an entry from one python-ldap search result.

        Args:
            connection: the connection the search was run on
            data: a ``(dn, attrs)`` tuple

        Returns:
            A loaded, not-new entry.

        """
        dn, attrs = data
        return cls(connection, dn, attrs)

    @property
    def dn(self) -> str:
        """The distinguished name of this entry."""
        return self._dn

    @property
    def is_new(self) -> bool:
        """``True`` until this entry has been successfully saved."""
        return self._new

    @property
    def connection(self) -> "DirectoryConnection":
        """
        The connection that produced this entry.

        Raises:
            ReferenceError: the entry was made without a connection, or the
                connection no longer exists

        """
        connection = self._connection() if self._connection is not None else None
        if connection is None:
            msg = f"The connection for {self._dn} no longer exists"
            raise ReferenceError(msg)
        return connection

    def get_attribute(self, name: str) -> list[str]:
        """
        Return all values of attribute ``name``, in order.

        Args:
            name: the attribute name, in any case

        Returns:
            A copy of the values; an empty list if the attribute is not set.

        """
        return list(self.attributes.get(name.lower(), []))

    def set_attribute(self, name: str, values: Iterable[str] | str) -> None:
        """
        Replace all values of attribute ``name`` with ``values``.

        Args:
            name: the attribute name, in any case
            values: the new values; a single string is treated as one value

        """
        key = name.lower()
        self.attributes[key] = normalize_values(values)
        self.changed_attribute_names.add(key)

    def push_attribute(self, name: str, value: str) -> None:
        """
        Append ``value`` to attribute ``name``.  Duplicates are kept.

        Args:
            name: the attribute name, in any case
            value: the value to append

        """
        key = name.lower()
        self.attributes.setdefault(key, []).append(
            force_str(value, errors=DECODE_ERRORS)
        )
        self.changed_attribute_names.add(key)

    def remove_value(self, name: str, value: str) -> bool:
        """
        Remove the first occurrence of ``value`` from attribute ``name``.

        Args:
            name: the attribute name, in any case
            value: the value to remove; compared exactly

        Returns:
            ``True`` if a value was removed, ``False`` otherwise.

        """
        key = name.lower()
        values = self.attributes.get(key, [])
        try:
            values.remove(force_str(value, errors=DECODE_ERRORS))
        except ValueError:
            return False
        self.changed_attribute_names.add(key)
        return True

    def remove_attribute(self, name: str) -> None:
        """
        Remove every value of attribute ``name``.  Saving the entry then clears
        the attribute on the server.

        Args:
            name: the attribute name, in any case

        """
        self.set_attribute(name, [])

    def get_changed_attributes(self) -> AttributeMap:
        """
        Return the current values of every attribute changed since this entry
        was loaded or last saved.

        Returns:
            A new dict of attribute name to a copy of its values.

        """
        return {
            name: self.get_attribute(name)
            for name in sorted(self.changed_attribute_names)
        }

    def save(self) -> None:
        """
        Persist this entry through the connection that produced it: an add if
        the entry is new, a modify otherwise.

        Raises:
            ReferenceError: the connection no longer exists
            DirectoryError: the server rejected the request

        """
        self.connection.save(self)

    def _mark_saved(self) -> None:
        self._new = False
        self.changed_attribute_names.clear()

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self.attributes

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self._dn}>"
