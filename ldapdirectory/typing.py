"""
LDAP directory type definitions.

Type aliases for the raw data python-ldap hands us and the modlists we hand
back to it.
"""

AttributeMap = dict[str, list[str]]
RawAttributeMap = dict[str, list[bytes]]
LDAPData = tuple[str, RawAttributeMap]
AddModlist = list[tuple[str, list[bytes]]]
ReplaceModListEntry = tuple[int, str, list[bytes]]
ReplaceModlist = list[ReplaceModListEntry]
