# This file is here so that we can patch the ldap module in our tests.
# python-ldap-faker patches ``<module>.ldap``, so everything in ldapdirectory
# reaches python-ldap through this module.
import ldap
from ldap import *  # noqa: F403

__version__ = ldap.__version__
