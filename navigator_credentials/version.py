"""Navigator Credentials Meta information.
   Navigator Credentials keeps encrypted, access-scoped and audited
   secrets for skills and tools.
"""
__title__ = 'navigator_credentials'
__description__ = (
   'Navigator Credentials keeps encrypted, access-scoped and audited '
   'secrets for skills and tools.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/navigator-credentials'
