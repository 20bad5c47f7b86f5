# user_auth/__init__.py
"""User sign-in: authorization guards, the token service client and MSAL credentials."""
import logging

logger = logging.getLogger(__name__)
