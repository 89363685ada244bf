"""Authentication module.

Resolves the principal behind an inbound request from its JWT (``token``
cookie or bearer header).  Issuing tokens is the login flow's job; this
module only verifies them.

    - Principal: the authenticated caller
    - get_principal: FastAPI dependency used by the upload endpoints
"""
from .identity import Principal, create_access_token, decode_principal, get_principal

__all__ = [
    "Principal",
    "create_access_token",
    "decode_principal",
    "get_principal",
]
