"""Inbound webhook authenticity checks."""

from .signatures import compute_signature, sign_headers, verify_signature

__all__ = ["compute_signature", "sign_headers", "verify_signature"]
