"""Bundled DER certificates used as TLS pins."""
