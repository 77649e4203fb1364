"""Passkey (WebAuthn) sign-in service for the caregiver app."""
from __future__ import annotations

from .app import app, main

__all__ = ["app", "main"]
