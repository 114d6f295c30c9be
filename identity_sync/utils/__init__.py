"""Shared helpers for the identity sync application."""
