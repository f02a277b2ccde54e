"""Shared infrastructure for the WhatsApp integration services."""
