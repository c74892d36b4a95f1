"""Durable execution storage."""
