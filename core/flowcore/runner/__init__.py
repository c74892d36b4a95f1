"""Task handler registry."""
