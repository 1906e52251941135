"""Shared helpers: configuration files, templates, archives, commands and digests."""
