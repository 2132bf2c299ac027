"""Shared plumbing: config loading and the HTTP transport."""
