"""Persistence layer for aliases, preferences, saved logins and session logs."""
