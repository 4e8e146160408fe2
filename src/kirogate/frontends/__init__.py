"""Frontends - User interfaces for kirogate.

Submodules:
    cli/    Command-line interface
"""
