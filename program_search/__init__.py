"""
Top-level package for the program search backend.

This package contains modules for reading partner, program and session
records from the CRM, caching them in process memory with a two-phase
refresh, and serving filtered, faceted and ranked searches over the
cached hierarchy through a small API and an operator CLI.  There are no
side effects on import; the schema registry and cache store are created
lazily on first use.
"""
