"""Runtime-defined tables and parameterized CRUD behind an HTTP API."""

__version__ = "1.0.0"
