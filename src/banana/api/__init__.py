"""Banana storage backend - FastAPI REST API layer.

Modules
-------
main
    Application factory, route handlers, error translation and the
    ``main()`` CLI entry point.
models
    Pydantic request models.
"""
