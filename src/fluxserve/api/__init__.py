"""FluxServe - FastAPI REST API layer.

This package contains the FastAPI application and its Pydantic
request/response models.

Modules
-------
main
    Application factory, the ``/generate``, ``/status`` and ``/download``
    routes, and the ``main()`` CLI entry point.
models
    Pydantic models for API request and response validation.
"""
