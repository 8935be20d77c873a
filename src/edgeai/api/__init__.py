"""EdgeAI Gateway — FastAPI HTTP layer.

This package contains the FastAPI application, the Pydantic request models,
and the request decoding / response encoding helpers.

Modules
-------
main
    FastAPI application factory, middleware, route handlers and the
    ``main()`` CLI entry point.
models
    Pydantic models for the JSON request dialects of each endpoint.
codec
    JSON body parsing, base64 image decoding, chat text extraction and
    response body construction.
"""
