"""
Logo Resizer Backend - REST API for resizing and re-encoding uploaded images

This package provides a FastAPI-based web service that turns one uploaded
raster image into one or more resized derivatives. It enables:

- Upload validation (MIME type, size, readable image metadata)
- Normalization of requested outputs (width, height, png/jpeg/webp)
- Cover, contain and stretch resizing with format-aware encoding
- Single-file responses or zip archives for multiple outputs
- Per-client rate limiting and concurrency caps

Nothing is persisted: uploads and rendered outputs live only for the duration
of the request that produced them.

Key Components:
    - main: FastAPI application, HTTP endpoints and the resize pipeline
    - upload: In-memory multipart parsing with upload size limits
    - normalizer: Coercion of loosely typed form fields and output specs
    - render_engine: Pillow decoding and per-output rendering
    - aggregator: Single-file vs archive decision and archive assembly
    - middleware: Sliding window rate limiter and concurrency admission
    - auth: Optional bearer token verification
    - configuration: Config loading and merging logic
    - models: Pydantic models and value types

Usage:
    Run the API server with:
        uvicorn logo_resizer_backend.main:app --reload --host 0.0.0.0 --port 5000

    Or use the console script:
        logo-resizer
"""
