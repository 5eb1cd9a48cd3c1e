"""
Gallery Print Backend - print-ready photo generation service

This package turns stored gallery originals into print-ready derivatives and
runs that work on a durable background queue. It provides:

- A deterministic print pipeline: 3:2 crop, 4:3 sheet with an information
  band, adaptive band colors, corner captions and a QR code linking back to
  the gallery, with the original EXIF reattached
- A SQLite-backed task queue with priorities, retries, backoff and
  reconciliation of tasks abandoned by dead workers
- A FastAPI surface for submitting and inspecting tasks and for serving
  print artifacts, queueing generation on a cache miss

Key Components:
    - geometry: crop and band planning
    - color: band background and caption color selection
    - qr: QR code rendering
    - compositor: sheet layout and drawing
    - metadata: EXIF extraction and reattachment
    - processor: end-to-end conversion of one original
    - task_store / job_queue: task persistence, dispatch and retry policy
    - storage: local filesystem and S3 backends
    - configuration: config loading and merging logic
    - main: FastAPI application factory

Usage:
    Run the API server (workers start with the app) with:
        uvicorn gallery_print_backend.main:create_app --factory --host 0.0.0.0 --port 8000
"""
